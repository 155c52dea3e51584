"""
Configuration tests — environment parsing and validation.
"""

import pytest

from fab_bridge.config import (
    BridgeConfig,
    ConfigError,
    validate_import_folder,
    validate_port,
)


class TestFromEnv:
    def test_defaults(self):
        config = BridgeConfig.from_env({})
        assert config.port == 24981
        assert config.project_root is None
        assert config.import_folder == "fab_imports"
        assert config.convert_textures and config.create_materials and config.convert_models
        assert config.save_json is False
        assert config.auto_start is True
        assert config.idle_timeout == 5.0
        assert config.history_limit == 50

    def test_values(self, tmp_path):
        config = BridgeConfig.from_env({
            "FABBRIDGE_PORT": "30000",
            "FABBRIDGE_PROJECT_DIR": str(tmp_path),
            "FABBRIDGE_IMPORT_FOLDER": "assets/fab",
            "FABBRIDGE_CONVERT_MODELS": "no",
            "FABBRIDGE_SAVE_JSON": "ON",
            "FABBRIDGE_AUTO_START": "0",
            "FABBRIDGE_IDLE_TIMEOUT": "2.5",
            "FABBRIDGE_HISTORY_LIMIT": "10",
        })
        assert config.port == 30000
        assert config.project_root == str(tmp_path)
        assert config.import_folder == "assets/fab"
        assert config.convert_models is False
        assert config.save_json is True
        assert config.auto_start is False
        assert config.idle_timeout == 2.5
        assert config.history_limit == 10

    def test_blank_values_use_defaults(self):
        config = BridgeConfig.from_env({"FABBRIDGE_PORT": " ", "FABBRIDGE_PROJECT_DIR": ""})
        assert config.port == 24981
        assert config.project_root is None

    @pytest.mark.parametrize("env, name", [
        ({"FABBRIDGE_PORT": "abc"}, "FABBRIDGE_PORT"),
        ({"FABBRIDGE_PORT": "80"}, "FABBRIDGE_PORT"),
        ({"FABBRIDGE_PORT": "0"}, "FABBRIDGE_PORT"),
        ({"FABBRIDGE_PORT": "70000"}, "FABBRIDGE_PORT"),
        ({"FABBRIDGE_SAVE_JSON": "maybe"}, "FABBRIDGE_SAVE_JSON"),
        ({"FABBRIDGE_IDLE_TIMEOUT": "-1"}, "FABBRIDGE_IDLE_TIMEOUT"),
        ({"FABBRIDGE_HISTORY_LIMIT": "0"}, "FABBRIDGE_HISTORY_LIMIT"),
        ({"FABBRIDGE_IMPORT_FOLDER": "../outside"}, "FABBRIDGE_IMPORT_FOLDER"),
    ])
    def test_invalid_values_name_the_variable(self, env, name):
        with pytest.raises(ConfigError) as exc_info:
            BridgeConfig.from_env(env)
        assert name in str(exc_info.value)

    def test_config_error_is_value_error(self):
        assert issubclass(ConfigError, ValueError)

    def test_import_config(self, tmp_path):
        config = BridgeConfig(project_root=str(tmp_path), create_materials=False)
        ic = config.import_config()
        assert ic.project_root == str(tmp_path)
        assert ic.create_materials is False
        assert ic.import_folder == "fab_imports"

    def test_snapshot_folder(self, tmp_path):
        assert BridgeConfig().snapshot_folder is None
        assert BridgeConfig(project_root=str(tmp_path)).snapshot_folder == str(tmp_path / "fab_debug")


class TestValidation:
    def test_port_range(self):
        assert validate_port(1024) is None
        assert validate_port(65535) is None
        assert "between" in validate_port(1023)
        assert "between" in validate_port(65536)

    def test_port_type(self):
        assert "integer" in validate_port("24981")
        assert "integer" in validate_port(True)

    def test_ephemeral_port(self):
        assert validate_port(0) is not None
        assert validate_port(0, allow_ephemeral=True) is None

    def test_import_folder(self):
        assert validate_import_folder("fab_imports") is None
        assert validate_import_folder("assets/fab") is None
        assert validate_import_folder("") is not None
        assert validate_import_folder("/abs/path") is not None
        assert validate_import_folder("a/../../b") is not None
