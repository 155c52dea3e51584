"""
Import orchestrator tests — recording fake collaborators, no network.
Step ordering, skipping, error aggregation, success computation and
serialization of imports that share an output directory.
"""

import asyncio
import os
import threading
import time

import pytest

from fab_bridge.assets import Asset, ExportBundle
from fab_bridge.converters import TextureResult
from fab_bridge.importer import (
    ImportConfig,
    ImportEventKind,
    ImportOrchestrator,
    ImportResult,
    NoProjectContextError,
    material_slots,
)
from fab_bridge.protocol import ErrorCode

from conftest import make_asset


def textured_asset(**overrides) -> Asset:
    """Color and normal maps, no meshes."""
    return Asset.from_dict(make_asset(
        meshes=[],
        materials=[{"textures": {"albedo": "C:\\in\\rock_albedo.png", "normal": "C:\\in\\rock_normal.png"}}],
        **overrides,
    ))


@pytest.fixture
def orchestrator(import_config, fakes):
    return ImportOrchestrator(import_config, fakes.collaborators())


# ─── Step Ordering ────────────────────────────────────────────────────────────

class TestSteps:
    @pytest.mark.asyncio
    async def test_full_pipeline_order(self, orchestrator, fakes, project):
        result = await orchestrator.run_import(Asset.from_dict(make_asset()))

        assert fakes.steps() == ["texture", "texture", "texture", "material", "model", "assign"]
        assert result.success
        assert result.errors == []
        assert result.asset_name == "Mossy Rock"
        assert result.base_name == "mossy_rock"

    @pytest.mark.asyncio
    async def test_output_names_and_folders(self, orchestrator, fakes, project):
        await orchestrator.run_import(Asset.from_dict(make_asset()))

        root = os.path.join(project, "fab_imports", "mossy_rock")
        texture_calls = [args for step, args in fakes.calls if step == "texture"]
        assert [args[1] for args in texture_calls] == ["mossy_rock_color", "mossy_rock_normal", "mossy_rock_rough"]
        assert all(args[2] == os.path.join(root, "materials") for args in texture_calls)

        (_, model_args), = [c for c in fakes.calls if c[0] == "model"]
        assert model_args[1:] == ("mossy_rock", os.path.join(root, "models"))

    @pytest.mark.asyncio
    async def test_directories_created(self, orchestrator, project):
        await orchestrator.run_import(Asset.from_dict(make_asset()))
        root = os.path.join(project, "fab_imports", "mossy_rock")
        assert os.path.isdir(os.path.join(root, "materials"))
        assert os.path.isdir(os.path.join(root, "models"))

    @pytest.mark.asyncio
    async def test_material_receives_relative_slot_paths(self, orchestrator, fakes):
        await orchestrator.run_import(Asset.from_dict(make_asset()))
        (_, (name, slots, _folder)), = [c for c in fakes.calls if c[0] == "material"]
        assert name == "mossy_rock"
        assert slots == {
            "color": "fab_imports/mossy_rock/materials/mossy_rock_color.png",
            "normal": "fab_imports/mossy_rock/materials/mossy_rock_normal.png",
            "roughness": "fab_imports/mossy_rock/materials/mossy_rock_rough.png",
        }

    @pytest.mark.asyncio
    async def test_assignment_uses_material_relative_path(self, orchestrator, fakes):
        result = await orchestrator.run_import(Asset.from_dict(make_asset()))
        (_, (model_path, material_path)), = [c for c in fakes.calls if c[0] == "assign"]
        assert model_path.endswith("mossy_rock.vmdl")
        assert material_path == "fab_imports/mossy_rock/materials/mossy_rock.vmat"
        assert result.model_results[0].material_assigned

    @pytest.mark.asyncio
    async def test_textures_only(self, orchestrator, fakes):
        result = await orchestrator.run_import(textured_asset())
        assert result.success
        assert result.model_results == []
        assert result.material_result.success
        assert fakes.steps() == ["texture", "texture", "material"]

    @pytest.mark.asyncio
    async def test_models_only(self, orchestrator, fakes):
        result = await orchestrator.run_import(Asset.from_dict(make_asset(materials=[])))
        assert fakes.steps() == ["model"]
        assert result.success
        assert result.material_result is None
        assert not result.model_results[0].material_assigned

    @pytest.mark.asyncio
    async def test_nothing_to_import(self, orchestrator, fakes):
        result = await orchestrator.run_import(Asset.from_dict({"id": "empty"}))
        assert fakes.calls == []
        assert not result.success
        assert result.errors == []


# ─── Configuration ────────────────────────────────────────────────────────────

class TestConfiguration:
    @pytest.mark.asyncio
    async def test_textures_disabled_skips_material(self, project, fakes):
        config = ImportConfig(project_root=project, convert_textures=False)
        result = await ImportOrchestrator(config, fakes.collaborators()).run_import(Asset.from_dict(make_asset()))
        assert fakes.steps() == ["model"]
        assert result.texture_results == []

    @pytest.mark.asyncio
    async def test_materials_disabled(self, project, fakes):
        config = ImportConfig(project_root=project, create_materials=False)
        await ImportOrchestrator(config, fakes.collaborators()).run_import(Asset.from_dict(make_asset()))
        assert fakes.steps() == ["texture", "texture", "texture", "model"]

    @pytest.mark.asyncio
    async def test_models_disabled(self, project, fakes):
        config = ImportConfig(project_root=project, convert_models=False)
        await ImportOrchestrator(config, fakes.collaborators()).run_import(Asset.from_dict(make_asset()))
        assert fakes.steps() == ["texture", "texture", "texture", "material"]

    @pytest.mark.asyncio
    async def test_custom_import_folder(self, project, fakes):
        config = ImportConfig(project_root=project, import_folder="assets/fab")
        await ImportOrchestrator(config, fakes.collaborators()).run_import(Asset.from_dict(make_asset()))
        assert os.path.isdir(os.path.join(project, "assets", "fab", "mossy_rock", "models"))


# ─── Failures ─────────────────────────────────────────────────────────────────

class TestFailures:
    @pytest.mark.asyncio
    async def test_texture_failure_recorded_and_pipeline_continues(self, orchestrator, fakes):
        fakes.fail_texture_types = {"normal"}
        result = await orchestrator.run_import(Asset.from_dict(make_asset()))

        assert result.success
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Texture: cannot read")
        assert [t.success for t in result.texture_results] == [True, False, True]
        _, (_, slots, _) = next(c for c in fakes.calls if c[0] == "material")
        assert "normal" not in slots

    @pytest.mark.asyncio
    async def test_all_textures_fail_skips_material(self, orchestrator, fakes):
        fakes.fail_texture_types = {"color", "normal", "rough"}
        result = await orchestrator.run_import(Asset.from_dict(make_asset()))
        assert "material" not in fakes.steps()
        assert "model" in fakes.steps()
        assert len(result.errors) == 3
        assert result.success  # the model still converted

    @pytest.mark.asyncio
    async def test_material_failure_blocks_assignment(self, orchestrator, fakes):
        fakes.fail_material = True
        result = await orchestrator.run_import(Asset.from_dict(make_asset()))
        assert "assign" not in fakes.steps()
        assert "model" in fakes.steps()
        assert "Material: material template missing" in result.errors
        assert result.success

    @pytest.mark.asyncio
    async def test_collaborator_exception_is_captured(self, orchestrator, fakes):
        fakes.raise_on_texture = "_normal"
        fakes.raise_on_material = True
        result = await orchestrator.run_import(Asset.from_dict(make_asset()))
        assert "Texture: disk full while copying C:\\Fab\\Downloads\\Mossy Rock\\rock_normal.png" in result.errors
        assert "Material: material writer crashed" in result.errors
        assert fakes.steps()[-1] == "model"

    @pytest.mark.asyncio
    async def test_model_failure(self, orchestrator, fakes):
        fakes.fail_models = {"mossy_rock"}
        result = await orchestrator.run_import(Asset.from_dict(make_asset()))
        assert any(e.startswith("Model: unsupported mesh") for e in result.errors)
        assert "assign" not in fakes.steps()
        assert result.success

    @pytest.mark.asyncio
    async def test_assignment_exception(self, orchestrator, fakes):
        fakes.raise_on_assign = True
        result = await orchestrator.run_import(Asset.from_dict(make_asset()))
        assert result.errors == ["Material assignment: model document is corrupt"]
        assert not result.model_results[0].material_assigned

    @pytest.mark.asyncio
    async def test_assignment_false_is_not_an_error(self, orchestrator, fakes):
        fakes.assign_result = False
        result = await orchestrator.run_import(Asset.from_dict(make_asset()))
        assert result.errors == []
        assert not result.model_results[0].material_assigned

    @pytest.mark.asyncio
    async def test_everything_fails(self, orchestrator, fakes):
        fakes.fail_texture_types = {"color", "normal", "rough"}
        fakes.fail_models = {"mossy_rock"}
        result = await orchestrator.run_import(Asset.from_dict(make_asset()))
        assert not result.success
        assert len(result.errors) == 4

    @pytest.mark.asyncio
    async def test_directory_failure_is_fatal_for_asset(self, project, fakes):
        blocker = os.path.join(project, "fab_imports")
        with open(blocker, "w") as f:
            f.write("not a directory")
        orch = ImportOrchestrator(ImportConfig(project_root=project), fakes.collaborators())
        result = await orch.run_import(Asset.from_dict(make_asset()))
        assert fakes.calls == []
        assert not result.success
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Directory:")

    @pytest.mark.asyncio
    async def test_no_project_context(self, fakes):
        orch = ImportOrchestrator(ImportConfig(project_root=None), fakes.collaborators())
        with pytest.raises(NoProjectContextError) as exc_info:
            await orch.run_import_all(ExportBundle((Asset.from_dict(make_asset()),)))
        assert exc_info.value.code == ErrorCode.NO_PROJECT_CONTEXT
        with pytest.raises(NoProjectContextError):
            await orch.run_import(Asset.from_dict(make_asset()))
        assert fakes.calls == []


# ─── Events / Bundles ─────────────────────────────────────────────────────────

class TestEvents:
    @pytest.mark.asyncio
    async def test_event_sequence(self, import_config, fakes):
        events = []
        orch = ImportOrchestrator(import_config, fakes.collaborators(), on_event=events.append)
        result = await orch.run_import(Asset.from_dict(make_asset()))

        kinds = [e.kind for e in events]
        assert kinds[0] == ImportEventKind.STARTED
        assert kinds[-1] == ImportEventKind.COMPLETED
        assert kinds[1:-1] == [ImportEventKind.PROGRESS] * 4
        assert events[-1].result is result
        assert all(e.asset_name == "Mossy Rock" for e in events)

    @pytest.mark.asyncio
    async def test_broken_event_handler_does_not_break_import(self, import_config, fakes):
        def handler(event):
            raise RuntimeError("observer bug")

        orch = ImportOrchestrator(import_config, fakes.collaborators(), on_event=handler)
        result = await orch.run_import(Asset.from_dict(make_asset()))
        assert result.success

    @pytest.mark.asyncio
    async def test_bundle_runs_in_order(self, orchestrator, fakes):
        bundle = ExportBundle((
            Asset.from_dict(make_asset(name="First", materials=[])),
            Asset.from_dict(make_asset(name="Second", materials=[])),
        ))
        results = await orchestrator.run_import_all(bundle)
        assert [r.asset_name for r in results] == ["First", "Second"]
        assert [args[1] for _, args in fakes.calls] == ["first", "second"]


# ─── Concurrency ──────────────────────────────────────────────────────────────

class TestSerialization:
    @pytest.mark.asyncio
    async def test_same_base_name_serialized(self, import_config, fakes):
        active = {"now": 0, "max": 0}
        lock = threading.Lock()

        def slow_texture(source, output_name, folder):
            with lock:
                active["now"] += 1
                active["max"] = max(active["max"], active["now"])
            time.sleep(0.05)
            with lock:
                active["now"] -= 1
            return TextureResult(success=True, source_path=source,
                                 destination_path=os.path.join(folder, output_name + ".png"))

        collaborators = fakes.collaborators()
        collaborators.convert_texture = slow_texture
        orch = ImportOrchestrator(import_config, collaborators)

        # Different display names, same base name after slugifying
        a = textured_asset(name="Mossy Rock")
        b = textured_asset(name="mossy rock")
        results = await asyncio.gather(orch.run_import(a), orch.run_import(b))

        assert active["max"] == 1
        assert all(r.success for r in results)

    @pytest.mark.asyncio
    async def test_same_base_name_events_do_not_interleave(self, import_config, fakes):
        fakes.delay = 0.02
        events = []
        orch = ImportOrchestrator(import_config, fakes.collaborators(), on_event=events.append)

        await asyncio.gather(
            orch.run_import(textured_asset(name="Mossy Rock")),
            orch.run_import(textured_asset(name="mossy rock")),
        )

        lifecycle = [(e.kind, e.asset_name) for e in events if e.kind != ImportEventKind.PROGRESS]
        assert lifecycle == [
            (ImportEventKind.STARTED, "Mossy Rock"),
            (ImportEventKind.COMPLETED, "Mossy Rock"),
            (ImportEventKind.STARTED, "mossy rock"),
            (ImportEventKind.COMPLETED, "mossy rock"),
        ]

    @pytest.mark.asyncio
    async def test_directory_locks_released(self, import_config, fakes):
        orch = ImportOrchestrator(import_config, fakes.collaborators())
        await asyncio.gather(
            orch.run_import(textured_asset(name="Alpha")),
            orch.run_import(textured_asset(name="alpha")),
            orch.run_import(textured_asset(name="Beta")),
        )
        assert orch._locks == {}

        fakes.raise_on_texture = "color"
        result = await orch.run_import(textured_asset(name="Gamma"))
        assert result.errors
        assert orch._locks == {}

    @pytest.mark.asyncio
    async def test_different_base_names_may_overlap(self, import_config, fakes):
        started = []

        def slow_texture(source, output_name, folder):
            started.append(output_name)
            time.sleep(0.05)
            return TextureResult(success=True, source_path=source,
                                 destination_path=os.path.join(folder, output_name + ".png"))

        collaborators = fakes.collaborators()
        collaborators.convert_texture = slow_texture
        orch = ImportOrchestrator(import_config, collaborators)

        results = await asyncio.gather(
            orch.run_import(textured_asset(name="Alpha")),
            orch.run_import(textured_asset(name="Beta")),
        )
        assert all(r.success for r in results)
        assert {s.split("_")[0] for s in started} == {"alpha", "beta"}


# ─── Results ──────────────────────────────────────────────────────────────────

class TestImportResult:
    def test_success_is_computed(self):
        result = ImportResult(asset_name="x")
        assert not result.success
        result.texture_results.append(TextureResult(success=False))
        assert not result.success
        result.texture_results.append(TextureResult(success=True))
        assert result.success

    def test_to_dict(self):
        result = ImportResult(asset_name="x", base_name="x", errors=["Model: boom"])
        d = result.to_dict()
        assert d["success"] is False
        assert d["errors"] == ["Model: boom"]
        assert d["material"] is None

    def test_material_slots_first_wins(self):
        results = [
            TextureResult(success=True, texture_type="diffuse", relative_path="a.png"),
            TextureResult(success=True, texture_type="albedo", relative_path="b.png"),
            TextureResult(success=True, texture_type="translucency", relative_path="t.png"),
            TextureResult(success=True, texture_type="ambientocclusion", relative_path="ao.png"),
            TextureResult(success=False, texture_type="normal", relative_path="n.png"),
            TextureResult(success=True, texture_type="cavity", relative_path="c.png"),
        ]
        assert material_slots(results) == {"color": "a.png", "opacity": "t.png", "ao": "ao.png"}
