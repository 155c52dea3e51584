"""
Fab Bridge — Default Conversion Collaborators

File-system implementations of the four collaborator contracts used by the
import orchestrator:

  texture   (source_path, output_name, destination_folder) -> TextureResult
  material  (name, slot_paths, destination_folder)         -> MaterialResult
  model     (source_path, output_name, destination_folder) -> ModelResult
  assign    (model_path, material_relative_path)           -> bool

Textures are copied next to the material; the engine compiles them from
the source image. Models are copied and described by a generated .vmdl
model document whose default material slot can later be rewritten.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_COLOR     = "materials/default/default_color.tga"
DEFAULT_NORMAL    = "materials/default/default_normal.tga"
DEFAULT_ROUGHNESS = "materials/default/default_rough.tga"
DEFAULT_AO        = "materials/default/default_ao.tga"
DEFAULT_MODEL_MATERIAL = "materials/default.vmat"

_DEFAULT_MATERIAL_RE = re.compile(r'global_default_material\s*=\s*"[^"]*"')


# ─── Results ─────────────────────────────────────────────────────────────────

@dataclass
class TextureResult:
    success: bool
    source_path: str | None = None
    destination_path: str | None = None
    relative_path: str | None = None
    texture_type: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class MaterialResult:
    success: bool
    material_path: str | None = None
    relative_path: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class ModelResult:
    success: bool
    source_path: str | None = None
    destination_path: str | None = None
    model_path: str | None = None
    relative_path: str | None = None
    material_assigned: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


# ─── Paths ───────────────────────────────────────────────────────────────────

def normalize_path(path: str) -> str:
    return path.replace("\\", "/")


def project_relative_path(path: str, project_root: str | None) -> str:
    """
    Forward-slash path relative to the project root, or the normalized
    absolute path when it does not live under the root.
    """
    absolute = normalize_path(os.path.abspath(path))
    if not project_root:
        return absolute
    root = normalize_path(os.path.abspath(project_root))
    if not root.endswith("/"):
        root += "/"
    if absolute.lower().startswith(root.lower()):
        return absolute[len(root):]
    logger.warning("Path not under project, using absolute path: %s", absolute)
    return absolute


# ─── Textures ────────────────────────────────────────────────────────────────

def copy_texture(source_path: str, output_name: str, destination_folder: str) -> TextureResult:
    """Copy a texture to <destination_folder>/<output_name><source extension>."""
    result = TextureResult(success=False, source_path=source_path)

    if not os.path.isfile(source_path):
        result.error = f"Source file not found: {source_path}"
        return result

    os.makedirs(destination_folder, exist_ok=True)
    extension = os.path.splitext(source_path)[1]
    dest_path = os.path.join(destination_folder, f"{output_name}{extension}")

    shutil.copyfile(source_path, dest_path)
    result.destination_path = dest_path

    if not os.path.isfile(dest_path):
        result.error = f"File copy succeeded but file not found at destination: {dest_path}"
        logger.error(result.error)
        return result

    logger.info("Copied texture to %s (%d bytes)", dest_path, os.path.getsize(dest_path))
    result.success = True
    return result


# ─── Materials ───────────────────────────────────────────────────────────────

def render_material(slots: dict[str, str]) -> str:
    """
    Build the .vmat text for a PBR material. Color, normal, roughness and
    AO always get a texture (a default placeholder when unset); metalness,
    self-illumination and translucency blocks only appear with a texture.
    """
    lines = [
        "// Generated by FabBridge",
        "",
        "Layer0",
        "{",
        '\tshader "complex.shader"',
        "",
        "\t//---- Color ----",
    ]

    if slots.get("color"):
        lines += [
            f'\tTextureColor "{slots["color"]}"',
            '\tg_flModelTintAmount "1.000"',
            '\tg_vColorTint "[1.000000 1.000000 1.000000 0.000000]"',
        ]
    else:
        lines.append(f'\tTextureColor "{DEFAULT_COLOR}"')

    lines += ["", "\t//---- Normal ----", f'\tTextureNormal "{slots.get("normal") or DEFAULT_NORMAL}"']
    lines += ["", "\t//---- Roughness ----", f'\tTextureRoughness "{slots.get("roughness") or DEFAULT_ROUGHNESS}"']

    lines += ["", "\t//---- Ambient Occlusion ----"]
    if slots.get("ao"):
        lines += [
            f'\tTextureAmbientOcclusion "{slots["ao"]}"',
            '\tg_flAmbientOcclusionDirectDiffuse "0.000"',
            '\tg_flAmbientOcclusionDirectSpecular "0.000"',
        ]
    else:
        lines.append(f'\tTextureAmbientOcclusion "{DEFAULT_AO}"')

    lines += ["", "\t//---- Metalness ----"]
    if slots.get("metalness"):
        lines += [
            "\tF_METALNESS_TEXTURE 1",
            "\tF_SPECULAR 1",
            f'\tTextureMetalness "{slots["metalness"]}"',
        ]
    else:
        lines.append('\tg_flMetalness "0.000"')

    if slots.get("emissive"):
        lines += ["", "\t//---- Self Illum ----", "\tF_SELF_ILLUM 1", f'\tTextureSelfIllumMask "{slots["emissive"]}"']

    if slots.get("opacity"):
        lines += ["", "\t//---- Translucent ----", "\tF_TRANSLUCENT 1", f'\tTextureTranslucency "{slots["opacity"]}"']

    lines += [
        "",
        "\t//---- Fog ----",
        '\tg_bFogEnabled "1"',
        "",
        "\t//---- Texture Coordinates ----",
        '\tg_nScaleTexCoordUByModelScaleAxis "0"',
        '\tg_nScaleTexCoordVByModelScaleAxis "0"',
        '\tg_vTexCoordOffset "[0.000 0.000]"',
        '\tg_vTexCoordScale "[1.000 1.000]"',
        '\tg_vTexCoordScrollSpeed "[0.000 0.000]"',
        "}",
    ]
    return "\n".join(lines) + "\n"


def write_material(material_name: str, slots: dict[str, str], destination_folder: str) -> MaterialResult:
    os.makedirs(destination_folder, exist_ok=True)
    material_path = os.path.join(destination_folder, f"{material_name}.vmat")
    with open(material_path, "w", encoding="utf-8") as f:
        f.write(render_material(slots))
    logger.info("Created material at %s (slots: %s)", material_path, ", ".join(sorted(slots)) or "none")
    return MaterialResult(success=True, material_path=material_path)


# ─── Models ──────────────────────────────────────────────────────────────────

_MODEL_TEMPLATE = """\
<!-- kv3 encoding:text:version{{e21c7f3c-8a33-41c5-9977-a76d3a32aa0d}} format:modeldoc29:version{{3cec427c-1b0e-4d48-a90a-0436f33a6041}} -->
{{
	rootNode =
	{{
		_class = "RootNode"
		children =
		[
			{{
				_class = "MaterialGroupList"
				children =
				[
					{{
						_class = "DefaultMaterialGroup"
						remaps = [  ]
						use_global_default = true
						global_default_material = "{material}"
					}},
				]
			}},
			{{
				_class = "RenderMeshList"
				children =
				[
					{{
						_class = "RenderMeshFile"
						filename = "{mesh}"
						import_translation = [ 0.0, 0.0, 0.0 ]
						import_rotation = [ 0.0, 0.0, 0.0 ]
						import_scale = 1.0
					}},
				]
			}},
		]
		model_archetype = ""
		primary_associated_entity = ""
		anim_graph_name = ""
		base_model_name = ""
	}}
}}
"""


def render_model(mesh_relative_path: str, material: str = DEFAULT_MODEL_MATERIAL) -> str:
    return _MODEL_TEMPLATE.format(mesh=mesh_relative_path, material=material)


class ModelConverter:
    """
    Copies a mesh into the models folder and writes a .vmdl model document
    next to it that references the copy by project-relative path.
    """

    def __init__(self, project_root: str | None):
        self.project_root = project_root

    def __call__(self, source_path: str, output_name: str, destination_folder: str) -> ModelResult:
        result = ModelResult(success=False, source_path=source_path)

        if not os.path.isfile(source_path):
            result.error = f"Source file not found: {source_path}"
            return result

        os.makedirs(destination_folder, exist_ok=True)
        extension = os.path.splitext(source_path)[1]
        dest_path = os.path.join(destination_folder, f"{output_name}{extension}")
        shutil.copyfile(source_path, dest_path)
        result.destination_path = dest_path
        logger.info("Copied mesh to %s", dest_path)

        model_path = os.path.join(destination_folder, f"{output_name}.vmdl")
        mesh_ref = project_relative_path(dest_path, self.project_root)
        with open(model_path, "w", encoding="utf-8") as f:
            f.write(render_model(mesh_ref))
        result.model_path = model_path
        result.success = True
        logger.info("Created model document at %s", model_path)
        return result


def assign_default_material(model_path: str, material_relative_path: str) -> bool:
    """
    Point the model's global_default_material at `material_relative_path`.
    Returns False when the model or the field is missing; some model
    documents legitimately have no default material group.
    """
    if not os.path.isfile(model_path):
        logger.warning("Model file not found: %s", model_path)
        return False

    content = Path(model_path).read_text(encoding="utf-8")
    if not _DEFAULT_MATERIAL_RE.search(content):
        logger.warning("No global_default_material in %s, cannot set material", model_path)
        return False

    material = normalize_path(material_relative_path)
    content = _DEFAULT_MATERIAL_RE.sub(lambda _m: f'global_default_material = "{material}"', content)
    Path(model_path).write_text(content, encoding="utf-8")
    logger.info("Updated global_default_material in %s to %s", model_path, material)
    return True


# ─── Assembly ────────────────────────────────────────────────────────────────

def default_collaborators(project_root: str | None):
    """The file-system collaborator set for a project."""
    from .importer import Collaborators

    return Collaborators(
        convert_texture=copy_texture,
        generate_material=write_material,
        convert_model=ModelConverter(project_root),
        assign_material=assign_default_material,
    )
