"""
Fab Bridge — Asset Data Model

Typed view of the exporter's per-asset JSON. Raw sub-collections are kept
as received (meshes, materials, components, additional textures, legacy
mesh lists and texture sets); normalized texture and mesh lists are pure
derivations computed on demand and never cached on the asset.

Exporter paths are usually Windows paths, so file name handling goes
through PureWindowsPath, which accepts both separators.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PureWindowsPath
from typing import Any, Iterator

# ─── File Classification ──────────────────────────────────────────────────────

TEXTURE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".tga", ".exr", ".tif", ".tiff", ".bmp"})
MESH_EXTENSIONS = frozenset({".fbx", ".obj", ".gltf", ".glb", ".dae"})

# Channel keys that may appear directly on a Megascans-style asset object
DIRECT_CHANNEL_KEYS = ("albedo", "normal", "roughness", "metalness", "ao", "displacement", "opacity")

UNKNOWN_TYPE = "unknown"
UNKNOWN_NAME = "Unknown"

# Characters rejected in file names on Windows, the exporter's home platform
_INVALID_FILENAME_CHARS = frozenset('"<>|:*?\\/' + "".join(chr(i) for i in range(32)))


def _extension(path: str | None) -> str:
    if not path:
        return ""
    return PureWindowsPath(path).suffix.lower()


def file_stem(path: str | None) -> str:
    if not path:
        return ""
    return PureWindowsPath(path).stem


def file_name(path: str | None) -> str:
    if not path:
        return ""
    return PureWindowsPath(path).name


def is_texture_file(path: str | None) -> bool:
    return _extension(path) in TEXTURE_EXTENSIONS


def is_mesh_file(path: str | None) -> bool:
    return _extension(path) in MESH_EXTENSIONS


# ─── Texture Types ────────────────────────────────────────────────────────────

# Order matters: first match wins. Translucency is tested before opacity and
# the bare "occlusion" rule comes last so "ambientocclusion" stays "ao".
_TEXTURE_TYPE_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("basecolor", "albedo", "diffuse"), "albedo"),
    (("normal",), "normal"),
    (("roughness",), "roughness"),
    (("metallic", "metalness"), "metalness"),
    (("ao", "ambient"), "ao"),
    (("displacement", "height"), "displacement"),
    (("cavity",), "cavity"),
    (("gloss",), "gloss"),
    (("specular",), "specular"),
    (("bump",), "bump"),
    (("translucency",), "translucency"),
    (("opacity", "alpha"), "opacity"),
    (("emissive",), "emissive"),
    (("occlusion",), "ao"),
)


def infer_texture_type(filename: str) -> str:
    """Guess a semantic texture type from a file name (case-insensitive)."""
    name = file_stem(filename).lower()
    for needles, texture_type in _TEXTURE_TYPE_RULES:
        if any(n in name for n in needles):
            return texture_type
    return UNKNOWN_TYPE


_OUTPUT_SUFFIXES = {
    "albedo": "_color",
    "diffuse": "_color",
    "basecolor": "_color",
    "normal": "_normal",
    "roughness": "_rough",
    "metalness": "_metal",
    "metallic": "_metal",
    "ao": "_ao",
    "ambientocclusion": "_ao",
    "occlusion": "_occlusion",
    "displacement": "_height",
    "height": "_height",
    "translucency": "_translucency",
    "opacity": "_opacity",
    "emissive": "_selfillum",
    "mask": "_mask",
    "bump": "_bump",
    "gloss": "_gloss",
    "glossiness": "_gloss",
    "specular": "_specular",
    "cavity": "_cavity",
}

_LINEAR_TYPES = frozenset({
    "normal", "roughness", "metalness", "metallic", "ao", "ambientocclusion",
    "displacement", "height", "mask",
})


def texture_suffix(texture_type: str | None) -> str:
    """Output file suffix for a texture type, e.g. "albedo" -> "_color"."""
    t = (texture_type or UNKNOWN_TYPE).lower()
    return _OUTPUT_SUFFIXES.get(t, f"_{t}")


def slugify(name: str) -> str:
    """Lowercase, spaces to underscores, invalid file name characters to underscores."""
    cleaned = "".join("_" if c in _INVALID_FILENAME_CHARS else c for c in name)
    return cleaned.lower().replace(" ", "_")


# ─── Structural Parsing Helpers ───────────────────────────────────────────────

class AssetFormatError(ValueError):
    """Raised when a JSON value does not have the structure of an asset."""


def _keys_ci(d: dict[str, Any]) -> dict[str, Any]:
    # Field names are matched case-insensitively; first spelling wins
    out: dict[str, Any] = {}
    for k, v in d.items():
        out.setdefault(k.lower(), v)
    return out


def _obj(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise AssetFormatError(f"{what}: expected an object, got {type(value).__name__}")
    return _keys_ci(value)


def _opt_obj(value: Any, what: str) -> dict[str, Any] | None:
    return None if value is None else _obj(value, what)


def _str(value: Any, what: str) -> str | None:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    raise AssetFormatError(f"{what}: expected a string, got {type(value).__name__}")


def _int(value: Any, what: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise AssetFormatError(f"{what}: expected an integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise AssetFormatError(f"{what}: expected an integer, got {value!r}")


def _bool(value: Any, what: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    raise AssetFormatError(f"{what}: expected a boolean, got {type(value).__name__}")


def _list(value: Any, what: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise AssetFormatError(f"{what}: expected a list, got {type(value).__name__}")
    return value


def _str_list(value: Any, what: str) -> tuple[str, ...]:
    return tuple(s for s in (_str(v, what) for v in _list(value, what)) if s is not None)


# ─── Raw Sub-Records ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LodEntry:
    path: str | None = None
    file: str | None = None
    lod: int = 0
    name: str | None = None

    @property
    def file_path(self) -> str | None:
        return self.file or self.path

    @classmethod
    def from_dict(cls, value: Any) -> "LodEntry":
        d = _obj(value, "lod")
        return cls(
            path=_str(d.get("path"), "lod.path"),
            file=_str(d.get("file"), "lod.file"),
            lod=_int(d.get("lod"), "lod.lod"),
            name=_str(d.get("name"), "lod.name"),
        )


@dataclass(frozen=True)
class MeshDescriptor:
    file: str | None = None
    path: str | None = None
    name: str | None = None
    type: str | None = None
    format: str | None = None
    material_index: int = 0
    lods: tuple[LodEntry, ...] = ()

    @property
    def file_path(self) -> str | None:
        return self.file or self.path

    @classmethod
    def from_dict(cls, value: Any) -> "MeshDescriptor":
        d = _obj(value, "mesh")
        return cls(
            file=_str(d.get("file"), "mesh.file"),
            path=_str(d.get("path"), "mesh.path"),
            name=_str(d.get("name"), "mesh.name"),
            type=_str(d.get("type"), "mesh.type"),
            format=_str(d.get("format"), "mesh.format"),
            material_index=_int(d.get("material_index"), "mesh.material_index"),
            lods=tuple(LodEntry.from_dict(v) for v in _list(d.get("lods"), "mesh.lods")),
        )


@dataclass(frozen=True)
class MaterialDescriptor:
    name: str | None = None
    file: str | None = None
    flip_normal_y: bool = False
    textures: dict[str, str] = field(default_factory=dict)  # semantic type → file path

    def texture_path(self, texture_type: str) -> str | None:
        return self.textures.get(texture_type.lower())

    @classmethod
    def from_dict(cls, value: Any) -> "MaterialDescriptor":
        d = _obj(value, "material")
        raw = _opt_obj(d.get("textures"), "material.textures") or {}
        textures: dict[str, str] = {}
        for k, v in raw.items():
            path = _str(v, f"material.textures.{k}")
            if path:
                textures[k] = path
        return cls(
            name=_str(d.get("name"), "material.name"),
            file=_str(d.get("file"), "material.file"),
            flip_normal_y=_bool(d.get("flipnmapgreenchannel"), "material.flipnmapgreenchannel"),
            textures=textures,
        )


@dataclass(frozen=True)
class Component:
    path: str | None = None
    name: str | None = None
    type: str | None = None
    format: str | None = None

    @classmethod
    def from_dict(cls, value: Any) -> "Component":
        d = _obj(value, "component")
        return cls(
            path=_str(d.get("path"), "component.path"),
            name=_str(d.get("name"), "component.name"),
            type=_str(d.get("type"), "component.type"),
            format=_str(d.get("format"), "component.format"),
        )


@dataclass(frozen=True)
class TextureEntry:
    path: str | None = None
    name: str | None = None
    type: str | None = None
    resolution: str | None = None
    format: str | None = None

    @classmethod
    def from_dict(cls, value: Any) -> "TextureEntry":
        d = _obj(value, "texture")
        return cls(
            path=_str(d.get("path"), "texture.path"),
            name=_str(d.get("name"), "texture.name"),
            type=_str(d.get("type"), "texture.type"),
            resolution=_str(d.get("resolution"), "texture.resolution"),
            format=_str(d.get("format"), "texture.format"),
        )


@dataclass(frozen=True)
class TextureSet:
    name: str | None = None
    textures: tuple[TextureEntry, ...] = ()

    @classmethod
    def from_dict(cls, value: Any) -> "TextureSet":
        d = _obj(value, "textureSet")
        return cls(
            name=_str(d.get("name"), "textureSet.name"),
            textures=tuple(TextureEntry.from_dict(v) for v in _list(d.get("textures"), "textureSet.textures")),
        )


@dataclass(frozen=True)
class NativeFile:
    path: str | None = None
    type: str | None = None

    @classmethod
    def from_dict(cls, value: Any) -> "NativeFile":
        d = _obj(value, "native_file")
        return cls(path=_str(d.get("path"), "native_file.path"), type=_str(d.get("type"), "native_file.type"))


@dataclass(frozen=True)
class MetaEntry:
    key: str | None = None
    name: str | None = None
    value: Any = None  # string, number or boolean as sent

    @property
    def value_as_string(self) -> str | None:
        return None if self.value is None else str(self.value)

    @classmethod
    def from_dict(cls, value: Any) -> "MetaEntry":
        d = _obj(value, "meta")
        return cls(key=_str(d.get("key"), "meta.key"), name=_str(d.get("name"), "meta.name"), value=d.get("value"))


# ─── Metadata ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LauncherInfo:
    version: str | None = None
    listening_port: int = 0


@dataclass(frozen=True)
class MegascansInfo:
    name: str | None = None
    id: str | None = None
    categories: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    physical_size: str | None = None
    highest_available_res: int = 0
    meta: tuple[MetaEntry, ...] = ()


@dataclass(frozen=True)
class ListingInfo:
    title: str | None = None
    uid: str | None = None
    description: str | None = None
    thumbnail: str | None = None
    listing_type: str | None = None


@dataclass(frozen=True)
class FabInfo:
    listing: ListingInfo | None = None
    target: str | None = None
    quality: str | None = None
    format: str | None = None
    is_quixel: bool = False


@dataclass(frozen=True)
class AssetMetadata:
    """Nested exporter metadata. Only used for the display-name fallback."""
    launcher: LauncherInfo | None = None
    megascans: MegascansInfo | None = None
    fab: FabInfo | None = None

    @classmethod
    def from_dict(cls, value: Any) -> "AssetMetadata":
        d = _obj(value, "metadata")

        launcher = None
        if (ld := _opt_obj(d.get("launcher"), "metadata.launcher")) is not None:
            launcher = LauncherInfo(
                version=_str(ld.get("version"), "launcher.version"),
                listening_port=_int(ld.get("listening_port"), "launcher.listening_port"),
            )

        megascans = None
        if (md := _opt_obj(d.get("megascans"), "metadata.megascans")) is not None:
            megascans = MegascansInfo(
                name=_str(md.get("name"), "megascans.name"),
                id=_str(md.get("id"), "megascans.id"),
                categories=_str_list(md.get("categories"), "megascans.categories"),
                tags=_str_list(md.get("tags"), "megascans.tags"),
                physical_size=_str(md.get("physicalsize"), "megascans.physicalSize"),
                highest_available_res=_int(md.get("highest_available_res"), "megascans.highest_available_res"),
                meta=tuple(MetaEntry.from_dict(v) for v in _list(md.get("meta"), "megascans.meta")),
            )

        fab = None
        if (fd := _opt_obj(d.get("fab"), "metadata.fab")) is not None:
            listing = None
            if (li := _opt_obj(fd.get("listing"), "fab.listing")) is not None:
                listing = ListingInfo(
                    title=_str(li.get("title"), "listing.title"),
                    uid=_str(li.get("uid"), "listing.uid"),
                    description=_str(li.get("description"), "listing.description"),
                    thumbnail=_str(li.get("thumbnail"), "listing.thumbnail"),
                    listing_type=_str(li.get("listingtype"), "listing.listingType"),
                )
            fab = FabInfo(
                listing=listing,
                target=_str(fd.get("target"), "fab.target"),
                quality=_str(fd.get("quality"), "fab.quality"),
                format=_str(fd.get("format"), "fab.format"),
                is_quixel=_bool(fd.get("isquixel"), "fab.isQuixel"),
            )

        return cls(launcher=launcher, megascans=megascans, fab=fab)


# ─── Normalized Views ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class NormalizedTexture:
    path: str
    name: str
    type: str
    format: str

    @property
    def suffix(self) -> str:
        return texture_suffix(self.type)

    @property
    def is_linear(self) -> bool:
        """Data textures (normal, roughness, ...) are sampled in linear space."""
        return self.type in _LINEAR_TYPES


@dataclass(frozen=True)
class NormalizedMesh:
    file_path: str | None
    name: str | None
    type: str | None
    format: str | None
    material_index: int = 0
    lods: tuple[LodEntry, ...] = ()


@dataclass(frozen=True)
class MeshSource:
    """One model-conversion input: a mesh file and the output name to give it."""
    path: str
    output_name: str
    origin: str  # "mesh" | "lod" | "component"


def _normalized_texture(path: str, texture_type: str | None, name: str | None = None,
                        fmt: str | None = None) -> NormalizedTexture:
    return NormalizedTexture(
        path=path,
        name=name or file_stem(path),
        type=(texture_type or UNKNOWN_TYPE).lower(),
        format=(fmt or _extension(path).lstrip(".")).lower(),
    )


# ─── Asset ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Asset:
    id: str | None = None
    name: str | None = None
    type: str | None = None
    category: str | None = None
    source_path: str | None = None
    meshes: tuple[MeshDescriptor, ...] = ()
    materials: tuple[MaterialDescriptor, ...] = ()
    components: tuple[Component, ...] = ()
    additional_texture_paths: tuple[str, ...] = ()
    native_files: tuple[NativeFile, ...] = ()
    legacy_mesh_list: tuple[MeshDescriptor, ...] = ()
    legacy_texture_sets: tuple[TextureSet, ...] = ()
    lod_list: tuple[LodEntry, ...] = ()
    meta: tuple[MetaEntry, ...] = ()
    channel_maps: tuple[tuple[str, str], ...] = ()  # (texture type, path) from direct channel keys
    metadata: AssetMetadata | None = None

    @classmethod
    def from_dict(cls, value: Any) -> "Asset":
        """Structurally parse one asset object. Raises AssetFormatError."""
        d = _obj(value, "asset")
        metadata = d.get("metadata")
        return cls(
            id=_str(d.get("id"), "id"),
            name=_str(d.get("name"), "name"),
            type=_str(d.get("type"), "type"),
            category=_str(d.get("category"), "category"),
            source_path=_str(d.get("path"), "path"),
            meshes=tuple(MeshDescriptor.from_dict(v) for v in _list(d.get("meshes"), "meshes")),
            materials=tuple(MaterialDescriptor.from_dict(v) for v in _list(d.get("materials"), "materials")),
            components=tuple(Component.from_dict(v) for v in _list(d.get("components"), "components")),
            additional_texture_paths=_str_list(d.get("additional_textures"), "additional_textures"),
            native_files=tuple(NativeFile.from_dict(v) for v in _list(d.get("native_files"), "native_files")),
            legacy_mesh_list=tuple(MeshDescriptor.from_dict(v) for v in _list(d.get("meshlist"), "meshList")),
            legacy_texture_sets=tuple(TextureSet.from_dict(v) for v in _list(d.get("texturesets"), "textureSets")),
            lod_list=tuple(LodEntry.from_dict(v) for v in _list(d.get("lodlist"), "lodList")),
            meta=tuple(MetaEntry.from_dict(v) for v in _list(d.get("meta"), "meta")),
            channel_maps=_parse_channel_maps(d),
            metadata=None if metadata is None else AssetMetadata.from_dict(metadata),
        )

    # ─── Naming ───────────────────────────────────────────────────────────────

    @property
    def has_identity(self) -> bool:
        return bool(self.id) or bool(self.name)

    @property
    def display_name(self) -> str:
        """
        Resolve a non-empty display name: direct name, Megascans name, Fab
        listing title, last segment of the source path, id, "Unknown".
        """
        if self.name:
            return self.name
        if self.metadata and self.metadata.megascans and self.metadata.megascans.name:
            return self.metadata.megascans.name
        fab = self.metadata.fab if self.metadata else None
        if fab and fab.listing and fab.listing.title:
            return fab.listing.title
        if self.source_path and (segment := file_name(self.source_path)):
            return segment
        return self.id or UNKNOWN_NAME

    @property
    def base_name(self) -> str:
        """Slugified display name; root of every output file name for this asset."""
        return slugify(self.display_name)

    # ─── Derived Collections ──────────────────────────────────────────────────

    def all_meshes(self) -> list[NormalizedMesh]:
        """Primary meshes followed by the legacy mesh list, order preserved."""
        return [
            NormalizedMesh(
                file_path=m.file_path,
                name=m.name,
                type=m.type,
                format=m.format,
                material_index=m.material_index,
                lods=m.lods,
            )
            for m in (*self.meshes, *self.legacy_mesh_list)
        ]

    def textures(self) -> list[NormalizedTexture]:
        """
        Collect textures from components, material texture maps, the flat
        additional texture list, legacy texture sets and direct channel keys,
        in that order. Only files with a texture extension are kept. Types
        are taken as tagged; only the flat path list has its type inferred
        from the file name.
        """
        return list(self._iter_textures())

    def _iter_textures(self) -> Iterator[NormalizedTexture]:
        for comp in self.components:
            if comp.path and is_texture_file(comp.path):
                yield _normalized_texture(comp.path, comp.type, comp.name, comp.format)

        for mat in self.materials:
            for texture_type, path in mat.textures.items():
                if is_texture_file(path):
                    yield _normalized_texture(path, texture_type)

        for path in self.additional_texture_paths:
            if path and is_texture_file(path):
                yield _normalized_texture(path, infer_texture_type(path))

        for tex_set in self.legacy_texture_sets:
            for tex in tex_set.textures:
                if tex.path and is_texture_file(tex.path):
                    yield _normalized_texture(tex.path, tex.type, tex.name, tex.format)

        for texture_type, path in self.channel_maps:
            if is_texture_file(path):
                yield _normalized_texture(path, texture_type)

    def mesh_components(self) -> list[Component]:
        return [c for c in self.components if is_mesh_file(c.path)]

    def has_model_input(self) -> bool:
        return bool(self.meshes or self.legacy_mesh_list or self.lod_list or self.mesh_components())

    def mesh_sources(self, base_name: str | None = None) -> list[MeshSource]:
        """
        Model-conversion inputs in processing order: primary and legacy
        meshes (index-suffixed when more than one), legacy LOD entries
        (suffixed with the LOD number), then mesh-typed components
        (suffixed with the slugified component name when present).
        Entries without a file path are skipped.
        """
        base = base_name if base_name is not None else self.base_name
        sources: list[MeshSource] = []

        meshes = self.all_meshes()
        for i, mesh in enumerate(meshes):
            if not mesh.file_path:
                continue
            output_name = f"{base}_{i}" if len(meshes) > 1 else base
            sources.append(MeshSource(mesh.file_path, output_name, "mesh"))

        for lod in self.lod_list:
            if lod.file_path:
                sources.append(MeshSource(lod.file_path, f"{base}_lod{lod.lod}", "lod"))

        for comp in self.mesh_components():
            output_name = f"{base}_{slugify(comp.name)}" if comp.name else base
            sources.append(MeshSource(comp.path, output_name, "component"))

        return sources


def _parse_channel_maps(d: dict[str, Any]) -> tuple[tuple[str, str], ...]:
    maps: list[tuple[str, str]] = []
    for key in DIRECT_CHANNEL_KEYS:
        value = d.get(key)
        if value is None:
            continue
        items = value if isinstance(value, list) else [value]
        for item in items:
            if isinstance(item, dict):
                path = _str(_keys_ci(item).get("path"), key)
            else:
                path = _str(item, key)
            if path:
                maps.append((key, path))
    return tuple(maps)


# ─── Bundle ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExportBundle:
    """The assets extracted from one received message, in message order."""
    assets: tuple[Asset, ...] = ()

    def __len__(self) -> int:
        return len(self.assets)

    def __iter__(self) -> Iterator[Asset]:
        return iter(self.assets)

    def __getitem__(self, index: int) -> Asset:
        return self.assets[index]

    @property
    def has_identifiable_asset(self) -> bool:
        return any(a.has_identity for a in self.assets)
