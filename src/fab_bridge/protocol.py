"""
Fab Bridge — Protocol Normalization

The exporter is a third party and has sent several payload shapes over
time. None of them carries a type tag, so the shape is detected from the
keys present. Detectors are tried in a fixed order and the first one that
matches wins:

  1. top-level array of assets
  2. wrapper object with an "assets" array
  3. single asset object (has "id", "meshes" or "materials")
  4. dictionary whose values are individually asset-shaped

A detector returns None when its shape does not apply, or a Detection
carrying either a bundle or a terminal error. The single-asset detector
returns None on a structural failure so that the dictionary fallback still
gets a chance.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

from .assets import Asset, AssetFormatError, ExportBundle

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 500

SINGLE_ASSET_KEYS = ("id", "meshes", "materials")


# ─── Error Codes ─────────────────────────────────────────────────────────────

class ErrorCode:
    INVALID_JSON              = "INVALID_JSON"
    UNRECOGNIZED_STRUCTURE    = "UNRECOGNIZED_STRUCTURE"
    NO_ASSETS                 = "NO_ASSETS"
    INVALID_ASSET             = "INVALID_ASSET"
    DIRECTORY_CREATION_FAILED = "DIRECTORY_CREATION_FAILED"
    NO_PROJECT_CONTEXT        = "NO_PROJECT_CONTEXT"
    COLLABORATOR_FAILURE      = "COLLABORATOR_FAILURE"
    # Connection-level codes (never part of a payload)
    CONNECTION_ERROR          = "CONNECTION_ERROR"
    IDLE_TIMEOUT              = "IDLE_TIMEOUT"
    # Control surface
    INVALID_PARAMS            = "INVALID_PARAMS"
    FILE_NOT_FOUND            = "FILE_NOT_FOUND"
    ALREADY_RUNNING           = "ALREADY_RUNNING"


class ParseError(Exception):
    """The message is not valid JSON or not a recognized export shape."""
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


# ─── Detectors ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Detection:
    shape: str
    bundle: ExportBundle | None = None
    error: str | None = None
    error_code: str = ErrorCode.INVALID_ASSET


Detector = Callable[[Any], "Detection | None"]


def _parse_all(items: list[Any], shape: str) -> Detection:
    assets: list[Asset] = []
    for i, item in enumerate(items):
        try:
            assets.append(Asset.from_dict(item))
        except AssetFormatError as e:
            return Detection(shape, error=f"{shape}: element {i} is not an asset ({e})")
    return Detection(shape, bundle=ExportBundle(tuple(assets)))


def detect_array(document: Any) -> Detection | None:
    if not isinstance(document, list):
        return None
    return _parse_all(document, "array")


def detect_assets_wrapper(document: Any) -> Detection | None:
    if not isinstance(document, dict) or not isinstance(document.get("assets"), list):
        return None
    return _parse_all(document["assets"], "assets wrapper")


def detect_single_asset(document: Any) -> Detection | None:
    if not isinstance(document, dict):
        return None
    present = {str(k).lower() for k, v in document.items() if v is not None}
    if not present.intersection(SINGLE_ASSET_KEYS):
        return None
    try:
        asset = Asset.from_dict(document)
    except AssetFormatError as e:
        logger.warning("Single asset candidate did not parse (%s); trying dictionary fallback", e)
        return None
    logger.info(
        "Single asset: id=%s name=%r meshes=%d materials=%d",
        asset.id, asset.display_name, len(asset.meshes), len(asset.materials),
    )
    return Detection("single asset", bundle=ExportBundle((asset,)))


def detect_asset_dictionary(document: Any) -> Detection | None:
    if not isinstance(document, dict):
        return None
    assets: list[Asset] = []
    for key, value in document.items():
        try:
            asset = Asset.from_dict(value)
        except AssetFormatError as e:
            logger.debug("Key %r is not an asset: %s", key, e)
            continue
        if asset.has_identity:
            assets.append(asset)
    if not assets:
        return Detection(
            "asset dictionary",
            error="unrecognized structure",
            error_code=ErrorCode.UNRECOGNIZED_STRUCTURE,
        )
    return Detection("asset dictionary", bundle=ExportBundle(tuple(assets)))


DETECTORS: tuple[Detector, ...] = (
    detect_array,
    detect_assets_wrapper,
    detect_single_asset,
    detect_asset_dictionary,
)


# ─── Normalization ───────────────────────────────────────────────────────────

def normalize(document: Any) -> ExportBundle:
    """
    Turn a decoded JSON document into an ExportBundle.

    Raises ParseError when no detector matches, when a matched shape is
    structurally broken, or when the result holds no asset with an id or
    name.
    """
    if isinstance(document, dict):
        logger.debug("Top-level keys: %s", ", ".join(map(str, document)))

    for detector in DETECTORS:
        detection = detector(document)
        if detection is None:
            continue
        if detection.error is not None:
            raise ParseError(detection.error_code, detection.error)
        bundle = detection.bundle
        if bundle is None:
            continue
        logger.info("Detected %s format with %d asset(s)", detection.shape, len(bundle))
        if not bundle.has_identifiable_asset:
            raise ParseError(ErrorCode.NO_ASSETS, f"{detection.shape}: no asset has an id or name")
        return bundle

    raise ParseError(ErrorCode.UNRECOGNIZED_STRUCTURE, "unrecognized structure")


def loads(raw: str) -> Any:
    """Decode a framed message. Raises ParseError on invalid JSON."""
    if not raw or not raw.strip():
        raise ParseError(ErrorCode.INVALID_JSON, "Empty message")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ParseError(ErrorCode.INVALID_JSON, f"Invalid JSON: {e}") from e
    except RecursionError as e:
        raise ParseError(ErrorCode.INVALID_JSON, "Invalid JSON: nesting too deep") from e


def preview(raw: str, limit: int = PREVIEW_CHARS) -> str:
    return raw if len(raw) <= limit else raw[:limit] + "..."


def parse_export(raw: str) -> tuple[ExportBundle | None, str | None]:
    """Parse a raw export message. Returns (bundle, error_message)."""
    logger.debug("Parsing export message: %s", preview(raw))
    try:
        return normalize(loads(raw)), None
    except ParseError as e:
        return None, e.message
