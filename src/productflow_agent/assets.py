"""Uploaded asset storage and conversion into model-readable content."""
from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote

from .config import StorageConfig
from .schemas import AssetRecord, AssetType

logger = logging.getLogger(__name__)

TEXT_LIKE_MIME_TYPES = frozenset(
    {"application/json", "application/xml", "application/yaml", "application/x-yaml", "application/csv"}
)
TEXT_LIKE_MIME_SUFFIXES = ("+json", "+xml", "+yaml")


class ResolvedKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    OPAQUE = "opaque"


@dataclass
class ResolvedAsset:
    """Tagged result of resolving one asset: a content part plus a short label."""

    kind: ResolvedKind
    label: str
    text: str = ""
    part: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def infer_asset_type(mime_type: str) -> AssetType:
    mime = mime_type.lower()
    if mime.startswith("image/"):
        return AssetType.IMAGE
    if mime == "application/pdf" or is_text_like(mime):
        return AssetType.DOCUMENT
    if any(marker in mime for marker in ("officedocument", "msword", "spreadsheet", "presentation")):
        return AssetType.DOCUMENT
    return AssetType.OTHER


def is_text_like(mime_type: str) -> bool:
    mime = mime_type.lower().split(";", 1)[0].strip()
    return mime.startswith("text/") or mime in TEXT_LIKE_MIME_TYPES or mime.endswith(TEXT_LIKE_MIME_SUFFIXES)


def sanitize_file_name(name: str) -> str:
    cleaned = re.sub(r"[^\w.-]+", "_", name)
    return re.sub(r"_+", "_", cleaned)[:180]


class LocalAssetStorage:
    """Stores uploads under a root directory; optionally addressable through a public base URL."""

    def __init__(self, root: Path, public_base_url: Optional[str] = None) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    @classmethod
    def from_config(cls, config: StorageConfig) -> "LocalAssetStorage":
        return cls(config.root, config.public_base_url)

    def put(self, key: str, data: bytes) -> Path:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    def path_for(self, key: str) -> Path:
        normalized = key.lstrip("/")
        path = (self.root / normalized).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes the storage root: {key}")
        return path

    def remote_url(self, key: str) -> Optional[str]:
        if not self.public_base_url:
            return None
        return f"{self.public_base_url}/{quote(key.lstrip('/'))}"


class AssetResolver:
    """Turns an asset record into text, an image part, or an opaque placeholder."""

    def __init__(self, storage: LocalAssetStorage, config: StorageConfig, text_excerpt_chars: int = 1500) -> None:
        self._storage = storage
        self._config = config
        self._text_excerpt_chars = text_excerpt_chars

    def resolve(self, asset: AssetRecord) -> ResolvedAsset:
        label = describe_asset(asset)
        metadata = {"assetId": asset.id, "mimeType": asset.mime_type, "fileName": asset.file_name}
        is_image = asset.asset_type is AssetType.IMAGE or asset.mime_type.lower().startswith("image/")

        url = self._storage.remote_url(asset.storage_key)
        if url:
            if is_image:
                return ResolvedAsset(
                    kind=ResolvedKind.IMAGE,
                    label=label,
                    part={"type": "image_url", "image_url": {"url": url, "detail": "auto"}},
                    metadata=metadata,
                )
            return ResolvedAsset(
                kind=ResolvedKind.OPAQUE,
                label=label,
                part={"type": "file_url", "file_url": {"url": url, "mime_type": asset.mime_type}},
                metadata=metadata,
            )

        try:
            path = self._storage.path_for(asset.storage_key)
            size = path.stat().st_size
        except (OSError, ValueError) as exc:
            logger.warning("Asset %s could not be located locally: %s", asset.id, exc)
            return self._placeholder(asset, label, metadata)

        if is_image and size <= self._config.image_inline_max_bytes:
            encoded = base64.b64encode(path.read_bytes()).decode("ascii")
            return ResolvedAsset(
                kind=ResolvedKind.IMAGE,
                label=label,
                part={"type": "image_url", "image_url": {"url": f"data:{asset.mime_type};base64,{encoded}"}},
                metadata=metadata,
            )
        if is_text_like(asset.mime_type) and size <= self._config.text_inline_max_bytes:
            text = path.read_text(encoding="utf-8", errors="replace")
            return ResolvedAsset(
                kind=ResolvedKind.TEXT,
                label=label,
                text=excerpt(text, self._text_excerpt_chars),
                metadata=metadata,
            )
        return self._placeholder(asset, label, metadata)

    @staticmethod
    def _placeholder(asset: AssetRecord, label: str, metadata: Dict[str, Any]) -> ResolvedAsset:
        return ResolvedAsset(
            kind=ResolvedKind.OPAQUE,
            label=label,
            text=(
                f"[{asset.file_name} could not be read directly; "
                "judge it by its title and metadata only]"
            ),
            metadata=metadata,
        )


def describe_asset(asset: AssetRecord) -> str:
    scope = "project" if asset.phase_index is None else f"phase {asset.phase_index + 1}"
    parts = [f"{asset.file_name} ({asset.mime_type}, {asset.file_size} bytes, {scope})"]
    if asset.source_label:
        parts.append(f"source: {asset.source_label}")
    if asset.note:
        parts.append(f"note: {asset.note}")
    return " | ".join(parts)


def excerpt(text: str, limit: int) -> str:
    """Cut *text* to at most *limit* characters, ending in "..." when cut."""

    if len(text) <= limit:
        return text
    if limit < 3:
        return text[: max(0, limit)]
    return text[: limit - 3] + "..."


__all__ = [
    "AssetResolver",
    "LocalAssetStorage",
    "ResolvedAsset",
    "ResolvedKind",
    "describe_asset",
    "excerpt",
    "infer_asset_type",
    "is_text_like",
    "sanitize_file_name",
]
