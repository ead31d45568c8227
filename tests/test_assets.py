from __future__ import annotations

from pathlib import Path

import pytest

from productflow_agent.assets import (
    AssetResolver,
    LocalAssetStorage,
    ResolvedKind,
    excerpt,
    infer_asset_type,
    is_text_like,
    sanitize_file_name,
)
from productflow_agent.config import ContextConfig, StorageConfig
from productflow_agent.context import ContextAssembler
from productflow_agent.persistence import WorkflowStore
from productflow_agent.schemas import AssetScope, AssetType

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


@pytest.fixture()
def store(tmp_path: Path) -> WorkflowStore:
    return WorkflowStore.from_url(f"sqlite:///{tmp_path / 'assets.db'}")


def _store_file(store, storage, project_id, key, data, mime, **kwargs):
    storage.put(key, data)
    return store.append_asset(project_id, key.rsplit("/", 1)[-1], mime, len(data), key, **kwargs)


def test_local_assets_resolve_by_kind(tmp_path, store):
    config = StorageConfig(root=tmp_path / "uploads")
    storage = LocalAssetStorage.from_config(config)
    resolver = AssetResolver(storage, config, text_excerpt_chars=20)
    project = store.create_project("Assets", "raw")

    image = _store_file(store, storage, project.id, "p/1/mock.png", PNG_BYTES, "image/png", asset_type=AssetType.IMAGE)
    notes = _store_file(store, storage, project.id, "p/1/notes.csv", b"name,amount\n" * 10, "text/csv")
    archive = _store_file(store, storage, project.id, "p/1/bundle.zip", b"PK\x03\x04", "application/zip")

    resolved_image = resolver.resolve(image)
    assert resolved_image.kind is ResolvedKind.IMAGE
    assert resolved_image.part["type"] == "image_url"
    assert resolved_image.part["image_url"]["url"].startswith("data:image/png;base64,")

    resolved_notes = resolver.resolve(notes)
    assert resolved_notes.kind is ResolvedKind.TEXT
    assert resolved_notes.part is None
    assert len(resolved_notes.text) == 20
    assert resolved_notes.text.startswith("name,amount")

    resolved_archive = resolver.resolve(archive)
    assert resolved_archive.kind is ResolvedKind.OPAQUE
    assert "could not be read directly" in resolved_archive.text


def test_oversized_local_image_becomes_placeholder(tmp_path, store):
    config = StorageConfig(root=tmp_path / "uploads", image_inline_max_bytes=10)
    storage = LocalAssetStorage.from_config(config)
    project = store.create_project("Assets", "raw")
    image = _store_file(store, storage, project.id, "p/1/big.png", PNG_BYTES, "image/png")

    resolved = AssetResolver(storage, config).resolve(image)

    assert resolved.kind is ResolvedKind.OPAQUE
    assert resolved.part is None


def test_remote_references_become_url_parts(tmp_path, store):
    config = StorageConfig(root=tmp_path / "uploads", public_base_url="https://cdn.example.com/files/")
    storage = LocalAssetStorage.from_config(config)
    project = store.create_project("Assets", "raw")
    image = store.append_asset(project.id, "wire.png", "image/png", 100, "p/1/wire frame.png")
    spec = store.append_asset(project.id, "spec.pdf", "application/pdf", 100, "p/1/spec.pdf")

    resolver = AssetResolver(storage, config)
    resolved_image = resolver.resolve(image)
    resolved_spec = resolver.resolve(spec)

    assert resolved_image.part == {
        "type": "image_url",
        "image_url": {"url": "https://cdn.example.com/files/p/1/wire%20frame.png", "detail": "auto"},
    }
    assert resolved_spec.kind is ResolvedKind.OPAQUE
    assert resolved_spec.part["type"] == "file_url"
    assert resolved_spec.part["file_url"]["url"] == "https://cdn.example.com/files/p/1/spec.pdf"


def test_context_includes_project_and_earlier_step_assets_only(tmp_path, store):
    config = StorageConfig(root=tmp_path / "uploads")
    storage = LocalAssetStorage.from_config(config)
    project = store.create_project("Assets", "raw")
    _store_file(store, storage, project.id, "p/1/brief.txt", b"Project brief", "text/plain")
    _store_file(store, storage, project.id, "p/1/early.txt", b"Early notes", "text/plain", phase_index=1)
    _store_file(store, storage, project.id, "p/1/late.txt", b"Late notes", "text/plain", phase_index=6)
    _store_file(store, storage, project.id, "p/1/mock.png", PNG_BYTES, "image/png", phase_index=2)

    assembler = ContextAssembler(store, AssetResolver(storage, config), ContextConfig())
    context = assembler.assemble(project.id, 3)

    assert "Project brief" in context.assets_text
    assert "Early notes" in context.assets_text
    assert "Late notes" not in context.assets_text
    assert "mock.png" in context.assets_text
    assert len(context.asset_parts) == 1
    content = context.user_content("task")
    assert content[0] == {"type": "text", "text": "task"}
    assert content[1]["type"] == "image_url"


def test_append_asset_infers_scope(store):
    project = store.create_project("Assets", "raw")
    assert store.append_asset(project.id, "a.txt", "text/plain", 1, "k1").scope is AssetScope.PROJECT
    assert store.append_asset(project.id, "b.txt", "text/plain", 1, "k2", phase_index=4).scope is AssetScope.STEP


def test_helpers():
    assert infer_asset_type("image/jpeg") is AssetType.IMAGE
    assert infer_asset_type("application/pdf") is AssetType.DOCUMENT
    assert infer_asset_type("application/vnd.openxmlformats-officedocument.wordprocessingml.document") is AssetType.DOCUMENT
    assert infer_asset_type("application/zip") is AssetType.OTHER
    assert is_text_like("application/json; charset=utf-8")
    assert is_text_like("application/ld+json")
    assert not is_text_like("application/vnd.openxmlformats-officedocument.wordprocessingml.document")
    assert sanitize_file_name("my report (final).pdf") == "my_report_final_.pdf"


def test_storage_rejects_keys_outside_root(tmp_path):
    storage = LocalAssetStorage(tmp_path / "uploads")
    with pytest.raises(ValueError):
        storage.path_for("../../etc/passwd")


@pytest.mark.parametrize(
    ("text", "limit", "expected"),
    [
        ("short", 10, "short"),
        ("abcdefghij", 6, "abc..."),
        ("abcdefghij", 3, "..."),
        ("abcdefghij", 2, "ab"),
        ("abcdefghij", 0, ""),
    ],
)
def test_excerpt_never_exceeds_limit(text, limit, expected):
    assert excerpt(text, limit) == expected
    assert len(excerpt(text, limit)) <= max(limit, 0)
