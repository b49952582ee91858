from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from geoworkspace.errors import DuplicateName, InvalidOperation, NodeNotFound
from geoworkspace.schema_models import FileTreeNode, extension_for
from geoworkspace.storage import atomic_write_json, unlink_quietly

logger = logging.getLogger(__name__)

TREE_STORE_PATH = Path(os.getenv("GEO_TREE_STORE_PATH", "data/file_tree.json"))
SHAPEFILE_COMPANION_SUFFIXES = (".shp", ".shx", ".dbf", ".prj", ".cpg")

_STORE_LOCK = threading.RLock()


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _default_store() -> dict:
    return {"updated_at": None, "nodes": []}


def load_store() -> dict:
    if not TREE_STORE_PATH.exists():
        return _default_store()
    return json.loads(TREE_STORE_PATH.read_text(encoding="utf-8"))


def save_store(store: dict) -> dict:
    store["updated_at"] = _utc_now()
    atomic_write_json(TREE_STORE_PATH, store)
    return store


def _nodes(store: dict) -> list[FileTreeNode]:
    return [FileTreeNode.model_validate(item) for item in store.get("nodes", [])]


def _find_raw(store: dict, node_id: str) -> dict | None:
    for item in store.get("nodes", []):
        if item.get("id") == node_id:
            return item
    return None


def _normalize_parent_id(parent_id: str | None) -> str | None:
    if parent_id is None:
        return None
    cleaned = str(parent_id).strip()
    if cleaned in {"", "null", "undefined", "None"}:
        return None
    return cleaned


def _clean_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise InvalidOperation("Name must not be empty.")
    return cleaned


def _check_parent(store: dict, parent_id: str | None) -> None:
    if parent_id is None:
        return
    parent = _find_raw(store, parent_id)
    if parent is None:
        raise NodeNotFound(f"Parent folder {parent_id} does not exist.")
    if parent.get("kind") != "folder":
        raise InvalidOperation(f"Parent {parent_id} is a file, not a folder.")


def _check_unique(store: dict, parent_id: str | None, name: str, exclude_id: str | None = None) -> None:
    for item in store.get("nodes", []):
        if item.get("id") == exclude_id:
            continue
        if item.get("parent_id") == parent_id and item.get("name") == name:
            raise DuplicateName(f"'{name}' already exists in this folder.")


def list_nodes() -> list[FileTreeNode]:
    with _STORE_LOCK:
        return _nodes(load_store())


def get_node(node_id: str) -> FileTreeNode:
    with _STORE_LOCK:
        raw = _find_raw(load_store(), node_id)
    if raw is None:
        raise NodeNotFound(f"Node {node_id} does not exist.")
    return FileTreeNode.model_validate(raw)


def list_children(parent_id: str | None) -> list[FileTreeNode]:
    normalized = _normalize_parent_id(parent_id)
    return [node for node in list_nodes() if node.parent_id == normalized]


def ensure_name_available(name: str, parent_id: str | None = None, exclude_id: str | None = None) -> None:
    with _STORE_LOCK:
        store = load_store()
        normalized = _normalize_parent_id(parent_id)
        _check_parent(store, normalized)
        _check_unique(store, normalized, _clean_name(name), exclude_id)


def unique_sibling_name(parent_id: str | None, name: str, exclude_id: str | None = None) -> str:
    """Return ``name`` or the first ``stem_<n><suffix>`` variant not taken by a sibling."""
    normalized = _normalize_parent_id(parent_id)
    with _STORE_LOCK:
        taken = {
            item.get("name")
            for item in load_store().get("nodes", [])
            if item.get("parent_id") == normalized and item.get("id") != exclude_id
        }
    if name not in taken:
        return name

    stem = Path(name).stem
    suffix = Path(name).suffix
    counter = 1
    while True:
        candidate = f"{stem}_{counter}{suffix}"
        if candidate not in taken:
            return candidate
        counter += 1


def _insert(node_payload: dict) -> FileTreeNode:
    with _STORE_LOCK:
        store = load_store()
        _check_parent(store, node_payload["parent_id"])
        _check_unique(store, node_payload["parent_id"], node_payload["name"])
        node = FileTreeNode.model_validate(node_payload)
        store.setdefault("nodes", []).append(node.model_dump())
        save_store(store)
    logger.info("Created %s node %s (%s)", node.kind, node.id, node.name)
    return node


def create_folder(name: str, parent_id: str | None = None) -> FileTreeNode:
    now = _utc_now()
    return _insert(
        {
            "id": f"n_{uuid4().hex[:12]}",
            "name": _clean_name(name),
            "kind": "folder",
            "parent_id": _normalize_parent_id(parent_id),
            "created_at": now,
            "updated_at": now,
        }
    )


def create_file(
    *,
    name: str,
    parent_id: str | None,
    physical_path: str,
    size_bytes: int,
    mime_type: str | None = None,
    extension: str | None = None,
) -> FileTreeNode:
    now = _utc_now()
    cleaned = _clean_name(name)
    return _insert(
        {
            "id": f"n_{uuid4().hex[:12]}",
            "name": cleaned,
            "kind": "file",
            "parent_id": _normalize_parent_id(parent_id),
            "physical_path": physical_path,
            "size_bytes": size_bytes,
            "extension": extension or extension_for(cleaned),
            "mime_type": mime_type,
            "created_at": now,
            "updated_at": now,
        }
    )


def rename_node(node_id: str, new_name: str) -> FileTreeNode:
    cleaned = _clean_name(new_name)
    with _STORE_LOCK:
        store = load_store()
        raw = _find_raw(store, node_id)
        if raw is None:
            raise NodeNotFound(f"Node {node_id} does not exist.")
        _check_unique(store, raw.get("parent_id"), cleaned, exclude_id=node_id)

        raw["name"] = cleaned
        if raw.get("kind") == "file":
            raw["extension"] = extension_for(cleaned)
        raw["updated_at"] = _utc_now()
        node = FileTreeNode.model_validate(raw)
        raw.update(node.model_dump())
        save_store(store)
    logger.info("Renamed node %s to %s", node_id, cleaned)
    return node


def update_node(node: FileTreeNode) -> FileTreeNode:
    """Persist a node whose file metadata was changed by a save-back."""
    with _STORE_LOCK:
        store = load_store()
        raw = _find_raw(store, node.id)
        if raw is None:
            raise NodeNotFound(f"Node {node.id} does not exist.")
        _check_unique(store, raw.get("parent_id"), node.name, exclude_id=node.id)

        updated = node.model_copy(
            update={
                "parent_id": raw.get("parent_id"),
                "created_at": raw.get("created_at") or node.created_at,
                "updated_at": _utc_now(),
            }
        )
        raw.clear()
        raw.update(FileTreeNode.model_validate(updated.model_dump()).model_dump())
        save_store(store)
    return FileTreeNode.model_validate(raw)


def companion_paths(physical_path: str | Path) -> list[Path]:
    path = Path(physical_path)
    if path.suffix.lower() == ".shp":
        return [path.with_suffix(suffix) for suffix in SHAPEFILE_COMPANION_SUFFIXES]
    return [path]


def unlink_physical_files(physical_path: str | Path | None) -> list[str]:
    """Best-effort removal of a node's backing file(s); absent files are fine."""
    if not physical_path:
        return []
    return [str(path) for path in companion_paths(physical_path) if unlink_quietly(path)]


def delete_node(node_id: str) -> dict:
    """Delete a node; folders cascade depth-first, children before parents.

    Physical files go before their records. Records are dropped in a single
    store write once the traversal finishes, so disk failures never leave a
    record behind for a node that was visited.
    """
    with _STORE_LOCK:
        store = load_store()
        root = _find_raw(store, node_id)
        if root is None:
            raise NodeNotFound(f"Node {node_id} does not exist.")

        children_by_parent: dict[str | None, list[dict]] = {}
        for item in store.get("nodes", []):
            children_by_parent.setdefault(item.get("parent_id"), []).append(item)

        deleted_ids: list[str] = []
        unlinked_paths: list[str] = []
        visited: set[str] = set()

        def _delete(item: dict) -> None:
            if item["id"] in visited:
                return
            visited.add(item["id"])
            if item.get("kind") == "folder":
                for child in children_by_parent.get(item["id"], []):
                    _delete(child)
            else:
                unlinked_paths.extend(unlink_physical_files(item.get("physical_path")))
            deleted_ids.append(item["id"])

        _delete(root)

        removed = set(deleted_ids)
        store["nodes"] = [item for item in store.get("nodes", []) if item.get("id") not in removed]
        save_store(store)

    logger.info("Deleted %s node(s) starting at %s", len(deleted_ids), node_id)
    return {"deleted_ids": deleted_ids, "unlinked_paths": unlinked_paths}


def build_tree(nodes: list[FileTreeNode]) -> list[dict]:
    """Fold a flat node list into nested dicts in one grouping pass."""
    entries = {node.id: {**node.model_dump(), "is_leaf": node.kind == "file"} for node in nodes}
    for entry in entries.values():
        if entry["kind"] == "folder":
            entry["children"] = []

    roots: list[dict] = []
    for node in nodes:
        entry = entries[node.id]
        if node.parent_id is None:
            roots.append(entry)
            continue
        parent = entries.get(node.parent_id)
        if parent is not None and parent["kind"] == "folder":
            parent["children"].append(entry)
    return roots


def get_tree() -> list[dict]:
    nodes = sorted(list_nodes(), key=lambda node: (node.parent_id or "", node.created_at))
    return build_tree(nodes)
