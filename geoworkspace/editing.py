from __future__ import annotations

import logging
import time

from geoworkspace import save_back, tree_store
from geoworkspace.errors import InvalidOperation, RecordNotFound
from geoworkspace.id_reconciler import generated_id
from geoworkspace.parsers import ParseResult, parse_file
from geoworkspace.schema_models import FileTreeNode, validate_geometry_payload

logger = logging.getLogger(__name__)

PROTECTED_FIELDS = ("id", "name")
TRANSIENT_FIELDS = ("cp", "_cp", "_geometry", "_lng", "_lat", "_geom_coords")
NEW_RECORD_NAME = "New Feature"


def _is_feature_collection(document: object) -> bool:
    return isinstance(document, dict) and document.get("type") == "FeatureCollection"


def _file_node(node_id: str) -> FileTreeNode:
    node = tree_store.get_node(node_id)
    if node.kind != "file":
        raise InvalidOperation(f"Node {node_id} is a folder and has no content.")
    return node


def get_file_content(node_id: str) -> ParseResult:
    node = _file_node(node_id)
    return parse_file(node.physical_path, node.extension)


def _load_structured(node_id: str) -> tuple[FileTreeNode, object]:
    node = _file_node(node_id)
    result = parse_file(node.physical_path, node.extension)
    document = result.document
    if result.kind != "structured" or not (_is_feature_collection(document) or isinstance(document, list)):
        raise InvalidOperation(f"{node.name} does not hold editable tabular or feature data.")
    if _is_feature_collection(document) and not isinstance(document.get("features"), list):
        document["features"] = []
    return node, document


def _field_maps(document: object) -> list[dict]:
    """The dicts that hold each record's fields: feature properties or flat records."""
    if _is_feature_collection(document):
        maps = []
        for feature in document["features"]:
            if not isinstance(feature, dict):
                continue
            if not isinstance(feature.get("properties"), dict):
                feature["properties"] = {}
            maps.append(feature["properties"])
        return maps
    return [record for record in document if isinstance(record, dict)]


def _find_index(document: object, record_id: object) -> int:
    wanted = str(record_id)
    items = document["features"] if _is_feature_collection(document) else document
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        fields = item.get("properties") if _is_feature_collection(document) else item
        if isinstance(fields, dict) and fields.get("id") is not None and str(fields["id"]) == wanted:
            return index
        if _is_feature_collection(document) and item.get("id") is not None and str(item["id"]) == wanted:
            return index
    raise RecordNotFound(f"Record {record_id} does not exist.")


def _persist(node: FileTreeNode, document: object) -> FileTreeNode:
    saved = save_back.save_document(node, document)
    if saved.name != node.name:
        # Migration renamed the node; keep sibling names unique.
        resolved = tree_store.unique_sibling_name(saved.parent_id, saved.name, exclude_id=node.id)
        saved = saved.model_copy(update={"name": resolved})
    return tree_store.update_node(saved)


def _result(node: FileTreeNode, **extra) -> dict:
    return {"updated_at": node.updated_at, "node": node.model_dump(), **extra}


def update_record(node_id: str, record_id: object, data: dict) -> dict:
    node, document = _load_structured(node_id)
    index = _find_index(document, record_id)

    if _is_feature_collection(document):
        fields = document["features"][index]["properties"]
    else:
        fields = document[index]
    fields.update(data or {})
    for key in TRANSIENT_FIELDS:
        fields.pop(key, None)

    stored = _persist(node, document)
    logger.info("Updated record %s in %s", record_id, node.name)
    return _result(stored, record=fields)


def append_record(node_id: str, properties: dict | None = None, geometry: dict | None = None) -> dict:
    node, document = _load_structured(node_id)
    fields = _field_maps(document)
    taken = {str(item.get("id")) for item in fields}

    new_id = generated_id(int(time.time() * 1000), len(fields))
    suffix = 1
    while new_id in taken:
        new_id = f"{generated_id(int(time.time() * 1000), len(fields))}_{suffix}"
        suffix += 1

    record = {"id": new_id, "name": NEW_RECORD_NAME, **(properties or {})}
    if record.get("id") in (None, "") or str(record["id"]) in taken:
        record["id"] = new_id

    if _is_feature_collection(document):
        try:
            checked_geometry = validate_geometry_payload(geometry)
        except ValueError as exc:
            raise InvalidOperation(f"Geometry is not valid GeoJSON: {exc}") from exc
        document["features"].append(
            {"type": "Feature", "id": record["id"], "geometry": checked_geometry, "properties": record}
        )
    else:
        if geometry is not None:
            raise InvalidOperation(f"{node.name} is a plain table and cannot store geometry.")
        document.append(record)

    stored = _persist(node, document)
    logger.info("Appended record %s to %s", record["id"], node.name)
    return _result(stored, record=record)


def remove_record(node_id: str, record_id: object) -> dict:
    node, document = _load_structured(node_id)
    index = _find_index(document, record_id)
    if _is_feature_collection(document):
        del document["features"][index]
    else:
        del document[index]

    stored = _persist(node, document)
    logger.info("Removed record %s from %s", record_id, node.name)
    return _result(stored, record_id=record_id)


def add_field(node_id: str, field_name: str, default_value: object = None) -> dict:
    name = str(field_name if field_name is not None else "").strip()
    if not name:
        raise InvalidOperation("Field name must not be empty.")

    node, document = _load_structured(node_id)
    value = "" if default_value is None else default_value
    for fields in _field_maps(document):
        fields.setdefault(name, value)

    stored = _persist(node, document)
    logger.info("Added field %s to %s", name, node.name)
    return _result(stored, field_name=name)


def remove_field(node_id: str, field_name: str) -> dict:
    name = str(field_name if field_name is not None else "").strip()
    if not name:
        raise InvalidOperation("Field name must not be empty.")
    if name in PROTECTED_FIELDS:
        raise InvalidOperation(f"Field '{name}' is protected and cannot be removed.")

    node, document = _load_structured(node_id)
    for fields in _field_maps(document):
        fields.pop(name, None)

    stored = _persist(node, document)
    logger.info("Removed field %s from %s", name, node.name)
    return _result(stored, field_name=name)
