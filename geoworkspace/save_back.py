from __future__ import annotations

import csv
import io
import json
import logging
from pathlib import Path

from geoworkspace import tree_store
from geoworkspace.column_keywords import load_column_keywords
from geoworkspace.errors import InvalidOperation
from geoworkspace.parsers import DEPTH_GEOMETRY_TYPES, array_depth
from geoworkspace.schema_models import FileTreeNode
from geoworkspace.storage import atomic_write_json, atomic_write_text

logger = logging.getLogger(__name__)

HELPER_FIELD_PREFIX = "__"
GEOMETRY_COLUMN = "geometry"
GEOMETRY_TYPE_COLUMN = "geometrytype"
LONGITUDE_COLUMN = "lng"
LATITUDE_COLUMN = "lat"


def _strip_helper_fields(record: dict) -> dict:
    return {key: value for key, value in record.items() if not str(key).startswith(HELPER_FIELD_PREFIX)}


def _format_cell(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _geometries(features: list[dict]) -> list[dict | None]:
    geometries = []
    for feature in features:
        geometry = feature.get("geometry") if isinstance(feature, dict) else None
        if isinstance(geometry, dict) and isinstance(geometry.get("coordinates"), list):
            geometries.append(geometry)
        else:
            geometries.append(None)
    return geometries


def _feature_rows(features: list[dict]) -> tuple[list[str], list[dict]]:
    keywords = load_column_keywords()
    geometries = _geometries(features)
    types = {geometry.get("type") for geometry in geometries if geometry is not None}
    points_only = types == {"Point"}
    # A collection without any geometry keeps an empty geometry column so it
    # re-parses as a FeatureCollection, unless coordinate columns already do that.
    keep_empty_geometry = not types and not any(
        keywords.find("longitude", properties) and keywords.find("latitude", properties)
        for properties in (feature.get("properties") for feature in features)
        if isinstance(properties, dict)
    )
    needs_type_column = any(
        DEPTH_GEOMETRY_TYPES.get(array_depth(geometry["coordinates"])) != geometry.get("type")
        for geometry in geometries
        if geometry is not None
    )

    leading: list[str] = []
    rows: list[dict] = []
    for feature, geometry in zip(features, geometries):
        properties = feature.get("properties") if isinstance(feature, dict) else None
        row = _strip_helper_fields(properties if isinstance(properties, dict) else {})
        row.pop(GEOMETRY_COLUMN, None)

        if geometry is not None and points_only:
            longitude_key = keywords.find("longitude", row.keys())
            latitude_key = keywords.find("latitude", row.keys())
            if longitude_key is None or latitude_key is None:
                longitude_key, latitude_key = LONGITUDE_COLUMN, LATITUDE_COLUMN
                for column in (LONGITUDE_COLUMN, LATITUDE_COLUMN):
                    if column not in leading:
                        leading.append(column)
            coordinates = geometry["coordinates"]
            row[longitude_key] = coordinates[0] if len(coordinates) > 0 else None
            row[latitude_key] = coordinates[1] if len(coordinates) > 1 else None
        elif types and not points_only:
            if GEOMETRY_COLUMN not in leading:
                leading.append(GEOMETRY_COLUMN)
            row[GEOMETRY_COLUMN] = geometry["coordinates"] if geometry is not None else None
            if needs_type_column:
                if GEOMETRY_TYPE_COLUMN not in leading:
                    leading.insert(0, GEOMETRY_TYPE_COLUMN)
                row[GEOMETRY_TYPE_COLUMN] = geometry.get("type") if geometry is not None else None
        elif keep_empty_geometry:
            if GEOMETRY_COLUMN not in leading:
                leading.append(GEOMETRY_COLUMN)
            row[GEOMETRY_COLUMN] = None
        rows.append(row)

    return leading, rows


def _header(leading: list[str], rows: list[dict]) -> list[str]:
    header = list(leading)
    for row in rows:
        for key in row:
            if key not in header:
                header.append(key)
    return header


def document_to_csv(document: object, *, delimiter: str = ",") -> str:
    """Flatten a FeatureCollection or record list to delimited text.

    Point collections keep their coordinates in longitude/latitude columns;
    any other geometry goes into a JSON ``geometry`` column, with a
    ``geometrytype`` column when the type cannot be told from nesting depth.
    Synthesized columns lead the header so they win keyword detection on
    re-parse.
    """
    if isinstance(document, dict) and document.get("type") == "FeatureCollection":
        features = [feature for feature in document.get("features") or [] if isinstance(feature, dict)]
        leading, rows = _feature_rows(features)
    elif isinstance(document, list):
        leading = []
        rows = [_strip_helper_fields(record) for record in document if isinstance(record, dict)]
    else:
        raise InvalidOperation("Only FeatureCollections and record lists can be written as CSV.")

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=_header(leading, rows), delimiter=delimiter, lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow({key: _format_cell(value) for key, value in row.items()})
    return buffer.getvalue()


def save_document(node: FileTreeNode, document: object) -> FileTreeNode:
    """Write ``document`` back to the node's physical file.

    Shapefiles are migrated to a JSON file next to the original, and the
    returned copy of ``node`` carries the new path, name and type. The caller
    persists the node.
    """
    if node.kind != "file" or not node.physical_path:
        raise InvalidOperation(f"Node {node.id} is not a file.")

    path = Path(node.physical_path)
    extension = (node.extension or path.suffix).lower()
    updates: dict = {}

    if extension in {".csv", ".tsv"}:
        delimiter = "\t" if extension == ".tsv" else ","
        atomic_write_text(path, document_to_csv(document, delimiter=delimiter))
    elif extension == ".shp":
        target = path.with_suffix(".json")
        atomic_write_json(target, document)
        removed = tree_store.unlink_physical_files(path)
        logger.info("Migrated shapefile %s to %s (removed %s companion file(s))", path.name, target.name, len(removed))
        path = target
        updates.update(
            {
                "physical_path": str(target),
                "extension": ".json",
                "name": f"{Path(node.name).stem}.json",
                "mime_type": "application/json",
            }
        )
    else:
        atomic_write_json(path, document)

    updates["size_bytes"] = path.stat().st_size
    logger.debug("Saved %s (%s bytes)", path, updates["size_bytes"])
    return node.model_copy(update=updates)
