from __future__ import annotations

import csv
import io
import json
import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from geoworkspace import shapefile_codec
from geoworkspace.column_keywords import ColumnKeywords, load_column_keywords
from geoworkspace.encoding import decode_bytes, resolve_encoding_label
from geoworkspace.errors import (
    GeoWorkspaceError,
    MalformedDocument,
    MissingCompanionFile,
    PhysicalFileMissing,
)
from geoworkspace.id_reconciler import reconcile_ids

logger = logging.getLogger(__name__)

JSON_EXTENSIONS = {".json", ".geojson"}
DELIMITED_EXTENSIONS = {".csv", ".tsv"}
SHAPEFILE_EXTENSION = ".shp"

GEOMETRY_TYPES = (
    "Point",
    "LineString",
    "Polygon",
    "MultiPoint",
    "MultiLineString",
    "MultiPolygon",
)
DEPTH_GEOMETRY_TYPES = {1: "Point", 2: "LineString", 3: "Polygon", 4: "MultiPolygon"}

# Polygon geometry cells routinely exceed the csv module default of 128 KiB.
CSV_FIELD_SIZE_LIMIT = 2**31 - 1

_INT_PATTERN = re.compile(r"[+-]?\d+")
_FLOAT_PATTERN = re.compile(r"[+-]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?")


@dataclass(frozen=True)
class ParseResult:
    kind: str
    document: object

    def to_dict(self) -> dict:
        return {"kind": self.kind, "document": self.document}


def _file_timestamp_ms(path: Path) -> int:
    return path.stat().st_mtime_ns // 1_000_000


def infer_cell_value(raw: str) -> object:
    value = raw.strip()
    if value == "":
        return None
    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if _INT_PATTERN.fullmatch(value):
        return int(value)
    if _FLOAT_PATTERN.fullmatch(value):
        return float(value)
    return raw


def array_depth(value: object) -> int:
    if not isinstance(value, list):
        return 0
    return 1 + max((array_depth(item) for item in value), default=0)


def _canonical_geometry_type(raw_type: object) -> str | None:
    text = str(raw_type or "").strip()
    if not text:
        return None
    lowered = text.lower()
    for geometry_type in GEOMETRY_TYPES:
        if lowered == geometry_type.lower():
            return geometry_type

    prefix = "Multi" if lowered.startswith("multi") else ""
    if "polygon" in lowered:
        return f"{prefix}Polygon"
    if "line" in lowered:
        return f"{prefix}LineString"
    if "point" in lowered:
        return f"{prefix}Point"
    return None


def _feature(properties: dict, geometry: dict | None) -> dict:
    return {"type": "Feature", "geometry": geometry, "properties": properties}


def _assign_row_id(properties: dict, index: int) -> None:
    current = properties.get("id")
    if current is None or current == "":
        current = properties.get("OSM_ID")
    if current is None or current == "":
        current = f"csv_{index}"
    properties["id"] = current


def _parse_geometry_cell(raw_geometry: object, raw_type: object) -> dict | None:
    if isinstance(raw_geometry, list):
        coordinates = raw_geometry
    elif isinstance(raw_geometry, str) and raw_geometry.strip()[:1] in {"[", "{"}:
        try:
            coordinates = json.loads(raw_geometry)
        except json.JSONDecodeError:
            return None
    else:
        return None

    if isinstance(coordinates, dict):
        geometry_type = _canonical_geometry_type(coordinates.get("type"))
        if geometry_type is None or not isinstance(coordinates.get("coordinates"), list):
            return None
        return {"type": geometry_type, "coordinates": coordinates["coordinates"]}

    if not isinstance(coordinates, list) or not coordinates:
        return None

    geometry_type = _canonical_geometry_type(raw_type)
    if geometry_type is None:
        geometry_type = DEPTH_GEOMETRY_TYPES.get(array_depth(coordinates))
    if geometry_type is None:
        return None
    return {"type": geometry_type, "coordinates": coordinates}


def _detect_geometry_column(headers: list[str], rows: list[dict], keywords: ColumnKeywords) -> dict | None:
    geometry_key = keywords.find("geometry", headers)
    if geometry_key is None:
        return None

    type_key = keywords.find("geometry_type", headers)
    logger.info("CSV geometry column detected: %s", geometry_key)
    features = []
    for index, row in enumerate(rows):
        properties = dict(row)
        _assign_row_id(properties, index)
        raw_geometry = properties.pop(geometry_key, None)
        raw_type = row.get(type_key) if type_key else None
        geometry = _parse_geometry_cell(raw_geometry, raw_type) if raw_geometry not in (None, "") else None
        features.append(_feature(properties, geometry))
    return {"type": "FeatureCollection", "features": features}


def _coerce_coordinate(value: object) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _detect_coordinate_columns(headers: list[str], rows: list[dict], keywords: ColumnKeywords) -> dict | None:
    latitude_key = keywords.find("latitude", headers)
    longitude_key = keywords.find("longitude", headers)
    if latitude_key is None or longitude_key is None:
        return None

    logger.info("CSV coordinate columns detected: %s, %s", longitude_key, latitude_key)
    features = []
    for index, row in enumerate(rows):
        properties = dict(row)
        _assign_row_id(properties, index)
        latitude = _coerce_coordinate(row.get(latitude_key))
        longitude = _coerce_coordinate(row.get(longitude_key))
        geometry = None
        if latitude is not None and longitude is not None:
            geometry = {"type": "Point", "coordinates": [longitude, latitude]}
        features.append(_feature(properties, geometry))
    return {"type": "FeatureCollection", "features": features}


CSV_DETECTORS: tuple[Callable[[list[str], list[dict], ColumnKeywords], dict | None], ...] = (
    _detect_geometry_column,
    _detect_coordinate_columns,
)


def _read_table(text: str, extension: str) -> tuple[list[str], list[dict]]:
    delimiter = "\t" if extension == ".tsv" else ","
    if extension == ".csv":
        try:
            delimiter = csv.Sniffer().sniff(text[:4096], delimiters=",;\t|").delimiter
        except csv.Error:
            logger.debug("CSV delimiter detection fell back to ','")

    csv.field_size_limit(CSV_FIELD_SIZE_LIMIT)
    reader = csv.reader(io.StringIO(text, newline=""), delimiter=delimiter)
    try:
        records = [row for row in reader if any(cell.strip() for cell in row)]
    except csv.Error as exc:
        raise MalformedDocument(f"CSV content is malformed (line {reader.line_num}): {exc}") from exc
    if not records:
        return [], []

    headers = [column.strip() or f"column_{index + 1}" for index, column in enumerate(records[0])]
    rows = []
    for record in records[1:]:
        rows.append(
            {
                header: infer_cell_value(record[index]) if index < len(record) else None
                for index, header in enumerate(headers)
            }
        )
    return headers, rows


def parse_csv_text(text: str, *, extension: str = ".csv", keywords: ColumnKeywords | None = None) -> object:
    """Turn delimited text into a FeatureCollection, or a record list when no spatial columns exist."""
    headers, rows = _read_table(text, extension)
    if not rows:
        return []

    active_keywords = keywords or load_column_keywords()
    for detector in CSV_DETECTORS:
        document = detector(headers, rows, active_keywords)
        if document is not None:
            return document

    logger.info("CSV has no spatial columns, treating it as a plain table")
    for index, row in enumerate(rows):
        _assign_row_id(row, index)
    return rows


def parse_json_text(text: str) -> object:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedDocument(f"JSON content is malformed: {exc}") from exc


def _companion(path: Path, suffix: str) -> Path:
    return path.with_suffix(suffix)


def _read_optional_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def parse_shapefile(path: Path) -> dict:
    dbf_path = _companion(path, ".dbf")
    if not dbf_path.is_file():
        raise MissingCompanionFile(f"Shapefile {path.name} has no matching .dbf attribute file.")

    shx_path = _companion(path, ".shx")
    shx_bytes = shx_path.read_bytes() if shx_path.is_file() else None

    encoding = "utf-8"
    cpg_text = _read_optional_text(_companion(path, ".cpg"))
    if cpg_text and cpg_text.strip():
        encoding = resolve_encoding_label(cpg_text)
        logger.info("Shapefile attribute encoding from .cpg: %s", encoding)

    projection = _read_optional_text(_companion(path, ".prj"))

    try:
        geometries = shapefile_codec.parse_geometry(path.read_bytes(), shx_bytes, projection)
        records = shapefile_codec.parse_attributes(dbf_path.read_bytes(), encoding)
    except GeoWorkspaceError:
        raise
    except Exception as exc:
        logger.error("Shapefile parsing failed for %s: %s", path.name, exc)
        raise MalformedDocument(f"Shapefile parsing failed: {exc}") from exc

    return shapefile_codec.combine(geometries, records)


def parse_file(physical_path: Path | str, known_extension: str | None = None) -> ParseResult:
    """Parse a stored file; ``known_extension`` wins over the physical suffix."""
    path = Path(physical_path)
    if not path.is_file():
        raise PhysicalFileMissing(f"Physical file is missing: {path}")

    extension = (known_extension or path.suffix).lower().strip()
    logger.debug("Parsing %s as %s", path.name, extension)
    timestamp_ms = _file_timestamp_ms(path)

    if extension == SHAPEFILE_EXTENSION:
        document = parse_shapefile(path)
        return ParseResult(kind="structured", document=reconcile_ids(document, timestamp_ms=timestamp_ms))

    text = decode_bytes(path.read_bytes())

    if extension in DELIMITED_EXTENSIONS:
        document = parse_csv_text(text, extension=extension)
        return ParseResult(kind="structured", document=reconcile_ids(document, timestamp_ms=timestamp_ms))

    if extension in JSON_EXTENSIONS:
        document = parse_json_text(text)
        return ParseResult(kind="structured", document=reconcile_ids(document, timestamp_ms=timestamp_ms))

    return ParseResult(kind="text", document=text)
