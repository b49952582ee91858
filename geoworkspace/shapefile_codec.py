from __future__ import annotations

import io
import logging
import math
from datetime import date, datetime

from pyproj import CRS, Transformer

from geoworkspace.module_loader import load_shapefile_module

logger = logging.getLogger(__name__)


def _to_lists(value: object) -> object:
    if isinstance(value, (list, tuple)):
        return [_to_lists(item) for item in value]
    return value


def _is_position(value: object) -> bool:
    return (
        isinstance(value, list)
        and len(value) >= 2
        and all(isinstance(item, (int, float)) for item in value)
    )


def _reproject_coordinates(coordinates: object, transformer: Transformer) -> object:
    if _is_position(coordinates):
        x, y = transformer.transform(coordinates[0], coordinates[1])
        return [x, y, *coordinates[2:]]
    if isinstance(coordinates, list):
        return [_reproject_coordinates(item, transformer) for item in coordinates]
    return coordinates


def _wgs84_transformer(projection: str | None) -> Transformer | None:
    if not projection or not projection.strip():
        return None
    try:
        source_crs = CRS.from_wkt(projection)
        if source_crs.to_epsg() == 4326:
            return None
        return Transformer.from_crs(source_crs, "EPSG:4326", always_xy=True)
    except Exception as exc:
        logger.warning("Ignoring unusable projection definition: %s", exc)
        return None


def parse_geometry(
    shp_bytes: bytes,
    shx_bytes: bytes | None = None,
    projection: str | None = None,
) -> list[dict | None]:
    """Decode ``.shp`` content into GeoJSON geometry dicts, ``None`` for null shapes."""
    shapefile = load_shapefile_module()
    reader_kwargs = {"shp": io.BytesIO(shp_bytes)}
    if shx_bytes:
        reader_kwargs["shx"] = io.BytesIO(shx_bytes)

    transformer = _wgs84_transformer(projection)
    geometries: list[dict | None] = []
    with shapefile.Reader(**reader_kwargs) as reader:
        for shape in reader.iterShapes():
            if shape.shapeType == shapefile.NULL:
                geometries.append(None)
                continue
            try:
                geometry = _to_lists(shape.__geo_interface__)
            except Exception as exc:
                logger.warning("Shape could not be expressed as GeoJSON: %s", exc)
                geometries.append(None)
                continue
            if transformer is not None:
                try:
                    geometry["coordinates"] = _reproject_coordinates(geometry["coordinates"], transformer)
                except Exception as exc:
                    logger.warning("Reprojection failed, keeping source coordinates: %s", exc)
                    transformer = None
            geometries.append(geometry)
    return geometries


def _normalize_attribute(value: object, encoding: str) -> object:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(encoding, errors="replace")
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def parse_attributes(dbf_bytes: bytes, encoding: str = "utf-8") -> list[dict]:
    """Decode ``.dbf`` content into one attribute dict per record."""
    shapefile = load_shapefile_module()
    records: list[dict] = []
    with shapefile.Reader(dbf=io.BytesIO(dbf_bytes), encoding=encoding, encodingErrors="replace") as reader:
        field_names = [field[0] for field in reader.fields if field[0] != "DeletionFlag"]
        for record in reader.iterRecords():
            records.append(
                {
                    name: _normalize_attribute(value, encoding)
                    for name, value in zip(field_names, list(record))
                }
            )
    return records


def combine(geometries: list[dict | None], records: list[dict]) -> dict:
    features = []
    for index in range(max(len(geometries), len(records))):
        features.append(
            {
                "type": "Feature",
                "geometry": geometries[index] if index < len(geometries) else None,
                "properties": dict(records[index]) if index < len(records) else {},
            }
        )
    return {"type": "FeatureCollection", "features": features}
