from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

DEFAULT_KEYWORDS = {
    "geometry": ["geometry", "geom", "wkt", "the_geom", "几何", "几何数据", "几何坐标数据", "几何坐标数据 (geometry)"],
    "geometry_type": ["type", "geometrytype", "图层类型", "类型", "shapetype"],
    "latitude": ["lat", "latitude", "wd", "y", "y_coord", "纬度"],
    "longitude": ["lon", "lng", "longitude", "jd", "x", "x_coord", "经度"],
}


@dataclass(frozen=True)
class ColumnKeywords:
    geometry: tuple[str, ...]
    geometry_type: tuple[str, ...]
    latitude: tuple[str, ...]
    longitude: tuple[str, ...]
    source: str

    def to_dict(self) -> dict:
        return {
            "geometry": list(self.geometry),
            "geometry_type": list(self.geometry_type),
            "latitude": list(self.latitude),
            "longitude": list(self.longitude),
            "source": self.source,
        }

    def find(self, group: str, headers: Iterable[str]) -> str | None:
        """Return the first header matching the keyword group (case-insensitive)."""
        keywords = getattr(self, group)
        for header in headers:
            if str(header).strip().lower() in keywords:
                return header
        return None


def _normalize_keywords(values: Iterable[object]) -> tuple[str, ...]:
    keywords: list[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        cleaned = value.strip().lower()
        if cleaned and cleaned not in keywords:
            keywords.append(cleaned)
    return tuple(keywords)


def _build(raw: dict, source: str) -> ColumnKeywords:
    groups = {
        group: _normalize_keywords(raw.get(group) or DEFAULT_KEYWORDS[group])
        for group in DEFAULT_KEYWORDS
    }
    return ColumnKeywords(source=source, **groups)


def load_column_keywords(path: str | None = None) -> ColumnKeywords:
    configured_path = path or os.getenv("GEO_COLUMN_KEYWORDS_PATH", "data/column_keywords.json")
    file_path = Path(configured_path)

    if file_path.exists():
        try:
            raw = json.loads(file_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return _build({}, "default")
        if isinstance(raw, dict):
            return _build(raw, str(file_path))

    return _build({}, "default")
