from __future__ import annotations

import time


def _is_missing(value: object) -> bool:
    return value is None or value == ""


def generated_id(timestamp_ms: int, index: int) -> str:
    return f"gen_{timestamp_ms}_{index}"


def reconcile_ids(document: object, *, timestamp_ms: int | None = None) -> object:
    """Give every feature/record a non-empty id that is unique in the document.

    Generated ids have the form ``gen_<timestamp>_<index>``. Passing the
    source file's modification time keeps them stable across re-parses of an
    unchanged file. Later duplicates of an existing id are re-assigned.
    Documents that are neither a FeatureCollection nor a list pass through.
    """
    stamp = int(time.time() * 1000) if timestamp_ms is None else int(timestamp_ms)
    seen: set[str] = set()

    def _claim(current: object, index: int) -> object:
        if _is_missing(current) or str(current) in seen:
            candidate = generated_id(stamp, index)
            suffix = 1
            while candidate in seen:
                candidate = f"{generated_id(stamp, index)}_{suffix}"
                suffix += 1
            current = candidate
        seen.add(str(current))
        return current

    if isinstance(document, dict) and document.get("type") == "FeatureCollection":
        features = document.get("features")
        if not isinstance(features, list):
            return document
        for index, feature in enumerate(features):
            if not isinstance(feature, dict):
                continue
            properties = feature.get("properties")
            if not isinstance(properties, dict):
                properties = {}
                feature["properties"] = properties
            current = properties.get("id")
            if _is_missing(current):
                current = feature.get("id")
            properties["id"] = _claim(current, index)
            if _is_missing(feature.get("id")) or properties["id"] != current:
                feature["id"] = properties["id"]
        return document

    if isinstance(document, list):
        for index, record in enumerate(document):
            if isinstance(record, dict):
                record["id"] = _claim(record.get("id"), index)
        return document

    return document
