import csv
import io
import json
from pathlib import Path

import pytest
import shapefile

from geoworkspace.errors import InvalidOperation
from geoworkspace.parsers import parse_file
from geoworkspace.save_back import document_to_csv, save_document
from geoworkspace.schema_models import FileTreeNode


@pytest.fixture(autouse=True)
def _default_keywords(tmp_path, monkeypatch):
    monkeypatch.setenv("GEO_COLUMN_KEYWORDS_PATH", str(tmp_path / "no_keywords.json"))


def _node(path: Path, name: str | None = None) -> FileTreeNode:
    return FileTreeNode(
        id="n_test",
        name=name or path.name,
        kind="file",
        physical_path=str(path),
        size_bytes=path.stat().st_size,
        created_at="2024-01-01T00:00:00+00:00",
        updated_at="2024-01-01T00:00:00+00:00",
    )


def _csv_rows(text: str) -> list[dict]:
    return list(csv.DictReader(io.StringIO(text)))


def test_json_document_round_trips(tmp_path):
    path = tmp_path / "parks.geojson"
    path.write_text("{}", encoding="utf-8")
    document = {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "id": "p1",
                "geometry": {"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 0]]]},
                "properties": {"id": "p1", "name": "Volkspark", "tags": {"kind": "park"}},
            }
        ],
    }

    saved = save_document(_node(path), document)

    assert parse_file(path).document == document
    assert saved.size_bytes == path.stat().st_size
    assert "Volkspark" in path.read_text(encoding="utf-8")
    assert path.read_text(encoding="utf-8").startswith("{\n  ")


def test_csv_point_collection_round_trips(tmp_path):
    path = tmp_path / "points.csv"
    path.write_text("name,lng,lat\nA,116.4,39.9\nB,121.5,31.2\n", encoding="utf-8")
    document = parse_file(path).document

    save_document(_node(path), document)

    assert parse_file(path).document == document


def test_moved_point_is_written_to_coordinate_columns(tmp_path):
    path = tmp_path / "points.csv"
    path.write_text("name,lng,lat\nA,116.4,39.9\n", encoding="utf-8")
    document = parse_file(path).document
    document["features"][0]["geometry"]["coordinates"] = [100.5, 30.25]

    save_document(_node(path), document)

    reparsed = parse_file(path).document["features"][0]
    assert reparsed["geometry"] == {"type": "Point", "coordinates": [100.5, 30.25]}
    assert reparsed["properties"]["lng"] == 100.5
    assert reparsed["properties"]["name"] == "A"


def test_points_without_coordinate_columns_get_lng_lat():
    document = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "geometry": {"type": "Point", "coordinates": [1.5, 2.5]}, "properties": {"id": "a"}},
        ],
    }

    rows = _csv_rows(document_to_csv(document))

    assert rows == [{"lng": "1.5", "lat": "2.5", "id": "a"}]


def test_mixed_geometries_use_geometry_column(tmp_path):
    path = tmp_path / "mixed.csv"
    document = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "geometry": {"type": "Point", "coordinates": [1, 2]}, "properties": {"id": "a"}},
            {
                "type": "Feature",
                "geometry": {"type": "LineString", "coordinates": [[0, 0], [1, 1]]},
                "properties": {"id": "b"},
            },
            {"type": "Feature", "geometry": None, "properties": {"id": "c"}},
        ],
    }
    path.write_text(document_to_csv(document), encoding="utf-8")

    reparsed = parse_file(path).document

    assert [feature["geometry"] for feature in reparsed["features"]] == [
        {"type": "Point", "coordinates": [1, 2]},
        {"type": "LineString", "coordinates": [[0, 0], [1, 1]]},
        None,
    ]


def test_geometry_type_column_is_added_when_depth_is_ambiguous():
    document = {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": {"type": "MultiPoint", "coordinates": [[0, 0], [1, 1]]},
                "properties": {"id": "a", "type": "station"},
            },
        ],
    }

    text = document_to_csv(document)

    assert text.splitlines()[0].startswith("geometrytype,geometry")
    assert _csv_rows(text)[0]["geometrytype"] == "MultiPoint"


def test_helper_fields_are_stripped_and_values_formatted():
    records = [
        {"id": "r1", "__selected": True, "ok": False, "tags": ["a", "b"], "empty": None},
        {"id": "r2", "extra": "x"},
    ]

    text = document_to_csv(records)

    assert text.splitlines()[0] == "id,ok,tags,empty,extra"
    rows = _csv_rows(text)
    assert rows[0]["ok"] == "false"
    assert json.loads(rows[0]["tags"]) == ["a", "b"]
    assert rows[0]["empty"] == ""
    assert rows[1]["extra"] == "x"


def test_csv_export_rejects_unstructured_documents():
    with pytest.raises(InvalidOperation):
        document_to_csv("plain text")


def test_shapefile_save_migrates_to_json(tmp_path):
    base = tmp_path / "roads_123"
    with shapefile.Writer(str(base), shapeType=shapefile.POLYLINE) as writer:
        writer.field("name", "C")
        writer.line([[[0.0, 0.0], [1.0, 1.0]]])
        writer.record("Main Street")
    shp_path = base.with_suffix(".shp")
    base.with_suffix(".prj").write_text("", encoding="utf-8")
    node = _node(shp_path, name="Roads.shp")
    document = parse_file(shp_path).document
    document["features"][0]["properties"]["name"] = "High Street"

    saved = save_document(node, document)

    json_path = tmp_path / "roads_123.json"
    assert saved.physical_path == str(json_path)
    assert saved.name == "Roads.json"
    assert saved.extension == ".json"
    assert saved.mime_type == "application/json"
    assert saved.size_bytes == json_path.stat().st_size
    for suffix in (".shp", ".shx", ".dbf", ".prj"):
        assert not base.with_suffix(suffix).exists()
    assert parse_file(json_path).document["features"][0]["properties"]["name"] == "High Street"
    assert node.physical_path == str(shp_path)


def test_collection_without_geometry_stays_a_collection(tmp_path):
    path = tmp_path / "sites.csv"
    path.write_text("name,geometry\nA,\nB,\n", encoding="utf-8")
    document = parse_file(path).document
    assert document["type"] == "FeatureCollection"

    save_document(_node(path), document)

    reparsed = parse_file(path).document
    assert reparsed == document
    assert [feature["geometry"] for feature in reparsed["features"]] == [None, None]


def test_empty_coordinate_columns_need_no_geometry_column():
    document = {
        "type": "FeatureCollection",
        "features": [{"type": "Feature", "geometry": None, "properties": {"id": "a", "lng": None, "lat": None}}],
    }

    header = document_to_csv(document).splitlines()[0]

    assert header == "id,lng,lat"
