from geoworkspace.id_reconciler import generated_id, reconcile_ids


def _collection(*features):
    return {"type": "FeatureCollection", "features": list(features)}


def test_feature_ids_are_filled_and_deduplicated():
    document = _collection(
        {"type": "Feature", "geometry": None, "properties": {"id": "a"}},
        {"type": "Feature", "id": 5, "geometry": None, "properties": {}},
        {"type": "Feature", "geometry": None, "properties": {"id": ""}},
        {"type": "Feature", "geometry": None, "properties": {"id": "a"}},
        {"type": "Feature", "geometry": None},
    )

    reconcile_ids(document, timestamp_ms=1000)

    ids = [feature["properties"]["id"] for feature in document["features"]]
    assert ids == ["a", 5, "gen_1000_2", "gen_1000_3", "gen_1000_4"]
    assert [feature["id"] for feature in document["features"]] == ids


def test_existing_top_level_id_is_kept_when_properties_carry_one():
    document = _collection({"type": "Feature", "id": "f-1", "geometry": None, "properties": {"id": "p-1"}})

    reconcile_ids(document, timestamp_ms=1)

    feature = document["features"][0]
    assert feature["properties"]["id"] == "p-1"
    assert feature["id"] == "f-1"


def test_generated_id_collisions_get_a_suffix():
    records = [{"id": generated_id(7, 1)}, {"name": "second"}]

    reconcile_ids(records, timestamp_ms=7)

    assert records[0]["id"] == "gen_7_1"
    assert records[1]["id"] == "gen_7_1_1"


def test_ids_compare_as_strings():
    records = [{"id": 1}, {"id": "1"}]

    reconcile_ids(records, timestamp_ms=3)

    assert records[0]["id"] == 1
    assert records[1]["id"] == "gen_3_1"


def test_other_documents_pass_through():
    document = {"type": "Feature", "properties": {}}

    assert reconcile_ids(document) is document
    assert document == {"type": "Feature", "properties": {}}
    assert reconcile_ids("plain text") == "plain text"
