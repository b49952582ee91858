import pytest

from geoworkspace import module_loader
from geoworkspace.errors import ModuleLoadFailure


@pytest.fixture(autouse=True)
def _fresh_cache(monkeypatch):
    monkeypatch.delenv("GEO_SHAPEFILE_MODULE_PATHS", raising=False)
    module_loader.clear_module_cache()
    yield
    module_loader.clear_module_cache()


def test_installed_pyshp_is_loaded_and_cached():
    module = module_loader.load_shapefile_module()

    assert callable(module.Reader)
    assert module_loader.load_shapefile_module() is module


def test_configured_source_file_is_loaded_in_isolation(tmp_path, monkeypatch):
    source = tmp_path / "fake_shapefile.py"
    source.write_text(
        "NULL = 0\n"
        "class ShapefileException(Exception):\n"
        "    pass\n"
        "class Reader:\n"
        "    marker = 'fake'\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("GEO_SHAPEFILE_MODULE_PATHS", str(source))

    module = module_loader.load_shapefile_module()

    assert module.Reader.marker == "fake"
    assert module_loader.load_shapefile_module() is module


def test_source_without_entry_points_is_rejected(tmp_path, monkeypatch):
    source = tmp_path / "incomplete.py"
    source.write_text("NULL = 0\n", encoding="utf-8")
    monkeypatch.setenv("GEO_SHAPEFILE_MODULE_PATHS", str(source))

    with pytest.raises(ModuleLoadFailure) as excinfo:
        module_loader.load_shapefile_module()

    assert "Reader" in excinfo.value.message


def test_source_that_fails_to_execute_is_reported(tmp_path, monkeypatch):
    source = tmp_path / "broken.py"
    source.write_text("raise RuntimeError('boom')\n", encoding="utf-8")
    monkeypatch.setenv("GEO_SHAPEFILE_MODULE_PATHS", str(source))

    with pytest.raises(ModuleLoadFailure) as excinfo:
        module_loader.load_shapefile_module()

    assert "boom" in excinfo.value.message
    assert excinfo.value.status_code == 500


def test_missing_module_lists_searched_locations(tmp_path, monkeypatch):
    missing_source = tmp_path / "nowhere.py"
    monkeypatch.setenv("GEO_SHAPEFILE_MODULE_PATHS", str(missing_source))
    monkeypatch.setattr(module_loader, "SHAPEFILE_MODULE_NAMES", ("geoworkspace_missing_decoder",))

    with pytest.raises(ModuleLoadFailure) as excinfo:
        module_loader.load_shapefile_module()

    assert str(missing_source) in excinfo.value.message
    assert "geoworkspace_missing_decoder" in excinfo.value.message
