from __future__ import annotations

import importlib
import importlib.util
import logging
import os
from pathlib import Path
from types import ModuleType

from geoworkspace.errors import ModuleLoadFailure

logger = logging.getLogger(__name__)

SHAPEFILE_MODULE_NAMES = ("shapefile",)
SHAPEFILE_ENTRY_POINTS = ("Reader", "ShapefileException", "NULL")

_LOADED_MODULES: dict[str, ModuleType] = {}


def _configured_source_paths() -> list[Path]:
    raw = os.getenv("GEO_SHAPEFILE_MODULE_PATHS", "")
    return [Path(item.strip()) for item in raw.split(os.pathsep) if item.strip()]


def _load_from_source(path: Path, module_name: str) -> ModuleType:
    spec = importlib.util.spec_from_file_location(f"_geoworkspace_isolated_{module_name}", path)
    if spec is None or spec.loader is None:
        raise ModuleLoadFailure(f"Cannot build an import spec for {path}.")
    # The module object is never registered in sys.modules, so the loaded
    # source gets its own namespace and cannot shadow an installed copy.
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise ModuleLoadFailure(f"Executing {path} failed: {exc}") from exc
    return module


def _validate_entry_points(module: ModuleType, location: str) -> None:
    missing = [name for name in SHAPEFILE_ENTRY_POINTS if not hasattr(module, name)]
    if missing:
        raise ModuleLoadFailure(
            f"Shapefile module loaded from {location} does not expose {', '.join(missing)}."
        )
    if not callable(getattr(module, "Reader")):
        raise ModuleLoadFailure(f"Shapefile module loaded from {location} has no callable Reader.")


def load_shapefile_module(*, refresh: bool = False) -> ModuleType:
    """Locate, load and validate the shapefile decoding module.

    Configured source files are tried first, then the importable module
    names. The first successful load is cached for the process.
    """
    if not refresh and "shapefile" in _LOADED_MODULES:
        return _LOADED_MODULES["shapefile"]

    searched: list[str] = []

    for source_path in _configured_source_paths():
        searched.append(str(source_path))
        if not source_path.is_file():
            continue
        logger.info("Loading shapefile module from source %s", source_path)
        module = _load_from_source(source_path, "shapefile")
        _validate_entry_points(module, str(source_path))
        _LOADED_MODULES["shapefile"] = module
        return module

    for module_name in SHAPEFILE_MODULE_NAMES:
        searched.append(module_name)
        if importlib.util.find_spec(module_name) is None:
            continue
        try:
            module = importlib.import_module(module_name)
        except Exception as exc:
            raise ModuleLoadFailure(f"Importing {module_name} failed: {exc}") from exc
        _validate_entry_points(module, module_name)
        logger.info("Loaded shapefile module %s", module_name)
        _LOADED_MODULES["shapefile"] = module
        return module

    raise ModuleLoadFailure(
        "No shapefile decoding module found (searched: "
        f"{', '.join(searched)}). Install pyshp or set GEO_SHAPEFILE_MODULE_PATHS."
    )


def clear_module_cache() -> None:
    _LOADED_MODULES.clear()
