from __future__ import annotations

import logging
import mimetypes
import os
import random
import time
from dataclasses import dataclass, field
from pathlib import Path

from geoworkspace import tree_store
from geoworkspace.errors import (
    GeoWorkspaceError,
    InvalidOperation,
    MissingCompanionFile,
)
from geoworkspace.parsers import parse_file
from geoworkspace.storage import unlink_quietly

logger = logging.getLogger(__name__)

UPLOAD_DIR = Path(os.getenv("GEO_UPLOAD_DIR", "data/uploads"))

PRIMARY_EXTENSIONS = {".shp", ".csv", ".tsv", ".json", ".geojson"}
SHAPEFILE_COMPANION_EXTENSIONS = {".shx", ".dbf", ".prj", ".cpg", ".sbn", ".sbx", ".qix", ".xml"}
ALLOWED_EXTENSIONS = PRIMARY_EXTENSIONS | SHAPEFILE_COMPANION_EXTENSIONS
STANDALONE_EXTENSIONS = PRIMARY_EXTENSIONS - {".shp"}


@dataclass
class UploadedFile:
    filename: str
    content: bytes
    content_type: str | None = None


@dataclass
class ValidationResult:
    status: str
    message: str
    warnings: list[str]


@dataclass
class IngestedFile:
    node_id: str
    name: str
    preview: object | None
    size_bytes: int
    extension: str
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "name": self.name,
            "preview": self.preview,
            "size_bytes": self.size_bytes,
            "extension": self.extension,
            "warnings": self.warnings,
        }


@dataclass
class IngestionBatch:
    batch_id: str
    items: list[IngestedFile]
    errors: list[GeoWorkspaceError]

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "items": [item.to_dict() for item in self.items],
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass
class _UploadGroup:
    primary: UploadedFile
    companions: list[UploadedFile]

    @property
    def is_shapefile(self) -> bool:
        return _normalize_extension(self.primary.filename) == ".shp"


def _normalize_extension(filename: str) -> str:
    return Path(filename).suffix.lower().strip()


def repair_filename(filename: str) -> str:
    """Strip directories and undo latin-1 mis-decoding of UTF-8 multipart names."""
    name = Path((filename or "").replace("\\", "/")).name.strip()
    try:
        repaired = name.encode("latin-1").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        repaired = name
    return repaired or "upload"


def batch_disambiguator() -> str:
    return f"{int(time.time() * 1000)}-{random.randint(0, 999)}"


def validate_upload(files: list[UploadedFile]) -> ValidationResult:
    warnings: list[str] = []
    if not files:
        return ValidationResult(status="error", message="No files were uploaded.", warnings=warnings)

    for upload in files:
        name = repair_filename(upload.filename)
        if not upload.content:
            return ValidationResult(
                status="error",
                message=f"Empty uploads are not allowed ({name}).",
                warnings=warnings,
            )
        extension = _normalize_extension(name)
        if extension not in ALLOWED_EXTENSIONS:
            warnings.append(
                f"Unsupported file type '{extension or 'unknown'}'. "
                "Supported types: CSV/TSV, JSON/GeoJSON and Shapefile (.shp with .dbf, optional .shx/.prj/.cpg)."
            )
            return ValidationResult(status="warning", message="Unsupported file type.", warnings=warnings)

    return ValidationResult(status="success", message="Files accepted for ingestion.", warnings=warnings)


def _group_uploads(files: list[UploadedFile]) -> tuple[list[_UploadGroup], list[GeoWorkspaceError]]:
    """Pick the primary file(s) of a batch; companions ride along with their ``.shp``."""
    by_stem: dict[str, list[UploadedFile]] = {}
    for upload in files:
        by_stem.setdefault(Path(upload.filename).stem.lower(), []).append(upload)

    groups: list[_UploadGroup] = []
    errors: list[GeoWorkspaceError] = []
    for members in by_stem.values():
        extensions = {_normalize_extension(member.filename): member for member in members}
        shp = extensions.get(".shp")
        if shp is not None and ".dbf" not in extensions:
            errors.append(
                MissingCompanionFile(
                    f"Shapefile {shp.filename} was uploaded without its .dbf attribute file."
                )
            )
        elif shp is not None:
            companions = [
                member
                for member in members
                if _normalize_extension(member.filename) in SHAPEFILE_COMPANION_EXTENSIONS
            ]
            groups.append(_UploadGroup(primary=shp, companions=companions))

        for member in members:
            if _normalize_extension(member.filename) in STANDALONE_EXTENSIONS:
                groups.append(_UploadGroup(primary=member, companions=[]))

    if not groups and not errors:
        errors.append(
            InvalidOperation(
                "Upload incomplete: include a .csv, .json/.geojson file or a Shapefile .shp with its .dbf."
            )
        )
    return groups, errors


def _write_physical(upload: UploadedFile, batch_id: str) -> Path:
    extension = _normalize_extension(upload.filename)
    basename = Path(upload.filename).stem.replace(" ", "_")
    target = UPLOAD_DIR / f"{basename}_{batch_id}{extension}"
    target.write_bytes(upload.content)
    return target


def _detect_mime_type(upload: UploadedFile) -> str | None:
    guessed, _ = mimetypes.guess_type(upload.filename)
    return guessed or upload.content_type


def _ingest_group(group: _UploadGroup, batch_id: str, parent_id: str | None) -> IngestedFile:
    primary = group.primary
    extension = _normalize_extension(primary.filename)
    tree_store.ensure_name_available(primary.filename, parent_id)

    written: list[Path] = []
    try:
        primary_path = _write_physical(primary, batch_id)
        written.append(primary_path)
        for companion in group.companions:
            written.append(_write_physical(companion, batch_id))

        warnings: list[str] = []
        preview = None
        try:
            result = parse_file(primary_path, extension)
        except GeoWorkspaceError as exc:
            if group.is_shapefile:
                raise
            logger.warning("Preview parsing failed for %s: %s", primary.filename, exc.message)
            warnings.append(f"Preview unavailable: {exc.message}")
        else:
            if result.kind == "structured":
                preview = result.document

        node = tree_store.create_file(
            name=primary.filename,
            parent_id=parent_id,
            physical_path=str(primary_path),
            size_bytes=len(primary.content),
            mime_type=_detect_mime_type(primary),
            extension=extension,
        )
    except Exception:
        for path in written:
            unlink_quietly(path)
        raise

    return IngestedFile(
        node_id=node.id,
        name=node.name,
        preview=preview,
        size_bytes=node.size_bytes or 0,
        extension=extension,
        warnings=warnings,
    )


def store_upload(files: list[UploadedFile], parent_id: str | None = None) -> IngestionBatch:
    """Store an upload batch and create one tree node per primary file.

    A failing group (e.g. a Shapefile without its .dbf) is reported in
    ``errors`` without affecting the other groups of the batch.
    """
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    batch_id = batch_disambiguator()
    repaired = [
        UploadedFile(
            filename=repair_filename(upload.filename),
            content=upload.content,
            content_type=upload.content_type,
        )
        for upload in files
    ]

    groups, errors = _group_uploads(repaired)
    items: list[IngestedFile] = []
    for group in groups:
        try:
            items.append(_ingest_group(group, batch_id, parent_id))
        except GeoWorkspaceError as exc:
            logger.warning("Upload of %s rejected: %s", group.primary.filename, exc.message)
            errors.append(exc)

    logger.info("Upload batch %s stored %s file(s), %s error(s)", batch_id, len(items), len(errors))
    return IngestionBatch(batch_id=batch_id, items=items, errors=errors)
