from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


def extension_for(name: str) -> str:
    return Path(name).suffix.lower().strip()


class FileTreeNode(BaseModel):
    """A file or folder in the workspace tree.

    Folders never carry file metadata; the validator clears it so a stored
    record cannot disagree with its kind.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    kind: Literal["file", "folder"]
    parent_id: str | None = None
    physical_path: str | None = None
    size_bytes: int | None = None
    extension: str | None = None
    mime_type: str | None = None
    created_at: str
    updated_at: str

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name must not be empty")
        return cleaned

    @model_validator(mode="after")
    def _check_kind_fields(self) -> "FileTreeNode":
        if self.kind == "folder":
            self.physical_path = None
            self.size_bytes = None
            self.extension = None
            self.mime_type = None
            return self

        if not self.physical_path:
            raise ValueError("file nodes require physical_path")
        if self.size_bytes is None:
            raise ValueError("file nodes require size_bytes")
        self.extension = (self.extension or extension_for(self.name)).lower().strip()
        return self


class GeometryModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal[
        "Point",
        "LineString",
        "Polygon",
        "MultiPoint",
        "MultiLineString",
        "MultiPolygon",
    ]
    coordinates: list[Any]


def validate_geometry_payload(payload: dict[str, Any] | None) -> dict[str, Any] | None:
    if payload is None:
        return None
    return GeometryModel.model_validate(payload).model_dump()


def file_tree_node_json_schema() -> dict[str, Any]:
    return FileTreeNode.model_json_schema()
