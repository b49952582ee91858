from __future__ import annotations


class GeoWorkspaceError(Exception):
    """Base class for failures surfaced to API callers."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, warnings: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.warnings = list(warnings or [])

    def to_dict(self) -> dict:
        return {
            "status": "error",
            "code": self.code,
            "message": self.message,
            "warnings": self.warnings,
        }


class MalformedDocument(GeoWorkspaceError):
    status_code = 400
    code = "malformed_document"


class MissingCompanionFile(GeoWorkspaceError):
    status_code = 400
    code = "missing_companion_file"


class ModuleLoadFailure(GeoWorkspaceError):
    status_code = 500
    code = "module_load_failure"


class DuplicateName(GeoWorkspaceError):
    status_code = 409
    code = "duplicate_name"


class RecordNotFound(GeoWorkspaceError):
    status_code = 404
    code = "record_not_found"


class PhysicalFileMissing(GeoWorkspaceError):
    """The node still exists but its backing file is gone; callers may offer a re-upload."""

    status_code = 410
    code = "physical_file_missing"


class NodeNotFound(GeoWorkspaceError):
    status_code = 404
    code = "node_not_found"


class InvalidOperation(GeoWorkspaceError):
    status_code = 400
    code = "invalid_operation"
