from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from geoworkspace import editing, tree_store
from geoworkspace.errors import GeoWorkspaceError
from geoworkspace.ingestion import UploadedFile, store_upload, validate_upload

logging.basicConfig(
    level=os.getenv("GEO_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Geo Workspace API")


@app.middleware("http")
async def api_prefix_alias(request, call_next):
    """Accept both `/path` and `/api/path` for frontend compatibility."""
    if request.scope.get("path", "").startswith("/api/"):
        request.scope["path"] = request.scope["path"][4:]
    return await call_next(request)

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("GEO_CORS_ALLOWED_ORIGINS", DEFAULT_CORS_ORIGINS).split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GeoWorkspaceError)
async def geo_workspace_error_handler(request: Request, exc: GeoWorkspaceError):
    logger.info("%s %s failed with %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _success(message: str, data: Any = None) -> dict:
    return {"status": "success", "message": message, "data": data}


class CreateFolderRequest(BaseModel):
    name: str
    parent_id: str | None = Field(default=None, validation_alias=AliasChoices("parent_id", "parentId"))


class RenameNodeRequest(BaseModel):
    name: str


class UpdateRecordRequest(BaseModel):
    record_id: str | int = Field(validation_alias=AliasChoices("record_id", "recordId"))
    data: dict[str, Any] = Field(default_factory=dict)


class AppendRecordRequest(BaseModel):
    properties: dict[str, Any] | None = None
    geometry: dict[str, Any] | None = None


class DeleteRecordRequest(BaseModel):
    record_id: str | int = Field(validation_alias=AliasChoices("record_id", "recordId"))


class AddColumnRequest(BaseModel):
    field_name: str = Field(validation_alias=AliasChoices("field_name", "fieldName"))
    default_value: Any = Field(default=None, validation_alias=AliasChoices("default_value", "defaultValue"))


class DeleteColumnRequest(BaseModel):
    field_name: str = Field(validation_alias=AliasChoices("field_name", "fieldName"))


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/files/upload")
async def upload_files(
    files: list[UploadFile] = File(...),
    parent_id: str | None = Form(None),
):
    uploads = [
        UploadedFile(filename=file.filename or "", content=await file.read(), content_type=file.content_type)
        for file in files
    ]
    result = validate_upload(uploads)

    if result.status == "error":
        return JSONResponse(
            status_code=400,
            content={
                "status": result.status,
                "code": "invalid_operation",
                "message": result.message,
                "warnings": result.warnings,
            },
        )

    if result.status == "warning":
        return JSONResponse(
            status_code=415,
            content={
                "status": result.status,
                "code": "unsupported_file_type",
                "message": result.message,
                "warnings": result.warnings,
            },
        )

    batch = await run_in_threadpool(store_upload, uploads, parent_id)
    warnings = [error.message for error in batch.errors]
    for item in batch.items:
        warnings.extend(item.warnings)

    if not batch.items:
        first_error = batch.errors[0]
        return JSONResponse(
            status_code=first_error.status_code,
            content={**first_error.to_dict(), "warnings": warnings, "data": batch.to_dict()},
        )

    return {
        **_success(f"Uploaded {len(batch.items)} file(s).", batch.to_dict()),
        "warnings": warnings,
    }


@app.post("/files/folder")
def create_folder(payload: CreateFolderRequest):
    node = tree_store.create_folder(payload.name, payload.parent_id)
    return _success("Folder created.", node.model_dump())


@app.get("/files/tree")
def get_file_tree():
    return _success("File tree loaded.", tree_store.get_tree())


@app.get("/files/nodes")
def list_file_nodes(parent_id: str | None = None):
    nodes = tree_store.list_nodes() if parent_id is None else tree_store.list_children(parent_id)
    return _success("Nodes loaded.", [node.model_dump() for node in nodes])


@app.get("/files/content/{node_id}")
def get_file_content(node_id: str):
    result = editing.get_file_content(node_id)
    return _success("File content loaded.", {"node_id": node_id, **result.to_dict()})


@app.put("/files/{node_id}")
def rename_node(node_id: str, payload: RenameNodeRequest):
    node = tree_store.rename_node(node_id, payload.name)
    return _success("Node renamed.", node.model_dump())


@app.delete("/files/{node_id}")
def delete_node(node_id: str):
    return _success("Node deleted.", tree_store.delete_node(node_id))


@app.post("/files/{node_id}/update")
def update_record(node_id: str, payload: UpdateRecordRequest):
    return _success("Record updated.", editing.update_record(node_id, payload.record_id, payload.data))


@app.post("/files/{node_id}/row")
def append_record(node_id: str, payload: AppendRecordRequest | None = None):
    payload = payload or AppendRecordRequest()
    return _success("Record added.", editing.append_record(node_id, payload.properties, payload.geometry))


@app.post("/files/{node_id}/row/delete")
def remove_record(node_id: str, payload: DeleteRecordRequest):
    return _success("Record deleted.", editing.remove_record(node_id, payload.record_id))


@app.post("/files/{node_id}/column")
def add_column(node_id: str, payload: AddColumnRequest):
    return _success("Column added.", editing.add_field(node_id, payload.field_name, payload.default_value))


@app.post("/files/{node_id}/column/delete")
def remove_column(node_id: str, payload: DeleteColumnRequest):
    return _success("Column deleted.", editing.remove_field(node_id, payload.field_name))
