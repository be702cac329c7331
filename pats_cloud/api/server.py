"""FastAPI application exposing the upload server over HTTP."""

from __future__ import annotations

import argparse
import asyncio
import base64
import hashlib
import hmac
import logging
import os
import secrets
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import CloudConfig
from ..errors import RangeNotSatisfiableError, UploadError
from ..runtime import CloudRuntime


runtime = CloudRuntime.bootstrap(CloudConfig.from_env())
logger = logging.getLogger(__name__)

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
}


@asynccontextmanager
async def _lifespan(app: FastAPI):
    active = runtime
    await active.start_background_jobs()
    try:
        yield
    finally:
        await active.stop_background_jobs()


app = FastAPI(title="Pats Cloud", version="0.1.0", lifespan=_lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=runtime.config.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def _access_log(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    for header, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"error": "Missing fields"}, status_code=400)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse({"error": "Internal error"}, status_code=500)


# Session gate ---------------------------------------------------------------


def issue_session_token(secret: str, issued_at: Optional[int] = None) -> str:
    issued = int(time.time()) if issued_at is None else issued_at
    body = f"{issued}.{secrets.token_urlsafe(12)}"
    return f"{body}.{_sign(secret, body)}"


def verify_session_token(token: Optional[str], secret: str, max_age_seconds: int, now: Optional[float] = None) -> bool:
    if not token:
        return False
    try:
        issued_text, nonce, signature = token.split(".")
        issued = int(issued_text)
    except ValueError:
        return False
    expected = _sign(secret, f"{issued_text}.{nonce}")
    if not hmac.compare_digest(expected, signature):
        return False
    current = time.time() if now is None else now
    return 0 <= current - issued <= max_age_seconds


def _sign(secret: str, body: str) -> str:
    digest = hmac.new(secret.encode(), body.encode(), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


async def require_session(request: Request) -> None:
    auth = runtime.config.auth
    token = request.cookies.get(auth.cookie_name)
    if not verify_session_token(token, auth.session_secret, auth.session_max_age_seconds):
        raise HTTPException(status_code=401, detail="Unauthorized")


# Request models -------------------------------------------------------------


class LoginRequest(BaseModel):
    password: Optional[str] = None


class UploadInitRequest(BaseModel):
    filename: Optional[str] = None
    size: Any = None
    chunk_size: Any = Field(default=None, alias="chunkSize")
    total_chunks: Any = Field(default=None, alias="totalChunks")
    folder: Optional[str] = None


class UploadCompleteRequest(BaseModel):
    upload_id: Optional[str] = Field(default=None, alias="uploadId")


class FolderCreateRequest(BaseModel):
    name: Optional[str] = None


def _http_error(exc: UploadError) -> HTTPException:
    headers = None
    if isinstance(exc, RangeNotSatisfiableError):
        headers = {"Content-Range": f"bytes */{exc.total}"}
    return HTTPException(status_code=exc.status_code, detail=str(exc), headers=headers)


def _server_error(message: str, exc: BaseException) -> HTTPException:
    logger.exception("%s: %s", message, exc)
    return HTTPException(status_code=500, detail=message)


# Authentication -------------------------------------------------------------


@app.post("/login")
async def login(payload: LoginRequest):
    auth = runtime.config.auth
    body: dict[str, Any] = {"ok": True}
    if not auth.app_password:
        body["warning"] = "No APP_PASSWORD set. Please configure the environment"
    elif not payload.password or not hmac.compare_digest(payload.password.encode(), auth.app_password.encode()):
        raise HTTPException(status_code=401, detail="Invalid password")
    response = JSONResponse(body)
    response.set_cookie(
        auth.cookie_name,
        issue_session_token(auth.session_secret),
        max_age=auth.session_max_age_seconds,
        httponly=True,
        samesite="lax",
        secure=auth.secure_cookie,
    )
    return response


@app.post("/logout")
async def logout():
    response = JSONResponse({"ok": True})
    response.delete_cookie(runtime.config.auth.cookie_name)
    return response


# Files and folders ----------------------------------------------------------


@app.get("/api/files", dependencies=[Depends(require_session)])
async def list_files(folder: Optional[str] = None):
    namespace = runtime.namespace
    try:
        files = await asyncio.to_thread(namespace.list_files, folder)
        token = namespace.folder_token(folder)
    except UploadError as exc:
        raise _http_error(exc) from exc
    except OSError as exc:
        raise _server_error("Failed to list files", exc) from exc
    return {"files": [entry.to_json() for entry in files], "folder": token}


@app.delete("/api/files/{name}", dependencies=[Depends(require_session)])
async def delete_file(name: str, folder: Optional[str] = None):
    try:
        runtime.namespace.delete_file(name, folder)
    except UploadError as exc:
        raise _http_error(exc) from exc
    except OSError as exc:
        raise _server_error("Failed to delete file", exc) from exc
    return {"ok": True}


@app.get("/api/folders", dependencies=[Depends(require_session)])
async def list_folders():
    try:
        folders = await asyncio.to_thread(runtime.namespace.list_folders)
    except OSError as exc:
        raise _server_error("Failed to list folders", exc) from exc
    return {"folders": folders}


@app.post("/api/folders", dependencies=[Depends(require_session)])
async def create_folder(payload: FolderCreateRequest):
    try:
        name = runtime.namespace.create_folder(payload.name)
    except UploadError as exc:
        raise _http_error(exc) from exc
    except OSError as exc:
        raise _server_error("Failed to create folder", exc) from exc
    return {"ok": True, "name": name}


@app.get("/api/storage", dependencies=[Depends(require_session)])
async def storage_totals():
    try:
        return await asyncio.to_thread(runtime.namespace.storage_totals)
    except OSError as exc:
        raise _server_error("Failed to read storage usage", exc) from exc


@app.get("/api/cloud/status", dependencies=[Depends(require_session)])
async def cloud_status():
    return {"enabled": runtime.upload_service.mirror_enabled}


# Uploads --------------------------------------------------------------------


async def _iter_upload_file(upload: UploadFile, block_size: int) -> AsyncIterator[bytes]:
    while True:
        block = await upload.read(block_size)
        if not block:
            break
        yield block


@app.post("/api/upload", dependencies=[Depends(require_session)])
async def upload_files(files: List[UploadFile] = File(...), folder: Optional[str] = None):
    service = runtime.upload_service
    block_size = runtime.config.storage.read_buffer_size
    try:
        stored = await service.store_many(
            [(upload.filename, _iter_upload_file(upload, block_size)) for upload in files],
            folder,
        )
    except UploadError as exc:
        raise _http_error(exc) from exc
    except OSError as exc:
        raise _server_error("Failed to store upload", exc) from exc
    finally:
        for upload in files:
            await upload.close()
    return {
        "ok": True,
        "uploaded": [{"name": item.name, "size": item.size} for item in stored],
        "mirrored": service.mirror_enabled,
    }


@app.post("/api/upload/init", dependencies=[Depends(require_session)])
async def init_upload(payload: UploadInitRequest):
    try:
        manifest = await runtime.upload_service.init_upload(
            payload.filename,
            payload.size,
            payload.chunk_size,
            payload.total_chunks,
            payload.folder,
        )
    except UploadError as exc:
        raise _http_error(exc) from exc
    except OSError as exc:
        raise _server_error("Failed to initiate upload", exc) from exc
    return {"uploadId": manifest.upload_id}


@app.put("/api/upload/chunk", dependencies=[Depends(require_session)])
async def upload_chunk(
    request: Request,
    upload_id: Optional[str] = Query(default=None, alias="uploadId"),
    index: Optional[str] = Query(default=None),
):
    if not upload_id:
        raise HTTPException(status_code=400, detail="Missing uploadId")
    try:
        receipt = await runtime.upload_service.put_chunk(upload_id, index, request.stream())
    except UploadError as exc:
        raise _http_error(exc) from exc
    except OSError as exc:
        raise _server_error("Failed to store chunk", exc) from exc
    return {"ok": True, "index": receipt.index, "size": receipt.size}


@app.get("/api/upload/status/{upload_id}", dependencies=[Depends(require_session)])
async def upload_status(upload_id: str):
    try:
        summary = await runtime.upload_service.describe_upload(upload_id)
    except UploadError as exc:
        raise _http_error(exc) from exc
    return summary.to_json()


@app.post("/api/upload/complete", dependencies=[Depends(require_session)])
async def complete_upload(payload: UploadCompleteRequest):
    if not payload.upload_id:
        raise HTTPException(status_code=400, detail="Missing uploadId")
    service = runtime.upload_service
    try:
        completed = await service.complete_upload(payload.upload_id)
    except UploadError as exc:
        raise _http_error(exc) from exc
    except OSError as exc:
        raise _server_error("Failed to complete upload", exc) from exc
    return {
        "ok": True,
        "file": {"name": completed.name, "size": completed.size},
        "mirrored": service.mirror_enabled,
    }


@app.delete("/api/upload/abort/{upload_id}", dependencies=[Depends(require_session)])
async def abort_upload(upload_id: str):
    try:
        await runtime.upload_service.abort_upload(upload_id)
    except (UploadError, OSError) as exc:
        logger.warning("Abort of %s reported an error: %s", upload_id, exc)
    return {"ok": True}


# Downloads ------------------------------------------------------------------


@app.get("/download/{name}", dependencies=[Depends(require_session)])
async def download_file(name: str, folder: Optional[str] = None):
    try:
        entry = runtime.namespace.stat_file(name, folder)
        path = runtime.namespace.file_path(name, folder)
    except UploadError as exc:
        raise _http_error(exc) from exc
    return FileResponse(path, filename=entry.name, media_type="application/octet-stream")


@app.get("/file/{name}", dependencies=[Depends(require_session)])
async def stream_file(request: Request, name: str, folder: Optional[str] = None):
    try:
        file_slice = runtime.range_reader.open(name, folder, request.headers.get("range"))
    except UploadError as exc:
        raise _http_error(exc) from exc
    return StreamingResponse(
        file_slice.stream(runtime.config.storage.read_buffer_size),
        status_code=file_slice.status_code,
        headers=file_slice.headers(),
        media_type=file_slice.content_type,
    )


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run the Pats Cloud upload server")
    parser.add_argument("--host", default=os.environ.get("HOST", "0.0.0.0"), help="Interface to bind")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "3000")), help="TCP port")
    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(
        level=runtime.config.observability.log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
