"""FastAPI HTTP API for manual uploads and downloads."""

import logging

from etcdmirror import __version__
from etcdmirror.core.keys import InvalidKey
from etcdmirror.core.mirror import FilesystemError
from etcdmirror.store.base import StoreError
from etcdmirror.sync.manual import ManualSync

log = logging.getLogger(__name__)


def _file_model(body: dict, allow_empty_key: bool = False) -> tuple[str, str]:
    """Validate a {etcdKey, filePath} body.

    An empty etcdKey is only meaningful for downloads, where it selects
    the whole key space.
    """
    key = body.get("etcdKey")
    file_path = body.get("filePath")
    if not isinstance(key, str) or (not key and not allow_empty_key):
        raise ValueError("'etcdKey' field required")
    if not isinstance(file_path, str) or not file_path:
        raise ValueError("'filePath' field required")
    return key, file_path


def create_app(manual: ManualSync, engine=None):
    """Create and configure the FastAPI application.

    Args:
        manual: Manual override operations the endpoints call.
        engine: Optional running SyncEngine, reported by /api/health.
    """
    try:
        from fastapi import FastAPI, Request
        from fastapi.exceptions import RequestValidationError
        from fastapi.responses import JSONResponse
    except ImportError as e:
        raise ImportError(
            "FastAPI is required for the HTTP API. "
            "Install with: pip install etcdmirror[api]"
        ) from e

    app = FastAPI(
        title="etcdmirror API",
        description="Manual upload/download between a local folder and etcd",
        version=__version__,
    )

    def _error(message: str) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        messages = "; ".join(str(err.get("msg", "")) for err in exc.errors())
        return _error(f"invalid request body: {messages}")

    @app.get("/api/health")
    def health():
        result = {"status": "ok", "version": __version__}
        if engine is not None:
            result.update(engine.status())
            if engine.fatal_error:
                result["status"] = "faulted"
        return result

    @app.post("/putFile")
    def put_file(body: dict):
        try:
            key, file_path = _file_model(body)
        except ValueError as e:
            return _error(str(e))
        try:
            manual.manual_upload(key, file_path)
        except (InvalidKey, FilesystemError, StoreError) as e:
            log.error("putFile %s <- %s failed: %s", key, file_path, e)
            return _error(str(e))
        return {"status": "ok"}

    @app.post("/downloadFile")
    def download_file(body: dict):
        try:
            key, file_path = _file_model(body, allow_empty_key=True)
        except ValueError as e:
            return _error(str(e))
        try:
            manual.manual_download(key, file_path)
        except (InvalidKey, FilesystemError, StoreError) as e:
            log.error("downloadFile %s -> %s failed: %s", key, file_path, e)
            return _error(str(e))
        return {"status": "ok"}

    return app
