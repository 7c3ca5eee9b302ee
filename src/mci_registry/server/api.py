# src/mci_registry/server/api.py
"""
HTTP boundary for the registry core.

Payload bytes travel base64-encoded inside JSON bodies and come back raw
(application/octet-stream) from the read endpoints. Errors use one shape:

    {"error": {"type": "<error_type>", "message": "..."}}
"""
import hmac
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import Base64Bytes, BaseModel, ConfigDict, Field

from mci_registry.db.repository import SortBy, SortOrder
from mci_registry.digest import PayloadKind
from mci_registry.errors import (
    ConflictError,
    FetchError,
    IntegrityError,
    NotFoundError,
    RegistryError,
    StoreError,
    ValidationError,
)
from mci_registry.main import Registry
from mci_registry.schemas import DefinitionView, IngestionResult
from mci_registry.services.gc import GCThread

logger = logging.getLogger(__name__)

# Most specific first; KeyCollisionError lands on StoreError.
STATUS_CODES = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (IntegrityError, 422),
    (FetchError, 502),
    (StoreError, 503),
)


def status_for(exc: RegistryError) -> int:
    for cls, status in STATUS_CODES:
        if isinstance(exc, cls):
            return status
    return 500


def error_response(status_code: int, error_type: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"type": error_type, "message": message}},
    )


# --- Request bodies ---


class IngestBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    type: str
    name: str
    description: str = ""
    payload: Optional[Base64Bytes] = Field(default=None, repr=False)
    source_url: Optional[str] = None
    configuration: Optional[Base64Bytes] = Field(default=None, repr=False)
    secrets: Optional[Base64Bytes] = Field(default=None, repr=False)
    clear_configuration: bool = False
    clear_secrets: bool = False
    expected_digest: Optional[str] = None
    expected_prior_digest: Optional[str] = None
    enabled: Optional[bool] = None


class MetadataBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    enabled: Optional[bool] = None


class InstallBody(BaseModel):
    manifest_url: str


# --- App factory ---


def create_app(registry: Registry, run_gc: bool = False) -> FastAPI:
    """
    Build the FastAPI app around an already-wired Registry.

    Args:
        registry: Owned resource handles and services
        run_gc: Start the background GC loop for the app's lifetime
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        gc_thread = None
        if run_gc:
            gc_thread = GCThread(registry.gc, registry.settings.gc.interval_seconds)
            gc_thread.start()
        yield
        if gc_thread is not None:
            gc_thread.stop(timeout=5)

    app = FastAPI(title="MCI Registry API", version="1.0.0", lifespan=lifespan)
    app.state.registry = registry

    @app.exception_handler(RegistryError)
    async def registry_error_handler(request: Request, exc: RegistryError):
        status = status_for(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return error_response(status, exc.error_type, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        # Field locations and messages only; inputs may hold secret bytes.
        problems = ", ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())) or 'request'}: {err.get('msg')}"
            for err in exc.errors()
        )
        return error_response(400, ValidationError.error_type, f"Invalid request: {problems}")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return error_response(500, "internal_error", "Internal server error")

    def get_registry(request: Request) -> Registry:
        return request.app.state.registry

    # --- Endpoints ---

    @app.get("/definitions", response_model=List[DefinitionView])
    def list_definitions(
        type: Optional[str] = None,
        enabled: Optional[bool] = None,
        query: Optional[str] = None,
        limit: Optional[int] = Query(default=None, ge=0),
        offset: Optional[int] = Query(default=None, ge=0),
        sort_by: SortBy = SortBy.NAME,
        sort_order: SortOrder = SortOrder.ASC,
        reg: Registry = Depends(get_registry),
    ):
        return reg.query.list(
            type=type,
            enabled=enabled,
            query=query,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            sort_order=sort_order,
        )

    @app.post("/definitions", response_model=IngestionResult)
    def ingest_definition(body: IngestBody, reg: Registry = Depends(get_registry)):
        """Create or update a definition from an inline payload or a source_url."""
        fields = {name: getattr(body, name) for name in IngestBody.model_fields}
        return reg.ingestion.submit(**fields)

    @app.post("/definitions/install", response_model=IngestionResult)
    def install_definition(body: InstallBody, reg: Registry = Depends(get_registry)):
        return reg.ingestion.install(body.manifest_url)

    @app.get("/definitions/{definition_id}", response_model=DefinitionView)
    def get_definition(definition_id: str, reg: Registry = Depends(get_registry)):
        return reg.query.get(definition_id)

    @app.patch("/definitions/{definition_id}", response_model=DefinitionView)
    def update_metadata(
        definition_id: str, body: MetadataBody, reg: Registry = Depends(get_registry)
    ):
        return reg.lifecycle.update_metadata(
            definition_id,
            name=body.name,
            description=body.description,
            type=body.type,
            enabled=body.enabled,
        )

    @app.delete("/definitions/{definition_id}", response_model=DefinitionView)
    def delete_definition(definition_id: str, reg: Registry = Depends(get_registry)):
        return reg.lifecycle.delete(definition_id)

    @app.post("/definitions/{definition_id}/enable", response_model=DefinitionView)
    def enable_definition(definition_id: str, reg: Registry = Depends(get_registry)):
        return reg.lifecycle.enable(definition_id)

    @app.post("/definitions/{definition_id}/disable", response_model=DefinitionView)
    def disable_definition(definition_id: str, reg: Registry = Depends(get_registry)):
        return reg.lifecycle.disable(definition_id)

    @app.post("/definitions/{definition_id}/resync", response_model=IngestionResult)
    def resync_definition(definition_id: str, reg: Registry = Depends(get_registry)):
        return reg.ingestion.resync(definition_id)

    @app.get("/definitions/{definition_id}/definition")
    def read_definition_payload(definition_id: str, reg: Registry = Depends(get_registry)):
        data = reg.query.read_payload(definition_id, PayloadKind.DEFINITION)
        return Response(content=data, media_type="application/octet-stream")

    @app.get("/definitions/{definition_id}/configuration")
    def read_configuration_payload(definition_id: str, reg: Registry = Depends(get_registry)):
        data = reg.query.read_payload(definition_id, PayloadKind.CONFIGURATION)
        return Response(content=data, media_type="application/octet-stream")

    @app.get("/definitions/{definition_id}/secrets")
    def read_secrets(
        definition_id: str,
        x_api_key: Optional[str] = Header(default=None),
        reg: Registry = Depends(get_registry),
    ):
        expected = reg.settings.security.secrets_api_key
        if expected is None:
            return error_response(404, "not_found", "Secrets endpoint is disabled")
        if x_api_key is None or not hmac.compare_digest(
            x_api_key.encode("utf-8"), expected.encode("utf-8")
        ):
            logger.warning(f"Rejected secrets read for '{definition_id}'")
            return error_response(403, "forbidden", "Invalid or missing API key")
        data = reg.secrets.read(definition_id)
        return Response(
            content=data,
            media_type="application/octet-stream",
            headers={"Cache-Control": "no-store"},
        )

    return app
