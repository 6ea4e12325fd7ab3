import logging
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .errors import AuthenticationError, IngestError, QueryError, ValidationError
from .service import EventService

LOGGER = logging.getLogger(__name__)


def build_app(service: EventService) -> FastAPI:
    """Wire public probes and the tenant-authenticated event endpoints.

    Public: ``/health``, ``/ready``. Authenticated via ``X-API-Key``:
    ``POST /events`` and ``GET /metrics``.
    """
    app = FastAPI(title="event-store", docs_url=None, redoc_url=None)

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "invalid JSON payload"})

    @app.exception_handler(ValidationError)
    async def _invalid_input(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(AuthenticationError)
    async def _unauthorized(request: Request, exc: AuthenticationError) -> JSONResponse:
        return JSONResponse(status_code=401, content={"error": "unauthorized"})

    @app.exception_handler(IngestError)
    async def _insert_failed(request: Request, exc: IngestError) -> JSONResponse:
        LOGGER.warning("POST %s outcome unknown: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": "db insert failed"})

    @app.exception_handler(QueryError)
    async def _query_failed(request: Request, exc: QueryError) -> JSONResponse:
        LOGGER.warning("GET %s failed: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": "db query failed"})

    def _tenant(x_api_key: Optional[str] = Header(None)) -> str:
        return service.authenticate(x_api_key)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/ready")
    def ready():
        if not service.ready():
            return JSONResponse(status_code=503, content={"status": "not_ready"})
        return {"status": "ready"}

    @app.post("/events")
    def ingest_event(
        payload: Dict[str, Any] = Body(...),
        idempotency_key: Optional[str] = Header(None),
        tenant_id: str = Depends(_tenant),
    ):
        result = service.ingest_event(tenant_id, payload, idempotency_key=idempotency_key)
        status_code = 200 if result.duplicate else 201
        return JSONResponse(status_code=status_code, content=result.to_dict())

    @app.get("/metrics")
    def count_events(
        event_name: Optional[str] = None,
        from_: Optional[str] = Query(None, alias="from"),
        to: Optional[str] = None,
        tenant_id: str = Depends(_tenant),
    ):
        return service.count_events(tenant_id, event_name, from_, to).to_dict()

    return app
