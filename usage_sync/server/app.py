"""usage-sync FastAPI application."""

import json
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool
from starlette.responses import JSONResponse

from usage_sync import __version__
from usage_sync.errors import AuthenticationError, PersistenceError, ValidationError
from usage_sync.logging import RequestContext, get_logger
from usage_sync.server.service import ReconciliationService

logger = get_logger(__name__)

# Missing credentials are rejected by the service with a 401.
security = HTTPBearer(auto_error=False)

router = APIRouter(prefix="/api")


def create_app(service: ReconciliationService) -> FastAPI:
    """Build the API around a reconciliation service.

    Args:
        service: Service bound to the server's repository and settings

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(title="usage-sync API", version=__version__)
    app.state.service = service

    app.add_exception_handler(AuthenticationError, authentication_error_handler)
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(PersistenceError, persistence_error_handler)

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next):
        with RequestContext(request.headers.get("X-Request-ID")) as request_id:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response

    app.include_router(router)
    return app


def get_service(request: Request) -> ReconciliationService:
    """FastAPI dependency returning the application's service."""
    return request.app.state.service


def bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """FastAPI dependency extracting the bearer token, if any."""
    return credentials.credentials if credentials else None


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/submit/checksum")
def get_checksums(
    token: Optional[str] = Depends(bearer_token),
    service: ReconciliationService = Depends(get_service),
):
    """Fingerprints of everything stored for the caller: date -> source -> hash."""
    return service.get_fingerprints(token)


@router.post("/submit")
async def submit(
    request: Request,
    token: Optional[str] = Depends(bearer_token),
    service: ReconciliationService = Depends(get_service),
):
    """Accept a full or diff-reduced usage submission."""
    # Credentials are checked before the body is parsed.
    await run_in_threadpool(service.authenticate, token)

    try:
        payload = json.loads(await request.body())
    except (ValueError, UnicodeDecodeError):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})

    result = await run_in_threadpool(service.submit, token, payload)
    logger.info(
        "submission_accepted",
        submission_id=result.submission_id,
        total_tokens=result.total_tokens,
        days=len(payload.get("contributions", [])),
    )
    return result.to_dict()


async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": str(exc)})


async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": exc.message, "details": exc.details})


async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("submission_persistence_failed", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"error": "Internal server error"})
