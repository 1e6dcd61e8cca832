import logging
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vaultscan.auth.identity import Identity
from vaultscan.core.config import settings, require_jwt_secret
from vaultscan.dependencies.admin import require_admin_identity
from vaultscan.dependencies.services import get_scanner
from vaultscan.routes.scan_webhook import router as scan_webhook_router
from vaultscan.routes.vault_scans import router as vault_scans_router
from vaultscan.schemas.vault_scan import ScannerHealthOut
from vaultscan.services.cloudmersive import CloudmersiveService

logger = logging.getLogger(__name__)

require_jwt_secret()

app = FastAPI(title="Vault Scan Service")
logger.info(
    "Startup config: ENV=%s PRESCREEN_MODE=%s FINAL_STORAGE_PROVIDER=%s scanner_key_configured=%s",
    settings.ENV,
    settings.PRESCREEN_MODE,
    settings.FINAL_STORAGE_PROVIDER,
    bool(settings.CLOUDMERSIVE_API_KEY),
)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
}


def _error_code(status_code: int) -> str:
    return _ERROR_CODE_BY_STATUS.get(int(status_code), "HTTP_ERROR")


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):  # noqa: ARG001
    detail = exc.detail
    message: str
    details: dict | None = None

    if isinstance(detail, str):
        message = detail
    elif isinstance(detail, dict):
        msg = detail.get("message")
        message = msg if isinstance(msg, str) and msg else "Request failed"
        det = detail.get("details")
        details = det if isinstance(det, dict) else None
    else:
        message = str(detail) if detail is not None else "Request failed"

    payload: dict = {"error": _error_code(exc.status_code), "message": message}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request payload",
            "details": {"errors": exc.errors()},
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(vault_scans_router)
app.include_router(scan_webhook_router)

@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/health/scanner", response_model=ScannerHealthOut)
def scanner_health(
    identity: Identity = Depends(require_admin_identity),  # noqa: ARG001
    scanner: CloudmersiveService = Depends(get_scanner),
) -> ScannerHealthOut:
    if not scanner.validate_configuration():
        raise HTTPException(status_code=502, detail="Scanner is not reachable or not configured")
    quota = scanner.get_api_status()
    return ScannerHealthOut(
        configured=True,
        remaining_quota=quota.remaining_quota,
        reset_time=quota.reset_time,
    )
