from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vaultscan.core.config import settings
from vaultscan.core.database import get_db
from vaultscan.core.security import constant_time_equals
from vaultscan.models.vault_item import TERMINAL_SCAN_STATUSES, ScanStatus, StorageProvider, VaultItem, utcnow
from vaultscan.services.notifications import notify_file_quarantined
from vaultscan.services.quarantine import threats_reason

router = APIRouter(tags=["internal"], include_in_schema=False)

logger = logging.getLogger(__name__)

HOOK_SECRET_HEADER = "x-hook-secret"
WEBHOOK_PROVIDER = "webhook"
_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _text(status_code: int, message: str) -> PlainTextResponse:
    return PlainTextResponse(message, status_code=status_code)


def _parse_status(raw: Any) -> ScanStatus | None:
    if not isinstance(raw, str):
        return None
    try:
        return ScanStatus(raw.strip().lower())
    except ValueError:
        return None


def _string_list(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [str(v) for v in raw if v is not None and str(v).strip()]


def apply_webhook_update(item: VaultItem, status: ScanStatus, details: dict[str, Any]) -> list[str]:
    """
    Write the worker's verdict onto the item using the same scan_results /
    quarantine_info shapes the orchestrator produces. Returns the threats.
    """
    now = utcnow()
    threats = _string_list(details.get("threats"))
    provider = details.get("provider") if isinstance(details.get("provider"), str) else WEBHOOK_PROVIDER
    error = details.get("error") if isinstance(details.get("error"), str) else None

    item.scan_status = status
    item.updated_at = now

    if status in TERMINAL_SCAN_STATUSES:
        results: dict[str, Any] = {
            "scannedAt": now.isoformat(),
            "threats": threats,
            "provider": provider,
            "safe": status == ScanStatus.clean,
        }
        if error:
            results["error"] = error[:1024]
        item.scan_results = results

    if status == ScanStatus.infected:
        # Keep quarantineKey/quarantineBucket if the orchestrator already moved it.
        info = dict(item.quarantine_info or {})
        info.setdefault("quarantinedAt", now.isoformat())
        info["reason"] = threats_reason(threats)
        item.quarantine_info = info
    elif status in TERMINAL_SCAN_STATUSES:
        item.quarantine_info = None
    return threats


@router.api_route("/hooks/vault-scan", methods=_ALL_METHODS)
async def vault_scan_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Scan status callback from the external scanning worker.

    Body: {"itemId": str, "status": pending|scanning|clean|infected|error,
           "details": {"threats": [...], "error": str, "provider": str}}
    Errors are plain text; success is {"success": true, "itemId", "status"}.
    Items already in quarantine only accept "infected" (409 otherwise).
    """
    if request.method != "POST":
        return _text(405, "Method Not Allowed")

    expected = settings.VAULT_SCAN_HOOK_SECRET
    if not expected:
        logger.error("Vault scan webhook called but VAULT_SCAN_HOOK_SECRET is not configured")
        return _text(500, "Webhook secret not configured")

    provided = request.headers.get(HOOK_SECRET_HEADER) or ""
    if not provided or not constant_time_equals(provided, expected):
        logger.warning("Rejected vault scan webhook with invalid secret client=%s", request.client.host if request.client else None)
        return _text(403, "Forbidden")

    raw = await request.body()
    try:
        payload = json.loads(raw.decode("utf-8") or "null")
    except (UnicodeDecodeError, ValueError):
        return _text(400, "Invalid JSON body")
    if not isinstance(payload, dict):
        return _text(400, "Invalid JSON body")

    item_id = payload.get("itemId")
    raw_status = payload.get("status")
    if not isinstance(item_id, str) or not item_id.strip() or raw_status is None:
        return _text(400, "Missing required fields: itemId, status")

    status = _parse_status(raw_status)
    if status is None:
        return _text(400, f"Invalid status: {raw_status}")

    details = payload.get("details")
    if not isinstance(details, dict):
        details = {}

    item = db.get(VaultItem, item_id.strip())
    if item is None:
        return _text(404, "Item not found")
    if item.storage_provider == StorageProvider.r2_quarantine and status != ScanStatus.infected:
        # Objects are never moved here, so a quarantined copy stays quarantined.
        logger.warning(
            "Rejected vault scan webhook for quarantined item item=%s status=%s", item.id, status.value
        )
        return _text(409, "Item is quarantined")

    try:
        threats = apply_webhook_update(item, status, details)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to apply vault scan webhook item=%s status=%s", item_id, status.value)
        return _text(500, "Failed to update item")

    logger.info("Vault scan webhook applied item=%s status=%s threats=%s", item.id, status.value, threats)

    if status == ScanStatus.infected:
        notify_file_quarantined(
            db,
            user_id=item.user_id,
            item_id=item.id,
            file_name=item.name,
            threats=threats,
        )

    return JSONResponse({"success": True, "itemId": item.id, "status": status.value})
