from __future__ import annotations

import logging
from typing import Any

import httpx
from sqlalchemy.orm import Session

from vaultscan.celery_app import celery_app
from vaultscan.core.config import settings
from vaultscan.core.database import SessionLocal
from vaultscan.services.cloudmersive import CloudmersiveService
from vaultscan.services.quarantine import QuarantineService
from vaultscan.services.scan_cache import ScanCacheService
from vaultscan.services.storage import StorageAdapter
from vaultscan.services.vault_scans import VaultScanProcessor


logger = logging.getLogger(__name__)


def _with_db_session() -> Session:
    return SessionLocal()


def _build_processor(db: Session, http: httpx.Client, scan_http: httpx.Client) -> VaultScanProcessor:
    storage = StorageAdapter(settings)
    return VaultScanProcessor(
        db,
        storage=storage,
        scanner=CloudmersiveService(config=settings, http_client=scan_http),
        quarantine=QuarantineService(db, storage, config=settings, http_client=http),
        cache=ScanCacheService(db, config=settings),
        config=settings,
        http_client=http,
    )


@celery_app.task(name="scanning.scheduled_scan_processor")
def scheduled_scan_processor(batch_size: int | None = None) -> dict[str, Any]:
    db = _with_db_session()
    http = httpx.Client(timeout=settings.TRANSFER_HTTP_TIMEOUT)
    scan_http = httpx.Client(timeout=settings.SCAN_HTTP_TIMEOUT)
    try:
        result = _build_processor(db, http, scan_http).process_vault_item_scans(
            batch_size or settings.SCHEDULED_SCAN_BATCH_SIZE,
            False,
        )
        logger.info(
            "Scheduled scan run finished processed=%s succeeded=%s failed=%s",
            result.processed,
            result.succeeded,
            result.failed,
        )
        return {
            "processed": result.processed,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "errors": result.errors,
        }
    finally:
        scan_http.close()
        http.close()
        db.close()


@celery_app.task(name="scanning.cleanup_quarantined_files")
def cleanup_quarantined_files() -> dict[str, Any]:
    db = _with_db_session()
    http = httpx.Client(timeout=settings.TRANSFER_HTTP_TIMEOUT)
    try:
        service = QuarantineService(db, StorageAdapter(settings), config=settings, http_client=http)
        result = service.cleanup_expired_quarantined_files()
        logger.info("Quarantine cleanup finished cleaned=%s errors=%s", result.cleaned, len(result.errors))
        return {"cleaned": result.cleaned, "errors": result.errors}
    finally:
        http.close()
        db.close()


@celery_app.task(name="scanning.cleanup_expired_scan_cache")
def cleanup_expired_scan_cache() -> dict[str, int]:
    db = _with_db_session()
    try:
        deleted = ScanCacheService(db, config=settings).cleanup_expired()
        return {"deleted": deleted}
    finally:
        db.close()
