# vaultscan/dependencies/services.py
"""
Per-request construction of the scan pipeline services.

Each request gets its own HTTP client and service objects bound to its own DB
session. Tests swap the storage adapter / HTTP client through
``app.dependency_overrides``.
"""
from __future__ import annotations

from typing import Generator

import httpx
from fastapi import Depends
from sqlalchemy.orm import Session

from vaultscan.core.config import settings
from vaultscan.core.database import get_db
from vaultscan.services.cloudmersive import CloudmersiveService
from vaultscan.services.quarantine import QuarantineService
from vaultscan.services.scan_cache import ScanCacheService
from vaultscan.services.storage import StorageAdapter
from vaultscan.services.vault_scans import VaultScanProcessor


def get_http_client() -> Generator[httpx.Client, None, None]:
    client = httpx.Client(timeout=settings.TRANSFER_HTTP_TIMEOUT)
    try:
        yield client
    finally:
        client.close()


def get_storage_adapter() -> StorageAdapter:
    return StorageAdapter(settings)


def get_scanner_http_client() -> Generator[httpx.Client, None, None]:
    # Scans can run much longer than object transfers.
    client = httpx.Client(timeout=settings.SCAN_HTTP_TIMEOUT)
    try:
        yield client
    finally:
        client.close()


def get_scanner(http: httpx.Client = Depends(get_scanner_http_client)) -> CloudmersiveService:
    return CloudmersiveService(config=settings, http_client=http)


def get_quarantine_service(
    db: Session = Depends(get_db),
    storage: StorageAdapter = Depends(get_storage_adapter),
    http: httpx.Client = Depends(get_http_client),
) -> QuarantineService:
    return QuarantineService(db, storage, config=settings, http_client=http)


def get_scan_processor(
    db: Session = Depends(get_db),
    storage: StorageAdapter = Depends(get_storage_adapter),
    scanner: CloudmersiveService = Depends(get_scanner),
    quarantine: QuarantineService = Depends(get_quarantine_service),
    http: httpx.Client = Depends(get_http_client),
) -> VaultScanProcessor:
    return VaultScanProcessor(
        db,
        storage=storage,
        scanner=scanner,
        quarantine=quarantine,
        cache=ScanCacheService(db, config=settings),
        config=settings,
        http_client=http,
    )
