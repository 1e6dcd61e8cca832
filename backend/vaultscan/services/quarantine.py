"""
Quarantine / release orchestrator.

Moves a staged object to its destination once a verdict exists:

    clean    -> final storage (b2 or r2)
    infected -> quarantine bucket + QuarantinedFile audit record

Ordering is always "write destination, then delete staging, then point the
vault item at the destination". If any step fails the item row is left
untouched, so it never references two live copies.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vaultscan.core.config import Settings, settings as default_settings
from vaultscan.models.quarantined_file import QuarantinedFile
from vaultscan.models.vault_item import ScanStatus, StorageProvider, VaultItem, utcnow
from vaultscan.services.cloudmersive import ScanResult
from vaultscan.services.errors import VaultScanError
from vaultscan.services.storage import StorageAdapter, StorageError

logger = logging.getLogger(__name__)

CLEANUP_PAGE_SIZE = 100
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class TransferError(VaultScanError):
    """A staging -> destination copy could not be completed."""


@dataclass
class FileTransferResult:
    success: bool
    source_deleted: bool = False
    target_created: bool = False
    error: str | None = None
    target_key: str | None = None
    transfer_size_bytes: int | None = None
    transfer_duration_ms: int | None = None
    # Item was already finalized by an earlier call; nothing was moved.
    already_processed: bool = False


@dataclass
class CleanupResult:
    cleaned: int = 0
    errors: list[str] = field(default_factory=list)


def file_name_from_key(key: str) -> str:
    return (key or "").rsplit("/", 1)[-1] or "unknown"


def threats_reason(threats: list[str]) -> str:
    return f"Threats detected: {', '.join(threats)}"


def scan_results_payload(
    scan_result: ScanResult,
    *,
    scanned_at: datetime,
    local_threats: list[str] | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "scannedAt": scanned_at.isoformat(),
        "threats": list(scan_result.threats),
        "provider": scan_result.scan_provider,
        "safe": scan_result.safe,
        "fileHash": scan_result.file_hash,
    }
    if local_threats:
        payload["localThreats"] = list(local_threats)
    return payload


class QuarantineService:
    def __init__(
        self,
        db: Session,
        storage: StorageAdapter,
        *,
        config: Settings | None = None,
        http_client: httpx.Client | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.storage = storage
        self.config = config or default_settings
        self.http = http_client or httpx.Client(timeout=self.config.TRANSFER_HTTP_TIMEOUT)
        self.now = clock or utcnow

    # ------------------------------------------------------------------
    # Verdict dispatch
    # ------------------------------------------------------------------
    def process_scan_result(
        self,
        item_id: str,
        staging_key: str,
        scan_result: ScanResult,
        user_id: str,
        *,
        local_threats: list[str] | None = None,
    ) -> FileTransferResult:
        logger.info(
            "Processing scan result item=%s staging_key=%s verdict=%s threats=%s user=%s",
            item_id,
            staging_key,
            "clean" if scan_result.safe else "infected",
            scan_result.threats,
            user_id,
        )

        item = self.db.get(VaultItem, item_id)
        if item is None:
            return FileTransferResult(success=False, error=f"Vault item {item_id} not found")

        if not item.is_staged or item.r2_staging_key != staging_key:
            if item.scan_status in (ScanStatus.clean, ScanStatus.infected):
                logger.info(
                    "Scan result already applied item=%s status=%s; ignoring repeat call",
                    item_id,
                    item.scan_status.value,
                )
                return FileTransferResult(success=True, already_processed=True)
            return FileTransferResult(success=False, error=f"Vault item {item_id} is not staged at {staging_key}")

        try:
            if scan_result.safe:
                return self.move_to_final_storage(item, user_id, scan_result, local_threats=local_threats)
            return self.move_to_quarantine(item, user_id, scan_result, local_threats=local_threats)
        except (TransferError, StorageError, httpx.HTTPError, SQLAlchemyError) as exc:
            self.db.rollback()
            logger.exception("Failed to process scan result item=%s staging_key=%s user=%s", item_id, staging_key, user_id)
            return FileTransferResult(success=False, error=str(exc))

    # ------------------------------------------------------------------
    # Clean path
    # ------------------------------------------------------------------
    def move_to_final_storage(
        self,
        item: VaultItem,
        user_id: str,
        scan_result: ScanResult,
        *,
        local_threats: list[str] | None = None,
    ) -> FileTransferResult:
        started = time.monotonic()
        provider = StorageProvider(self.config.FINAL_STORAGE_PROVIDER)
        bucket = self.config.FINAL_STORAGE_BUCKET
        staging_key = item.r2_staging_key
        final_key = self.final_storage_key(staging_key, user_id)

        logger.info(
            "Moving clean file to final storage item=%s staging_key=%s final_key=%s provider=%s user=%s",
            item.id,
            staging_key,
            final_key,
            provider.value,
            user_id,
        )

        size = self._transfer(item, dest_key=final_key, dest_bucket=bucket, dest_provider=provider)

        now = self.now()
        item.storage_provider = provider
        item.r2_staging_bucket = None
        item.r2_staging_key = None
        if provider == StorageProvider.b2:
            item.b2_bucket = bucket
            item.b2_key = final_key
        else:
            item.r2_bucket = bucket
            item.r2_key = final_key
        item.size = size
        item.scan_status = ScanStatus.clean
        item.quarantine_info = None
        item.scan_results = scan_results_payload(scan_result, scanned_at=now, local_threats=local_threats)
        item.updated_at = now
        self.db.commit()

        duration = int((time.monotonic() - started) * 1000)
        logger.info("File moved to final storage item=%s final_key=%s size=%s duration_ms=%s", item.id, final_key, size, duration)
        return FileTransferResult(
            success=True,
            source_deleted=True,
            target_created=True,
            target_key=final_key,
            transfer_size_bytes=size,
            transfer_duration_ms=duration,
        )

    # ------------------------------------------------------------------
    # Infected path
    # ------------------------------------------------------------------
    def move_to_quarantine(
        self,
        item: VaultItem,
        user_id: str,
        scan_result: ScanResult,
        *,
        local_threats: list[str] | None = None,
    ) -> FileTransferResult:
        started = time.monotonic()
        bucket = self.config.QUARANTINE_BUCKET
        staging_key = item.r2_staging_key
        quarantine_key = self.quarantine_key(staging_key, user_id)
        now = self.now()

        logger.warning(
            "Moving infected file to quarantine item=%s staging_key=%s quarantine_key=%s threats=%s user=%s",
            item.id,
            staging_key,
            quarantine_key,
            scan_result.threats,
            user_id,
        )

        size = self._transfer(
            item,
            dest_key=quarantine_key,
            dest_bucket=bucket,
            dest_provider=StorageProvider.r2_quarantine,
            metadata={
                "quarantined-at": now.isoformat(),
                "vault-item-id": item.id,
                "user-id": user_id,
                "threats": ";".join(scan_result.threats),
                "scan-provider": scan_result.scan_provider,
                "original-staging-key": staging_key,
            },
        )

        reason = threats_reason(scan_result.threats)
        self.db.add(
            QuarantinedFile(
                vault_item_id=item.id,
                user_id=user_id,
                file_name=file_name_from_key(staging_key),
                original_size=size,
                quarantined_at=now,
                reason=reason,
                threats=list(scan_result.threats),
                scan_provider=scan_result.scan_provider,
                staging_path=staging_key,
                quarantine_path=quarantine_key,
                retention_expiry=now + timedelta(days=self.config.QUARANTINE_RETENTION_DAYS),
            )
        )

        item.storage_provider = StorageProvider.r2_quarantine
        item.r2_staging_bucket = None
        item.r2_staging_key = None
        item.size = size
        item.scan_status = ScanStatus.infected
        item.quarantine_info = {
            "quarantinedAt": now.isoformat(),
            "reason": reason,
            "quarantineKey": quarantine_key,
            "quarantineBucket": bucket,
        }
        item.scan_results = scan_results_payload(scan_result, scanned_at=now, local_threats=local_threats)
        item.updated_at = now
        self.db.commit()

        duration = int((time.monotonic() - started) * 1000)
        logger.warning(
            "File quarantined item=%s quarantine_key=%s threats=%s duration_ms=%s user=%s",
            item.id,
            quarantine_key,
            scan_result.threats,
            duration,
            user_id,
        )
        return FileTransferResult(
            success=True,
            source_deleted=True,
            target_created=True,
            target_key=quarantine_key,
            transfer_size_bytes=size,
            transfer_duration_ms=duration,
        )

    # ------------------------------------------------------------------
    # Transfer helpers
    # ------------------------------------------------------------------
    def _timestamp_ms(self) -> int:
        return int(self.now().timestamp() * 1000)

    def final_storage_key(self, staging_key: str, user_id: str) -> str:
        return f"vault/{user_id}/{self._timestamp_ms()}_{file_name_from_key(staging_key)}"

    def quarantine_key(self, staging_key: str, user_id: str) -> str:
        return f"quarantine/{user_id}/{self._timestamp_ms()}_{file_name_from_key(staging_key)}"

    def _transfer(
        self,
        item: VaultItem,
        *,
        dest_key: str,
        dest_bucket: str,
        dest_provider: StorageProvider,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """GET staging -> PUT destination -> DELETE staging. Returns bytes moved."""
        staging_key = item.r2_staging_key
        staging_bucket = item.r2_staging_bucket or self.config.STAGING_BUCKET
        expires_in = self.config.SIGNED_URL_EXPIRES_SECONDS

        download = self.storage.generate_download_url(
            path=staging_key,
            bucket=staging_bucket,
            provider=StorageProvider.r2_staging,
            expires_in=expires_in,
        )
        response = self.http.get(download.signed_url)
        if not response.is_success:
            raise TransferError(f"Failed to download from staging: {response.status_code} {response.reason_phrase}")

        data = response.content
        content_type = response.headers.get("content-type") or item.mime_type or DEFAULT_CONTENT_TYPE

        upload = self.storage.generate_upload_url(
            path=dest_key,
            bucket=dest_bucket,
            provider=dest_provider,
            expires_in=expires_in,
            content_type=content_type,
            metadata=metadata,
        )
        put = self.http.put(upload.signed_url, content=data, headers=upload.headers)
        if not put.is_success:
            raise TransferError(
                f"Failed to upload to {dest_provider.value}/{dest_bucket}: {put.status_code} {put.reason_phrase}"
            )

        self.storage.delete_file(path=staging_key, bucket=staging_bucket, provider=StorageProvider.r2_staging)
        return len(data)

    # ------------------------------------------------------------------
    # Retention sweep / status
    # ------------------------------------------------------------------
    def cleanup_expired_quarantined_files(self, now: datetime | None = None) -> CleanupResult:
        """
        Delete quarantined objects (then their records) past retention.

        Works through pages of CLEANUP_PAGE_SIZE; a record that fails is
        reported once and skipped for the rest of the sweep.
        """
        cutoff = now or self.now()
        result = CleanupResult()
        failed_ids: set[int] = set()

        while True:
            query = self.db.query(QuarantinedFile).filter(QuarantinedFile.retention_expiry < cutoff)
            if failed_ids:
                query = query.filter(~QuarantinedFile.id.in_(failed_ids))
            page = query.order_by(QuarantinedFile.id.asc()).limit(CLEANUP_PAGE_SIZE).all()
            if not page:
                break

            for record in page:
                record_id = record.id
                quarantine_path = record.quarantine_path
                try:
                    self.storage.delete_file(
                        path=quarantine_path,
                        bucket=self.config.QUARANTINE_BUCKET,
                        provider=StorageProvider.r2_quarantine,
                    )
                    self.db.delete(record)
                    self.db.commit()
                except (StorageError, SQLAlchemyError) as exc:
                    self.db.rollback()
                    failed_ids.add(record_id)
                    result.errors.append(f"Failed to cleanup {record_id}: {exc}")
                    continue

                result.cleaned += 1
                logger.info("Cleaned up expired quarantined file record=%s path=%s", record_id, quarantine_path)

        if result.errors:
            logger.warning("Quarantine cleanup finished with errors cleaned=%s errors=%s", result.cleaned, result.errors)
        return result

    def quarantine_status_for_user(self, user_id: str, *, limit: int = 50) -> dict[str, Any]:
        records = (
            self.db.query(QuarantinedFile)
            .filter(QuarantinedFile.user_id == user_id)
            .order_by(QuarantinedFile.quarantined_at.desc())
            .limit(limit)
            .all()
        )
        pending = (
            self.db.query(VaultItem)
            .filter(VaultItem.user_id == user_id, VaultItem.scan_status == ScanStatus.pending)
            .count()
        )
        return {
            "quarantined_files": records,
            "quarantined_count": len(records),
            "pending_scans_count": pending,
        }
