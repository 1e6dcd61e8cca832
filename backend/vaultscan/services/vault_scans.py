from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vaultscan.core.config import Settings, settings as default_settings
from vaultscan.models.vault_item import ScanStatus, StorageProvider, VaultItem, utcnow
from vaultscan.services.cloudmersive import CloudmersiveService, ScanResult
from vaultscan.services.errors import VaultScanError
from vaultscan.services.notifications import notify_file_quarantined
from vaultscan.services.prescreen import compute_file_hash, prescreen
from vaultscan.services.quarantine import FileTransferResult, QuarantineService, TransferError, file_name_from_key
from vaultscan.services.scan_cache import ScanCacheService
from vaultscan.services.storage import StorageAdapter

logger = logging.getLogger(__name__)

INTERNAL_PROVIDER = "internal"
PROCESSING_ERROR_PROVIDER = "processing_error"


class ScanProcessingError(VaultScanError):
    """A single item could not be taken through the scan pipeline."""


class ItemNotFoundError(VaultScanError):
    pass


class ItemAccessDeniedError(VaultScanError):
    pass


class ItemNotClaimableError(VaultScanError):
    """Item is not staged, already scanned, or claimed by another run."""


@dataclass
class BatchScanResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class SingleScanResult:
    item_id: str
    status: ScanStatus
    safe: bool
    threats: list[str]
    scan_provider: str
    from_cache: bool = False
    local_threats: list[str] = field(default_factory=list)
    transfer: FileTransferResult | None = None
    already_scanned: bool = False
    message: str | None = None


class VaultScanProcessor:
    """
    Drives staged vault items through download -> hash -> cache -> pre-screen
    -> external scan -> quarantine/release.
    """

    def __init__(
        self,
        db: Session,
        *,
        storage: StorageAdapter,
        scanner: CloudmersiveService,
        quarantine: QuarantineService,
        cache: ScanCacheService,
        config: Settings | None = None,
        http_client: httpx.Client | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.storage = storage
        self.scanner = scanner
        self.quarantine = quarantine
        self.cache = cache
        self.config = config or default_settings
        self.http = http_client or httpx.Client(timeout=self.config.TRANSFER_HTTP_TIMEOUT)
        self.now = clock or utcnow

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------
    def claim_item(self, item: VaultItem, *, force_rescan: bool = False) -> bool:
        """
        Flip the item to ``scanning`` only if nobody changed its status since
        we read it. The row count of the conditional UPDATE decides ownership.
        """
        expected = item.scan_status
        if expected != ScanStatus.pending and not force_rescan:
            return False

        now = self.now()
        claimed = (
            self.db.query(VaultItem)
            .filter(
                VaultItem.id == item.id,
                VaultItem.scan_status == expected,
                VaultItem.storage_provider == StorageProvider.r2_staging,
            )
            .update(
                {
                    VaultItem.scan_status: ScanStatus.scanning,
                    VaultItem.scan_started_at: now,
                    VaultItem.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        if claimed != 1:
            return False
        self.db.refresh(item)
        return True

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------
    def select_batch(self, batch_size: int, force_rescan: bool = False) -> list[VaultItem]:
        query = self.db.query(VaultItem).filter(VaultItem.storage_provider == StorageProvider.r2_staging)
        if not force_rescan:
            query = query.filter(VaultItem.scan_status == ScanStatus.pending)
        return query.order_by(VaultItem.created_at.asc(), VaultItem.id.asc()).limit(batch_size).all()

    def process_vault_item_scans(self, batch_size: int | None = None, force_rescan: bool = False) -> BatchScanResult:
        size = batch_size or self.config.SCAN_BATCH_SIZE
        try:
            items = self.select_batch(size, force_rescan)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to select vault items for scanning batch_size=%s", size)
            raise ScanProcessingError(f"Failed to list items for scanning: {exc}") from exc

        logger.info("Processing vault item scans count=%s batch_size=%s force_rescan=%s", len(items), size, force_rescan)
        result = BatchScanResult()

        for item in items:
            item_id = item.id
            try:
                claimed = self.claim_item(item, force_rescan=force_rescan)
            except SQLAlchemyError:
                self.db.rollback()
                logger.exception("Failed to claim vault item item=%s", item_id)
                claimed = False
            if not claimed:
                logger.info("Vault item already claimed; skipping item=%s", item_id)
                continue

            result.processed += 1
            try:
                self.process_single_item(item)
                result.succeeded += 1
            except Exception as exc:  # pylint: disable=broad-except
                self.db.rollback()
                logger.exception("Failed to scan vault item item=%s", item_id)
                result.failed += 1
                result.errors.append(f"{item_id}: {exc}")
                self.mark_error(item_id, str(exc))

        logger.info(
            "Vault scan batch complete processed=%s succeeded=%s failed=%s",
            result.processed,
            result.succeeded,
            result.failed,
        )
        return result

    def mark_error(self, item_id: str, message: str) -> None:
        now = self.now()
        try:
            item = self.db.get(VaultItem, item_id)
            if item is None:
                return
            item.scan_status = ScanStatus.error
            item.scan_results = {
                "scannedAt": now.isoformat(),
                "error": message[:1024],
                "provider": PROCESSING_ERROR_PROVIDER,
            }
            item.updated_at = now
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to mark vault item as errored item=%s", item_id)

    # ------------------------------------------------------------------
    # Single item
    # ------------------------------------------------------------------
    def _download_staged(self, item: VaultItem) -> bytes:
        signed = self.storage.generate_download_url(
            path=item.r2_staging_key,
            bucket=item.r2_staging_bucket or self.config.STAGING_BUCKET,
            provider=StorageProvider.r2_staging,
            expires_in=self.config.SIGNED_URL_EXPIRES_SECONDS,
        )
        response = self.http.get(signed.signed_url)
        if not response.is_success:
            raise ScanProcessingError(f"Failed to download staged file: {response.status_code} {response.reason_phrase}")
        return response.content

    def process_single_item(self, item: VaultItem) -> SingleScanResult:
        if not item.is_staged:
            raise ItemNotClaimableError(f"Vault item {item.id} is not in staging")

        item_id = item.id
        user_id = item.user_id
        staging_key = item.r2_staging_key
        file_name = item.name or file_name_from_key(staging_key)

        data = self._download_staged(item)
        file_hash = compute_file_hash(data)
        cached = self.cache.get(file_hash)
        local = prescreen(data, item.mime_type, file_name)
        enforce = self.config.PRESCREEN_MODE == "enforce"

        if local.threats:
            logger.warning(
                "Pre-screen findings item=%s user=%s mode=%s threats=%s",
                item_id,
                user_id,
                self.config.PRESCREEN_MODE,
                local.threats,
            )

        from_cache = False
        if enforce and local.threats:
            scan_result = ScanResult(
                safe=False,
                threats=list(local.threats),
                file_hash=file_hash,
                scan_provider=INTERNAL_PROVIDER,
            )
        elif cached is not None:
            scan_result = cached
            from_cache = True
        else:
            scan_result = self.scanner.scan_file(data, file_name, file_hash, user_id)
            self.cache.put(
                scan_result,
                file_name=file_name,
                mime_type=item.mime_type,
                file_size=len(data),
                user_id=user_id,
            )

        advisory_threats = [] if enforce else list(local.threats)
        transfer = self.quarantine.process_scan_result(
            item_id,
            staging_key,
            scan_result,
            user_id,
            local_threats=advisory_threats,
        )
        if not transfer.success:
            raise TransferError(transfer.error or "File transfer failed")

        if not scan_result.safe and not transfer.already_processed:
            notify_file_quarantined(
                self.db,
                user_id=user_id,
                item_id=item_id,
                file_name=file_name,
                threats=scan_result.threats,
            )

        return SingleScanResult(
            item_id=item_id,
            status=ScanStatus.clean if scan_result.safe else ScanStatus.infected,
            safe=scan_result.safe,
            threats=list(scan_result.threats),
            scan_provider=scan_result.scan_provider,
            from_cache=from_cache,
            local_threats=advisory_threats,
            transfer=transfer,
        )

    def _already_scanned(self, item: VaultItem) -> SingleScanResult:
        results = item.scan_results or {}
        return SingleScanResult(
            item_id=item.id,
            status=item.scan_status,
            safe=item.scan_status == ScanStatus.clean,
            threats=list(results.get("threats") or []),
            scan_provider=str(results.get("provider") or ""),
            local_threats=list(results.get("localThreats") or []),
            already_scanned=True,
            message=f"Item already scanned with status: {item.scan_status.value}",
        )

    def scan_item_for_user(self, item_id: str, user_id: str, *, force_rescan: bool = False) -> SingleScanResult:
        item = self.db.get(VaultItem, item_id)
        if item is None:
            raise ItemNotFoundError(f"Vault item {item_id} not found")
        if item.user_id != user_id:
            raise ItemAccessDeniedError("You can only scan your own vault items")
        if not force_rescan and item.scan_status != ScanStatus.pending:
            return self._already_scanned(item)
        if not item.is_staged:
            raise ItemNotClaimableError("Vault item is no longer in staging")
        if not self.claim_item(item, force_rescan=force_rescan):
            raise ItemNotClaimableError("Vault item has already been scanned or is being scanned")

        try:
            return self.process_single_item(item)
        except Exception as exc:  # pylint: disable=broad-except
            self.db.rollback()
            logger.exception("Failed to scan vault item item=%s user=%s", item_id, user_id)
            self.mark_error(item_id, str(exc))
            raise ScanProcessingError(f"Scan failed: {exc}") from exc

    def quarantine_status(self, user_id: str) -> dict[str, Any]:
        return self.quarantine.quarantine_status_for_user(user_id)
