from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vaultscan.core.config import Settings, settings as default_settings
from vaultscan.models.file_scan_cache import FileScanCacheEntry
from vaultscan.models.vault_item import utcnow
from vaultscan.services.cloudmersive import PROVIDER, ScanResult

logger = logging.getLogger(__name__)


class ScanCacheService:
    """
    Hash-keyed verdict cache so identical bytes are not re-submitted to the
    external scanner within the TTL.

    Only real verdicts are stored: failed and size-skipped scans are never
    cached, otherwise a transient outage would pin a file as infected (or an
    oversized one as clean) for a whole TTL window.
    """

    def __init__(
        self,
        db: Session,
        *,
        config: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.config = config or default_settings
        self.now = clock or utcnow

    def get(self, file_hash: str) -> ScanResult | None:
        entry = (
            self.db.query(FileScanCacheEntry)
            .filter(FileScanCacheEntry.file_hash == file_hash, FileScanCacheEntry.expires_at > self.now())
            .order_by(FileScanCacheEntry.scanned_at.desc())
            .first()
        )
        if entry is None:
            return None
        logger.info("Scan cache hit hash=%s entry=%s", file_hash, entry.id)
        return ScanResult.from_dict(entry.scan_result or {})

    def put(
        self,
        result: ScanResult,
        *,
        file_name: str | None = None,
        mime_type: str | None = None,
        file_size: int | None = None,
        user_id: str | None = None,
    ) -> bool:
        """Best-effort write. Returns False (never raises) if the entry was not stored."""
        if result.scan_provider != PROVIDER or not result.file_hash:
            return False

        now = self.now()
        try:
            self.db.add(
                FileScanCacheEntry(
                    file_hash=result.file_hash,
                    file_name=file_name,
                    mime_type=mime_type,
                    file_size=file_size,
                    user_id=user_id,
                    scan_result=result.to_dict(),
                    scanned_at=now,
                    expires_at=now + timedelta(hours=self.config.SCAN_CACHE_TTL_HOURS),
                )
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to cache scan result hash=%s", result.file_hash)
            return False
        return True

    def cleanup_expired(self) -> int:
        deleted = (
            self.db.query(FileScanCacheEntry)
            .filter(FileScanCacheEntry.expires_at <= self.now())
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if deleted:
            logger.info("Removed expired scan cache entries count=%s", deleted)
        return deleted
