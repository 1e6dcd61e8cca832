from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import BigInteger, Column, DateTime, Enum as SAEnum, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON, TypeDecorator

from vaultscan.core.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JSONBCompat(TypeDecorator):
    impl = JSONB
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB(astext_type=Text()))
        return dialect.type_descriptor(JSON())


class ScanStatus(str, PyEnum):
    pending = "pending"
    scanning = "scanning"
    clean = "clean"
    infected = "infected"
    error = "error"


TERMINAL_SCAN_STATUSES = frozenset({ScanStatus.clean, ScanStatus.infected, ScanStatus.error})


class StorageProvider(str, PyEnum):
    r2_staging = "r2_staging"
    b2 = "b2"
    r2 = "r2"
    # Only copy lives in the quarantine bucket; location is in quarantine_info.
    r2_quarantine = "r2_quarantine"


class VaultItem(Base):
    __tablename__ = "vault_items"

    id = Column(String(64), primary_key=True, default=lambda: uuid.uuid4().hex)
    user_id = Column(String(128), nullable=False, index=True)

    name = Column(String(512), nullable=False)
    mime_type = Column(String(255), nullable=True)
    size = Column(BigInteger, nullable=True)

    storage_provider = Column(
        SAEnum(StorageProvider, native_enum=False, length=20),
        nullable=False,
        default=StorageProvider.r2_staging,
        index=True,
    )
    # Exactly one of these pairs (or quarantine_info) is populated at a time.
    r2_staging_bucket = Column(String(255), nullable=True)
    r2_staging_key = Column(String(1024), nullable=True)
    b2_bucket = Column(String(255), nullable=True)
    b2_key = Column(String(1024), nullable=True)
    r2_bucket = Column(String(255), nullable=True)
    r2_key = Column(String(1024), nullable=True)

    scan_status = Column(
        SAEnum(ScanStatus, native_enum=False, length=20),
        nullable=False,
        default=ScanStatus.pending,
        index=True,
    )
    scan_started_at = Column(DateTime(timezone=True), nullable=True)
    # {scannedAt, threats, provider, safe, error?, localThreats?}
    scan_results = Column(JSONBCompat(), nullable=True)
    # {quarantinedAt, reason, quarantineBucket, quarantineKey}
    quarantine_info = Column(JSONBCompat(), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def storage_locations(self) -> dict[str, tuple[str, str]]:
        """Every store that currently holds a (bucket, key) for this item."""
        locations: dict[str, tuple[str, str]] = {}
        if self.r2_staging_key:
            locations["staging"] = (self.r2_staging_bucket or "", self.r2_staging_key)
        if self.b2_key:
            locations["final"] = (self.b2_bucket or "", self.b2_key)
        elif self.r2_key:
            locations["final"] = (self.r2_bucket or "", self.r2_key)
        info = self.quarantine_info or {}
        if info.get("quarantineKey"):
            locations["quarantine"] = (info.get("quarantineBucket") or "", info["quarantineKey"])
        return locations

    @property
    def is_staged(self) -> bool:
        return self.storage_provider == StorageProvider.r2_staging and bool(self.r2_staging_key)
