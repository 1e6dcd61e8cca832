from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

MAX_BATCH_SIZE = 100


class ProcessScansIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_size: int | None = Field(default=None, alias="batchSize", ge=1, le=MAX_BATCH_SIZE)
    force_rescan: bool = Field(default=False, alias="forceRescan")


class ScanItemIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    force_rescan: bool = Field(default=False, alias="forceRescan")


class BatchScanOut(BaseModel):
    processed: int
    succeeded: int
    failed: int
    errors: list[str]


class ScanItemOut(BaseModel):
    item_id: str
    status: str
    safe: bool
    threats: list[str]
    scan_provider: str
    from_cache: bool
    local_threats: list[str]
    already_scanned: bool = False
    message: str | None = None


class QuarantinedFileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    vault_item_id: str
    file_name: str
    original_size: int
    quarantined_at: datetime
    reason: str
    threats: list[str]
    scan_provider: str
    retention_expiry: datetime


class QuarantineStatusOut(BaseModel):
    quarantined_files: list[QuarantinedFileOut]
    quarantined_count: int
    pending_scans_count: int


class ScannerHealthOut(BaseModel):
    configured: bool
    remaining_quota: int | None = None
    reset_time: datetime | None = None
