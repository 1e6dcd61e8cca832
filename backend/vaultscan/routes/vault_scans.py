from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from vaultscan.auth.identity import Identity
from vaultscan.dependencies.admin import require_admin_identity
from vaultscan.dependencies.auth import get_current_identity
from vaultscan.dependencies.services import get_scan_processor
from vaultscan.schemas.vault_scan import (
    BatchScanOut,
    ProcessScansIn,
    QuarantinedFileOut,
    QuarantineStatusOut,
    ScanItemIn,
    ScanItemOut,
)
from vaultscan.services.vault_scans import (
    ItemAccessDeniedError,
    ItemNotClaimableError,
    ItemNotFoundError,
    ScanProcessingError,
    VaultScanProcessor,
)

router = APIRouter(prefix="/vault", tags=["vault-scans"])

logger = logging.getLogger(__name__)


@router.post("/scans/process", response_model=BatchScanOut)
def process_pending_scans(
    payload: ProcessScansIn | None = None,
    identity: Identity = Depends(require_admin_identity),
    processor: VaultScanProcessor = Depends(get_scan_processor),
) -> BatchScanOut:
    payload = payload or ProcessScansIn()
    logger.info(
        "Manual scan batch requested admin=%s batch_size=%s force_rescan=%s",
        identity.user_id,
        payload.batch_size,
        payload.force_rescan,
    )
    try:
        result = processor.process_vault_item_scans(payload.batch_size, payload.force_rescan)
    except ScanProcessingError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return BatchScanOut(
        processed=result.processed,
        succeeded=result.succeeded,
        failed=result.failed,
        errors=result.errors,
    )


@router.post("/items/{item_id}/scan", response_model=ScanItemOut)
def scan_vault_item(
    item_id: str,
    payload: ScanItemIn | None = None,
    identity: Identity = Depends(get_current_identity),
    processor: VaultScanProcessor = Depends(get_scan_processor),
) -> ScanItemOut:
    payload = payload or ScanItemIn()
    try:
        result = processor.scan_item_for_user(item_id, identity.user_id, force_rescan=payload.force_rescan)
    except ItemNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vault item not found") from exc
    except ItemAccessDeniedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ItemNotClaimableError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ScanProcessingError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return ScanItemOut(
        item_id=result.item_id,
        status=result.status.value,
        safe=result.safe,
        threats=result.threats,
        scan_provider=result.scan_provider,
        from_cache=result.from_cache,
        local_threats=result.local_threats,
        already_scanned=result.already_scanned,
        message=result.message,
    )


@router.get("/quarantine", response_model=QuarantineStatusOut)
def get_quarantine_status(
    identity: Identity = Depends(get_current_identity),
    processor: VaultScanProcessor = Depends(get_scan_processor),
) -> QuarantineStatusOut:
    data = processor.quarantine_status(identity.user_id)
    return QuarantineStatusOut(
        quarantined_files=[QuarantinedFileOut.model_validate(r) for r in data["quarantined_files"]],
        quarantined_count=data["quarantined_count"],
        pending_scans_count=data["pending_scans_count"],
    )
