from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from conftest import FIXED_TS_MS, JPEG_BYTES, PE_BYTES

from vaultscan.core import config as app_config
from vaultscan.models.file_scan_cache import FileScanCacheEntry
from vaultscan.models.notification import Notification
from vaultscan.models.quarantined_file import QuarantinedFile
from vaultscan.models.vault_item import ScanStatus, StorageProvider, VaultItem
from vaultscan.services.cloudmersive import FAIL_CLOSED_THREAT
from vaultscan.services.vault_scans import (
    ItemAccessDeniedError,
    ItemNotClaimableError,
    ItemNotFoundError,
    ScanProcessingError,
)


def _infected_response(request):
    return httpx.Response(
        200,
        json={"CleanResult": False, "FoundViruses": [{"VirusName": "EICAR-Test-File", "EngineMatch": "ClamAV"}]},
    )


def test_batch_scans_pending_items_oldest_first(db_session, processor, network, object_store, make_item):
    first = make_item(name="a.jpg", created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
    second = make_item(name="b.jpg", created_at=datetime(2026, 1, 2, tzinfo=timezone.utc))
    make_item(name="c.jpg", created_at=datetime(2026, 1, 3, tzinfo=timezone.utc))

    result = processor.process_vault_item_scans(batch_size=2)

    assert result.processed == 2
    assert result.succeeded == 2
    assert result.failed == 0
    assert result.errors == []

    for item in (first, second):
        db_session.refresh(item)
        assert item.scan_status == ScanStatus.clean
        assert item.storage_provider == StorageProvider.b2

    still_pending = db_session.query(VaultItem).filter(VaultItem.scan_status == ScanStatus.pending).all()
    assert [i.name for i in still_pending] == ["c.jpg"]


def test_batch_skips_non_pending_unless_forced(db_session, processor, make_item):
    errored = make_item(name="e.jpg", scan_status=ScanStatus.error)

    assert processor.process_vault_item_scans(batch_size=10).processed == 0

    forced = processor.process_vault_item_scans(batch_size=10, force_rescan=True)
    assert forced.processed == 1
    assert forced.succeeded == 1
    db_session.refresh(errored)
    assert errored.scan_status == ScanStatus.clean


def test_batch_continues_after_a_failed_item(db_session, processor, make_item):
    broken = make_item(name="gone.jpg", upload=False, created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
    good = make_item(name="ok.jpg", created_at=datetime(2026, 1, 2, tzinfo=timezone.utc))

    result = processor.process_vault_item_scans(batch_size=10)

    assert result.processed == 2
    assert result.succeeded == 1
    assert result.failed == 1
    assert result.errors[0].startswith(f"{broken.id}:")

    db_session.refresh(broken)
    db_session.refresh(good)
    assert broken.scan_status == ScanStatus.error
    assert broken.scan_results["provider"] == "processing_error"
    assert "Failed to download staged file" in broken.scan_results["error"]
    assert broken.r2_staging_key is not None
    assert good.scan_status == ScanStatus.clean


def test_claim_is_exclusive(db_session, processor, make_item):
    item = make_item()
    stale_view = db_session.get(VaultItem, item.id)
    assert processor.claim_item(stale_view) is True

    # A second runner holding the same "pending" snapshot loses the race.
    db_session.query(VaultItem).filter(VaultItem.id == item.id).update(
        {VaultItem.scan_status: ScanStatus.scanning}, synchronize_session=False
    )
    db_session.commit()
    snapshot = VaultItem(id=item.id, scan_status=ScanStatus.pending)
    assert processor.claim_item(snapshot) is False


def test_external_scan_failure_quarantines_file(db_session, processor, network, object_store, make_item):
    network.scanner_handler = lambda request: httpx.Response(503, text="unavailable")
    item = make_item(name="abc.jpg", staging_key="staging/abc.jpg")

    result = processor.process_single_item(item)

    assert result.safe is False
    assert result.threats == [FAIL_CLOSED_THREAT]
    assert result.scan_provider == "cloudmersive_error"
    db_session.refresh(item)
    assert item.scan_status == ScanStatus.infected
    assert object_store.has("test-quarantine", f"quarantine/user-1/{FIXED_TS_MS}_abc.jpg")
    # Failed scans are never cached.
    assert db_session.query(FileScanCacheEntry).count() == 0


def test_infected_item_creates_quarantine_record_and_notification(db_session, processor, network, make_item):
    network.scanner_handler = _infected_response
    item = make_item(name="abc.jpg")

    result = processor.process_single_item(item)

    assert result.status == ScanStatus.infected
    assert result.threats == ["Virus: EICAR-Test-File (ClamAV)"]
    assert db_session.query(QuarantinedFile).count() == 1
    notes = db_session.query(Notification).all()
    assert len(notes) == 1
    assert notes[0].user_id == "user-1"
    assert notes[0].type == "security_alert"
    assert notes[0].data["itemId"] == item.id


def test_cache_hit_skips_external_scan(db_session, processor, network, make_item):
    first = make_item(name="a.jpg", staging_key="staging/a.jpg")
    processor.process_single_item(first)
    assert len(network.scanner_requests) == 1
    assert db_session.query(FileScanCacheEntry).count() == 1

    duplicate = make_item(user_id="user-2", name="copy.jpg", staging_key="staging/copy.jpg", data=JPEG_BYTES)
    result = processor.process_single_item(duplicate)

    assert result.from_cache is True
    assert result.safe is True
    assert len(network.scanner_requests) == 1


def test_advisory_prescreen_records_local_threats(db_session, processor, network, make_item):
    item = make_item(name="setup.exe", mime_type="application/octet-stream", data=PE_BYTES)

    result = processor.process_single_item(item)

    # External verdict is authoritative in advisory mode.
    assert result.safe is True
    assert "Detected exe file signature" in result.local_threats
    assert len(network.scanner_requests) == 1
    db_session.refresh(item)
    assert item.scan_status == ScanStatus.clean
    assert "High-risk file extension: .exe" in item.scan_results["localThreats"]


def test_enforce_prescreen_quarantines_without_external_call(db_session, processor, network, make_item):
    app_config.settings.PRESCREEN_MODE = "enforce"
    item = make_item(name="setup.exe", mime_type="application/octet-stream", data=PE_BYTES)

    result = processor.process_single_item(item)

    assert result.safe is False
    assert result.scan_provider == "internal"
    assert "Detected exe file signature" in result.threats
    assert network.scanner_requests == []
    db_session.refresh(item)
    assert item.scan_status == ScanStatus.infected


def test_oversized_file_is_released_with_skip_provider(db_session, processor, network, make_item):
    processor.scanner.max_file_size_for_scanning = 10
    item = make_item(name="big.jpg")

    result = processor.process_single_item(item)

    assert result.safe is True
    assert result.scan_provider == "cloudmersive_skipped_size"
    assert network.scanner_requests == []
    assert db_session.query(FileScanCacheEntry).count() == 0


def test_scan_item_for_user_enforces_ownership(processor, make_item):
    item = make_item(user_id="owner")
    with pytest.raises(ItemAccessDeniedError):
        processor.scan_item_for_user(item.id, "someone-else")
    with pytest.raises(ItemNotFoundError):
        processor.scan_item_for_user("missing", "owner")


def test_scan_item_for_user_reports_existing_status_without_force(db_session, processor, make_item):
    item = make_item(user_id="owner", scan_status=ScanStatus.error)

    existing = processor.scan_item_for_user(item.id, "owner")
    assert existing.already_scanned is True
    assert existing.status == ScanStatus.error
    assert existing.message == "Item already scanned with status: error"
    db_session.refresh(item)
    assert item.scan_status == ScanStatus.error

    result = processor.scan_item_for_user(item.id, "owner", force_rescan=True)
    assert result.status == ScanStatus.clean


def test_scan_item_for_user_rejects_finalized_item(processor, make_item):
    item = make_item(user_id="owner")
    processor.scan_item_for_user(item.id, "owner")

    repeat = processor.scan_item_for_user(item.id, "owner")
    assert repeat.already_scanned is True
    assert repeat.status == ScanStatus.clean
    assert repeat.safe is True
    assert repeat.scan_provider == "cloudmersive"

    with pytest.raises(ItemNotClaimableError):
        processor.scan_item_for_user(item.id, "owner", force_rescan=True)


def test_scan_item_for_user_marks_error_on_failure(db_session, processor, make_item):
    item = make_item(user_id="owner", upload=False)

    with pytest.raises(ScanProcessingError):
        processor.scan_item_for_user(item.id, "owner")

    db_session.refresh(item)
    assert item.scan_status == ScanStatus.error
