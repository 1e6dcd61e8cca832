from __future__ import annotations

import httpx
import pytest

from vaultscan.services.cloudmersive import (
    FAIL_CLOSED_THREAT,
    UNSPECIFIED_THREAT,
    CloudmersiveService,
    ScanResult,
    normalize_threats,
)

BASE_URL = "https://scanner.test"


def _service(handler, **kwargs) -> CloudmersiveService:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return CloudmersiveService(api_key=kwargs.pop("api_key", "key-123"), base_url=BASE_URL, http_client=client, **kwargs)


def test_clean_response_is_safe_and_sends_strict_flags():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"CleanResult": True, "FoundViruses": None})

    result = _service(handler).scan_file(b"hello world", "hello.txt", "hash-1", "user-1")

    assert result.safe is True
    assert result.threats == []
    assert result.scan_provider == "cloudmersive"
    assert result.file_hash == "hash-1"

    assert len(seen) == 1
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/virus/scan/file/advanced"
    assert request.headers["Apikey"] == "key-123"
    body = request.content
    assert b'name="allowExecutables"' in body
    assert b'name="allowMacros"' in body
    assert b".pdf,.docx,.jpg,.png,.mp4,.mp3,.txt" in body
    assert b'filename="hello.txt"' in body


def test_found_viruses_become_threats():
    payload = {
        "CleanResult": False,
        "FoundViruses": [{"FileName": "x", "VirusName": "EICAR-Test-File", "EngineMatch": "ClamAV"}],
    }
    result = _service(lambda r: httpx.Response(200, json=payload)).scan_file(b"x", "x.txt", "h", "u")
    assert result.safe is False
    assert result.threats == ["Virus: EICAR-Test-File (ClamAV)"]


def test_content_flags_and_engine_results_are_normalized():
    payload = {
        "cleanResult": False,
        "containsExecutable": True,
        "containsMacros": True,
        "ScanResults": [{"Engine": "Sophos", "Threat": "Troj/Agent"}],
    }
    clean, threats = normalize_threats(payload)
    assert clean is False
    assert threats == ["Contains executable code", "Contains macros", "Sophos: Troj/Agent"]


def test_content_information_block_is_read():
    payload = {
        "CleanResult": False,
        "ContentInformation": {"ContainsScript": True, "ContainsPasswordProtectedFile": True},
    }
    _, threats = normalize_threats(payload)
    assert threats == ["Contains script content", "Password protected file"]


def test_unclean_without_detail_still_has_a_threat():
    result = _service(lambda r: httpx.Response(200, json={"CleanResult": False})).scan_file(b"x", "x.txt", "h", "u")
    assert result.safe is False
    assert result.threats == [UNSPECIFIED_THREAT]


@pytest.mark.parametrize(
    "handler",
    [
        lambda r: httpx.Response(500, text="boom"),
        lambda r: httpx.Response(401, json={"error": "bad key"}),
        lambda r: httpx.Response(200, text="not json"),
        lambda r: httpx.Response(200, json=["unexpected"]),
    ],
)
def test_scan_file_fails_closed(handler):
    result = _service(handler).scan_file(b"x", "x.txt", "hash-9", "u")
    assert result.safe is False
    assert result.threats == [FAIL_CLOSED_THREAT]
    assert result.scan_provider == "cloudmersive_error"
    assert result.file_hash == "hash-9"


def test_transport_error_fails_closed():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = _service(handler).scan_file(b"x", "x.txt", "h", "u")
    assert result.safe is False
    assert result.scan_provider == "cloudmersive_error"


def test_missing_api_key_fails_closed_without_network():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"CleanResult": True})

    result = _service(handler, api_key="").scan_file(b"x", "x.txt", "h", "u")
    assert result.safe is False
    assert result.scan_provider == "cloudmersive_error"
    assert calls == []


def test_oversized_file_skips_scan_without_network():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    result = _service(handler, max_file_size_for_scanning=10).scan_file(b"x" * 11, "big.bin", "h", "u")
    assert result.safe is True
    assert result.threats == []
    assert result.scan_provider == "cloudmersive_skipped_size"
    assert calls == []


def test_scan_url_posts_form_and_fails_closed():
    seen = []

    def ok(request):
        seen.append(request)
        return httpx.Response(200, json={"CleanResult": True})

    result = _service(ok).scan_url("https://files.test/a.pdf", "a.pdf", "h", "u")
    assert result.safe is True
    assert result.scan_provider == "cloudmersive_url"
    assert seen[0].url.path == "/virus/scan/website/advanced"
    assert b"inputFileUrl=https%3A%2F%2Ffiles.test%2Fa.pdf" in seen[0].content

    failed = _service(lambda r: httpx.Response(502)).scan_url("https://files.test/a.pdf", "a.pdf", "h", "u")
    assert failed.safe is False
    assert failed.scan_provider == "cloudmersive_url_error"
    assert failed.threats == [FAIL_CLOSED_THREAT]


def test_get_api_status_parses_quota():
    payload = {"RemainingQuota": 742, "QuotaResetDateTime": "2026-02-01T00:00:00Z"}
    status = _service(lambda r: httpx.Response(200, json=payload)).get_api_status()
    assert status.success is True
    assert status.remaining_quota == 742
    assert status.reset_time.year == 2026


def test_get_api_status_never_raises():
    status = _service(lambda r: httpx.Response(500)).get_api_status()
    assert status.success is False
    assert status.remaining_quota is None


def test_validate_configuration():
    assert _service(lambda r: httpx.Response(200, json={"CleanResult": True})).validate_configuration() is True
    assert _service(lambda r: httpx.Response(403)).validate_configuration() is False


def test_scan_result_invariant_and_dict_roundtrip():
    forced = ScanResult(safe=True, threats=["Virus: X"], file_hash="h", scan_provider="cloudmersive")
    assert forced.safe is False

    restored = ScanResult.from_dict(forced.to_dict())
    assert restored.safe is False
    assert restored.threats == ["Virus: X"]
    assert restored.scan_provider == "cloudmersive"
    assert restored.scanned_at == forced.scanned_at
