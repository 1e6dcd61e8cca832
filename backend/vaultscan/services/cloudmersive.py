from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from vaultscan.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

PROVIDER = "cloudmersive"
PROVIDER_URL = "cloudmersive_url"
FAIL_CLOSED_THREAT = "External virus scan failed - file rejected for safety"
UNSPECIFIED_THREAT = "Threat detected by external scanner"

RESTRICTED_FILE_TYPES = ".pdf,.docx,.jpg,.png,.mp4,.mp3,.txt"
_STRICT_FLAGS = {
    "allowExecutables": "false",
    "allowInvalidFiles": "false",
    "allowScripts": "false",
    "allowPasswordProtectedFiles": "false",
    "allowMacros": "false",
}

# (response flag, threat label)
_CONTENT_FLAGS = (
    ("ContainsExecutable", "Contains executable code"),
    ("ContainsScript", "Contains script content"),
    ("ContainsMacros", "Contains macros"),
    ("ContainsInvalidFile", "Invalid file format"),
    ("ContainsPasswordProtectedFile", "Password protected file"),
)


class CloudmersiveError(Exception):
    """Raised internally when the scanner cannot produce a trustworthy verdict."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ScanResult:
    """
    Normalized verdict for one file.

    ``safe`` is True iff ``threats`` is empty; construction enforces it in
    both directions so callers can trust either field.
    """

    safe: bool
    threats: list[str]
    file_hash: str
    scan_provider: str
    scanned_at: datetime = field(default_factory=_utcnow)
    scan_details: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        self.threats = [str(t) for t in self.threats]
        if self.threats:
            self.safe = False
        elif not self.safe:
            self.threats = [UNSPECIFIED_THREAT]

    def to_dict(self) -> dict[str, Any]:
        return {
            "safe": self.safe,
            "threats": list(self.threats),
            "scannedAt": self.scanned_at.isoformat(),
            "fileHash": self.file_hash,
            "scanProvider": self.scan_provider,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScanResult:
        scanned_at_raw = data.get("scannedAt")
        scanned_at = _parse_datetime(scanned_at_raw) if isinstance(scanned_at_raw, str) else None
        return cls(
            safe=bool(data.get("safe")),
            threats=list(data.get("threats") or []),
            file_hash=str(data.get("fileHash") or ""),
            scan_provider=str(data.get("scanProvider") or "unknown"),
            scanned_at=scanned_at or _utcnow(),
        )


@dataclass(frozen=True)
class ApiStatus:
    success: bool
    remaining_quota: int | None = None
    reset_time: datetime | None = None


def _parse_datetime(raw: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _field(obj: dict[str, Any], name: str) -> Any:
    """Read a response field in either PascalCase (API) or camelCase (older SDKs)."""
    if name in obj:
        return obj[name]
    camel = name[0].lower() + name[1:]
    return obj.get(camel)


def normalize_threats(payload: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Collapse the advanced-scan response into (clean, threats).

    Handles virus hits, content-risk flags (flat or under contentInformation)
    and per-engine results.
    """
    if not isinstance(payload, dict):
        raise CloudmersiveError("Unexpected scan response shape")

    clean = _field(payload, "CleanResult") is True
    threats: list[str] = []
    if clean:
        return True, threats

    for virus in _field(payload, "FoundViruses") or []:
        if not isinstance(virus, dict):
            continue
        name = _field(virus, "VirusName") or "unknown"
        engine = _field(virus, "EngineMatch")
        threats.append(f"Virus: {name} ({engine})" if engine else f"Virus: {name}")

    content = _field(payload, "ContentInformation")
    if not isinstance(content, dict):
        content = payload
    for flag, label in _CONTENT_FLAGS:
        if _field(content, flag) is True:
            threats.append(label)

    for engine_result in _field(payload, "ScanResults") or []:
        if not isinstance(engine_result, dict):
            continue
        threat = _field(engine_result, "Threat")
        if threat:
            threats.append(f"{_field(engine_result, 'Engine') or 'engine'}: {threat}")

    return False, threats


class CloudmersiveService:
    """
    Cloudmersive Advanced Threat Detection client.

    Every scan entry point fails closed: transport errors, non-2xx responses
    and unparseable bodies all come back as ``safe=False`` with a provider tag
    ending in ``_error``.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        max_file_size_for_scanning: int | None = None,
        http_client: httpx.Client | None = None,
        config: Settings | None = None,
    ):
        cfg = config or default_settings
        self.api_key = api_key if api_key is not None else cfg.CLOUDMERSIVE_API_KEY
        self.base_url = (base_url or cfg.CLOUDMERSIVE_BASE_URL).rstrip("/")
        self.max_file_size_for_scanning = (
            max_file_size_for_scanning
            if max_file_size_for_scanning is not None
            else cfg.MAX_FILE_SIZE_FOR_SCANNING
        )
        self.http = http_client or httpx.Client(timeout=cfg.SCAN_HTTP_TIMEOUT)

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise CloudmersiveError("Cloudmersive API key is not configured")
        return {"Apikey": self.api_key}

    def _post_json(self, path: str, **kwargs: Any) -> dict[str, Any]:
        response = self.http.post(f"{self.base_url}{path}", headers=self._headers(), **kwargs)
        if response.status_code < 200 or response.status_code >= 300:
            raise CloudmersiveError(f"Cloudmersive API error: {response.status_code} {response.reason_phrase}")
        return response.json()

    def _failed(self, provider: str, file_hash: str) -> ScanResult:
        return ScanResult(
            safe=False,
            threats=[FAIL_CLOSED_THREAT],
            file_hash=file_hash,
            scan_provider=f"{provider}_error",
        )

    def scan_file(self, data: bytes, file_name: str, file_hash: str, actor: str) -> ScanResult:
        """Submit raw bytes to /virus/scan/file/advanced."""
        started = time.monotonic()

        if len(data) > self.max_file_size_for_scanning:
            logger.warning(
                "File exceeds scanning size limit; skipping external scan file=%s size=%s max=%s actor=%s",
                file_name,
                len(data),
                self.max_file_size_for_scanning,
                actor,
            )
            return ScanResult(safe=True, threats=[], file_hash=file_hash, scan_provider=f"{PROVIDER}_skipped_size")

        logger.info("Starting Cloudmersive scan file=%s size=%s hash=%s actor=%s", file_name, len(data), file_hash, actor)
        try:
            payload = self._post_json(
                "/virus/scan/file/advanced",
                files={"inputFile": (file_name or "upload", data)},
                data={**_STRICT_FLAGS, "restrictFileTypes": RESTRICTED_FILE_TYPES},
            )
            clean, threats = normalize_threats(payload)
        except Exception:  # pylint: disable=broad-except
            logger.exception(
                "Cloudmersive scan failed file=%s hash=%s actor=%s duration_ms=%s",
                file_name,
                file_hash,
                actor,
                int((time.monotonic() - started) * 1000),
            )
            return self._failed(PROVIDER, file_hash)

        result = ScanResult(
            safe=clean,
            threats=threats,
            file_hash=file_hash,
            scan_provider=PROVIDER,
            scan_details=payload,
        )
        logger.info(
            "Cloudmersive scan completed file=%s safe=%s threats=%s duration_ms=%s actor=%s",
            file_name,
            result.safe,
            len(result.threats),
            int((time.monotonic() - started) * 1000),
            actor,
        )
        return result

    def scan_url(self, url: str, file_name: str, file_hash: str, actor: str) -> ScanResult:
        """Ask the scanner to fetch and scan a URL (e.g. a short-lived signed URL)."""
        started = time.monotonic()
        logger.info("Starting Cloudmersive URL scan file=%s hash=%s actor=%s", file_name, file_hash, actor)
        try:
            payload = self._post_json(
                "/virus/scan/website/advanced",
                data={"inputFileUrl": url, **_STRICT_FLAGS},
            )
            clean, threats = normalize_threats(payload)
        except Exception:  # pylint: disable=broad-except
            logger.exception(
                "Cloudmersive URL scan failed file=%s hash=%s actor=%s duration_ms=%s",
                file_name,
                file_hash,
                actor,
                int((time.monotonic() - started) * 1000),
            )
            return self._failed(PROVIDER_URL, file_hash)

        return ScanResult(
            safe=clean,
            threats=threats,
            file_hash=file_hash,
            scan_provider=PROVIDER_URL,
            scan_details=payload,
        )

    def get_api_status(self) -> ApiStatus:
        """Best-effort quota lookup; never raises."""
        try:
            payload = self._post_json("/virus/scan/quota")
        except Exception:  # pylint: disable=broad-except
            logger.exception("Failed to get Cloudmersive API status")
            return ApiStatus(success=False)

        remaining = _field(payload, "RemainingQuota") if isinstance(payload, dict) else None
        reset_raw = _field(payload, "QuotaResetDateTime") if isinstance(payload, dict) else None
        return ApiStatus(
            success=True,
            remaining_quota=int(remaining) if isinstance(remaining, (int, float)) else None,
            reset_time=_parse_datetime(reset_raw) if isinstance(reset_raw, str) else None,
        )

    def validate_configuration(self) -> bool:
        """Scan a trivial payload and report whether the API answered."""
        result = self.scan_file(b"test file content", "test.txt", "test-hash", "system")
        reachable = result.scan_provider.startswith(PROVIDER) and not result.scan_provider.endswith("_error")
        if not reachable:
            logger.error("Cloudmersive configuration validation failed provider=%s", result.scan_provider)
        return reachable
