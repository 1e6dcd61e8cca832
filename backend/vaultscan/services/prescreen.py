"""
Local signature/heuristic screening of uploaded bytes.

Runs before any external call and never touches the network. Every check
contributes to one flat threat list; an empty list means locally clean.
"""
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field

HEADER_BYTES = 16

# A signature is a sequence of (offset, bytes) parts that must all match.
Signature = tuple[tuple[int, bytes], ...]


def _sig(*parts: tuple[int, str]) -> Signature:
    return tuple((offset, bytes.fromhex(hex_str)) for offset, hex_str in parts)


_FTYP = _sig((4, "66747970"))  # ISO base media: "ftyp" box at offset 4
_ZIP = (_sig((0, "504B0304")), _sig((0, "504B0506")), _sig((0, "504B0708")))
_OLE = _sig((0, "D0CF11E0A1B11AE1"))

# Declared MIME type -> acceptable magic-byte prefixes (within the first 16 bytes).
MIME_SIGNATURES: dict[str, tuple[Signature, ...]] = {
    "image/jpeg": (_sig((0, "FFD8FF")),),
    "image/png": (_sig((0, "89504E470D0A1A0A")),),
    "image/gif": (_sig((0, "474946383761")), _sig((0, "474946383961"))),
    "image/webp": (_sig((0, "52494646"), (8, "57454250")),),
    "image/bmp": (_sig((0, "424D")),),
    "image/tiff": (_sig((0, "49492A00")), _sig((0, "4D4D002A"))),
    "image/heic": (_FTYP,),
    "image/heif": (_FTYP,),
    "application/pdf": (_sig((0, "25504446")),),
    "video/mp4": (_FTYP,),
    "video/quicktime": (_FTYP, _sig((4, "6D6F6F76")), _sig((4, "6D646174")), _sig((4, "77696465"))),
    "video/webm": (_sig((0, "1A45DFA3")),),
    "audio/mpeg": (_sig((0, "494433")), _sig((0, "FFFB")), _sig((0, "FFF3")), _sig((0, "FFF2"))),
    "audio/mp4": (_FTYP,),
    "audio/wav": (_sig((0, "52494646"), (8, "57415645")),),
    "audio/x-wav": (_sig((0, "52494646"), (8, "57415645")),),
    "application/zip": _ZIP,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": _ZIP,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": _ZIP,
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": _ZIP,
    "application/msword": (_OLE,),
    "application/vnd.ms-excel": (_OLE,),
    "application/vnd.ms-powerpoint": (_OLE,),
    "application/gzip": (_sig((0, "1F8B")),),
    "application/x-7z-compressed": (_sig((0, "377ABCAF271C")),),
    "application/vnd.rar": (_sig((0, "526172211A07")),),
    # No fixed leading signature: always pass.
    "text/plain": (),
    "text/csv": (),
    "application/x-tar": (),
}

# Known-dangerous binary prefixes, matched regardless of declared type.
MALICIOUS_SIGNATURES: dict[str, tuple[str, ...]] = {
    "exe": ("4D5A", "5A4D"),  # PE/DOS
    "elf": ("7F454C46",),
    "mach-o": ("FEEDFACE", "FEEDFACF", "CEFAEDFE", "CFFAEDFE"),
    "script": ("2321",),  # shebang
    "batch": ("40454348", "406563686F", "4563686F"),  # @ECHO / @echo / Echo
    "cab": ("4D534346",),
    "msi": ("D0CF11E0A1B11AE1",),
}

# Legacy Office documents share the OLE compound header with MSI installers.
_OLE_DOCUMENT_TYPES = frozenset({"application/msword", "application/vnd.ms-excel", "application/vnd.ms-powerpoint"})

EXTENSION_RISK: dict[str, str] = {
    # high
    ".exe": "high",
    ".dll": "high",
    ".bat": "high",
    ".cmd": "high",
    ".com": "high",
    ".scr": "high",
    ".pif": "high",
    ".sh": "high",
    ".ps1": "high",
    ".vbs": "high",
    ".jar": "high",
    ".msi": "high",
    ".app": "high",
    ".dmg": "high",
    ".pkg": "high",
    ".deb": "high",
    ".rpm": "high",
    # medium
    ".zip": "medium",
    ".rar": "medium",
    ".7z": "medium",
    ".tar": "medium",
    ".gz": "medium",
    ".html": "medium",
    ".htm": "medium",
    ".svg": "medium",
    ".xml": "medium",
    # low (still scanned externally)
    ".pdf": "low",
    ".doc": "low",
    ".docx": "low",
    ".xls": "low",
    ".xlsx": "low",
}

HIGH_RISK_EXTENSIONS = frozenset(ext for ext, level in EXTENSION_RISK.items() if level == "high")

SUSPICIOUS_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        # script injection
        r"<script[^>]*>",
        r"<iframe[^>]*>",
        r"javascript:",
        r"vbscript:",
        # common malware
        r"eval\s*\(",
        r"powershell",
        r"cmd\.exe",
        r"base64_decode",
        # phishing
        r"password.*reset",
        r"verify.*account",
        r"suspended.*account",
    )
)

_TEXT_TYPE_PREFIXES = (
    "text/",
    "application/json",
    "application/xml",
    "application/javascript",
    "application/x-javascript",
    "application/xhtml+xml",
    "image/svg+xml",
)

# (mime prefix, minimum plausible size in bytes, label)
_MIN_SIZES: tuple[tuple[str, int, str], ...] = (
    ("image/", 100, "image"),
    ("video/", 1000, "video"),
    ("application/pdf", 50, "PDF"),
)


@dataclass
class PrescreenResult:
    threats: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.threats


def compute_file_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def normalize_mime_type(raw: str | None) -> str:
    return (raw or "").split(";", 1)[0].strip().lower()


def _matches(header: bytes, signature: Signature) -> bool:
    return all(header[offset : offset + len(part)] == part for offset, part in signature)


def check_signature_matches_mime(header: bytes, mime_type: str) -> str | None:
    signatures = MIME_SIGNATURES.get(mime_type)
    if not signatures:
        return None
    if any(_matches(header, sig) for sig in signatures):
        return None
    return f"File signature does not match declared type {mime_type}"


def check_malicious_signature(header: bytes, mime_type: str) -> str | None:
    header_hex = header.hex().upper()
    for kind, prefixes in MALICIOUS_SIGNATURES.items():
        if kind == "msi" and mime_type in _OLE_DOCUMENT_TYPES:
            continue
        for prefix in prefixes:
            if header_hex.startswith(prefix):
                return f"Detected {kind} file signature"
    return None


def file_extension(file_name: str) -> str:
    # Everything from the last dot, so ".ps1" on its own still counts.
    name = file_name or ""
    idx = name.rfind(".")
    return name[idx:].lower() if idx >= 0 else ""


def check_extension(file_name: str) -> str | None:
    extension = file_extension(file_name)
    if EXTENSION_RISK.get(extension) == "high":
        return f"High-risk file extension: {extension}"
    return None


def is_text_based(mime_type: str) -> bool:
    return mime_type.startswith(_TEXT_TYPE_PREFIXES)


def scan_text_patterns(data: bytes) -> list[str]:
    content = data.decode("utf-8", errors="ignore")
    return [
        f"Suspicious pattern detected: {pattern.pattern}"
        for pattern in SUSPICIOUS_PATTERNS
        if pattern.search(content)
    ]


def check_size_plausibility(size: int, mime_type: str) -> str | None:
    for prefix, minimum, label in _MIN_SIZES:
        if mime_type.startswith(prefix) and size < minimum:
            return f"Suspiciously small {label} file"
    return None


def prescreen(data: bytes, declared_mime_type: str | None, file_name: str) -> PrescreenResult:
    mime_type = normalize_mime_type(declared_mime_type)
    header = bytes(data[:HEADER_BYTES])
    threats: list[str] = []

    for finding in (
        check_signature_matches_mime(header, mime_type),
        check_malicious_signature(header, mime_type),
        check_extension(file_name),
    ):
        if finding:
            threats.append(finding)

    if is_text_based(mime_type):
        threats.extend(scan_text_patterns(data))

    size_finding = check_size_plausibility(len(data), mime_type)
    if size_finding:
        threats.append(size_finding)

    return PrescreenResult(threats=threats)
