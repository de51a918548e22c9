"""Upload content validation and storage.

The client-declared MIME type is only a hint: the file's leading bytes must
carry the signature of that type, the extension must agree with it, and the
whole byte stream (tail included) is scanned for executable markers and
embedded script before anything reaches the upload directory.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from cid_portal.core.context import RequestContext
from cid_portal.core.errors import RateLimitError, SecurityPolicyError, ValidationError
from cid_portal.core.settings import Settings
from cid_portal.services.audit import AuditSink, Severity, Status
from cid_portal.services.store import KeyValueStore
from cid_portal.utils.hash import blake3_hexdigest

logger = logging.getLogger(__name__)

MB: Final[int] = 1024 * 1024
MAX_FILENAME_LENGTH: Final[int] = 255
TEMP_FILE_MAX_AGE_SECONDS: Final[int] = 60 * 60


@dataclass(frozen=True)
class CategoryRule:
    max_bytes: int
    extensions: dict[str, frozenset[str]]


CATEGORY_RULES: Final[dict[str, CategoryRule]] = {
    "image": CategoryRule(
        max_bytes=10 * MB,
        extensions={
            ".jpg": frozenset({"image/jpeg"}),
            ".jpeg": frozenset({"image/jpeg"}),
            ".png": frozenset({"image/png"}),
            ".gif": frozenset({"image/gif"}),
            ".webp": frozenset({"image/webp"}),
            ".svg": frozenset({"image/svg+xml"}),
        },
    ),
    "document": CategoryRule(
        max_bytes=25 * MB,
        extensions={
            ".pdf": frozenset({"application/pdf"}),
            ".doc": frozenset({"application/msword"}),
            ".docx": frozenset(
                {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}
            ),
            ".txt": frozenset({"text/plain"}),
            ".rtf": frozenset({"application/rtf"}),
        },
    ),
    "video": CategoryRule(
        max_bytes=100 * MB,
        extensions={
            ".mp4": frozenset({"video/mp4"}),
            ".webm": frozenset({"video/webm"}),
            ".ogg": frozenset({"video/ogg"}),
            ".avi": frozenset({"video/avi"}),
            ".mov": frozenset({"video/quicktime", "video/mp4"}),
        },
    ),
}

MIME_ALIASES: Final[dict[str, str]] = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "video/x-msvideo": "video/avi",
    "video/msvideo": "video/avi",
    "text/rtf": "application/rtf",
}

DANGEROUS_EXTENSIONS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"\.(exe|bat|cmd|com|pif|scr|vbs|js|jar|php|asp|aspx|jsp)$", re.IGNORECASE),
    re.compile(r"\.(sh|bash|zsh|fish|ps1|psm1)$", re.IGNORECASE),
    re.compile(r"\.(sql|db|sqlite|sqlite3)$", re.IGNORECASE),
    re.compile(r"\.(htaccess|htpasswd|ini|conf|config)$", re.IGNORECASE),
)
META_CHARACTERS: Final = re.compile(r'[<>:"|?*\x00-\x1f/\\]')

EXECUTABLE_PREFIXES: Final[tuple[tuple[bytes, str], ...]] = (
    (b"\x7fELF", "ELF"),
    (b"MZ", "PE"),
    (b"\xfe\xed\xfa\xce", "Mach-O"),
    (b"\xfe\xed\xfa\xcf", "Mach-O"),
    (b"\xce\xfa\xed\xfe", "Mach-O"),
    (b"\xcf\xfa\xed\xfe", "Mach-O"),
    (b"\xca\xfe\xba\xbe", "Mach-O universal"),
)
EMBEDDED_EXECUTABLE_MARKERS: Final[tuple[tuple[re.Pattern[bytes], str], ...]] = (
    (re.compile(rb"\x7fELF[\x01\x02][\x01\x02]\x01"), "ELF"),
    (re.compile(rb"This program cannot be run in DOS mode"), "PE"),
    (re.compile(rb"PE\x00\x00(?:\x4c\x01|\x64\x86)"), "PE"),
)
INJECTION_PATTERNS: Final[tuple[re.Pattern[bytes], ...]] = (
    re.compile(rb"<\?php", re.IGNORECASE),
    re.compile(rb"<script", re.IGNORECASE),
    re.compile(rb"javascript:", re.IGNORECASE),
    re.compile(rb"vbscript:", re.IGNORECASE),
    re.compile(rb"\bon(?:load|error|click|mouseover)\s*=", re.IGNORECASE),
    re.compile(rb"\beval\s*\(", re.IGNORECASE),
    re.compile(rb"\b(?:shell_exec|exec|system|passthru|popen|proc_open)\s*\(", re.IGNORECASE),
    re.compile(rb"base64_decode\s*\(", re.IGNORECASE),
    re.compile(rb"fromCharCode", re.IGNORECASE),
    re.compile(rb"data:text/html;base64", re.IGNORECASE),
    re.compile(rb"#!\s*/(?:usr/)?bin/(?:env\s+)?(?:ba|z|k)?sh\b"),
    re.compile(rb"powershell(?:\.exe)?\s+-(?:e|enc|encodedcommand)\b", re.IGNORECASE),
)


def _is_text(data: bytes) -> bool:
    if b"\x00" in data[:8192]:
        return False
    try:
        data[:8192].decode("utf-8")
    except UnicodeDecodeError as err:
        # a multi-byte sequence cut at the window edge is still text
        return err.start >= len(data[:8192]) - 3
    return True


def detect_mime(data: bytes) -> str | None:
    """Return the MIME type implied by the file signature, if recognised."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:4] == b"RIFF" and data[8:12] == b"AVI ":
        return "video/avi"
    if data.startswith(b"%PDF-"):
        return "application/pdf"
    if data.startswith(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"):
        return "application/msword"
    if data.startswith(b"PK\x03\x04") and b"word/" in data[:65536]:
        return "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    if data.startswith(b"{\\rtf"):
        return "application/rtf"
    if data[4:8] == b"ftyp":
        return "video/quicktime" if data[8:10] == b"qt" else "video/mp4"
    if data.startswith(b"\x1a\x45\xdf\xa3"):
        return "video/webm"
    if data.startswith(b"OggS"):
        return "video/ogg"
    if _is_text(data):
        head = data[:512].lstrip(b"\xef\xbb\xbf \t\r\n").lower()
        if head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in data[:4096].lower()):
            return "image/svg+xml"
        return "text/plain"
    return None


def sanitize_filename(filename: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9.-]", "_", filename)
    cleaned = re.sub(r"_+", "_", cleaned)
    return cleaned.strip("_")


def validate_filename(filename: str) -> str:
    """Validate an uploaded filename and return its sanitised form.

    Raises:
        ValidationError: With code ``INVALID_FILENAME`` for any violation.
    """

    def reject(reason: str) -> ValidationError:
        return ValidationError(reason, code="INVALID_FILENAME")

    if not filename:
        raise reject("Filename is required")
    if len(filename) > MAX_FILENAME_LENGTH:
        raise reject("Filename too long")
    if "\x00" in filename:
        raise reject("Null bytes not allowed in filename")
    if ".." in filename:
        raise reject("Path traversal sequences not allowed in filename")
    if filename.startswith("."):
        raise reject("Hidden files are not allowed")
    if filename.count(".") > 1:
        raise reject("Double extensions not allowed")
    if META_CHARACTERS.search(filename):
        raise reject("Meta characters not allowed in filename")
    if any(pattern.search(filename) for pattern in DANGEROUS_EXTENSIONS):
        raise reject("File type not allowed for security reasons")
    sanitized = sanitize_filename(filename)
    if not sanitized or "." not in sanitized:
        raise reject("Filename must include an extension")
    return sanitized


def find_executable(data: bytes) -> str | None:
    for prefix, label in EXECUTABLE_PREFIXES:
        if data.startswith(prefix):
            return label
    for pattern, label in EMBEDDED_EXECUTABLE_MARKERS:
        if pattern.search(data):
            return label
    return None


def find_injection(data: bytes) -> tuple[str, int] | None:
    """Return the first injection marker and its byte offset, scanning the whole stream."""
    for pattern in INJECTION_PATTERNS:
        match = pattern.search(data)
        if match:
            return match.group(0).decode("latin-1"), match.start()
    return None


@dataclass(frozen=True)
class ValidatedUpload:
    original_name: str
    sanitized_name: str
    extension: str
    mime_type: str
    category: str
    size: int
    digest: str


@dataclass(frozen=True)
class StoredUpload:
    upload: ValidatedUpload
    path: Path
    stored_name: str


class UploadValidator:
    """Validate, rate limit and persist uploaded files."""

    def __init__(
        self,
        config: Settings,
        rate_limits: KeyValueStore,
        audit: AuditSink,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._rate_limits = rate_limits
        self._audit = audit
        self._clock = clock
        self._root = Path(config.upload_dir)

    @property
    def temp_dir(self) -> Path:
        return self._root / "temp"

    def category_dir(self, category: str) -> Path:
        return self._root / f"{category}s"

    def initialize(self) -> None:
        for directory in (self._root, self.temp_dir, *map(self.category_dir, CATEGORY_RULES)):
            directory.mkdir(parents=True, exist_ok=True)
            os.chmod(directory, 0o755)
        self.cleanup_temp()

    def validate(
        self,
        data: bytes,
        declared_mime: str | None,
        category: str,
        filename: str,
        context: RequestContext | None = None,
    ) -> ValidatedUpload:
        """Verify that ``data`` really is what the client claims.

        Args:
            data: Raw file content.
            declared_mime: Client-supplied Content-Type.
            category: ``image``, ``document`` or ``video``.
            filename: Client-supplied filename.
            context: Requester attributes for the audit trail.

        Returns:
            The validated upload metadata.

        Raises:
            ValidationError: Bad filename, size, type or signature mismatch.
            SecurityPolicyError: Executable or script content (``MALICIOUS_CONTENT``).
        """
        rule = CATEGORY_RULES.get(category)
        if rule is None:
            raise ValidationError(f"Unsupported upload category: {category}", code="INVALID_CATEGORY")

        sanitized = validate_filename(filename)
        extension = os.path.splitext(sanitized)[1].lower()
        allowed_for_extension = rule.extensions.get(extension)
        if allowed_for_extension is None:
            raise ValidationError(
                f"Extension {extension} is not allowed for {category} uploads",
                code="DISALLOWED_FILE_TYPE",
            )

        if not data:
            raise ValidationError("Uploaded file is empty", code="EMPTY_FILE")
        if len(data) > rule.max_bytes:
            raise ValidationError(
                f"File exceeds the {rule.max_bytes // MB}MB limit for {category} uploads",
                code="FILE_TOO_LARGE",
                status_code=413,
            )

        executable = find_executable(data)
        if executable:
            self._reject_malicious(filename, f"{executable} executable signature", context)

        injection = find_injection(data)
        if injection:
            marker, offset = injection
            self._reject_malicious(
                filename, f"embedded code marker {marker!r} at byte {offset}", context
            )

        declared = MIME_ALIASES.get((declared_mime or "").lower(), (declared_mime or "").lower())
        detected = detect_mime(data)
        if detected is None or detected not in allowed_for_extension:
            self._audit.record(
                "UPLOAD_CONTENT_MISMATCH",
                Severity.HIGH,
                Status.FAILURE,
                {"filename": filename, "declared": declared_mime, "detected": detected},
                context,
            )
            raise ValidationError(
                "File content does not match its extension",
                code="CONTENT_TYPE_MISMATCH",
            )
        if declared and declared != "application/octet-stream" and declared != detected:
            if not (extension == ".mov" and declared in allowed_for_extension):
                self._audit.record(
                    "UPLOAD_CONTENT_MISMATCH",
                    Severity.HIGH,
                    Status.FAILURE,
                    {"filename": filename, "declared": declared_mime, "detected": detected},
                    context,
                )
                raise ValidationError(
                    "Declared content type does not match file content",
                    code="CONTENT_TYPE_MISMATCH",
                )

        return ValidatedUpload(
            original_name=filename,
            sanitized_name=sanitized,
            extension=extension,
            mime_type=detected,
            category=category,
            size=len(data),
            digest=blake3_hexdigest(data),
        )

    def _reject_malicious(
        self, filename: str, reason: str, context: RequestContext | None
    ) -> None:
        logger.warning("Rejected upload %r: %s", filename, reason)
        self._audit.record(
            "MALICIOUS_UPLOAD_BLOCKED",
            Severity.CRITICAL,
            Status.FAILURE,
            {"filename": filename, "reason": reason},
            context,
        )
        raise SecurityPolicyError(
            "File rejected: potentially malicious content",
            code="MALICIOUS_CONTENT",
            status_code=400,
        )

    def check_rate_limit(self, user_key: str) -> None:
        """Count one upload for ``user_key``.

        Raises:
            RateLimitError: The hourly allowance is exhausted.
        """
        now = self._clock()
        limit = self._config.uploads_per_hour
        outcome: dict[str, Any] = {}

        def count(entry: dict[str, Any] | None) -> dict[str, Any]:
            if entry is None or entry["reset_at"] <= now:
                entry = {"count": 0, "reset_at": now + 3600}
            outcome.update(allowed=entry["count"] < limit, reset_at=entry["reset_at"])
            if outcome["allowed"]:
                entry["count"] += 1
            return entry

        self._rate_limits.update(user_key, count, ttl_seconds=3600)
        if not outcome["allowed"]:
            raise RateLimitError(
                "Upload limit reached; try again later",
                code="UPLOAD_RATE_LIMITED",
                retry_after=int(outcome["reset_at"] - now),
            )

    def secure_name(self, upload: ValidatedUpload) -> str:
        stamp = int(self._clock() * 1000)
        return f"{stamp}-{secrets.token_hex(8)}-{upload.digest[:8]}{upload.extension}"

    def save(
        self,
        data: bytes,
        declared_mime: str | None,
        category: str,
        filename: str,
        user_key: str,
        context: RequestContext | None = None,
    ) -> StoredUpload:
        """Validate and persist an upload under a generated, non-executable name."""
        self.check_rate_limit(user_key)
        upload = self.validate(data, declared_mime, category, filename, context)

        target_dir = self.category_dir(category)
        target_dir.mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        stored_name = self.secure_name(upload)
        temp_path = self.temp_dir / f"{stored_name}.part"
        final_path = target_dir / stored_name
        try:
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.chmod(temp_path, 0o644)
            os.replace(temp_path, final_path)
        finally:
            temp_path.unlink(missing_ok=True)

        self._audit.record(
            "FILE_UPLOADED",
            Severity.LOW,
            Status.SUCCESS,
            {
                "originalName": upload.original_name,
                "storedName": stored_name,
                "mimeType": upload.mime_type,
                "size": upload.size,
            },
            context,
        )
        return StoredUpload(upload=upload, path=final_path, stored_name=stored_name)

    def cleanup_temp(self, max_age_seconds: int = TEMP_FILE_MAX_AGE_SECONDS) -> int:
        if not self.temp_dir.exists():
            return 0
        cutoff = self._clock() - max_age_seconds
        removed = 0
        for leftover in self.temp_dir.iterdir():
            if leftover.is_file() and leftover.stat().st_mtime < cutoff:
                leftover.unlink(missing_ok=True)
                removed += 1
        return removed

    def sweep(self) -> int:
        return self._rate_limits.sweep() + self.cleanup_temp()

    def stats(self) -> dict[str, object]:
        categories: dict[str, dict[str, int]] = {}
        for category in CATEGORY_RULES:
            directory = self.category_dir(category)
            files = [path for path in directory.iterdir() if path.is_file()] if directory.exists() else []
            categories[category] = {
                "files": len(files),
                "bytes": sum(path.stat().st_size for path in files),
            }
        return {
            "categories": categories,
            "totalFiles": sum(item["files"] for item in categories.values()),
            "totalBytes": sum(item["bytes"] for item in categories.values()),
            "rateLimitedUsers": len(self._rate_limits),
            "maxUploadsPerHour": self._config.uploads_per_hour,
        }


__all__ = [
    "CATEGORY_RULES",
    "StoredUpload",
    "UploadValidator",
    "ValidatedUpload",
    "detect_mime",
    "find_executable",
    "find_injection",
    "sanitize_filename",
    "validate_filename",
]
