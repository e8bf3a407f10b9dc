"""Upload content checks: magic numbers and embedded executables"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Optional

from werkzeug.utils import secure_filename

from guardapi.utils.request_context import RequestContext
from guardapi.utils.security_events import EventType, Severity

logger = logging.getLogger(__name__)

FILE_SIGNATURES = {
    "image": {
        "jpeg": (b"\xff\xd8\xff",),
        "png": (b"\x89PNG\r\n\x1a\n",),
        "gif": (b"GIF87a", b"GIF89a"),
        "webp": (b"RIFF",),
        "svg": (b"<?xml", b"<svg"),
    },
    "document": {
        "pdf": (b"%PDF-",),
        # Office documents are zip containers
        "zip": (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08"),
    },
}

EXECUTABLE_SIGNATURES = (
    b"MZ",
    b"\x7fELF",
    b"\xca\xfe\xba\xbe",
    b"#!",
)

SCRIPT_MARKERS = (b"<?php", b"<script", b"base64_decode", b"eval(")

DANGEROUS_EXTENSIONS = frozenset(
    {
        "php", "phtml", "php3", "php4", "php5", "phar", "exe", "bat", "cmd",
        "com", "scr", "vbs", "js", "jar", "asp", "aspx", "jsp", "pl", "py",
        "rb", "sh", "htaccess", "htpasswd", "ini", "conf", "config", "sql",
    }
)  # fmt: skip

MAX_FILE_SIZES = {
    "image": 50 * 1024 * 1024,
    "document": 50 * 1024 * 1024,
    "video": 200 * 1024 * 1024,
    "audio": 50 * 1024 * 1024,
}

HEADER_LENGTH = 16
# Larger binaries are only checked at the start
FULL_SCAN_LIMIT = 1024 * 1024


@dataclass(frozen=True)
class UploadCheck:
    valid: bool
    error: Optional[str] = None
    filename: Optional[str] = None


class FileSignatureService:
    def __init__(self, monitor):
        self.monitor = monitor

    @staticmethod
    def validate_signature(header: bytes, category: str) -> bool:
        """True when ``header`` starts with a known magic number for ``category``.

        Categories without known signatures are accepted.
        """
        signatures = FILE_SIGNATURES.get(category)
        if signatures is None:
            return True
        header = header[:HEADER_LENGTH]
        if category == "image" and header.startswith(b"RIFF"):
            return header[8:12] == b"WEBP"
        return any(
            header.startswith(signature)
            for type_signatures in signatures.values()
            for signature in type_signatures
        )

    @staticmethod
    def contains_embedded_executable(content: bytes, is_svg: bool = False) -> bool:
        if content.startswith(EXECUTABLE_SIGNATURES):
            return True
        if not is_svg and len(content) >= FULL_SCAN_LIMIT:
            return False
        lowered = content.lower()
        return any(marker in lowered for marker in SCRIPT_MARKERS)

    @staticmethod
    def has_dangerous_extension(filename: str) -> bool:
        parts = filename.lower().split(".")
        # "shell.php.jpg" is rejected as well as "shell.php"
        return any(part in DANGEROUS_EXTENSIONS for part in parts[1:])

    def check_upload(
        self,
        filename: str,
        content: bytes,
        category: str,
        context: Optional[RequestContext] = None,
    ) -> UploadCheck:
        """Validate an upload and log a ``file_upload_violation`` on rejection."""
        safe_name = secure_filename(filename or "")
        error = None
        if not safe_name:
            error = "Invalid file name"
        elif self.has_dangerous_extension(safe_name):
            error = "File type not allowed"
        elif len(content) > MAX_FILE_SIZES.get(category, MAX_FILE_SIZES["document"]):
            error = "File too large"
        elif not self.validate_signature(content[:HEADER_LENGTH], category):
            error = "File signature does not match declared type"
        elif self.contains_embedded_executable(
            content, is_svg=os.path.splitext(safe_name)[1].lower() == ".svg"
        ):
            error = "File contains executable content"

        if error is None:
            return UploadCheck(valid=True, filename=safe_name)

        logger.warning(f"Rejected upload {filename!r}: {error}")
        self.monitor.log_security_event(
            EventType.FILE_UPLOAD_VIOLATION,
            Severity.HIGH,
            f"Rejected file upload: {error}",
            metadata={
                "filename": filename,
                "category": category,
                "size": len(content),
                "reason": error,
            },
            context=context,
        )
        return UploadCheck(valid=False, error=error, filename=safe_name or None)
