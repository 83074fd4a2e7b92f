from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Literal, Optional, Union

from vision_dispatch.core.types import SUPPORTED_MIME_TYPES


ValidationCode = Literal["FILE_NOT_FOUND", "FILE_TOO_LARGE", "INVALID_MIME_TYPE"]

_HEADER_LEN = 12

_EXTENSION_MIME = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".tiff": "image/tiff",
    ".tif": "image/tiff",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
}


@dataclass(frozen=True)
class ValidationIssue:
    code: ValidationCode
    message: str
    detected_mime_type: Optional[str] = None
    accepted_mime_types: List[str] = field(default_factory=list)
    max_size_bytes: Optional[int] = None
    actual_size_bytes: Optional[int] = None


@dataclass(frozen=True)
class ImageValidationResult:
    valid: bool
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    error: Optional[ValidationIssue] = None


def _mb_to_bytes(mb: float) -> int:
    return int(mb * 1024 * 1024)


def detect_mime_type(header: bytes, filename: str = "") -> str:
    """
    Detect an image MIME type from its leading magic bytes.

    Falls back to the file extension when the signature is unknown, and to
    "unknown/<ext>" when the extension is unknown too.
    """
    h = header[:_HEADER_LEN]

    if h.startswith(b"\x89PNG"):
        return "image/png"
    if h.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if h.startswith(b"GIF8"):
        return "image/gif"
    if h.startswith(b"RIFF") and h[8:12] == b"WEBP":
        return "image/webp"

    ext = os.path.splitext(filename)[1].lower()
    return _EXTENSION_MIME.get(ext) or f"unknown/{ext[1:] or 'binary'}"


def validate_image(path: Union[str, Path], max_size_mb: float = 25) -> ImageValidationResult:
    """
    Check that a file is a supported image within the size bound.

    Order matters: existence, then size, then MIME type. No decoding happens;
    only the first bytes are read.
    """
    p = Path(path)
    max_bytes = _mb_to_bytes(max_size_mb)

    if not p.is_file():
        return ImageValidationResult(
            valid=False,
            error=ValidationIssue(code="FILE_NOT_FOUND", message=f"Image file not found: {p}"),
        )

    try:
        size = p.stat().st_size
        with p.open("rb") as fh:
            header = fh.read(_HEADER_LEN)
    except OSError:
        return ImageValidationResult(
            valid=False,
            error=ValidationIssue(code="FILE_NOT_FOUND", message=f"Unable to read image file: {p}"),
        )

    if size > max_bytes:
        return ImageValidationResult(
            valid=False,
            file_size=size,
            error=ValidationIssue(
                code="FILE_TOO_LARGE",
                message=(
                    f"Image file size ({size / (1024 * 1024):.2f} MB) exceeds the maximum "
                    f"allowed size of {max_size_mb} MB"
                ),
                max_size_bytes=max_bytes,
                actual_size_bytes=size,
            ),
        )

    mime = detect_mime_type(header, p.name)
    if mime not in SUPPORTED_MIME_TYPES:
        return ImageValidationResult(
            valid=False,
            file_size=size,
            error=ValidationIssue(
                code="INVALID_MIME_TYPE",
                message=(
                    f"Unsupported image format. Detected MIME type: {mime}. "
                    f"Accepted formats: {', '.join(SUPPORTED_MIME_TYPES)}"
                ),
                detected_mime_type=mime,
                accepted_mime_types=list(SUPPORTED_MIME_TYPES),
            ),
        )

    return ImageValidationResult(valid=True, mime_type=mime, file_size=size)
