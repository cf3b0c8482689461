"""Attachment encoding with size-derived processing timeouts."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import mimetypes
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from certdesk.errors import AttachmentReadError, AttachmentTooLargeError, EncodingTimeoutError

logger = logging.getLogger(__name__)

MEGABYTE = 1024 * 1024
DEFAULT_MAX_BYTES = 10 * MEGABYTE
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[^;,]+)?(?:;[^,]*)?;base64,(?P<payload>.*)$", re.DOTALL)

AttachmentSource = Union[bytes, bytearray, str, Path]


@dataclass(frozen=True, slots=True)
class EncodedAttachment:
    """Transport-safe attachment: base64 text plus its original name and type."""

    name: str
    content_type: str
    data: str
    size: int

    @property
    def content(self) -> bytes:
        return base64.b64decode(self.data)

    @property
    def extension(self) -> str:
        suffix = Path(self.name).suffix.lstrip(".").lower()
        if suffix:
            return suffix
        guessed = mimetypes.guess_extension(self.content_type) or ""
        return guessed.lstrip(".") or "pdf"

    def as_data_uri(self) -> str:
        return f"data:{self.content_type};base64,{self.data}"


class AttachmentEncoder:
    """Encode binary attachments to base64, bounded by size and time."""

    def __init__(
        self,
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
        min_timeout: float = 5.0,
        max_timeout: float = 30.0,
        seconds_per_mb: float = 1.0,
    ) -> None:
        if min_timeout <= 0 or max_timeout < min_timeout:
            raise ValueError("Timeout bounds must satisfy 0 < min_timeout <= max_timeout")
        self.max_bytes = max_bytes
        self.min_timeout = min_timeout
        self.max_timeout = max_timeout
        self.seconds_per_mb = seconds_per_mb

    def compute_timeout(self, size_bytes: int) -> float:
        """Return ``clamp(size_mb * seconds_per_mb, min_timeout, max_timeout)`` in seconds."""

        proportional = (size_bytes / MEGABYTE) * self.seconds_per_mb
        return max(self.min_timeout, min(self.max_timeout, proportional))

    def check_size(self, size_bytes: int) -> None:
        if size_bytes > self.max_bytes:
            raise AttachmentTooLargeError(size_bytes, self.max_bytes)

    async def encode(
        self,
        source: AttachmentSource,
        *,
        name: str | None = None,
        content_type: str | None = None,
    ) -> EncodedAttachment:
        """Encode ``source`` (raw bytes or a file path).

        The size ceiling is enforced before any bytes are read; the read and
        encode step then runs in a worker thread under the size-derived timeout.
        """

        if isinstance(source, (bytes, bytearray)):
            size = len(source)
            resolved_name = name or "attachment"
        else:
            path = Path(source)
            try:
                size = path.stat().st_size
            except OSError as exc:
                raise AttachmentReadError(f"Cannot read attachment '{path}': {exc}") from exc
            resolved_name = name or path.name

        self.check_size(size)
        timeout = self.compute_timeout(size)
        resolved_type = content_type or mimetypes.guess_type(resolved_name)[0] or DEFAULT_CONTENT_TYPE

        try:
            data = await asyncio.wait_for(asyncio.to_thread(_read_and_encode, source), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("Attachment %s (%d bytes) exceeded %.1fs encode timeout", resolved_name, size, timeout)
            raise EncodingTimeoutError(resolved_name, timeout) from exc

        return EncodedAttachment(name=resolved_name, content_type=resolved_type, data=data, size=size)

    def decode_payload(self, *, name: str, content_type: str | None, payload: str) -> EncodedAttachment:
        """Validate an already base64-encoded payload, accepting an optional data URI prefix."""

        text = (payload or "").strip()
        match = _DATA_URI_RE.match(text)
        if match:
            text = match.group("payload")
            content_type = content_type or match.group("mime")
        # Estimate before decoding so oversized payloads are rejected cheaply.
        self.check_size(len(text) * 3 // 4)
        try:
            raw = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise AttachmentReadError(f"Attachment '{name}' is not valid base64: {exc}") from exc
        if not raw:
            raise AttachmentReadError(f"Attachment '{name}' is empty")
        self.check_size(len(raw))
        resolved_type = content_type or mimetypes.guess_type(name)[0] or DEFAULT_CONTENT_TYPE
        return EncodedAttachment(name=name, content_type=resolved_type, data=text, size=len(raw))


def _read_and_encode(source: AttachmentSource) -> str:
    if isinstance(source, (bytes, bytearray)):
        raw = bytes(source)
    else:
        try:
            raw = Path(source).read_bytes()
        except OSError as exc:
            raise AttachmentReadError(f"Cannot read attachment '{source}': {exc}") from exc
    return base64.b64encode(raw).decode("ascii")
