from __future__ import annotations

import base64
import threading
from unittest.mock import patch

import pytest

from certdesk.errors import AttachmentReadError, AttachmentTooLargeError, EncodingTimeoutError
from certdesk.notifications import attachments
from certdesk.notifications.attachments import MEGABYTE, AttachmentEncoder


@pytest.fixture
def encoder() -> AttachmentEncoder:
    return AttachmentEncoder(max_bytes=25 * MEGABYTE, min_timeout=5.0, max_timeout=30.0, seconds_per_mb=1.0)


def test_timeout_is_clamped_to_bounds(encoder):
    assert encoder.compute_timeout(1 * MEGABYTE) == 5.0
    assert encoder.compute_timeout(20 * MEGABYTE) == 20.0
    assert encoder.compute_timeout(500 * MEGABYTE) == 30.0


def test_invalid_timeout_bounds_are_rejected():
    with pytest.raises(ValueError):
        AttachmentEncoder(min_timeout=10.0, max_timeout=5.0)


@pytest.mark.asyncio
async def test_oversized_file_is_rejected_before_reading(encoder, tmp_path):
    path = tmp_path / "huge.pdf"
    with path.open("wb") as handle:
        handle.truncate(40 * MEGABYTE)

    with patch.object(attachments, "_read_and_encode") as reader:
        with pytest.raises(AttachmentTooLargeError) as excinfo:
            await encoder.encode(path)

    reader.assert_not_called()
    assert excinfo.value.size == 40 * MEGABYTE
    assert excinfo.value.limit == 25 * MEGABYTE


@pytest.mark.asyncio
async def test_encode_file_keeps_name_and_guesses_type(encoder, tmp_path):
    path = tmp_path / "certidao.pdf"
    path.write_bytes(b"%PDF-1.4 body")

    encoded = await encoder.encode(path)

    assert encoded.name == "certidao.pdf"
    assert encoded.content_type == "application/pdf"
    assert encoded.size == len(b"%PDF-1.4 body")
    assert encoded.content == b"%PDF-1.4 body"
    assert encoded.extension == "pdf"
    assert encoded.as_data_uri().startswith("data:application/pdf;base64,")


@pytest.mark.asyncio
async def test_missing_file_raises_read_error(encoder, tmp_path):
    with pytest.raises(AttachmentReadError):
        await encoder.encode(tmp_path / "absent.pdf")


def test_decode_payload_strips_data_uri_prefix(encoder):
    payload = "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode()

    decoded = encoder.decode_payload(name="scan", content_type=None, payload=payload)

    assert decoded.content_type == "image/png"
    assert decoded.content == b"\x89PNG"
    assert decoded.size == 4


@pytest.mark.parametrize("payload", ["not base64!!", ""])
def test_decode_payload_rejects_garbage(encoder, payload):
    with pytest.raises(AttachmentReadError):
        encoder.decode_payload(name="broken.pdf", content_type="application/pdf", payload=payload)


def test_decode_payload_enforces_ceiling():
    small = AttachmentEncoder(max_bytes=4)
    payload = base64.b64encode(b"0123456789").decode()

    with pytest.raises(AttachmentTooLargeError):
        small.decode_payload(name="big.txt", content_type="text/plain", payload=payload)


@pytest.mark.asyncio
async def test_slow_encode_raises_encoding_timeout():
    encoder = AttachmentEncoder(min_timeout=0.01, max_timeout=0.01)
    release = threading.Event()

    def stuck(source):
        release.wait(timeout=1)
        return ""

    try:
        with patch.object(attachments, "_read_and_encode", side_effect=stuck):
            with pytest.raises(EncodingTimeoutError) as excinfo:
                await encoder.encode(b"%PDF-1.4", name="certidao.pdf")
    finally:
        release.set()

    assert excinfo.value.timeout == 0.01
    assert excinfo.value.name == "certidao.pdf"
