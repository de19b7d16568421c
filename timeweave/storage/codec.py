"""
Payload codec.

Snapshots are serialized as JSON and gzip-compressed. Both the
pre-compression size and the decompressed size are capped so that a
corrupt or hostile blob cannot exhaust memory.
"""

import gzip
import json
import logging
import zlib
from typing import Any, Optional

from timeweave.exceptions import InvalidInputError, PayloadCodecError, PayloadTooLargeError

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 10 * 1024 * 1024


def compress_payload(payload: Any, max_bytes: Optional[int] = None) -> bytes:
    """
    Serialize and compress a JSON-compatible value.

    Args:
        payload: JSON-serializable value
        max_bytes: Size cap on the serialized form (default 10 MiB)

    Returns:
        gzip blob

    Raises:
        InvalidInputError: If the payload is not JSON-serializable
        PayloadTooLargeError: If the serialized payload exceeds the cap
    """
    limit = max_bytes or MAX_PAYLOAD_BYTES
    try:
        serialized = json.dumps(payload, allow_nan=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"Payload is not JSON-serializable: {e}") from e

    if len(serialized) > limit:
        raise PayloadTooLargeError(f"Payload too large: {len(serialized)} bytes (max: {limit})")

    return gzip.compress(serialized)


def decompress_payload(blob: bytes, max_bytes: Optional[int] = None) -> Any:
    """
    Decompress and deserialize a payload blob.

    Decompression stops as soon as the output passes the cap.

    Raises:
        PayloadTooLargeError: If the decompressed payload exceeds the cap
        PayloadCodecError: If the blob is not valid gzip-compressed JSON
    """
    limit = max_bytes or MAX_PAYLOAD_BYTES
    # wbits 16+MAX_WBITS selects the gzip container
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    try:
        data = decompressor.decompress(blob, limit + 1)
    except zlib.error as e:
        raise PayloadCodecError(f"Corrupt payload: {e}") from e

    if len(data) > limit or decompressor.unconsumed_tail:
        logger.warning(f"Rejected payload exceeding {limit} bytes after decompression")
        raise PayloadTooLargeError("Decompressed payload too large")

    if not decompressor.eof:
        raise PayloadCodecError("Corrupt payload: truncated stream")

    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PayloadCodecError(f"Corrupt payload: {e}") from e
