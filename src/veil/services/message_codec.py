"""Encoding of encrypted direct-message envelopes into ledger fields.

Envelopes are written in a compact binary layout::

    0x01 || senderPublicKey (33) || nonce (12) || ciphertext || tag (16)

Older clients wrote colon-separated text instead, either
``senderPublicKey:nonce:ciphertext`` or the legacy ``nonce:ciphertext`` that
carries no sender key. Both are still accepted on read.
"""

from __future__ import annotations

import base64
import binascii
import re
import string
from collections.abc import Collection
from dataclasses import dataclass

from veil.core.errors import EncodingError
from veil.core.settings import MIN_BINARY_FIELD_LENGTH
from veil.services.cipher import GCM_NONCE_SIZE, GCM_TAG_SIZE
from veil.services.key_derivation import COMPRESSED_POINT_SIZE, UNCOMPRESSED_POINT_SIZE

ENVELOPE_VERSION = 0x01
PUBLIC_KEY_SIZES = (COMPRESSED_POINT_SIZE, UNCOMPRESSED_POINT_SIZE)
_BINARY_HEADER_SIZE = 1 + COMPRESSED_POINT_SIZE + GCM_NONCE_SIZE
_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/_-]+={0,2}$")
_HEX_DIGITS = frozenset(string.hexdigits)


# --- Byte sources -------------------------------------------------------------------


@dataclass(frozen=True)
class Raw:
    """Bytes that arrived already binary."""

    data: bytes

    def is_valid(self, expected_lengths: Collection[int] | None = None) -> bool:
        return expected_lengths is None or len(self.data) in expected_lengths

    def decode(self) -> bytes:
        return self.data


@dataclass(frozen=True)
class Base64:
    """Standard or URL-safe base64 text, padding optional."""

    text: str

    def _unpadded_length(self) -> int:
        return len(self.text.rstrip("="))

    def is_valid(self, expected_lengths: Collection[int] | None = None) -> bool:
        if not self.text or not _BASE64_PATTERN.match(self.text):
            return False
        if "=" in self.text and len(self.text) % 4:
            return False
        unpadded = self._unpadded_length()
        if unpadded % 4 == 1:
            return False
        decoded_length = unpadded * 3 // 4
        return expected_lengths is None or decoded_length in expected_lengths

    def decode(self) -> bytes:
        normalized = self.text.rstrip("=").replace("-", "+").replace("_", "/")
        normalized += "=" * (-len(normalized) % 4)
        return base64.b64decode(normalized, validate=True)


@dataclass(frozen=True)
class Hex:
    """Hexadecimal text."""

    text: str

    def is_valid(self, expected_lengths: Collection[int] | None = None) -> bool:
        if not self.text or len(self.text) % 2:
            return False
        if not set(self.text) <= _HEX_DIGITS:
            return False
        return expected_lengths is None or len(self.text) // 2 in expected_lengths

    def decode(self) -> bytes:
        return bytes.fromhex(self.text)


BytesSource = Raw | Base64 | Hex


def classify_bytes(
    value: bytes | bytearray | memoryview | str | list[int],
    expected_lengths: Collection[int] | None = None,
) -> BytesSource:
    """Pick the decoder for ``value``.

    Binary input is always ``Raw``. Text is offered to ``Base64`` first and
    ``Hex`` second; the first whose validity predicate accepts it wins.

    Raises:
        EncodingError: If no decoder accepts the value.
    """
    if isinstance(value, bytes | bytearray | memoryview):
        candidates: tuple[BytesSource, ...] = (Raw(bytes(value)),)
    elif isinstance(value, list):
        if not all(isinstance(item, int) and 0 <= item <= 255 for item in value):
            raise EncodingError("Byte lists must contain integers in 0..255")
        candidates = (Raw(bytes(value)),)
    elif isinstance(value, str):
        text = value.strip()
        candidates = (Base64(text), Hex(text))
    else:
        raise EncodingError(f"Unsupported byte source type: {type(value).__name__}")

    for candidate in candidates:
        if candidate.is_valid(expected_lengths):
            return candidate
    raise EncodingError("Value is not valid binary, base64 or hex of the expected length")


def decode_bytes(
    value: bytes | bytearray | memoryview | str | list[int],
    expected_lengths: Collection[int] | None = None,
) -> bytes:
    """Decode any supported byte source into bytes."""
    source = classify_bytes(value, expected_lengths)
    try:
        return source.decode()
    except (binascii.Error, ValueError) as err:  # pragma: no cover - predicates guard this
        raise EncodingError(f"Could not decode {type(source).__name__} value") from err


def ensure_binary_field(value: bytes, name: str) -> bytes:
    """Check a byte field is long enough for the ledger to store as binary.

    Raises:
        EncodingError: If the value is shorter than ``MIN_BINARY_FIELD_LENGTH``.
    """
    if len(value) < MIN_BINARY_FIELD_LENGTH:
        raise EncodingError(
            f"Field {name!r} must be at least {MIN_BINARY_FIELD_LENGTH} bytes, got {len(value)}"
        )
    return bytes(value)


# --- Envelopes ----------------------------------------------------------------------


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Ciphertext of one direct message plus what a reader needs to open it."""

    ciphertext: bytes
    nonce: bytes
    sender_public_key: bytes | None = None

    @property
    def has_sender_key(self) -> bool:
        """Return True unless this came from the legacy two-part encoding."""
        return bool(self.sender_public_key)


def _validate(envelope: EncryptedEnvelope) -> EncryptedEnvelope:
    if len(envelope.nonce) != GCM_NONCE_SIZE:
        raise EncodingError(f"Nonce must be {GCM_NONCE_SIZE} bytes")
    if len(envelope.ciphertext) < GCM_TAG_SIZE:
        raise EncodingError("Ciphertext is shorter than the authentication tag")
    if envelope.sender_public_key is not None and len(envelope.sender_public_key) not in PUBLIC_KEY_SIZES:
        raise EncodingError("Sender public key must be 33 or 65 bytes")
    return envelope


def encode_envelope(envelope: EncryptedEnvelope) -> bytes:
    """Serialize an envelope to the binary ``encryptedContent`` layout.

    Raises:
        EncodingError: If the sender key is missing or not compressed.
    """
    _validate(envelope)
    if envelope.sender_public_key is None or len(envelope.sender_public_key) != COMPRESSED_POINT_SIZE:
        raise EncodingError("Binary envelopes require a 33-byte compressed sender key")
    payload = (
        bytes([ENVELOPE_VERSION])
        + envelope.sender_public_key
        + envelope.nonce
        + envelope.ciphertext
    )
    return ensure_binary_field(payload, "encryptedContent")


def format_envelope_text(envelope: EncryptedEnvelope) -> str:
    """Serialize an envelope to the ``senderPublicKey:nonce:ciphertext`` text form."""
    _validate(envelope)
    parts = [envelope.nonce, envelope.ciphertext]
    if envelope.sender_public_key:
        parts.insert(0, envelope.sender_public_key)
    return ":".join(base64.b64encode(part).decode("ascii") for part in parts)


def _parse_text(text: str) -> EncryptedEnvelope:
    parts = text.strip().split(":")
    if len(parts) == 3:
        sender_part, nonce_part, ciphertext_part = parts
        sender_public_key: bytes | None = decode_bytes(sender_part, PUBLIC_KEY_SIZES)
    elif len(parts) == 2:
        nonce_part, ciphertext_part = parts
        sender_public_key = None
    else:
        raise EncodingError(f"Envelope text must have 2 or 3 parts, got {len(parts)}")
    return EncryptedEnvelope(
        ciphertext=decode_bytes(ciphertext_part),
        nonce=decode_bytes(nonce_part, (GCM_NONCE_SIZE,)),
        sender_public_key=sender_public_key,
    )


def decode_envelope(value: bytes | bytearray | memoryview | str | list[int]) -> EncryptedEnvelope:
    """Parse an ``encryptedContent`` field in any supported encoding.

    Formats are tried in a fixed order: versioned binary, then text with three
    parts, then legacy text with two parts.

    Raises:
        EncodingError: For any malformed layout.
    """
    if isinstance(value, list):
        value = decode_bytes(value)
    if isinstance(value, bytes | bytearray | memoryview):
        data = bytes(value)
        if data[:1] == bytes([ENVELOPE_VERSION]):
            if len(data) < _BINARY_HEADER_SIZE + GCM_TAG_SIZE:
                raise EncodingError("Binary envelope is truncated")
            sender_end = 1 + COMPRESSED_POINT_SIZE
            envelope = EncryptedEnvelope(
                sender_public_key=data[1:sender_end],
                nonce=data[sender_end:_BINARY_HEADER_SIZE],
                ciphertext=data[_BINARY_HEADER_SIZE:],
            )
            return _validate(envelope)
        try:
            value = data.decode("ascii")
        except UnicodeDecodeError as err:
            raise EncodingError("Unknown binary envelope version") from err
    if not isinstance(value, str):
        raise EncodingError(f"Unsupported envelope type: {type(value).__name__}")
    return _validate(_parse_text(value))
