"""Key agreement and key stretching.

Two parties derive the same direct-message key without ever exchanging it:

- sender:    HKDF(ECDH(senderPrivate, recipientPublic).x)
- recipient: HKDF(ECDH(recipientPrivate, senderPublic).x)

Password stretching for the local vault lives here too so both derivations
share one set of primitives.
"""

from __future__ import annotations

from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from veil.core.errors import EncodingError
from veil.core.settings import MIN_PBKDF2_ITERATIONS, Settings, settings as default_settings

PRIVATE_KEY_SIZE = 32
COMPRESSED_POINT_SIZE = 33
UNCOMPRESSED_POINT_SIZE = 65
SHARED_SECRET_SIZE = 32
SYMMETRIC_KEY_SIZE = 32
PASSWORD_SALT_SIZE = 16

_CURVE = ec.SECP256K1()


def load_public_key(public_key: bytes) -> ec.EllipticCurvePublicKey:
    """Parse a compressed or uncompressed secp256k1 point.

    Raises:
        EncodingError: If the bytes are not a valid point on the curve.
    """
    if len(public_key) not in (COMPRESSED_POINT_SIZE, UNCOMPRESSED_POINT_SIZE):
        raise EncodingError(f"Public key must be 33 or 65 bytes, got {len(public_key)}")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, bytes(public_key))
    except ValueError as err:
        raise EncodingError(f"Invalid secp256k1 public key: {err}") from err


def is_valid_public_key(public_key: bytes) -> bool:
    """Return True if ``public_key`` is a usable secp256k1 point."""
    try:
        load_public_key(public_key)
    except EncodingError:
        return False
    return True


def load_private_key(private_key: bytes) -> ec.EllipticCurvePrivateKey:
    """Build a private key from its 32-byte scalar.

    Raises:
        EncodingError: If the scalar has the wrong size or is out of range.
    """
    if len(private_key) != PRIVATE_KEY_SIZE:
        raise EncodingError(f"Private key must be 32 bytes, got {len(private_key)}")
    try:
        return ec.derive_private_key(int.from_bytes(private_key, "big"), _CURVE)
    except ValueError as err:
        raise EncodingError(f"Invalid secp256k1 private key: {err}") from err


def compress_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Return the 33-byte compressed encoding of a point."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    )


@dataclass(frozen=True)
class KeyPair:
    """A secp256k1 key pair held as raw bytes."""

    private_bytes: bytes
    public_bytes: bytes

    @classmethod
    def generate(cls) -> KeyPair:
        """Generate a fresh key pair."""
        private_key = ec.generate_private_key(_CURVE)
        scalar = private_key.private_numbers().private_value.to_bytes(PRIVATE_KEY_SIZE, "big")
        return cls(private_bytes=scalar, public_bytes=compress_public_key(private_key.public_key()))

    @classmethod
    def from_private_bytes(cls, private_bytes: bytes) -> KeyPair:
        """Rebuild a key pair from an imported private scalar."""
        private_key = load_private_key(private_bytes)
        return cls(
            private_bytes=bytes(private_bytes),
            public_bytes=compress_public_key(private_key.public_key()),
        )

    def __repr__(self) -> str:
        return f"KeyPair(public_bytes={self.public_bytes.hex()!r})"


def public_key_from_private(private_key: bytes) -> bytes:
    """Return the compressed public key for a private scalar."""
    return KeyPair.from_private_bytes(private_key).public_bytes


def agree(private_key: bytes, public_key: bytes) -> bytes:
    """Return the x-coordinate of the ECDH shared point.

    Both participants get identical output when each uses its own private key
    and the other's public key.
    """
    shared = load_private_key(private_key).exchange(ec.ECDH(), load_public_key(public_key))
    if len(shared) != SHARED_SECRET_SIZE:
        raise EncodingError("Unexpected shared secret length")
    return shared


def derive_message_key(shared_secret: bytes, config: Settings | None = None) -> bytes:
    """Stretch an agreement output into a 256-bit direct-message key."""
    config = config or default_settings
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=SYMMETRIC_KEY_SIZE,
        salt=config.dm_hkdf_salt_bytes,
        info=config.dm_hkdf_info_bytes,
    )
    return hkdf.derive(shared_secret)


def derive_shared_key(private_key: bytes, public_key: bytes, config: Settings | None = None) -> bytes:
    """Agree and stretch in one step."""
    return derive_message_key(agree(private_key, public_key), config)


def hkdf_sha256(
    key_material: bytes,
    info: bytes,
    length: int = SYMMETRIC_KEY_SIZE,
    salt: bytes | None = None,
) -> bytes:
    """HKDF-SHA256 for private-feed key separation; the salt is empty unless given."""
    hkdf = HKDF(algorithm=hashes.SHA256(), length=length, salt=salt, info=info)
    return hkdf.derive(key_material)


def stretch_password(password: str, salt: bytes, iterations: int) -> bytes:
    """Derive a vault key from a password with PBKDF2-HMAC-SHA256.

    Args:
        password: User password.
        salt: Random 16-byte salt stored with the vault entry.
        iterations: Iteration count stored with the vault entry.

    Raises:
        ValueError: If the iteration count is below the floor or the salt is short.
    """
    if iterations < MIN_PBKDF2_ITERATIONS:
        raise ValueError(f"PBKDF2 iterations must be at least {MIN_PBKDF2_ITERATIONS}")
    if len(salt) < PASSWORD_SALT_SIZE:
        raise ValueError("Password salt must be at least 16 bytes")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=SYMMETRIC_KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))
