"""Subsystem settings and configuration.

This module defines all configuration options for the Veil messaging and
private-feed subsystem. Settings are loaded from environment variables with
sensible defaults, so every service can run without any configuration.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Byte-array fields shorter than this are misclassified by the ledger's type detection.
MIN_BINARY_FIELD_LENGTH = 10
MIN_PBKDF2_ITERATIONS = 100_000
SHA256_DIGEST_SIZE = 32


class Settings(BaseSettings):
    """Settings loaded from environment variables.

    Services receive an instance explicitly; the module-level ``settings``
    object only provides defaults for callers that do not care.
    """

    # Ledger contracts
    dm_contract_id: str = Field(
        default="J7MP9YU1aEGNAe7bjB45XdrjDLBsevFLPK1t1YwFS4ck",
        alias="VEIL_DM_CONTRACT_ID",
    )
    feed_contract_id: str = Field(
        default="AyWK6nDVfb8d1ZmkM5MmZZrThbUyWyso1aMeGuuVSfxf",
        alias="VEIL_FEED_CONTRACT_ID",
    )

    # Direct message key stretching (domain separation from private-feed keys)
    dm_hkdf_salt: str = Field(default="veil-dm-v1", alias="VEIL_DM_HKDF_SALT")
    dm_hkdf_info: str = Field(default="aes-key", alias="VEIL_DM_HKDF_INFO")

    # Conversation identifiers
    conversation_id_length: int = Field(default=32, alias="VEIL_CONVERSATION_ID_LENGTH")

    # Password vault
    vault_pbkdf2_iterations: int = Field(
        default=MIN_PBKDF2_ITERATIONS,
        alias="VEIL_VAULT_PBKDF2_ITERATIONS",
    )
    vault_storage_key: str = Field(
        default="veil_encrypted_credentials",
        alias="VEIL_VAULT_STORAGE_KEY",
    )
    secure_storage_prefix: str = Field(default="veil_secure_", alias="VEIL_SECURE_STORAGE_PREFIX")
    remember_me_key: str = Field(default="veil_remember_me", alias="VEIL_REMEMBER_ME_KEY")

    # Identity registry access
    registry_fetch_attempts: int = Field(default=2, alias="VEIL_REGISTRY_FETCH_ATTEMPTS")
    registry_retry_delay_seconds: float = Field(
        default=1.0,
        alias="VEIL_REGISTRY_RETRY_DELAY_SECONDS",
    )

    # Conversation listing
    message_page_size: int = Field(default=100, alias="VEIL_MESSAGE_PAGE_SIZE")
    conversation_scan_limit: int = Field(default=100, alias="VEIL_CONVERSATION_SCAN_LIMIT")
    send_read_receipts: bool = Field(default=True, alias="VEIL_SEND_READ_RECEIPTS")

    # Private feed inheritance
    max_inheritance_depth: int = Field(default=100, alias="VEIL_MAX_INHERITANCE_DEPTH")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("vault_pbkdf2_iterations")
    @classmethod
    def _check_iterations(cls, value: int) -> int:
        if value < MIN_PBKDF2_ITERATIONS:
            raise ValueError(f"PBKDF2 iterations must be at least {MIN_PBKDF2_ITERATIONS}")
        return value

    @field_validator("conversation_id_length")
    @classmethod
    def _check_conversation_id_length(cls, value: int) -> int:
        if not MIN_BINARY_FIELD_LENGTH <= value <= SHA256_DIGEST_SIZE:
            raise ValueError(
                f"Conversation id length must be between {MIN_BINARY_FIELD_LENGTH} "
                f"and {SHA256_DIGEST_SIZE} bytes"
            )
        return value

    @field_validator("max_inheritance_depth", "registry_fetch_attempts")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Value must be at least 1")
        return value

    @property
    def dm_hkdf_salt_bytes(self) -> bytes:
        """Return the direct-message HKDF salt as bytes."""
        return self.dm_hkdf_salt.encode("utf-8")

    @property
    def dm_hkdf_info_bytes(self) -> bytes:
        """Return the direct-message HKDF info string as bytes."""
        return self.dm_hkdf_info.encode("utf-8")


settings = Settings()
