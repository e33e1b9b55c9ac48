"""Tests for configuration loading and validation."""

import pytest

from veil.core.settings import Settings


def test_defaults() -> None:
    settings = Settings()

    assert settings.vault_pbkdf2_iterations >= 100_000
    assert settings.conversation_id_length == 32
    assert settings.max_inheritance_depth == 100
    assert settings.dm_hkdf_salt_bytes == b"veil-dm-v1"
    assert settings.dm_hkdf_info_bytes == b"aes-key"


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("VEIL_MAX_INHERITANCE_DEPTH", "25")
    monkeypatch.setenv("VEIL_SEND_READ_RECEIPTS", "false")
    monkeypatch.setenv("VEIL_DM_HKDF_SALT", "yappr-dm-v1")

    settings = Settings()

    assert settings.max_inheritance_depth == 25
    assert settings.send_read_receipts is False
    assert settings.dm_hkdf_salt_bytes == b"yappr-dm-v1"


@pytest.mark.parametrize(
    "overrides",
    [
        {"vault_pbkdf2_iterations": 10_000},
        {"conversation_id_length": 33},
        {"max_inheritance_depth": 0},
        {"registry_fetch_attempts": 0},
    ],
)
def test_invalid_values_are_rejected(overrides) -> None:
    with pytest.raises(ValueError):
        Settings(**overrides)
