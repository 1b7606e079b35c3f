import pytest
from pydantic import ValidationError

from app.core.config import Settings


def test_postgres_urls_use_psycopg_driver():
    settings = Settings(_env_file=None, database_url="postgres://user:pw@db:5432/ledger")

    assert settings.resolved_database_url == (
        "postgresql+psycopg://user:pw@db:5432/ledger?target_session_attrs=read-write"
    )


def test_sqlite_url_is_left_untouched():
    settings = Settings(_env_file=None, database_url="sqlite:///./ledger.db")

    assert settings.resolved_database_url == "sqlite:///./ledger.db"


def test_list_settings_accept_comma_separated_strings():
    settings = Settings(
        _env_file=None,
        admin_emails="Ops@Example.com, second@example.com",
        db_retry_backoff_seconds="0.5, 1, 2",
    )

    assert settings.admin_emails == ["ops@example.com", "second@example.com"]
    assert settings.db_retry_backoff_schedule == (0.5, 1.0, 2.0)


def test_mirroring_follows_prediction_contract():
    assert Settings(_env_file=None).prediction_mirroring_enabled is False
    assert Settings(
        _env_file=None, prediction_contract_address="0x000000000000000000000000000000000000dEaD"
    ).prediction_mirroring_enabled is True


@pytest.mark.parametrize("key", ["not-hex", "ab" * 16])
def test_encryption_key_must_be_32_hex_bytes(key):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, wallet_encryption_key=key)


def test_encryption_key_prefix_is_stripped():
    settings = Settings(_env_file=None, wallet_encryption_key="0x" + "ab" * 32)

    assert settings.wallet_encryption_key == "ab" * 32


def test_negative_backoff_is_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, db_retry_backoff_seconds="1,-2")
