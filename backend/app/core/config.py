from decimal import Decimal
from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


def _split_csv(value: Any) -> list[str]:
    if value in (None, "", []):
        return []
    if isinstance(value, str):
        return [item for item in (part.strip() for part in value.split(",")) if item]
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if str(item).strip()]
    raise ValueError("expected a list or comma-separated string")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/stakeledger.db",
        description="SQLAlchemy compatible database URL for the off-chain ledger",
    )

    chain_rpc_url: AnyUrl | str = Field(
        default="https://rpc.monad.xyz",
        description="JSON-RPC endpoint of the settlement chain",
    )
    chain_id: int = Field(default=143, description="Network id of the settlement chain")
    token_contract_address: str = Field(
        default="0x16ce50D6143E2dD33df3Ab1E4089cB5f51540Dc9",
        description="ERC-20 contract holding the ledger currency on chain",
    )
    prediction_contract_address: str | None = Field(
        default=None,
        description="Prediction market contract; mirroring of market operations is disabled while unset",
    )
    chain_tx_timeout_seconds: float = Field(
        default=60.0,
        description="Maximum time to wait for a transaction receipt before treating the call as failed",
        gt=0,
    )

    wallet_encryption_key: str | None = Field(
        default=None,
        description="Hex encoded 32-byte key used to encrypt custodial private keys",
    )
    treasury_private_key: str | None = Field(
        default=None,
        description="Private key of the treasury signer",
    )
    secret_store_prefix: str = Field(
        default="STAKELEDGER_SECRET_",
        description="Environment prefix under which the managed secret store exposes secrets",
    )

    nonce_lock_ttl_seconds: float = Field(
        default=60.0,
        description="Lifetime of the treasury nonce lock before another worker may take it over",
        gt=0,
    )
    nonce_lock_poll_attempts: int = Field(
        default=30,
        description="Number of attempts made to acquire the treasury nonce lock",
        ge=1,
    )
    nonce_lock_poll_interval_seconds: float = Field(
        default=2.0,
        description="Delay between treasury nonce lock acquisition attempts",
        ge=0,
    )
    nonce_max_retries: int = Field(
        default=3,
        description="Number of times a treasury transaction is re-sent after a nonce error",
        ge=1,
    )
    nonce_retry_backoff_seconds: float = Field(
        default=1.0,
        description="Linear backoff unit between nonce-error retries",
        ge=0,
    )

    reconciliation_max_retries: int = Field(
        default=10,
        description="Failed mirror attempts after which an operation is abandoned",
        ge=1,
    )
    reconciliation_base_delay_seconds: float = Field(
        default=60.0,
        description="Base delay of the exponential retry backoff",
        gt=0,
    )
    reconciliation_cap_delay_seconds: float = Field(
        default=3600.0,
        description="Upper bound of the exponential retry backoff",
        gt=0,
    )
    reconciliation_batch_limit: int = Field(
        default=50,
        description="Maximum number of candidates examined per category in one sweep",
        ge=1,
    )
    reconciliation_interval_minutes: float = Field(
        default=15.0,
        description="Interval between reconciliation sweeps",
        gt=0,
    )
    balance_sync_interval_minutes: float = Field(
        default=60.0,
        description="Interval between on-chain balance re-polls",
        gt=0,
    )
    balance_sync_batch_size: int = Field(
        default=50,
        description="Number of wallets loaded per page during balance sync",
        ge=1,
    )
    inline_claim_batch_size: int = Field(
        default=20,
        description="Winner claims mirrored inline after a resolution; the rest are deferred to reconciliation",
        ge=0,
    )

    db_retry_attempts: int = Field(
        default=3,
        description="Number of attempts for a ledger transaction that hits a write conflict",
        ge=1,
    )
    db_retry_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: [1.0, 2.0, 4.0],
        description="Comma-separated list or array of backoff delays (seconds) between transaction retries",
    )

    admin_emails: list[str] | str = Field(
        default_factory=list,
        description="Emails treated as administrators even without an admin claim",
    )
    low_gas_threshold: Decimal = Field(
        default=Decimal("0.1"),
        description="Treasury native balance below which gas is reported as low",
    )
    critical_gas_threshold: Decimal = Field(
        default=Decimal("0.01"),
        description="Treasury native balance below which gas is reported as critical",
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("wallet_encryption_key")
    @classmethod
    def _validate_encryption_key(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        candidate = value.strip().removeprefix("0x")
        try:
            raw = bytes.fromhex(candidate)
        except ValueError as exc:
            raise ValueError("WALLET_ENCRYPTION_KEY must be hex encoded") from exc
        if len(raw) != 32:
            raise ValueError("WALLET_ENCRYPTION_KEY must decode to 32 bytes")
        return candidate

    @field_validator("admin_emails", mode="after")
    @classmethod
    def _parse_admin_emails(cls, value: Any) -> list[str]:
        return [email.lower() for email in _split_csv(value)]

    @field_validator("db_retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_retry_backoff(cls, value: Any) -> list[float]:
        if value in (None, "", []):
            return [1.0, 2.0, 4.0]
        if isinstance(value, str):
            value = _split_csv(value)
        if isinstance(value, (list, tuple)):
            backoff: list[float] = []
            for item in value:
                try:
                    delay = float(item)
                except (TypeError, ValueError) as exc:
                    raise ValueError("DB_RETRY_BACKOFF_SECONDS entries must be numeric") from exc
                if delay < 0:
                    raise ValueError("DB_RETRY_BACKOFF_SECONDS entries must not be negative")
                backoff.append(delay)
            if not backoff:
                raise ValueError("DB_RETRY_BACKOFF_SECONDS must contain at least one value")
            return backoff
        raise ValueError(
            "DB_RETRY_BACKOFF_SECONDS must be provided as a comma-separated string or list of numbers"
        )

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def db_retry_backoff_schedule(self) -> tuple[float, ...]:
        sequence = tuple(float(value) for value in self.db_retry_backoff_seconds)
        if not sequence:
            return (1.0,)
        return sequence

    @property
    def prediction_mirroring_enabled(self) -> bool:
        return bool(self.prediction_contract_address)


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
