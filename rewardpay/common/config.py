"""Central environment-driven settings shared by the gateway and job handlers.

Each process loads this once at startup. Behavior is controlled by
environment variables (see `.env.example`).
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WalletConfig(BaseModel):
    """One custodial hot wallet and the claim source it pays for."""

    purpose: str = Field(min_length=1)
    private_key: str = Field(min_length=1)
    airdrop_contract: str = Field(min_length=1)


class Settings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "rewardpay"
    log_level: str = "INFO"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    public_base_url: str = "http://gateway:8000"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    qstash_url: str = "https://qstash.upstash.io"
    qstash_token: str = ""

    rpc_url: str = "https://mainnet.base.org"
    chain_id: int = 8453
    token_address: str = ""
    token_decimals: int = 18
    reward_amount: int = 420
    approval_amount: int = 1_000_000
    min_native_balance_wei: int = 5 * 10**15
    fallback_gas_price_wei: int = 100_000_000
    gas_limit_base: int = 2_000_000
    gas_limit_per_claim: int = 100_000
    wallets: list[WalletConfig] = Field(default_factory=list)
    claim_sources: list[str] = Field(default_factory=lambda: ["web", "mini_app"])

    batch_size: int = 10
    batch_timeout_seconds: int = 15
    waiter_timeout_seconds: int = 30
    waiter_poll_seconds: float = 1.0
    batch_lock_ttl_seconds: int = 180
    wallet_lease_ttl_seconds: int = 150

    inline_tx_attempts: int = 3
    tx_retry_delay_seconds: float = 2.0
    tx_receipt_timeout_seconds: int = 30
    fee_base_percent: int = 120
    fee_step_percent: int = 20

    busy_retry_min_seconds: int = 5
    busy_retry_max_seconds: int = 15
    batch_retry_schedule_minutes: list[int] = Field(default_factory=lambda: [2, 5, 10, 20])
    single_retry_schedule_minutes: list[int] = Field(default_factory=lambda: [20, 40, 60, 120])

    claim_status_ttl_seconds: int = 86400
    inflight_marker_ttl_seconds: int = 86400
    stale_processing_seconds: int = 600
    stale_queue_seconds: int = 300

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("batch_retry_schedule_minutes", "single_retry_schedule_minutes")
    @classmethod
    def _monotonic_schedule(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("retry schedule must not be empty")
        if any(later < earlier for earlier, later in zip(value, value[1:])):
            raise ValueError("retry schedule must be non-decreasing")
        return value

    @model_validator(mode="after")
    def _waiter_outlives_batch_timer(self) -> "Settings":
        if self.waiter_timeout_seconds < 2 * self.batch_timeout_seconds:
            raise ValueError("waiter_timeout_seconds must be at least 2x batch_timeout_seconds")
        if self.busy_retry_max_seconds < self.busy_retry_min_seconds:
            raise ValueError("busy_retry_max_seconds must be >= busy_retry_min_seconds")
        return self

    @property
    def unit_amount(self) -> int:
        """Reward per claim in token base units."""

        return self.reward_amount * 10**self.token_decimals


settings = Settings()
