"""Application settings and configuration.

This module defines all configuration options for the Keystore relay and the
wallet client. Settings are loaded from environment variables with sensible
defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Keystore Relay", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # HTTP listener
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=3001, alias="PORT")

    # Solana cluster access
    solana_rpc_url: str = Field(default="https://api.devnet.solana.com", alias="SOLANA_RPC_URL")
    solana_network: str = Field(default="devnet", alias="SOLANA_NETWORK")
    rpc_timeout_seconds: float = Field(default=15.0, alias="RPC_TIMEOUT_SECONDS")
    keystore_program_id: str = Field(
        default="4DS5K64SuWK6PmN1puZVtPouLWCqQDA3aE58MPPuDXu2",
        alias="KEYSTORE_PROGRAM_ID",
    )

    # Relay signing key: JSON byte array (solana-keygen format) or base58 string
    relayer_private_key: str | None = Field(default=None, alias="RELAYER_PRIVATE_KEY")
    estimated_fee_lamports: int = Field(default=5000, alias="ESTIMATED_FEE_LAMPORTS")
    relay_await_confirmation: bool = Field(default=False, alias="RELAY_AWAIT_CONFIRMATION")
    min_relayer_balance_sol: float = Field(default=0.1, alias="MIN_RELAYER_BALANCE_SOL")

    # Rate limiting; Redis is optional and falls back to process memory
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    max_requests_per_minute: int = Field(default=10, alias="MAX_REQUESTS_PER_MINUTE")
    max_requests_per_hour: int = Field(default=100, alias="MAX_REQUESTS_PER_HOUR")

    # Confirmation polling
    confirmation_poll_interval_seconds: float = Field(
        default=1.0,
        alias="CONFIRMATION_POLL_INTERVAL_SECONDS",
    )
    confirmation_max_attempts: int = Field(default=30, alias="CONFIRMATION_MAX_ATTEMPTS")

    # Relay endpoint used by the wallet client
    relayer_url: str | None = Field(default=None, alias="RELAYER_URL")

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=False, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )


settings = Settings()  # type: ignore[call-arg]
