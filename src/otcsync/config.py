from __future__ import annotations

from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from solders.pubkey import Pubkey

DEFAULT_PROGRAM_ID = "8wCCLUv68ofgoNg3AKbahgeqZitorLcgbRXQeHj7FpMd"
DEFAULT_ARCIUM_PROGRAM_ID = "F3G6Q9tRicyznCqcZLydJ6RxkwDSBeHWM458J7V6aeyk"
MIN_CRANK_INTERVAL_MS = 1000

_LOG_LEVEL_ALIASES = {"WARN": "WARNING"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    rpc_url: str = Field(default="http://127.0.0.1:8899", alias="RPC_URL")
    rpc_ws_url: str | None = Field(default=None, alias="RPC_WS_URL")
    program_id: str = Field(default=DEFAULT_PROGRAM_ID, alias="PROGRAM_ID")
    rpc_max_attempts: int = Field(default=4, alias="RPC_MAX_ATTEMPTS")
    rpc_timeout_seconds: float = Field(default=10.0, alias="RPC_TIMEOUT_SECONDS")

    store_db_path: str = Field(default="otcsync.db", alias="STORE_DB_PATH")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    payer_key_path: str = Field(default="~/.config/solana/id.json", alias="PAYER_KEY_PATH")
    crank_interval_ms: int = Field(default=10_000, alias="CRANK_INTERVAL_MS")
    crank_batch_size: int = Field(default=10, alias="CRANK_BATCH_SIZE")
    arcium_program_id: str = Field(default=DEFAULT_ARCIUM_PROGRAM_ID, alias="ARCIUM_PROGRAM_ID")
    arcium_cluster_offset: int = Field(default=0, alias="ARCIUM_CLUSTER_OFFSET")
    finalization_timeout_seconds: float = Field(
        default=120.0, alias="FINALIZATION_TIMEOUT_SECONDS"
    )

    live_queue_maxsize: int = Field(default=1_000, alias="LIVE_QUEUE_MAXSIZE")
    handler_timeout_seconds: float = Field(default=30.0, alias="HANDLER_TIMEOUT_SECONDS")
    idle_reconnect_seconds: float | None = Field(default=None, alias="IDLE_RECONNECT_SECONDS")

    @field_validator("program_id", "arcium_program_id")
    def validate_pubkey(cls, value: str) -> str:
        candidate = value.strip()
        try:
            Pubkey.from_string(candidate)
        except Exception as exc:  # noqa: BLE001
            raise ValueError(f"invalid program id: {value!r}") from exc
        return candidate

    @field_validator("log_level")
    def validate_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        normalized = _LOG_LEVEL_ALIASES.get(normalized, normalized)
        if normalized not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}")
        return normalized

    @field_validator("store_db_path")
    def validate_store_db_path(cls, value: str) -> str:
        candidate = value.strip()
        if not candidate:
            raise ValueError("STORE_DB_PATH is required and cannot be empty")
        if Path(candidate).suffix.lower() != ".db":
            raise ValueError("STORE_DB_PATH must end with '.db'")
        return candidate

    @field_validator("crank_interval_ms")
    def validate_crank_interval(cls, value: int) -> int:
        if value < MIN_CRANK_INTERVAL_MS:
            raise ValueError(f"CRANK_INTERVAL_MS must be >= {MIN_CRANK_INTERVAL_MS}")
        return value

    @field_validator("crank_batch_size", "rpc_max_attempts", "live_queue_maxsize")
    def validate_positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value

    @field_validator("arcium_cluster_offset")
    def validate_cluster_offset(cls, value: int) -> int:
        if value < 0 or value > 0xFFFFFFFF:
            raise ValueError("ARCIUM_CLUSTER_OFFSET must fit in an unsigned 32-bit integer")
        return value

    @field_validator(
        "finalization_timeout_seconds", "handler_timeout_seconds", "rpc_timeout_seconds"
    )
    def validate_positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be > 0")
        return value

    @field_validator("idle_reconnect_seconds")
    def validate_idle_reconnect(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("IDLE_RECONNECT_SECONDS must be > 0 when set")
        return value

    @property
    def crank_interval_seconds(self) -> float:
        return self.crank_interval_ms / 1000.0

    @property
    def program_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.program_id)

    @property
    def arcium_program_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.arcium_program_id)

    def resolved_payer_key_path(self) -> Path:
        return Path(self.payer_key_path).expanduser()

    def resolved_ws_url(self) -> str:
        if self.rpc_ws_url:
            return self.rpc_ws_url
        return derive_ws_url(self.rpc_url)


def derive_ws_url(rpc_url: str) -> str:
    """Map an HTTP RPC endpoint to its pubsub endpoint.

    Local validators serve pubsub on the RPC port + 1; hosted endpoints share the port.
    """
    parts = urlsplit(rpc_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    netloc = parts.netloc
    if parts.port == 8899 and parts.hostname is not None:
        netloc = netloc.replace(":8899", ":8900")
    return urlunsplit((scheme, netloc, parts.path, parts.query, parts.fragment))
