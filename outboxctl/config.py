import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_CONFIG = {
    "base_delay_seconds": "5",
    "max_attempts_default": "5",
    "batch_size": "5",
    "bridge_batch_size": "50",
    "poll_interval_seconds": "2",
    "handler_timeout_seconds": "30",
    "lease_timeout_seconds": "300",
    "heartbeat_interval_seconds": "15",
    "heartbeat_freshness_seconds": "60",
    "sweep_interval_seconds": "60",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())
INTEGER_KEYS = {"max_attempts_default", "batch_size", "bridge_batch_size"}

DEFAULT_DB_FILE = "outbox.db"
DEFAULT_FROM_EMAIL = "no-reply@driverflow.app"
DEFAULT_EMAIL_API_URL = "https://api.sendgrid.com/v3/mail/send"
WORKER_ROLE = "queue_worker"


class ConfigError(Exception):
    """Raised when the process is misconfigured and must not start."""


@dataclass(frozen=True)
class Settings:
    """Process settings read from the environment."""

    db_path: str = DEFAULT_DB_FILE
    sendgrid_api_key: Optional[str] = None
    from_email: str = DEFAULT_FROM_EMAIL
    email_api_url: str = DEFAULT_EMAIL_API_URL
    dry_run: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            db_path=(env.get("OUTBOXCTL_DB") or DEFAULT_DB_FILE).strip(),
            sendgrid_api_key=env.get("SENDGRID_API_KEY") or None,
            from_email=env.get("FROM_EMAIL") or DEFAULT_FROM_EMAIL,
            email_api_url=env.get("EMAIL_API_URL") or DEFAULT_EMAIL_API_URL,
            dry_run=env.get("DRY_RUN") == "1",
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )

    def validate_for_worker(self) -> None:
        """Fail fast on settings every email job would otherwise trip over."""
        if not self.sendgrid_api_key and not self.dry_run:
            raise ConfigError("Missing SENDGRID_API_KEY (set DRY_RUN=1 to run without it)")
        if not self.db_path:
            raise ConfigError("OUTBOXCTL_DB must not be empty")


@dataclass(frozen=True)
class WorkerConfig:
    base_delay_seconds: float = 5.0
    max_attempts_default: int = 5
    batch_size: int = 5
    bridge_batch_size: int = 50
    poll_interval_seconds: float = 2.0
    handler_timeout_seconds: float = 30.0
    lease_timeout_seconds: float = 300.0
    heartbeat_interval_seconds: float = 15.0
    heartbeat_freshness_seconds: float = 60.0
    sweep_interval_seconds: float = 60.0

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "WorkerConfig":
        merged = dict(DEFAULT_CONFIG)
        merged.update({k: v for k, v in values.items() if k in ALLOWED_CONFIG_KEYS})
        try:
            cfg = cls(
                base_delay_seconds=float(merged["base_delay_seconds"]),
                max_attempts_default=int(merged["max_attempts_default"]),
                batch_size=int(merged["batch_size"]),
                bridge_batch_size=int(merged["bridge_batch_size"]),
                poll_interval_seconds=float(merged["poll_interval_seconds"]),
                handler_timeout_seconds=float(merged["handler_timeout_seconds"]),
                lease_timeout_seconds=float(merged["lease_timeout_seconds"]),
                heartbeat_interval_seconds=float(merged["heartbeat_interval_seconds"]),
                heartbeat_freshness_seconds=float(merged["heartbeat_freshness_seconds"]),
                sweep_interval_seconds=float(merged["sweep_interval_seconds"]),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid config value: {e}") from e

        if cfg.max_attempts_default < 1 or cfg.batch_size < 1 or cfg.bridge_batch_size < 1:
            raise ConfigError("max_attempts_default, batch_size and bridge_batch_size must be >= 1")
        if cfg.poll_interval_seconds <= 0 or cfg.handler_timeout_seconds <= 0:
            raise ConfigError("poll_interval_seconds and handler_timeout_seconds must be > 0")
        return cfg


def validate_config_value(key: str, value: str) -> None:
    """Check a single key/value before it is persisted."""
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    try:
        number = int(value) if key in INTEGER_KEYS else float(value)
    except ValueError:
        kind = "an integer" if key in INTEGER_KEYS else "numeric"
        raise ValueError(f"{key} must be {kind}, got {value!r}")
    if number <= 0:
        raise ValueError(f"{key} must be > 0")
