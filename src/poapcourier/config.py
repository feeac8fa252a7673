"""
Service configuration.

Secrets come from the environment; everything else has a default that can be
overridden from the command line. Values are validated at construction time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

# Env vars whose values must never be logged
REDACTED_ENV_VARS = frozenset({
    "POAP_CLIENT_SECRET",
    "POAP_API_KEY",
    "SMTP_PASS",
    "WEBHOOK_SECRET",
    "TRIGGER_SECRET",
    "DATABASE_URL",
})

# Value shipped in example env files; treated as "not configured"
PLACEHOLDER_API_KEY = "placeholder_api_key"


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default)


@dataclass
class PoapConfig:
    """Credential provider (POAP) API and OAuth settings."""

    client_id: str = ""
    client_secret: str = ""
    api_key: str = ""
    audience: str = "https://api.poap.tech"
    token_url: str = "https://auth.accounts.poap.xyz/oauth/token"
    api_base_url: str = "https://api.poap.tech"
    claim_base_url: str = "https://poap.xyz"
    gallery_base_url: str = "https://poap.gallery"
    timeout_s: float = 15.0
    token_safety_margin_s: float = 300.0

    def __post_init__(self) -> None:
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {self.timeout_s}")
        if self.token_safety_margin_s < 0:
            raise ValueError(
                f"token_safety_margin_s must be >= 0, got {self.token_safety_margin_s}"
            )

    @property
    def has_oauth_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key) and self.api_key != PLACEHOLDER_API_KEY

    @classmethod
    def from_env(cls) -> PoapConfig:
        return cls(
            client_id=_env("POAP_CLIENT_ID"),
            client_secret=_env("POAP_CLIENT_SECRET"),
            api_key=_env("POAP_API_KEY"),
            audience=_env("POAP_AUDIENCE", "https://api.poap.tech"),
        )


@dataclass
class LumaConfig:
    """Upstream event API settings."""

    api_base_url: str = "https://api.lu.ma"
    user_agent: str = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36"
    timeout_s: float = 15.0

    def __post_init__(self) -> None:
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {self.timeout_s}")


@dataclass
class SmtpConfig:
    """Outbound mail transport."""

    host: str = "smtp.gmail.com"
    port: int = 587
    username: str = ""
    password: str = ""
    from_address: str = ""
    start_tls: bool = True
    timeout_s: float = 30.0

    def __post_init__(self) -> None:
        if not 0 < self.port <= 65535:
            raise ValueError(f"port must be 1..65535, got {self.port}")
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {self.timeout_s}")
        if not self.from_address:
            self.from_address = self.username

    @property
    def configured(self) -> bool:
        return bool(self.username and self.password)

    @classmethod
    def from_env(cls) -> SmtpConfig:
        return cls(
            host=_env("SMTP_HOST", "smtp.gmail.com"),
            port=int(_env("SMTP_PORT", "587")),
            username=_env("SMTP_USER"),
            password=_env("SMTP_PASS"),
            from_address=_env("SMTP_FROM"),
        )


@dataclass
class NotifierConfig:
    """Outbound webhook fired when a drop is fully delivered."""

    enabled: bool = False
    url: str = ""  # From WEBHOOK_URL env var
    secret: str = ""  # From WEBHOOK_SECRET env var
    timeout_s: float = 10.0
    max_retries: int = 2

    def __post_init__(self) -> None:
        if self.enabled:
            if not self.url:
                self.url = _env("WEBHOOK_URL")
            if not self.secret:
                self.secret = _env("WEBHOOK_SECRET")
            if not self.url:
                raise ValueError("WEBHOOK_URL required when webhook notifier enabled")
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {self.timeout_s}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")


@dataclass
class SchedulerConfig:
    """Cadence intervals for the two pipelines."""

    realtime_interval_s: float = 15.0
    batch_interval_s: float = 60.0
    # None = a run may take as long as its HTTP timeouts allow
    run_timeout_s: float | None = None

    def __post_init__(self) -> None:
        if not 1 <= self.realtime_interval_s <= 3600:
            raise ValueError(
                f"realtime_interval_s must be 1..3600, got {self.realtime_interval_s}"
            )
        if not 1 <= self.batch_interval_s <= 86400:
            raise ValueError(f"batch_interval_s must be 1..86400, got {self.batch_interval_s}")
        if self.run_timeout_s is not None and self.run_timeout_s <= 0:
            raise ValueError(f"run_timeout_s must be > 0, got {self.run_timeout_s}")


@dataclass
class ServerConfig:
    """HTTP surface: /metrics, /healthz, /trigger."""

    host: str = "0.0.0.0"
    port: int = 9090  # 0 disables the server
    trigger_secret: str = ""

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port must be 0..65535, got {self.port}")


@dataclass
class ServiceConfig:
    """Top-level configuration for the service."""

    poap: PoapConfig = field(default_factory=PoapConfig)
    luma: LumaConfig = field(default_factory=LumaConfig)
    smtp: SmtpConfig = field(default_factory=SmtpConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    database_url: str = "sqlite+aiosqlite:///./poapcourier.db"

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Build config from environment variables, defaults elsewhere."""
        return cls(
            poap=PoapConfig.from_env(),
            smtp=SmtpConfig.from_env(),
            notifier=NotifierConfig(enabled=bool(_env("WEBHOOK_URL"))),
            server=ServerConfig(trigger_secret=_env("TRIGGER_SECRET")),
            database_url=_env("DATABASE_URL", "sqlite+aiosqlite:///./poapcourier.db"),
        )
