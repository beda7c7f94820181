from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv


class ConfigError(RuntimeError):
    pass


@dataclass(slots=True)
class DiscordConfig:
    token: str
    prefix: str = "!"
    application_id: int | None = None
    sync_commands_on_start: bool = True
    status_text: str = "Support tickets"
    activity_type: str = "watching"
    allowed_mentions_everyone: bool = False


@dataclass(slots=True)
class DatabaseConfig:
    url: str = "sqlite:///./data/ticketdesk.db"
    pool_min_size: int = 2
    pool_max_size: int = 10
    timeout_seconds: int = 30


@dataclass(slots=True)
class RedisConfig:
    enabled: bool = False
    url: str = "redis://localhost:6379/0"
    default_ttl: int = 120


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    directory: str = "logs"
    file_name: str = "ticketdesk.log"
    max_bytes: int = 10_000_000
    backup_count: int = 10
    json_console: bool = False


@dataclass(slots=True)
class SecurityConfig:
    ticket_creation_cooldown_seconds: int = 20
    ticket_creation_max_per_hour: int = 8
    max_open_tickets_per_user: int = 3


@dataclass(slots=True)
class TranscriptConfig:
    storage_directory: str = "artifacts/transcripts"
    archive_enabled: bool = True


@dataclass(slots=True)
class FastApiConfig:
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    api_key: str = ""


@dataclass(slots=True)
class BillingConfig:
    webhook_secret: str = ""
    default_plan_tokens: int = 1


@dataclass(slots=True)
class AdvisorConfig:
    enabled: bool = False
    api_key: str = ""
    model: str = "gpt-4o"
    confidence_threshold: float = 0.7
    capture_threshold: float = 0.9
    auto_capture: bool = False
    history_limit: int = 20
    timeout_seconds: int = 30


@dataclass(slots=True)
class AppConfig:
    discord: DiscordConfig
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    transcripts: TranscriptConfig = field(default_factory=TranscriptConfig)
    fastapi: FastApiConfig = field(default_factory=FastApiConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    advisor: AdvisorConfig = field(default_factory=AdvisorConfig)
    enabled_extensions: list[str] = field(
        default_factory=lambda: [
            "cogs.events",
            "cogs.tickets",
        ]
    )


def _get_env_str(key: str, fallback: str | None = None) -> str | None:
    value = os.getenv(key)
    if value is None:
        return fallback
    cleaned = value.strip()
    return cleaned if cleaned else fallback


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _deep_get(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    node: Any = data
    for key in keys:
        if not isinstance(node, dict):
            return default
        node = node.get(key)
        if node is None:
            return default
    return node


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return raw


def load_config(config_path: Path) -> AppConfig:
    env_path = config_path.parent.parent / ".env"
    load_dotenv(env_path)
    raw = _load_yaml(config_path)

    discord_token = _get_env_str("DISCORD_TOKEN", _deep_get(raw, "discord", "token"))
    if not discord_token or "${" in discord_token:
        raise ConfigError("DISCORD_TOKEN is required")

    discord_cfg = DiscordConfig(
        token=discord_token,
        prefix=str(_get_env_str("BOT_PREFIX", _deep_get(raw, "discord", "prefix", default="!"))),
        application_id=(
            int(_get_env_str("DISCORD_APPLICATION_ID"))
            if _get_env_str("DISCORD_APPLICATION_ID")
            else _deep_get(raw, "discord", "application_id")
        ),
        sync_commands_on_start=_as_bool(
            _get_env_str("SYNC_COMMANDS"),
            _as_bool(_deep_get(raw, "discord", "sync_commands_on_start"), True),
        ),
        status_text=str(_deep_get(raw, "discord", "status_text", default="Support tickets")),
        activity_type=str(_deep_get(raw, "discord", "activity_type", default="watching")),
        allowed_mentions_everyone=_as_bool(
            _deep_get(raw, "discord", "allowed_mentions_everyone"), False
        ),
    )

    database_cfg = DatabaseConfig(
        url=str(
            _get_env_str(
                "DATABASE_URL",
                _deep_get(raw, "database", "url", default="sqlite:///./data/ticketdesk.db"),
            )
        ),
        pool_min_size=_as_int(
            _get_env_str("DB_POOL_MIN", None),
            _as_int(_deep_get(raw, "database", "pool_min_size"), 2),
        ),
        pool_max_size=_as_int(
            _get_env_str("DB_POOL_MAX", None),
            _as_int(_deep_get(raw, "database", "pool_max_size"), 10),
        ),
        timeout_seconds=_as_int(
            _get_env_str("DB_TIMEOUT_SECONDS", None),
            _as_int(_deep_get(raw, "database", "timeout_seconds"), 30),
        ),
    )

    redis_cfg = RedisConfig(
        enabled=_as_bool(_get_env_str("REDIS_ENABLED"), _as_bool(_deep_get(raw, "redis", "enabled"), False)),
        url=str(_get_env_str("REDIS_URL", _deep_get(raw, "redis", "url", default="redis://localhost:6379/0"))),
        default_ttl=_as_int(
            _get_env_str("REDIS_DEFAULT_TTL", None),
            _as_int(_deep_get(raw, "redis", "default_ttl"), 120),
        ),
    )

    logging_cfg = LoggingConfig(
        level=str(_get_env_str("LOG_LEVEL", _deep_get(raw, "logging", "level", default="INFO"))),
        directory=str(_deep_get(raw, "logging", "directory", default="logs")),
        file_name=str(_deep_get(raw, "logging", "file_name", default="ticketdesk.log")),
        max_bytes=_as_int(_deep_get(raw, "logging", "max_bytes"), 10_000_000),
        backup_count=_as_int(_deep_get(raw, "logging", "backup_count"), 10),
        json_console=_as_bool(_deep_get(raw, "logging", "json_console"), False),
    )

    security_cfg = SecurityConfig(
        ticket_creation_cooldown_seconds=_as_int(
            _deep_get(raw, "security", "ticket_creation_cooldown_seconds"), 20
        ),
        ticket_creation_max_per_hour=_as_int(
            _deep_get(raw, "security", "ticket_creation_max_per_hour"), 8
        ),
        max_open_tickets_per_user=_as_int(
            _deep_get(raw, "security", "max_open_tickets_per_user"), 3
        ),
    )

    transcript_cfg = TranscriptConfig(
        storage_directory=str(
            _deep_get(raw, "transcripts", "storage_directory", default="artifacts/transcripts")
        ),
        archive_enabled=_as_bool(_deep_get(raw, "transcripts", "archive_enabled"), True),
    )

    fastapi_cfg = FastApiConfig(
        enabled=_as_bool(_deep_get(raw, "fastapi", "enabled"), False),
        host=str(_deep_get(raw, "fastapi", "host", default="0.0.0.0")),
        port=_as_int(_deep_get(raw, "fastapi", "port"), 8000),
        api_key=str(_get_env_str("CONSOLE_API_KEY", _deep_get(raw, "fastapi", "api_key", default=""))),
    )

    billing_cfg = BillingConfig(
        webhook_secret=str(
            _get_env_str("STRIPE_WEBHOOK_SECRET", _deep_get(raw, "billing", "webhook_secret", default=""))
        ),
        default_plan_tokens=_as_int(_deep_get(raw, "billing", "default_plan_tokens"), 1),
    )

    advisor_cfg = AdvisorConfig(
        enabled=_as_bool(_get_env_str("ADVISOR_ENABLED"), _as_bool(_deep_get(raw, "advisor", "enabled"), False)),
        api_key=str(_get_env_str("OPENAI_API_KEY", _deep_get(raw, "advisor", "api_key", default=""))),
        model=str(_deep_get(raw, "advisor", "model", default="gpt-4o")),
        confidence_threshold=_as_float(_deep_get(raw, "advisor", "confidence_threshold"), 0.7),
        capture_threshold=_as_float(_deep_get(raw, "advisor", "capture_threshold"), 0.9),
        auto_capture=_as_bool(_deep_get(raw, "advisor", "auto_capture"), False),
        history_limit=_as_int(_deep_get(raw, "advisor", "history_limit"), 20),
        timeout_seconds=_as_int(_deep_get(raw, "advisor", "timeout_seconds"), 30),
    )

    enabled_extensions = [
        str(ext)
        for ext in list(
            _deep_get(
                raw,
                "enabled_extensions",
                default=["cogs.events", "cogs.tickets"],
            )
        )
    ]

    return AppConfig(
        discord=discord_cfg,
        database=database_cfg,
        redis=redis_cfg,
        logging=logging_cfg,
        security=security_cfg,
        transcripts=transcript_cfg,
        fastapi=fastapi_cfg,
        billing=billing_cfg,
        advisor=advisor_cfg,
        enabled_extensions=enabled_extensions,
    )
