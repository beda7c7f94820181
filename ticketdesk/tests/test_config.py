from __future__ import annotations

from pathlib import Path

import pytest

from core.config import ConfigError, load_config


def _write_config(tmp_path: Path, body: str) -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / "config.yaml"
    config_path.write_text(body.strip(), encoding="utf-8")
    return config_path


def test_load_config_reads_yaml(tmp_path: Path, monkeypatch) -> None:
    config_path = _write_config(
        tmp_path,
        """
discord:
  token: test-token
  prefix: "?"
database:
  url: "sqlite:///./data/test.db"
security:
  max_open_tickets_per_user: 5
advisor:
  enabled: true
  confidence_threshold: 0.8
""",
    )

    for key in ("DISCORD_TOKEN", "DATABASE_URL", "ADVISOR_ENABLED", "OPENAI_API_KEY"):
        monkeypatch.delenv(key, raising=False)
    cfg = load_config(config_path)

    assert cfg.discord.token == "test-token"
    assert cfg.discord.prefix == "?"
    assert cfg.database.url.startswith("sqlite:///")
    assert cfg.security.max_open_tickets_per_user == 5
    assert cfg.security.ticket_creation_cooldown_seconds == 20
    assert cfg.advisor.enabled is True
    assert cfg.advisor.confidence_threshold == 0.8
    assert cfg.advisor.model == "gpt-4o"
    assert cfg.enabled_extensions == ["cogs.events", "cogs.tickets"]


def test_env_overrides_secrets(tmp_path: Path, monkeypatch) -> None:
    config_path = _write_config(
        tmp_path,
        """
discord:
  token: yaml-token
billing:
  webhook_secret: yaml-secret
""",
    )
    monkeypatch.setenv("DISCORD_TOKEN", "env-token")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_env")
    monkeypatch.setenv("CONSOLE_API_KEY", "console-key")
    cfg = load_config(config_path)

    assert cfg.discord.token == "env-token"
    assert cfg.billing.webhook_secret == "whsec_env"
    assert cfg.fastapi.api_key == "console-key"


def test_unresolved_token_placeholder_is_rejected(tmp_path: Path, monkeypatch) -> None:
    config_path = _write_config(tmp_path, "discord:\n  token: ${DISCORD_TOKEN}\n")
    monkeypatch.delenv("DISCORD_TOKEN", raising=False)
    with pytest.raises(ConfigError):
        load_config(config_path)


def test_missing_config_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "config" / "absent.yaml")
