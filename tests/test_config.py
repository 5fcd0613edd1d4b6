from pathlib import Path

import pytest

from messagebox.config import DEFAULTS, MessagingConfig, load_config


def test_defaults() -> None:
    config = MessagingConfig.from_mapping({})

    assert config.action_deadline_ms == DEFAULTS["action_deadline_ms"]
    assert config.fetch_concurrency == 2
    assert config.max_pages == 10
    assert config.force_web is False
    assert config.accounts_file == Path("accounts.json")


def test_values_are_clamped() -> None:
    config = MessagingConfig.from_mapping(
        {"fetch_concurrency": 9, "action_deadline_ms": 1000, "snapshot_attempts": 0, "fetch_deadline_ms": 5}
    )

    assert config.fetch_concurrency == 4
    assert config.action_deadline_ms == config.min_action_deadline_ms
    assert config.snapshot_attempts == 1
    assert config.fetch_deadline_ms == 10000
    assert MessagingConfig.from_mapping({"fetch_concurrency": 0}).fetch_concurrency == 1


def test_historical_names_are_accepted() -> None:
    config = MessagingConfig.from_mapping({"force_web_messages": "true", "message_action_deadline_ms": "60000"})

    assert config.force_web is True
    assert config.action_deadline_ms == 60000


def test_load_config_merges_file_and_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "config.toml"
    path.write_text(
        '[messagebox]\nfetch_concurrency = 3\nheadless = false\n\n[messagebox.locators]\nreply_box = [".Reply"]\n',
        encoding="utf-8",
    )
    monkeypatch.setenv("KL_FETCH_CONCURRENCY", "1")
    monkeypatch.setenv("KL_FORCE_WEB", "yes")

    config = load_config(path)

    assert config.fetch_concurrency == 1
    assert config.headless is False
    assert config.force_web is True
    assert config.locators == {"reply_box": [".Reply"]}


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.navigation_timeout_ms == DEFAULTS["navigation_timeout_ms"]
