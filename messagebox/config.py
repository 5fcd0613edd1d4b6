"""Configuration loader for the messaging automation runtime."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

ENV_PREFIX = "KL_"

DEFAULTS: Dict[str, Any] = {
    "action_deadline_ms": 45000,
    "min_action_deadline_ms": 25000,
    "hard_deadline_grace_ms": 2500,
    "snapshot_timeout_ms": 4500,
    "snapshot_attempts": 1,
    "snapshot_retry_delay_ms": 350,
    "consent_timeout_ms": 2800,
    "gdpr_timeout_ms": 5000,
    "navigation_timeout_ms": 60000,
    "request_timeout_ms": 20000,
    "browser_close_timeout_ms": 4500,
    "browser_kill_wait_ms": 800,
    "fetch_concurrency": 2,
    "max_pages": 10,
    "fetch_deadline_ms": 180000,
    "force_web": False,
    "debug_events": False,
    "log_root": "runs",
    "headless": True,
    "pause_scale": 1.0,
    "accounts_file": "accounts.json",
}

# Older deployments set the web-only switch under its historical name.
_ENV_ALIASES = {
    "force_web_messages": "force_web",
    "debug_messages": "debug_events",
    "message_action_deadline_ms": "action_deadline_ms",
}

_TRUTHY = {"true", "1", "yes", "on"}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


@dataclass(slots=True)
class MessagingConfig:
    action_deadline_ms: int = DEFAULTS["action_deadline_ms"]
    min_action_deadline_ms: int = DEFAULTS["min_action_deadline_ms"]
    hard_deadline_grace_ms: int = DEFAULTS["hard_deadline_grace_ms"]
    snapshot_timeout_ms: int = DEFAULTS["snapshot_timeout_ms"]
    snapshot_attempts: int = DEFAULTS["snapshot_attempts"]
    snapshot_retry_delay_ms: int = DEFAULTS["snapshot_retry_delay_ms"]
    consent_timeout_ms: int = DEFAULTS["consent_timeout_ms"]
    gdpr_timeout_ms: int = DEFAULTS["gdpr_timeout_ms"]
    navigation_timeout_ms: int = DEFAULTS["navigation_timeout_ms"]
    request_timeout_ms: int = DEFAULTS["request_timeout_ms"]
    browser_close_timeout_ms: int = DEFAULTS["browser_close_timeout_ms"]
    browser_kill_wait_ms: int = DEFAULTS["browser_kill_wait_ms"]
    fetch_concurrency: int = DEFAULTS["fetch_concurrency"]
    max_pages: int = DEFAULTS["max_pages"]
    fetch_deadline_ms: int = DEFAULTS["fetch_deadline_ms"]
    force_web: bool = DEFAULTS["force_web"]
    debug_events: bool = DEFAULTS["debug_events"]
    log_root: Path = field(default_factory=lambda: Path(DEFAULTS["log_root"]))
    headless: bool = DEFAULTS["headless"]
    pause_scale: float = DEFAULTS["pause_scale"]
    accounts_file: Path = field(default_factory=lambda: Path(DEFAULTS["accounts_file"]))
    locators: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "MessagingConfig":
        data = dict(DEFAULTS)
        for key, value in mapping.items():
            data[_ENV_ALIASES.get(key, key)] = value
        min_deadline = int(data["min_action_deadline_ms"])
        locators = data.get("locators") or {}
        return cls(
            action_deadline_ms=max(min_deadline, int(data["action_deadline_ms"])),
            min_action_deadline_ms=min_deadline,
            hard_deadline_grace_ms=max(0, int(data["hard_deadline_grace_ms"])),
            snapshot_timeout_ms=int(data["snapshot_timeout_ms"]),
            snapshot_attempts=max(1, int(data["snapshot_attempts"])),
            snapshot_retry_delay_ms=max(0, int(data["snapshot_retry_delay_ms"])),
            consent_timeout_ms=max(1200, int(data["consent_timeout_ms"])),
            gdpr_timeout_ms=max(1800, int(data["gdpr_timeout_ms"])),
            navigation_timeout_ms=int(data["navigation_timeout_ms"]),
            request_timeout_ms=int(data["request_timeout_ms"]),
            browser_close_timeout_ms=int(data["browser_close_timeout_ms"]),
            browser_kill_wait_ms=int(data["browser_kill_wait_ms"]),
            fetch_concurrency=_clamp(int(data["fetch_concurrency"]), 1, 4),
            max_pages=max(1, int(data["max_pages"])),
            fetch_deadline_ms=max(10000, int(data["fetch_deadline_ms"])),
            force_web=_as_bool(data["force_web"]),
            debug_events=_as_bool(data["debug_events"]),
            log_root=Path(data["log_root"]),
            headless=_as_bool(data["headless"]),
            pause_scale=max(0.0, float(data["pause_scale"])),
            accounts_file=Path(data["accounts_file"]),
            locators={str(k): [str(s) for s in v] for k, v in dict(locators).items()},
        )


def _load_toml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        return tomllib.load(fh)


def load_config(config_path: Path | None = None) -> MessagingConfig:
    """Load configuration from environment, optional TOML file, and defaults."""

    env_map: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if key.startswith(ENV_PREFIX):
            env_map[key[len(ENV_PREFIX):].lower()] = value

    file_map: Dict[str, Any] = {}
    path = config_path or Path("config.toml")
    if path.exists():
        file_map = _load_toml(path).get("messagebox", {})

    merged = {**file_map, **env_map}
    return MessagingConfig.from_mapping(merged)
