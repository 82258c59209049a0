"""Global configuration for EventScope."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

from .policy import catalog_from_mapping

DEFAULTS: dict[str, Any] = {
    "weight_attending": 100.0,
    "weight_friend_host": 60.0,
    "weight_private_invited": 30.0,
    "weight_friends_tier": 20.0,
    "weight_per_attendee": 2.0,
    "attendee_score_cap": 20.0,
    "weight_within_week": 15.0,
    "weight_within_day": 25.0,
    "weight_per_mutual_friend": 5.0,
    "weight_distant_penalty": -10.0,
    "distant_after_days": 30,
    "weight_followed_host": 10.0,
    "weight_interest_match": 5.0,
    "interest_match_cap": 3,
    "feed_per_page": 20,
    "max_feed_candidates": 500,
    "guest_token_secret": "change-me",
    "guest_pass_ttl_hours": 72,
    "guest_pass_sweep_hours": 1,
    "enable_scheduler": True,
    "seed_users": 20,
    "seed_events": 40,
    "seed_attendees_per_event": 8,
    "app_host": "0.0.0.0",
    "app_port": 8000,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "weight_attending": float,
    "weight_friend_host": float,
    "weight_private_invited": float,
    "weight_friends_tier": float,
    "weight_per_attendee": float,
    "attendee_score_cap": float,
    "weight_within_week": float,
    "weight_within_day": float,
    "weight_per_mutual_friend": float,
    "weight_distant_penalty": float,
    "distant_after_days": int,
    "weight_followed_host": float,
    "weight_interest_match": float,
    "interest_match_cap": int,
    "feed_per_page": int,
    "max_feed_candidates": int,
    "guest_token_secret": str,
    "guest_pass_ttl_hours": int,
    "guest_pass_sweep_hours": int,
    "enable_scheduler": bool,
    "seed_users": int,
    "seed_events": int,
    "seed_attendees_per_event": int,
    "app_host": str,
    "app_port": int,
}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    weight_attending: float
    weight_friend_host: float
    weight_private_invited: float
    weight_friends_tier: float
    weight_per_attendee: float
    attendee_score_cap: float
    weight_within_week: float
    weight_within_day: float
    weight_per_mutual_friend: float
    weight_distant_penalty: float
    distant_after_days: int
    weight_followed_host: float
    weight_interest_match: float
    interest_match_cap: int
    feed_per_page: int
    max_feed_candidates: int
    guest_token_secret: str
    guest_pass_ttl_hours: int
    guest_pass_sweep_hours: int
    enable_scheduler: bool
    seed_users: int
    seed_events: int
    seed_attendees_per_event: int
    app_host: str
    app_port: int
    policy: dict[str, Any]
    config_path: Path

    @property
    def guest_pass_ttl(self) -> timedelta:
        return timedelta(hours=self.guest_pass_ttl_hours)

    @property
    def guest_pass_sweep_interval(self) -> timedelta:
        return timedelta(hours=self.guest_pass_sweep_hours)


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"EVENTSCOPE_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = Path(data_dir) if data_dir else resolved_base / "data"
    if not resolved_data.is_absolute():
        resolved_data = resolved_base / resolved_data
    resolved_db = (
        Path(database_path) if database_path else resolved_data / "eventscope.db"
    )
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("EVENTSCOPE_BASE_DIR", Path.cwd()))
    env_config = os.getenv("EVENTSCOPE_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "eventscope.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("EVENTSCOPE_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("EVENTSCOPE_DB", toml_config.get("database_path")),
    )

    layered = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    policy = toml_config.get("policy") or {}
    if not isinstance(policy, dict):
        raise ValueError("The [policy] section must be a table")
    catalog_from_mapping(policy)

    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        policy=policy,
        config_path=config_path,
        **layered,
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    values: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
    }
    for key in DEFAULTS:
        values[key] = getattr(settings, key)
    values["guest_token_secret"] = "***"
    values["policy"] = settings.policy
    return values


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# EventScope configuration\n"]
    tables = {key: value for key, value in config.items() if isinstance(value, dict)}
    for key in sorted(config.keys()):
        if key in tables:
            continue
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    for name, table in sorted(tables.items()):
        for section, values in sorted(table.items()):
            lines.append(f"\n[{name}.{section}]\n")
            for key in sorted(values.keys()):
                lines.append(f"{key} = {_toml_literal(values[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            continue
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
