from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from rules import SubstitutionRule


DEFAULT_PROFILE_ID = "default"
ACTIVE_PROFILE_KEY = "active_profile_id"
ACCESS_KEY_STATE = "spn_access_key"
SECRET_KEY_STATE = "spn_secret_key"


@dataclass(frozen=True)
class ArchiverSettings:
    date_format: str = "%Y-%m-%d"
    archive_link_text: str = "(Archived on {date})"
    ignore_patterns: Tuple[str, ...] = ("web.archive.org/",)
    substitution_rules: Tuple[SubstitutionRule, ...] = ()
    api_delay: float = 2.0
    max_retries: int = 3
    archive_freshness_days: float = 0
    path_patterns: Tuple[str, ...] = ()
    url_patterns: Tuple[str, ...] = ()
    word_patterns: Tuple[str, ...] = ()
    capture_screenshot: bool = False
    capture_all: bool = False
    js_behavior_timeout: int = 0
    force_get: bool = False
    capture_outlinks: bool = False
    auto_clear_failed_logs: bool = False

    @property
    def freshness_seconds(self) -> float:
        return max(0.0, float(self.archive_freshness_days)) * 86400

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "ArchiverSettings":
        raw = dict(payload or {})
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {key: value for key, value in raw.items() if key in known}
        for key in ("ignore_patterns", "path_patterns", "url_patterns", "word_patterns"):
            if key in values:
                values[key] = tuple(str(item) for item in values[key] or ())
        if "substitution_rules" in values:
            values["substitution_rules"] = tuple(
                item if isinstance(item, SubstitutionRule) else SubstitutionRule.from_dict(item)
                for item in values["substitution_rules"] or ()
            )
        for key in ("api_delay", "archive_freshness_days"):
            if key in values:
                values[key] = max(0.0, float(values[key]))
        for key in ("max_retries", "js_behavior_timeout"):
            if key in values:
                values[key] = max(0, int(values[key]))
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["substitution_rules"] = [rule.to_dict() for rule in self.substitution_rules]
        for key in ("ignore_patterns", "path_patterns", "url_patterns", "word_patterns"):
            payload[key] = list(payload[key])
        return payload

    def with_overrides(self, **changes: Any) -> "ArchiverSettings":
        return replace(self, **changes)


DEFAULT_SETTINGS = ArchiverSettings()


@dataclass(frozen=True)
class Credentials:
    access_key: str = ""
    secret_key: str = field(default="", repr=False)

    @property
    def complete(self) -> bool:
        return bool(self.access_key and self.secret_key)


def load_active_settings(store) -> Tuple[str, ArchiverSettings]:
    profile_id = store.get_state(ACTIVE_PROFILE_KEY) or DEFAULT_PROFILE_ID
    payload = store.get_profile(profile_id)
    if payload is None:
        profile_id = DEFAULT_PROFILE_ID
        payload = store.get_profile(DEFAULT_PROFILE_ID)
    if payload is None:
        store.save_profile(DEFAULT_PROFILE_ID, DEFAULT_SETTINGS.to_dict())
        return DEFAULT_PROFILE_ID, DEFAULT_SETTINGS
    return profile_id, ArchiverSettings.from_dict(payload)


def set_active_profile(store, profile_id: str) -> None:
    if store.get_profile(profile_id) is None:
        raise KeyError(profile_id)
    store.set_state(ACTIVE_PROFILE_KEY, profile_id)


def save_profile(store, profile_id: str, payload: Mapping[str, Any]) -> ArchiverSettings:
    settings = ArchiverSettings.from_dict(payload)
    store.save_profile(profile_id, settings.to_dict())
    return settings


def load_credentials(store, environ: Optional[Mapping[str, str]] = None) -> Credentials:
    env = os.environ if environ is None else environ
    access = (env.get("SPN_ACCESS_KEY") or store.get_state(ACCESS_KEY_STATE) or "").strip()
    secret = (env.get("SPN_SECRET_KEY") or store.get_state(SECRET_KEY_STATE) or "").strip()
    return Credentials(access_key=access, secret_key=secret)


def save_credentials(store, credentials: Credentials) -> None:
    store.set_state(ACCESS_KEY_STATE, credentials.access_key)
    store.set_state(SECRET_KEY_STATE, credentials.secret_key)
