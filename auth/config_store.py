"""
auth/config_store.py -- Administrator-editable auth configuration.

Storage: the system_config table holds one JSON document per key. Stored
documents are partial: missing fields fall back to the defaults on the
dataclasses in auth/models.py, so a store written by an older release (or a
hand-edited row) still yields a complete AuthConfig.

    key             value (JSON)
    auth.local      {"enabled": true}
    auth.proxy      {"enabled": true, "header_name": "...", "whitelist": "172.19.0.0/16", ...}
    auth.session    {"timeout": 86400, "remember_me": 2592000}
    default_group   "user"

Freshness: there is no cached copy. get_auth_config() reads the table every
time it is called, and the resolver calls it once per request, so a proxy
trust change saved by an administrator applies to the very next request --
in this process and in any other process sharing the store.

Writes validate keys and field names against fixed sets and raise
ValueError on anything unknown (fail fast, never silently drop input).
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, fields, replace
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.engine import Engine

from auth.models import AuthConfig, ProxyTrustConfig, SessionTimeouts
from database.schema import system_config as _system_config

logger = logging.getLogger("homeboard.auth.config")

KEY_LOCAL = "auth.local"
KEY_PROXY = "auth.proxy"
KEY_SESSION = "auth.session"
KEY_DEFAULT_GROUP = "default_group"

_KNOWN_KEYS = frozenset({KEY_LOCAL, KEY_PROXY, KEY_SESSION, KEY_DEFAULT_GROUP})
_PROXY_FIELDS = frozenset(f.name for f in fields(ProxyTrustConfig))
_SESSION_FIELDS = frozenset(f.name for f in fields(SessionTimeouts))

PERMISSION_GROUPS = ("admin", "user", "guest")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SystemConfigStore:
    """Read-through accessor for the runtime auth configuration.

    Usage:
        config = SystemConfigStore(engine)
        config.get_auth_config().proxy.enabled
        config.update_proxy(enabled=True, whitelist="172.19.0.0/16")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_auth_config(self) -> AuthConfig:
        """Load the current configuration. Storage errors propagate to the caller."""
        with self.engine.connect() as conn:
            rows = conn.execute(_system_config.select()).fetchall()

        raw: dict[str, Any] = {}
        for row in rows:
            try:
                raw[row.key] = json.loads(row.value)
            except ValueError:
                logger.error("Ignoring unreadable system_config value for %r", row.key)
        return _build_auth_config(raw)

    def get_proxy_config(self) -> ProxyTrustConfig:
        return self.get_auth_config().proxy

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def update_proxy(self, **changes: Any) -> ProxyTrustConfig:
        """Merge changes into the stored proxy configuration and return the result."""
        _reject_unknown(changes, _PROXY_FIELDS, KEY_PROXY)
        merged = replace(self.get_auth_config().proxy, **changes)
        self._put(KEY_PROXY, asdict(merged))
        logger.info(
            "Proxy auth configuration updated (enabled=%s, fields=%s)",
            merged.enabled,
            sorted(changes),
        )
        return merged

    def update_session(self, **changes: Any) -> SessionTimeouts:
        _reject_unknown(changes, _SESSION_FIELDS, KEY_SESSION)
        for name, value in changes.items():
            if int(value) <= 0:
                raise ValueError(f"{KEY_SESSION}.{name} must be a positive number of seconds")
        merged = replace(self.get_auth_config().session, **{k: int(v) for k, v in changes.items()})
        self._put(KEY_SESSION, asdict(merged))
        logger.info("Session timeouts updated: %s", asdict(merged))
        return merged

    def set_local_enabled(self, enabled: bool) -> None:
        self._put(KEY_LOCAL, {"enabled": bool(enabled)})
        logger.info("Local authentication %s", "enabled" if enabled else "disabled")

    def set_default_group(self, group_id: str) -> None:
        if group_id not in PERMISSION_GROUPS:
            raise ValueError(f"Unknown permission group {group_id!r}; expected one of {PERMISSION_GROUPS}")
        self._put(KEY_DEFAULT_GROUP, group_id)
        logger.info("Default permission group set to %r", group_id)

    def _put(self, key: str, value: Any) -> None:
        """Upsert one key. Column names are fixed; key is validated."""
        if key not in _KNOWN_KEYS:
            raise ValueError(f"Unknown system_config key: {key!r}")
        payload = json.dumps(value)
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_system_config).where(_system_config.c.key == key).values(value=payload, updated_at=now)
            )
            if result.rowcount == 0:
                conn.execute(_system_config.insert().values(key=key, value=payload, updated_at=now))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _reject_unknown(changes: dict[str, Any], allowed: frozenset[str], key: str) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Unknown {key} fields: {sorted(unknown)!r}")


def _pick(doc: Any, allowed: frozenset[str]) -> dict[str, Any]:
    if not isinstance(doc, dict):
        return {}
    return {k: v for k, v in doc.items() if k in allowed}


def _build_auth_config(raw: dict[str, Any]) -> AuthConfig:
    """Overlay stored partial documents onto the defaults."""
    defaults = AuthConfig()

    local = raw.get(KEY_LOCAL)
    local_enabled = bool(local.get("enabled", True)) if isinstance(local, dict) else defaults.local_enabled

    proxy = replace(defaults.proxy, **_pick(raw.get(KEY_PROXY), _PROXY_FIELDS))
    # Blank header names mean "use the conventional default".
    if not proxy.header_name:
        proxy = replace(proxy, header_name=defaults.proxy.header_name)
    if not proxy.email_header_name:
        proxy = replace(proxy, email_header_name=defaults.proxy.email_header_name)

    session = replace(defaults.session, **_pick(raw.get(KEY_SESSION), _SESSION_FIELDS))

    default_group = raw.get(KEY_DEFAULT_GROUP)
    if default_group not in PERMISSION_GROUPS:
        default_group = defaults.default_group

    return AuthConfig(local_enabled=local_enabled, proxy=proxy, session=session, default_group=default_group)
