"""
Per-tenant configuration.

Each tenant (``X-Tenant-Id``) owns a YAML file under /etc/secrets or
etc/secrets. Its keys act as environment overrides for the duration of a
request or socket, which is how one process serves tenants backed by
different stores, databases and history sizes.
"""

from __future__ import annotations

from dataclasses import dataclass
from contextvars import ContextVar
from pathlib import Path
import json
import os
import re
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator

import yaml

from shared.constants import TIMEZONE as DEFAULT_TIMEZONE


class TenantConfigError(RuntimeError):
    pass


def format_tenant_config_detail(
    app_name: str | None,
    *,
    missing: Iterable[str] = (),
    invalid: Iterable[str] = (),
) -> str:
    parts = [
        f"{label}: {', '.join(items)}"
        for label, items in (("missing", list(missing)), ("invalid", list(invalid)))
        if items
    ]
    return f"{app_name or 'Tenant'} tenant config " + ("; ".join(parts) or "missing required values")


class TenantConfigValidationError(TenantConfigError):
    """
    A tenant file exists but cannot back the app mounted at the request path.
    """

    def __init__(
        self,
        *,
        app_name: str | None = None,
        missing: Iterable[str] | None = None,
        invalid: Iterable[str] | None = None,
    ) -> None:
        self.app_name = app_name
        self.missing = [str(item) for item in (missing or [])]
        self.invalid = [str(item) for item in (invalid or [])]
        super().__init__(
            format_tenant_config_detail(app_name, missing=self.missing, invalid=self.invalid)
        )

    def to_payload(self, fallback_app: str | None = None) -> dict[str, object]:
        app_name = self.app_name or fallback_app
        return {
            "app": app_name,
            "detail": format_tenant_config_detail(
                app_name,
                missing=self.missing,
                invalid=self.invalid,
            ),
            "missing": list(self.missing),
            "invalid": list(self.invalid),
        }


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    env: dict[str, str]


_TENANT_CONTEXT: ContextVar[TenantContext | None] = ContextVar(
    "tenant_context",
    default=None,
)

LOCAL_ETC_DIR = Path(__file__).resolve().parents[1] / "etc"
LOCAL_SECRETS_DIR = LOCAL_ETC_DIR / "secrets"
SYSTEM_SECRETS_DIR = Path("/etc/secrets")

_TENANT_ENV_CACHE: dict[str, tuple[float, dict[str, float], dict[str, str]]] = {}
_CACHE_LOCK = threading.Lock()


def normalize_tenant_id(raw: str) -> str:
    if raw is None:
        raise TenantConfigError("X-Tenant-Id header is missing")

    value = raw.strip()
    if not value:
        raise TenantConfigError("X-Tenant-Id header is empty")

    if not re.fullmatch(r"[A-Za-z0-9_-]+", value):
        raise TenantConfigError("X-Tenant-Id header has invalid characters")

    return value.lower()


# ======================================================
# FILES
# ======================================================


def _secrets_dirs() -> tuple[Path, ...]:
    return (SYSTEM_SECRETS_DIR, LOCAL_SECRETS_DIR)


def _resolve_tenant_path(tenant_id: str) -> Path:
    for base in _secrets_dirs():
        for suffix in (".yaml", ".yml"):
            candidate = base / f"{tenant_id}{suffix}"
            if candidate.is_file():
                return candidate

    raise TenantConfigError(
        f"Tenant config not found for '{tenant_id}' in /etc/secrets or etc/secrets."
    )


def _load_yaml_file(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise TenantConfigError(f"Unable to read tenant config: {exc}") from exc

    data = yaml.safe_load(raw) if raw.strip() else None
    if not isinstance(data, dict):
        raise TenantConfigError(f"Config is empty or invalid: {path}")
    return data


def _resolve_include_path(value: str, base_dir: Path) -> Path:
    candidate = Path(value)
    if candidate.is_absolute():
        if candidate.is_file():
            return candidate
        raise TenantConfigError(f"Include file not found: {candidate}")

    for base in (base_dir, *_secrets_dirs()):
        path = base / value
        if path.is_file():
            return path

    raise TenantConfigError(
        f"Include file not found: {value} in {base_dir}, /etc/secrets, or etc/secrets."
    )


def _expand_includes(
    data: dict[str, Any],
    base_dir: Path,
    deps: set[Path],
) -> dict[str, Any]:
    """
    Merge ``include:`` files (a path or list of paths, shared DB credentials
    for instance) under the including file's own keys.
    """
    include_value = data.get("include")
    if include_value is not None:
        merged: dict[str, Any] = {}
        includes = include_value if isinstance(include_value, list) else [include_value]
        for item in includes:
            if not isinstance(item, str):
                raise TenantConfigError("Include must be a string or list of strings")
            include_path = _resolve_include_path(item, base_dir)
            deps.add(include_path)
            merged.update(
                _expand_includes(_load_yaml_file(include_path), include_path.parent, deps)
            )
        merged.update({k: v for k, v in data.items() if k != "include"})
        data = merged

    return {
        key: _expand_includes(value, base_dir, deps) if isinstance(value, dict) else value
        for key, value in data.items()
    }


# ======================================================
# ENV
# ======================================================


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _flatten_env(data: dict[str, Any]) -> dict[str, str]:
    """
    Top-level keys become env values. A mapping is kept under its own key as
    JSON (``DB_TABLES``) and its members are also exposed one level up
    unless a top-level key already claims the name.
    """
    env = {str(key): _stringify(value) for key, value in data.items()}
    for value in data.values():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                env.setdefault(str(sub_key), _stringify(sub_value))
    return env


def _cached_env(cache_key: str, mtime: float) -> dict[str, str] | None:
    with _CACHE_LOCK:
        cached = _TENANT_ENV_CACHE.get(cache_key)
    if not cached or cached[0] != mtime:
        return None
    for dep_path, dep_mtime in cached[1].items():
        try:
            if Path(dep_path).stat().st_mtime != dep_mtime:
                return None
        except OSError:
            return None
    return cached[2]


def load_tenant_env(tenant_id: str) -> dict[str, str]:
    tenant_id = normalize_tenant_id(tenant_id)
    path = _resolve_tenant_path(tenant_id)
    cache_key = str(path)

    try:
        mtime = path.stat().st_mtime
    except OSError as exc:
        raise TenantConfigError(f"Unable to read tenant config: {exc}") from exc

    cached = _cached_env(cache_key, mtime)
    if cached is not None:
        return cached

    deps: set[Path] = set()
    env = _flatten_env(_expand_includes(_load_yaml_file(path), path.parent, deps))

    deps_mtime: dict[str, float] = {}
    for dep in deps:
        try:
            deps_mtime[str(dep)] = dep.stat().st_mtime
        except OSError:
            continue
    with _CACHE_LOCK:
        _TENANT_ENV_CACHE[cache_key] = (mtime, deps_mtime, env)
    return env


# ======================================================
# CONTEXT
# ======================================================

def set_tenant_context(tenant_id: str) -> ContextVar.Token:
    tenant_id = normalize_tenant_id(tenant_id)
    env = load_tenant_env(tenant_id)
    return _TENANT_CONTEXT.set(TenantContext(tenant_id=tenant_id, env=env))


def reset_tenant_context(token: ContextVar.Token) -> None:
    _TENANT_CONTEXT.reset(token)


@contextmanager
def tenant_scope(tenant_id: str) -> Iterator[str]:
    """
    Bind a tenant context outside the HTTP middleware (WebSocket handlers).
    """
    token = set_tenant_context(tenant_id)
    try:
        yield get_tenant_id() or tenant_id
    finally:
        reset_tenant_context(token)


def get_tenant_id() -> str | None:
    ctx = _TENANT_CONTEXT.get()
    return ctx.tenant_id if ctx else None


def get_env(key: str, default: str | None = None) -> str | None:
    ctx = _TENANT_CONTEXT.get()
    if ctx and key in ctx.env:
        return ctx.env[key]
    return os.getenv(key, default)


def get_timezone(default: str | None = None) -> str:
    value = get_env("TIMEZONE", default or DEFAULT_TIMEZONE)
    if value is None or str(value).strip() == "":
        return default or DEFAULT_TIMEZONE
    return str(value).strip()
