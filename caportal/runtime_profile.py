from __future__ import annotations

from collections.abc import Mapping
import os


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    """True when memory back ends must be refused (store and bus)."""
    env = os.environ if environ is None else environ
    return _as_bool(env.get("CAP_REQUIRE_TRUESTACK", "false"))


def env_flag(environ: Mapping[str, str], name: str, *, default: bool = False) -> bool:
    raw = str(environ.get(name, "")).strip()
    if not raw:
        return default
    return _as_bool(raw)
