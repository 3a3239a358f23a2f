"""
Runtime configuration read from the environment (and a local .env file).

Every getter falls back to its default when the variable is missing or
malformed, so a bad value never prevents the service from starting.
"""

import os
import logging

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_NODE_TIMEOUT_SECONDS = 300.0
DEFAULT_POLL_INTERVAL_SECONDS = 1.0


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    if parsed < 0:
        return default
    return parsed


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    if parsed <= 0:
        return default
    return parsed


def get_default_model() -> str:
    """Model used by llm nodes whose config does not name one."""
    return os.getenv("NODEFLOW_DEFAULT_MODEL", "").strip() or DEFAULT_MODEL


def get_node_timeout_seconds() -> float | None:
    """Per-node execution budget. 0 disables the timeout."""
    timeout = _float_env("NODEFLOW_NODE_TIMEOUT_SECONDS", DEFAULT_NODE_TIMEOUT_SECONDS)
    return timeout or None


def get_max_concurrency() -> int:
    return _int_env("NODEFLOW_MAX_CONCURRENCY", 1)


def get_poll_interval_seconds() -> float:
    return _float_env("NODEFLOW_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS) or DEFAULT_POLL_INTERVAL_SECONDS


def get_run_store_backend() -> str:
    """
    Which run store backs the API: "supabase" or "memory".

    Defaults to supabase when SUPABASE_URL is configured.
    """
    raw = os.getenv("NODEFLOW_RUN_STORE", "").strip().lower()
    if raw in {"memory", "supabase"}:
        return raw
    return "supabase" if os.getenv("SUPABASE_URL") else "memory"


def get_log_level() -> str:
    return os.getenv("NODEFLOW_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def get_supabase_url() -> str:
    return os.getenv("SUPABASE_URL", "").strip().rstrip("/")


def get_jwt_issuer() -> str:
    """Expected `iss` claim; defaults to the project's Supabase auth endpoint."""
    issuer = os.getenv("SUPABASE_JWT_ISSUER", "").strip()
    if issuer:
        return issuer
    supabase_url = get_supabase_url()
    if supabase_url:
        return f"{supabase_url}/auth/v1"
    raise ValueError("SUPABASE_JWT_ISSUER or SUPABASE_URL environment variable is required")


def get_jwt_audience() -> str:
    return os.getenv("SUPABASE_JWT_AUDIENCE", "").strip() or "authenticated"
