# supabase_client.py - cached service-role client for the ladder store + env/secrets config
from __future__ import annotations

import os
from typing import Optional

import streamlit as st

from supabase import create_client, Client

# ---- client options import (version-proof) ----
try:
    # newer supabase-py versions
    from supabase.lib.client_options import ClientOptions as _ClientOptions
except ImportError:
    _ClientOptions = None  # type: ignore


class SupabaseConfigError(RuntimeError):
    pass


_ADMIN_CLIENT: Optional[Client] = None


def _get_secret(name: str, default: str | None = None) -> str | None:
    """Read from env var first, then Streamlit secrets (when a secrets file exists)."""
    v = os.getenv(name)
    if v:
        return v
    try:
        if name in st.secrets:
            v2 = st.secrets[name]
            if v2:
                return str(v2)
    except Exception:
        # no secrets.toml outside `streamlit run`
        pass
    return default


def _env() -> str:
    return (_get_secret("APP_ENV", "prod") or "prod").lower().strip()


def engine_id() -> str:
    """Partition key: several engines can share one Supabase project."""
    return (_get_secret("LADDER_ENGINE_ID", "DEFAULT") or "DEFAULT").strip()


def _cfg():
    env = _env()

    if env == "dev":
        url = _get_secret("SUPABASE_URL_DEV")
        svc = _get_secret("SUPABASE_SERVICE_ROLE_KEY_DEV") or _get_secret("SUPABASE_SERVICE_ROLE_KEY")
    else:
        url = _get_secret("SUPABASE_URL_PROD")
        svc = _get_secret("SUPABASE_SERVICE_ROLE_KEY_PROD") or _get_secret("SUPABASE_SERVICE_ROLE_KEY")

    if not url or not svc:
        raise SupabaseConfigError(
            "Missing Supabase credentials. Need SUPABASE_URL_* and SUPABASE_SERVICE_ROLE_KEY_* for active APP_ENV."
        )

    return env, url, svc


def _make_client(url: str, key: str) -> Client:
    """
    The advisor is a server-side process: no local session persistence, no token refresh.
    """
    if _ClientOptions is None:
        # Older supabase-py: no client options available
        return create_client(url, key)

    opts = _ClientOptions(
        persist_session=False,
        auto_refresh_token=False,
    )
    return create_client(url, key, options=opts)  # type: ignore[arg-type]


def get_supabase_admin() -> Client:
    """Cached SERVICE ROLE client (bypasses RLS). Shared by every table in this process."""
    global _ADMIN_CLIENT
    if _ADMIN_CLIENT is not None:
        return _ADMIN_CLIENT

    _, url, svc = _cfg()
    _ADMIN_CLIENT = _make_client(url, svc)
    return _ADMIN_CLIENT


def reset_supabase_client() -> None:
    """
    Force creation of a new client on next get_supabase_admin() call.
    Call this after rotating keys or switching APP_ENV.
    """
    global _ADMIN_CLIENT
    _ADMIN_CLIENT = None
