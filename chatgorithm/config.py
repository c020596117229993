"""Centralized configuration for the Chatgorithm server.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/chatgorithm/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/chatgorithm/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /chatgorithm/{name} (AWS)."
    )


def _parse_accounts(raw: str) -> dict[str, str]:
    """Parse ``phone_id:token,phone_id:token`` into a mapping."""
    accounts: dict[str, str] = {}
    for chunk in raw.split(","):
        phone_id, sep, token = chunk.strip().partition(":")
        if not sep or not phone_id or not token:
            continue
        accounts[phone_id.strip()] = token.strip()
    return accounts


# ── LLM ─────────────────────────────────────────────────────────────
GEMINI_API_KEY: str = _require_env("GEMINI_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "gemini-2.5-flash")
AI_HISTORY_LIMIT: int = int(os.getenv("AI_HISTORY_LIMIT", "10"))
AI_MAX_RETRIES: int = int(os.getenv("AI_MAX_RETRIES", "3"))

# ── Airtable ────────────────────────────────────────────────────────
AIRTABLE_API_KEY: str = _require_env("AIRTABLE_API_KEY")
AIRTABLE_BASE_ID: str = _require_env("AIRTABLE_BASE_ID")

# ── WhatsApp Cloud API ──────────────────────────────────────────────
WHATSAPP_TOKEN: str = _require_env("WHATSAPP_TOKEN")
WHATSAPP_PHONE_ID: str = _require_env("WHATSAPP_PHONE_ID")
WHATSAPP_BUSINESS_ID: str = os.getenv("WHATSAPP_BUSINESS_ID", "")
WHATSAPP_API_VERSION: str = os.getenv("WHATSAPP_API_VERSION", "v18.0")
WHATSAPP_BASE_URL: str = f"https://graph.facebook.com/{WHATSAPP_API_VERSION}"
WEBHOOK_VERIFY_TOKEN: str = os.getenv("WEBHOOK_VERIFY_TOKEN", "")
WEBHOOK_DEDUP_TTL_SECONDS: int = int(os.getenv("WEBHOOK_DEDUP_TTL_SECONDS", "300"))

# One access token per business line; the default line always comes first.
BUSINESS_ACCOUNTS: dict[str, str] = {
    WHATSAPP_PHONE_ID: WHATSAPP_TOKEN,
    **_parse_accounts(os.getenv("WHATSAPP_EXTRA_ACCOUNTS", "")),
}

# ── Agenda ──────────────────────────────────────────────────────────
BUSINESS_TIMEZONE: str = os.getenv("BUSINESS_TIMEZONE", "Europe/Madrid")
SCHEDULE_HORIZON_DAYS: int = int(os.getenv("SCHEDULE_HORIZON_DAYS", "30"))
SCHEDULE_MAINTENANCE_INTERVAL_SECONDS: int = int(
    os.getenv("SCHEDULE_MAINTENANCE_INTERVAL_SECONDS", "3600"),
)

# ── Tenants ─────────────────────────────────────────────────────────
DEFAULT_BACKEND_URL: str = os.getenv("DEFAULT_BACKEND_URL", "https://chatgorithm.onrender.com")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", os.getenv("PORT", "3000")))
CORS_ORIGINS: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
