"""HTTP client for the WhatsApp Cloud API (Graph API) with retry logic and
per-line access tokens.

Docs: https://developers.facebook.com/docs/whatsapp/cloud-api
A tenant can own several business lines (phone-number ids); each line may
use its own token.  Unknown line ids fall back to the default line.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from chatgorithm.config import (
    BUSINESS_ACCOUNTS,
    WHATSAPP_BASE_URL,
    WHATSAPP_BUSINESS_ID,
    WHATSAPP_PHONE_ID,
)
from chatgorithm.phone import clean_number
from chatgorithm.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0

MAX_LIST_ROWS = 10  # WhatsApp limit per interactive list


class WhatsAppAPIError(Exception):
    """Raised when a Graph API call fails after all retries."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        user_message: str | None = None,
    ):
        self.status_code = status_code
        self.user_message = user_message
        super().__init__(message)


def _meta_error_message(response: httpx.Response) -> str | None:
    """Extract Meta's human-readable error, if the body carries one."""
    try:
        error = response.json().get("error", {})
    except ValueError:
        return None
    return error.get("error_user_msg") or error.get("message")


class WhatsAppClient:
    """Thin wrapper around the Graph API messaging endpoints."""

    def __init__(
        self,
        accounts: dict[str, str] | None = None,
        default_phone_id: str | None = None,
        *,
        business_id: str | None = None,
        base_url: str | None = None,
        http_client: httpx.Client | None = None,
    ):
        self._accounts = dict(accounts if accounts is not None else BUSINESS_ACCOUNTS)
        self._default_phone_id = default_phone_id or WHATSAPP_PHONE_ID
        self._business_id = WHATSAPP_BUSINESS_ID if business_id is None else business_id
        self._client = http_client or httpx.Client(
            base_url=base_url or WHATSAPP_BASE_URL,
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    # ── Accounts ─────────────────────────────────────────────────────

    @property
    def default_phone_id(self) -> str:
        return self._default_phone_id

    @property
    def business_id(self) -> str:
        return self._business_id

    def accounts(self) -> list[str]:
        """Known business line ids, default line first."""
        return list(self._accounts)

    def is_known_line(self, phone_id: str | None) -> bool:
        return bool(phone_id) and phone_id in self._accounts

    def resolve_origin(self, phone_id: str | None) -> str:
        """Return *phone_id* when it is a known line, else the default line."""
        if self.is_known_line(phone_id):
            return phone_id
        if phone_id:
            logger.warning("Unknown business line %r, using default %s", phone_id, self._default_phone_id)
        return self._default_phone_id

    def _token_for(self, phone_id: str) -> str:
        token = self._accounts.get(phone_id) or self._accounts.get(self._default_phone_id)
        if not token:
            raise WhatsAppAPIError(f"No access token configured for line {phone_id}")
        return token

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        token: str,
        json_body: dict[str, Any] | None = None,
        operation: str | None = None,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retries."""
        operation = operation or f"{method} {path}"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = self._client.request(
                    method,
                    path,
                    json=json_body,
                    headers={"Authorization": f"Bearer {token}"},
                )
                elapsed = (time.perf_counter() - t0) * 1000
                if response.status_code >= 400:
                    raise WhatsAppAPIError(
                        f"Graph API error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                        user_message=_meta_error_message(response),
                    )
                metrics.record_success("whatsapp", operation, latency_ms=elapsed)
                return response

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                metrics.record_failure("whatsapp", operation, error_type=type(exc).__name__)
                logger.warning(
                    "Graph API attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except WhatsAppAPIError as exc:
                metrics.record_failure("whatsapp", operation, error_type=f"{exc.status_code}")
                if exc.status_code == 429 or (exc.status_code or 0) >= 500:
                    last_error = exc
                    logger.warning(
                        "Graph API error %s on attempt %d/%d. Retrying…",
                        exc.status_code,
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise WhatsAppAPIError(
            f"Graph API request failed after {MAX_RETRIES} retries: {last_error}"
        )

    def _send(self, origin: str, to: str, message: dict[str, Any]) -> dict[str, Any]:
        origin = self.resolve_origin(origin)
        payload = {"messaging_product": "whatsapp", "to": clean_number(to), **message}
        response = self._request(
            "POST",
            f"/{origin}/messages",
            token=self._token_for(origin),
            json_body=payload,
            operation=f"send {message['type']}",
        )
        return response.json()

    # ── Messaging ────────────────────────────────────────────────────

    def send_text(self, origin: str, to: str, body: str) -> dict[str, Any]:
        """Send a plain text message from line *origin* to *to*."""
        return self._send(origin, to, {"type": "text", "text": {"body": body}})

    def send_interactive_list(
        self,
        origin: str,
        to: str,
        *,
        header: str,
        body: str,
        footer: str,
        button: str,
        section_title: str,
        rows: list[dict[str, str]],
    ) -> dict[str, Any]:
        """Send a single-section interactive list (extra rows are dropped)."""
        return self._send(origin, to, {
            "type": "interactive",
            "interactive": {
                "type": "list",
                "header": {"type": "text", "text": header},
                "body": {"text": body},
                "footer": {"text": footer},
                "action": {
                    "button": button,
                    "sections": [{"title": section_title, "rows": rows[:MAX_LIST_ROWS]}],
                },
            },
        })

    def send_template(
        self,
        origin: str,
        to: str,
        template_name: str,
        language: str,
        variables: list[str],
    ) -> dict[str, Any]:
        """Send an approved template, filling its body variables in order."""
        parameters = [{"type": "text", "text": value} for value in variables]
        return self._send(origin, to, {
            "type": "template",
            "template": {
                "name": template_name,
                "language": {"code": language},
                "components": [{"type": "body", "parameters": parameters}],
            },
        })

    # ── Templates & media ────────────────────────────────────────────

    def create_message_template(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Submit a template for Meta review.  Returns ``{"id", "status", …}``."""
        if not self._business_id:
            raise WhatsAppAPIError("WHATSAPP_BUSINESS_ID is not configured")
        response = self._request(
            "POST",
            f"/{self._business_id}/message_templates",
            token=self._token_for(self._default_phone_id),
            json_body=payload,
            operation="create template",
        )
        return response.json()

    def download_media(self, media_id: str) -> tuple[bytes, str]:
        """Resolve a media id and download it.  Returns ``(content, content_type)``."""
        token = self._token_for(self._default_phone_id)
        meta = self._request("GET", f"/{media_id}", token=token, operation="media lookup").json()
        media = self._request("GET", meta["url"], token=token, operation="media download")
        return media.content, media.headers.get("content-type", "application/octet-stream")
