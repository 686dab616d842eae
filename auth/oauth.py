"""
OAuth Broker — Delegated access for a bot instance (authorization code flow).

  begin_authorization     store a fresh anti-CSRF state, build the
                          authorize URL the browser is redirected to
  complete_authorization  consume the state, exchange the code, persist
                          the token record
  refresh_access_token    exchange the stored refresh token

The anti-CSRF state is single-use: it is compared and cleared in one
step before the code exchange, so it is gone before any token is stored
and a replayed callback always fails.
"""
from __future__ import annotations

import secrets
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from core.errors import CSRFStateMismatch, OAuthProviderError
from database.token_store import ANTI_CSRF_STATE, TokenStore
from models.schemas import Instance, TokenRecord

logger = structlog.get_logger()

GRAPH_RESOURCE = "https://graph.microsoft.com"


def url_join(*parts: str) -> str:
    """Join URL segments with exactly one slash between them."""
    cleaned = [p.strip("/") for p in parts if p and p.strip("/")]
    if not cleaned:
        return ""
    head = parts[0].rstrip("/") if parts[0] else cleaned[0]
    return "/".join([head] + cleaned[1:])


def redirect_uri(instance: Instance) -> str:
    return url_join(instance.bot_endpoint, instance.bot_id, "token")


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return body.get("error_description") or body.get("error") or str(body)
    return str(body)


def _token_from_payload(payload: dict[str, Any], fallback_refresh: str = "") -> TokenRecord:
    if "expires_on" in payload:
        expires_on = datetime.fromtimestamp(int(payload["expires_on"]), tz=timezone.utc)
    else:
        expires_on = datetime.now(timezone.utc) + timedelta(seconds=int(payload["expires_in"]))
    return TokenRecord(
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token") or fallback_refresh,
        expires_on=expires_on,
    )


class OAuthBroker:

    def __init__(
        self,
        tokens: TokenStore,
        resource: str = GRAPH_RESOURCE,
        timeout: float = 10.0,
        client: httpx.AsyncClient = None,
    ):
        self.tokens = tokens
        self.resource = resource
        self.timeout = timeout
        self.client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout)
        return self.client

    @staticmethod
    def _authority(instance: Instance) -> str:
        return url_join(instance.authenticator_authority_host_url, instance.authenticator_tenant)

    # ── Redirect ──────────────────────────────────────────

    async def begin_authorization(self, instance: Instance) -> str:
        state = secrets.token_urlsafe(32)
        await self.tokens.set_value(instance.instance_id, ANTI_CSRF_STATE, state)
        query = urlencode({
            "response_type": "code",
            "client_id": instance.authenticator_client_id,
            "redirect_uri": redirect_uri(instance),
            "state": state,
        })
        logger.info("oauth_authorization_started", bot_id=instance.bot_id)
        return f"{url_join(self._authority(instance), 'oauth2/authorize')}?{query}"

    # ── Callback ──────────────────────────────────────────

    async def complete_authorization(
        self, instance: Instance, query_state: Optional[str], query_code: Optional[str],
    ) -> TokenRecord:
        if not await self.tokens.consume_value(instance.instance_id, ANTI_CSRF_STATE, query_state):
            logger.error("oauth_state_mismatch", bot_id=instance.bot_id)
            raise CSRFStateMismatch(instance.bot_id)

        if not query_code:
            logger.error("oauth_code_missing", bot_id=instance.bot_id)
            raise OAuthProviderError("Error acquiring token: authorization code missing", instance.bot_id)

        record = await self._acquire_token(instance, {
            "grant_type": "authorization_code",
            "code": query_code,
            "redirect_uri": redirect_uri(instance),
            "resource": self.resource,
            "client_id": instance.authenticator_client_id,
            "client_secret": instance.authenticator_client_secret,
        })
        await self.tokens.save_token_record(instance.instance_id, record)
        logger.info("oauth_authorization_completed", bot_id=instance.bot_id)
        return record

    async def refresh_access_token(self, instance: Instance) -> TokenRecord:
        current = await self.tokens.get_token_record(instance.instance_id)
        if current is None or not current.refresh_token:
            raise OAuthProviderError("Error refreshing token: no refresh token stored", instance.bot_id)

        record = await self._acquire_token(instance, {
            "grant_type": "refresh_token",
            "refresh_token": current.refresh_token,
            "resource": self.resource,
            "client_id": instance.authenticator_client_id,
            "client_secret": instance.authenticator_client_secret,
        }, fallback_refresh=current.refresh_token)
        await self.tokens.save_token_record(instance.instance_id, record)
        logger.info("oauth_token_refreshed", bot_id=instance.bot_id)
        return record

    # ── Token endpoint ────────────────────────────────────

    async def _acquire_token(
        self, instance: Instance, form: dict[str, str], fallback_refresh: str = "",
    ) -> TokenRecord:
        url = url_join(self._authority(instance), "oauth2/token")
        client = await self._get_client()
        try:
            response = await client.post(url, data=form)
        except httpx.TimeoutException as e:
            raise self._provider_error(instance, "token endpoint timed out") from e
        except httpx.HTTPError as e:
            raise self._provider_error(instance, str(e)) from e

        if response.status_code >= 400:
            raise self._provider_error(instance, _error_detail(response))

        try:
            return _token_from_payload(response.json(), fallback_refresh)
        except (KeyError, TypeError, ValueError) as e:
            raise self._provider_error(instance, f"malformed token response ({e})") from e

    @staticmethod
    def _provider_error(instance: Instance, detail: str) -> OAuthProviderError:
        msg = f"Error acquiring token: {detail}"
        logger.error("oauth_token_failed", bot_id=instance.bot_id, error=detail)
        return OAuthProviderError(msg, instance.bot_id)

    async def close(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()
