"""
Token Service Connectors — webchat (Direct Line) and speech token issuers.

Both are bearer/key-authenticated POSTs with a bounded timeout. Transport
failures are retried a few times; every failure that reaches the caller
is an UpstreamServiceError, never a silent None.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import ServicesConfig, get_settings
from core.errors import UpstreamServiceError
from models.schemas import Instance

logger = structlog.get_logger()


class TokenServiceConnector:
    """Shared HTTP plumbing for the token issuers."""

    service = ""

    def __init__(self, url: str, timeout: float = 10.0, client: httpx.AsyncClient = None):
        self.url = url
        self.timeout = timeout
        self.client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout)
        return self.client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        reraise=True,
    )
    async def _post(self, headers: dict[str, str]) -> httpx.Response:
        client = await self._get_client()
        response = await client.post(self.url, headers=headers)
        response.raise_for_status()
        return response

    async def close(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()


class DirectLineConnector(TokenServiceConnector):
    """Generates a webchat conversation token from the Bot Service."""

    service = "directline"

    async def generate_token(self, instance: Instance) -> dict[str, Any]:
        try:
            response = await self._post({"Authorization": f"Bearer {instance.webchat_key}"})
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            msg = (f"[botId:{instance.bot_id}] Error calling Direct Line client, "
                   f"verify Bot endpoint on the cloud. Error is: {e}.")
            logger.error("directline_token_failed", bot_id=instance.bot_id, error=str(e))
            raise UpstreamServiceError(msg, instance.bot_id, self.service) from e


class SpeechTokenConnector(TokenServiceConnector):
    """Issues a short-lived speech-to-text / text-to-speech token."""

    service = "speech"

    async def issue_token(self, instance: Instance) -> str:
        if not instance.speech_key:
            raise UpstreamServiceError(
                f"[botId:{instance.bot_id}] No speech key configured.", instance.bot_id, self.service,
            )
        try:
            response = await self._post({"Ocp-Apim-Subscription-Key": instance.speech_key})
            return response.text
        except httpx.HTTPError as e:
            msg = f"Error calling Speech to Text client. Error is: {e}."
            logger.error("speech_token_failed", bot_id=instance.bot_id, error=str(e))
            raise UpstreamServiceError(msg, instance.bot_id, self.service) from e


def create_token_connectors(
    config: ServicesConfig = None,
) -> tuple[DirectLineConnector, SpeechTokenConnector]:
    config = config or get_settings().services
    return (
        DirectLineConnector(config.directline_url, timeout=config.http_timeout_s),
        SpeechTokenConnector(config.speech_token_url, timeout=config.http_timeout_s),
    )
