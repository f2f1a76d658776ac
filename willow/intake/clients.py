"""HTTP clients for the conversation service and the care circle backend."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from pydantic import ValidationError

from willow.errors import PersistenceError, TransportError
from willow.models import Directive

logger = logging.getLogger(__name__)


def _auth_headers(access_token: str) -> dict:
    headers = {"Content-Type": "application/json"}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers


class ConversationClient:
    """Talks to the conversation service (``willow.server`` or compatible)."""

    def __init__(self, base_url: str, access_token: str = "", timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        # Sanitize token (strip whitespace that may leak from env vars or YAML)
        self.access_token = (access_token or "").strip()
        self._http = httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(cls, config) -> "ConversationClient":
        return cls(config.intake.api_base_url, config.intake.access_token, config.intake.request_timeout)

    async def close(self):
        await self._http.aclose()

    @asynccontextmanager
    async def stream_reply(self, messages: list[dict]) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open the reply stream for one turn; yields the raw byte chunk iterator.

        Raises:
            TransportError: The request failed or the service answered non-200.
        """
        try:
            async with self._http.stream(
                "POST",
                f"{self.base_url}/ai/onboarding",
                headers=_auth_headers(self.access_token),
                json={"messages": messages},
            ) as resp:
                if resp.status_code != 200:
                    body = await resp.aread()
                    logger.error(f"[Conversation] {resp.status_code}: {body[:500]!r}")
                    raise TransportError(f"Conversation service returned {resp.status_code}")
                yield resp.aiter_bytes()
        except httpx.HTTPError as e:
            raise TransportError(f"Conversation request failed: {e}") from e

    async def extract(self, messages: list[dict]) -> Directive | None:
        """Run one full-transcript extraction. Returns None if the result is unusable.

        Raises:
            TransportError: The request failed.
        """
        try:
            resp = await self._http.post(
                f"{self.base_url}/ai/extract",
                headers=_auth_headers(self.access_token),
                json={"messages": messages},
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(f"Extraction request failed: {e}") from e

        extracted = data.get("extracted") if isinstance(data, dict) else None
        if not isinstance(extracted, dict):
            logger.warning(f"[Conversation] Extraction returned no object: {str(data)[:200]}")
            return None
        try:
            return Directive.model_validate(extracted)
        except ValidationError as e:
            logger.warning(f"[Conversation] Extraction result failed validation: {e.error_count()} error(s)")
            return None


class CareCircleClient:
    """Backing-entity calls: create/patch the care recipient, add medications."""

    def __init__(self, base_url: str, access_token: str = "", timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.access_token = (access_token or "").strip()
        self._http = httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(cls, config) -> "CareCircleClient":
        return cls(config.intake.api_base_url, config.intake.access_token, config.intake.request_timeout)

    async def close(self):
        await self._http.aclose()

    async def _request(self, method: str, path: str, body: dict) -> httpx.Response:
        try:
            resp = await self._http.request(
                method, f"{self.base_url}{path}", headers=_auth_headers(self.access_token), json=body
            )
        except httpx.HTTPError as e:
            raise PersistenceError(f"{method} {path} failed: {e}") from e
        if resp.status_code >= 400:
            logger.error(f"[CareCircle] {method} {path} -> {resp.status_code}: {resp.text[:500]}")
            raise PersistenceError(f"{method} {path} returned {resp.status_code}", resp.status_code)
        return resp

    async def create_recipient(self, fields: dict) -> str:
        """Create the care recipient; returns its id."""
        resp = await self._request("POST", "/circle/create", fields)
        try:
            return str(resp.json()["recipient"]["id"])
        except (ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"Create response carried no recipient id: {e}") from e

    async def patch_recipient(self, recipient_id: str, fields: dict) -> None:
        await self._request("PATCH", "/circle/recipient", {"recipient_id": recipient_id, **fields})

    async def create_medication(self, recipient_id: str, name: str) -> None:
        await self._request("POST", "/medications", {"recipient_id": recipient_id, "name": name})
