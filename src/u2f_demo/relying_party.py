"""
Relying-party boundary.

The relying party issues challenges and verifies what the device produced.
Requests are form-encoded POSTs and replies are JSON, as served by the U2F demo
server endpoints (/BeginEnroll, /FinishEnroll, /BeginSign, /FinishSign,
/GetTokens, /RemoveToken).
"""

import abc
import logging

import httpx

from .errors import TransportError

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 10.0


class RelyingParty(abc.ABC):
    """The server side of both ceremonies."""

    @abc.abstractmethod
    async def begin_enroll(self, reregistration):
        """Return ``{appId, registerRequests, registeredKeys, sessionId}``."""

    @abc.abstractmethod
    async def finish_enroll(self, data):
        """Return the token record created from ``data``."""

    @abc.abstractmethod
    async def begin_sign(self):
        """Return ``{appId, challenge, registeredKeys}``, one sessionId per key."""

    @abc.abstractmethod
    async def finish_sign(self, data):
        """Return the token record that produced the signature."""

    @abc.abstractmethod
    async def get_tokens(self):
        """Return all token records of the current user."""

    @abc.abstractmethod
    async def remove_token(self, public_key):
        """Remove the token identified by ``public_key``."""


def _form_value(value):
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


class HttpRelyingParty(RelyingParty):
    """RelyingParty reached over HTTP with httpx."""

    def __init__(self, base_url, timeout=HTTP_TIMEOUT_SECONDS, client=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _post(self, path, data, phase):
        form = {key: _form_value(value) for key, value in (data or {}).items()}
        try:
            response = await self.client.post(path, data=form)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            reason = f"{e.response.status_code} {e.response.reason_phrase}".strip()
            logger.error("POST %s failed: %s", path, reason)
            raise TransportError(phase, reason) from e
        except httpx.HTTPError as e:
            logger.error("POST %s failed: %s", path, e)
            raise TransportError(phase, str(e) or type(e).__name__) from e
        except ValueError as e:
            logger.error("POST %s returned invalid JSON: %s", path, e)
            raise TransportError(phase, "parsererror") from e

    async def begin_enroll(self, reregistration):
        return await self._post(
            "/BeginEnroll", {"reregistration": bool(reregistration)}, TransportError.BEGIN
        )

    async def finish_enroll(self, data):
        return await self._post("/FinishEnroll", data, TransportError.FINISH)

    async def begin_sign(self):
        return await self._post("/BeginSign", {}, TransportError.BEGIN)

    async def finish_sign(self, data):
        return await self._post("/FinishSign", data, TransportError.FINISH)

    async def get_tokens(self):
        return await self._post("/GetTokens", {}, None)

    async def remove_token(self, public_key):
        return await self._post("/RemoveToken", {"public_key": public_key}, None)
