"""Session credential providers."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from .config import (
    HTTP_TIMEOUT,
    OPENAI_API_KEY,
    REALTIME_CREDENTIAL_URL,
    REALTIME_MODEL_DEFAULT,
    REALTIME_SESSIONS_URL,
    REALTIME_VOICE_CHOICE,
)
from .errors import CredentialError


def extract_client_secret(payload: Any) -> str:
    """Pull ``client_secret.value`` out of a realtime session payload."""
    if not isinstance(payload, dict):
        raise CredentialError(f"Session payload is not an object: {type(payload).__name__}")
    secret = payload.get("client_secret")
    value = secret.get("value") if isinstance(secret, dict) else None
    if not isinstance(value, str) or not value:
        raise CredentialError(
            "No ephemeral key in session payload",
            "No ephemeral key received from server. Please check your OpenAI API key configuration.",
        )
    return value


class CredentialProvider(ABC):
    """Yields one short-lived credential per connect attempt."""

    @abstractmethod
    async def get_credential(self) -> str:
        ...


class StaticCredentialProvider(CredentialProvider):
    """Uses a fixed key, typically the long-lived API key on a trusted host."""

    def __init__(self, value: Optional[str]):
        self.value = value

    async def get_credential(self) -> str:
        if not self.value:
            raise CredentialError("No API key configured")
        return self.value


class HttpCredentialProvider(CredentialProvider):
    """Fetches a credential from a session endpoint (see ``server.py``)."""

    def __init__(
        self,
        url: str = REALTIME_CREDENTIAL_URL,
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger=None,
    ):
        self.url = url
        self.timeout = timeout
        self.transport = transport
        self.logger = logger or logging.getLogger("HttpCredentialProvider")

    async def get_credential(self) -> str:
        self.logger.info(f"Fetching ephemeral key from {self.url}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(self.url)
        except httpx.HTTPError as exc:
            raise CredentialError(f"Credential endpoint unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise CredentialError(
                f"Credential endpoint returned {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CredentialError(f"Credential endpoint sent invalid JSON: {exc}") from exc
        return extract_client_secret(payload)


class OpenAICredentialProvider(CredentialProvider):
    """Mints ephemeral keys directly from the realtime sessions API."""

    def __init__(
        self,
        api_key: Optional[str] = OPENAI_API_KEY,
        model: str = REALTIME_MODEL_DEFAULT,
        voice: str = REALTIME_VOICE_CHOICE,
        url: str = REALTIME_SESSIONS_URL,
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger=None,
    ):
        self.api_key = api_key
        self.model = model
        self.voice = voice
        self.url = url
        self.timeout = timeout
        self.transport = transport
        self.logger = logger or logging.getLogger("OpenAICredentialProvider")

    async def create_session(self) -> Dict[str, Any]:
        """Create a realtime session and return the raw payload."""
        if not self.api_key:
            raise CredentialError("OPENAI_API_KEY is missing", "API key not configured")
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.url, headers=headers, json={"model": self.model, "voice": self.voice}
                )
        except httpx.HTTPError as exc:
            raise CredentialError(f"Realtime sessions API unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise CredentialError(
                f"OpenAI API Error: {response.status_code} - {response.text[:500]}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CredentialError(f"Realtime sessions API sent invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise CredentialError(f"Session payload is not an object: {type(payload).__name__}")
        self.logger.info(f"Session created successfully: {payload.get('id', 'No ID returned')}")
        return payload

    async def get_credential(self) -> str:
        return extract_client_secret(await self.create_session())
