"""Outbound side of the protocol: subscribe/unsubscribe requests to the hub."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from typing import Any, Literal, Mapping, Optional
from urllib.parse import urlencode, urlsplit

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .config import Settings
from .errors import RequestDenied
from .metrics import HUB_REQUESTS
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

ACCEPTED = 202


class HubRequestParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    callback: str = Field(alias="hub.callback")
    mode: Literal["subscribe", "unsubscribe"] = Field(alias="hub.mode")
    topic: str = Field(alias="hub.topic")
    lease_seconds: int = Field(alias="hub.lease_seconds", ge=0)
    secret: Optional[str] = Field(default=None, alias="hub.secret")

    def to_query(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def sign(key: str, message: bytes | str) -> str:
    """Hex HMAC-SHA256 of `message` keyed by `key`."""

    if isinstance(message, str):
        message = message.encode()
    return hmac.new(key.encode(), message, hashlib.sha256).hexdigest()


def is_absolute_url(url: str) -> bool:
    return bool(urlsplit(url).scheme)


class HubClient:
    """Builds hub requests and records accepted subscriptions in the registry.

    Usage:
        hub = HubClient(settings, registry)
        await hub.subscribe("streams", {"user_id": "12826"})
        ...
        await hub.unsubscribe("*")
        await hub.aclose()
    """

    def __init__(
        self,
        settings: Settings,
        registry: SubscriptionRegistry,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._settings.HUB_TIMEOUT_SECONDS,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def endpoint_for(self, topic: str, options: Optional[Mapping[str, Any]] = None) -> str:
        """Canonical endpoint: absolute topic URL plus its query options."""

        if not is_absolute_url(topic):
            topic = self._settings.BASE_API_URL + topic
        if options:
            topic += "?" + urlencode(options, doseq=True)
        return topic

    def build_params(self, mode: str, endpoint: str) -> HubRequestParams:
        secret = sign(self._settings.SECRET, endpoint) if self._settings.signing else None
        return HubRequestParams(
            callback=self._settings.CALLBACK_URL,
            mode=mode,
            topic=endpoint,
            lease_seconds=self._settings.LEASE_SECONDS,
            secret=secret,
        )

    async def _request(self, mode: str, topic: str, options: Optional[Mapping[str, Any]]) -> None:
        endpoint = self.endpoint_for(topic, options)
        params = self.build_params(mode, endpoint)
        try:
            response = await self._get_client().post(
                self._settings.hub_url,
                params=params.to_query(),
                headers={"Client-ID": self._settings.CLIENT_ID},
            )
        except httpx.HTTPError as exc:
            HUB_REQUESTS.labels(mode, "error").inc()
            logger.warning("hub %s %s failed: %r", mode, endpoint, exc)
            raise RequestDenied(cause=exc) from exc

        if response.status_code != ACCEPTED:
            HUB_REQUESTS.labels(mode, "denied").inc()
            logger.warning("hub %s %s denied with %s", mode, endpoint, response.status_code)
            raise RequestDenied(response)

        HUB_REQUESTS.labels(mode, "accepted").inc()
        logger.info("hub accepted %s %s", mode, endpoint)
        if mode == "subscribe":
            self._registry.put(endpoint, params.secret)

    async def subscribe(self, topic: str, options: Optional[Mapping[str, Any]] = None) -> None:
        await self._request("subscribe", topic, options)

    async def unsubscribe(self, topic: str, options: Optional[Mapping[str, Any]] = None) -> None:
        """Unsubscribe from `topic`, or from every registered endpoint for ``"*"``.

        The wildcard form surfaces the first failure; the other requests are
        left running to completion.
        """

        if topic != "*":
            await self._request("unsubscribe", topic, options)
            return
        endpoints = self._registry.keys()
        await asyncio.gather(*(self._request("unsubscribe", e, None) for e in endpoints))
