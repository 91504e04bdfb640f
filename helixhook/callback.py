"""Inbound side of the protocol: hub handshakes and signed notifications.

GET requests answer the hub's verification handshake. POST requests carry
notifications; every local rejection is acknowledged with 202 so the hub stops
retrying, and reported to the application on the ``webhook-error`` channel.
"""

from __future__ import annotations

import hmac
import json
import logging
import re
from datetime import datetime
from typing import Any, Iterable, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from fastapi import FastAPI, Request, Response
from fastapi.exception_handlers import http_exception_handler
from pydantic import BaseModel
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import Settings
from .dispatcher import WILDCARD, EventDispatcher
from .errors import WebhookError
from .hub import sign
from .logging_setup import RequestLogMiddleware
from .metrics import NOTIFICATIONS, WEBHOOK_ERRORS, router as metrics_router
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

WEBHOOK_ERROR = "webhook-error"

_LINK = re.compile(r"<([^>]*)>((?:\s*;[^;,]*)*)")
_FRACTION = re.compile(r"(\.\d{6})\d+")


class NotificationEnvelope(BaseModel):
    topic: str
    options: dict[str, Any]
    endpoint: str
    event: Any


def self_link(header: Optional[str]) -> Optional[str]:
    """Return the URL of the ``rel="self"`` entry of a Link header."""

    if not header:
        return None
    for match in _LINK.finditer(header):
        url, params = match.groups()
        for param in params.split(";"):
            name, _, value = param.partition("=")
            if name.strip().lower() != "rel":
                continue
            if "self" in value.strip().strip('"').lower().split():
                return url.strip() or None
    return None


def topic_name(endpoint: str, base_path: str) -> Optional[str]:
    path = urlsplit(endpoint).path
    if path == base_path.rstrip("/"):
        return None
    if path.startswith(base_path):
        path = path[len(base_path):]
    return path.strip("/") or None


def topic_options(endpoint: str) -> dict[str, Any]:
    parsed = parse_qs(urlsplit(endpoint).query, keep_blank_values=True)
    return {key: values[0] if len(values) == 1 else values for key, values in parsed.items()}


def signature_of(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    algorithm, _, digest = header.partition("=")
    if algorithm.strip().lower() != "sha256" or not digest.strip():
        return None
    return digest.strip()


def parse_timestamp(value: Any) -> Any:
    """RFC 3339 string to datetime; anything unparseable is returned as is."""

    if not isinstance(value, str):
        return value
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    # Twitch sends nanoseconds, datetime keeps microseconds
    text = _FRACTION.sub(r"\1", text)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return value


def normalize_dates(topic: str, event: Any) -> Any:
    if not isinstance(event, dict):
        return event
    if topic == "users/follows" and "timestamp" in event:
        event["timestamp"] = parse_timestamp(event["timestamp"])
    elif topic == "streams" and isinstance(event.get("data"), list):
        for stream in event["data"]:
            if isinstance(stream, dict) and "started_at" in stream:
                stream["started_at"] = parse_timestamp(stream["started_at"])
    return event


def create_app(
    settings: Settings,
    registry: SubscriptionRegistry,
    dispatcher: EventDispatcher,
) -> FastAPI:
    """Build the ASGI app the hub talks to."""

    app = FastAPI(
        title="helixhook",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.add_middleware(RequestLogMiddleware)
    if settings.METRICS_ENABLED:
        app.include_router(metrics_router())

    base_path = settings.base_path
    max_body = settings.MAX_BODY_BYTES

    async def _dispatch(events: Iterable[Tuple[str, Any]]) -> None:
        for channel, payload in events:
            dispatcher.emit(channel, payload)

    def _plain(status_code: int, content: str = "", events=None, headers=None) -> Response:
        return Response(
            content=content,
            status_code=status_code,
            media_type="text/plain",
            headers=headers,
            background=BackgroundTask(_dispatch, events) if events else None,
        )

    def _reject(kind: str, endpoint: Optional[str] = None, headers=None) -> Response:
        error = WebhookError(kind, endpoint)
        WEBHOOK_ERRORS.labels(kind).inc()
        logger.warning("notification rejected: %s (endpoint=%s)", error, endpoint)
        return _plain(202, events=[(WEBHOOK_ERROR, error)], headers=headers)

    @app.get("/{path:path}", include_in_schema=False)
    async def handshake(request: Request) -> Response:
        query = dict(request.query_params)
        mode = query.get("hub.mode")
        if mode == "denied":
            logger.info("hub denied subscription to %s", query.get("hub.topic"))
            return _plain(200, events=[("denied", query)])
        if mode in ("subscribe", "unsubscribe"):
            if mode == "unsubscribe":
                registry.delete(query.get("hub.topic"))
            logger.info("hub confirmed %s for %s", mode, query.get("hub.topic"))
            return _plain(200, query.get("hub.challenge", ""), events=[(mode, query)])
        return _plain(400)

    @app.post("/{path:path}", include_in_schema=False)
    async def notification(request: Request) -> Response:
        endpoint = self_link(request.headers.get("link"))
        topic = topic_name(endpoint, base_path) if endpoint else None
        if not topic:
            return _reject(WebhookError.TOPIC, endpoint)

        signature = secret = None
        if settings.signing:
            signature = signature_of(request.headers.get("x-hub-signature"))
            secret = registry.get(endpoint)
            if not signature or not secret:
                return _reject(WebhookError.SIGNATURE_MISSING, endpoint)

        body = bytearray()
        async for chunk in request.stream():
            body.extend(chunk)
            if len(body) > max_body:
                body.clear()
                return _reject(
                    WebhookError.TOO_LARGE, endpoint, headers={"Connection": "close"}
                )

        try:
            event = json.loads(bytes(body))
        except ValueError:
            return _reject(WebhookError.MALFORMED_JSON, endpoint)

        if settings.signing and not hmac.compare_digest(
            sign(secret, bytes(body)).encode(), signature.encode()
        ):
            return _reject(WebhookError.SIGNATURE_INCORRECT, endpoint)

        envelope = NotificationEnvelope(
            topic=topic,
            options=topic_options(endpoint),
            endpoint=endpoint,
            event=normalize_dates(topic, event),
        )
        NOTIFICATIONS.labels(topic).inc()
        return _plain(200, events=[(topic, envelope), (WILDCARD, envelope)])

    @app.exception_handler(StarletteHTTPException)
    async def not_allowed(request: Request, exc: StarletteHTTPException) -> Response:
        # every method but GET and POST lands here, with an empty body
        if exc.status_code == 405:
            return _plain(405, headers=exc.headers)
        return await http_exception_handler(request, exc)

    return app
