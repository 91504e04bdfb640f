from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from typing import Any, Mapping, Optional, Tuple

import httpx
import uvicorn

from .callback import create_app
from .config import Settings, ensure_required, load_settings
from .dispatcher import EventDispatcher, Observer
from .errors import FatalError
from .hub import HubClient
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signals to the host application."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class HelixWebhook:
    """Subscribe to Twitch Helix topics and receive their notifications.

    Options are the lower-case names of :class:`~helixhook.config.Settings`
    fields; anything not given is read from the environment.

    Usage:
        hook = HelixWebhook(client_id="...", callback_url="https://example.com/hook")

        @hook.on("streams")
        def on_stream(envelope):
            print(envelope.event)

        async with hook:
            await hook.subscribe("streams", {"user_id": "12826"})
            ...
            await hook.unsubscribe("*")
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **options: Any,
    ) -> None:
        if settings is None:
            settings = load_settings(**options)
        elif options:
            merged = {name.lower(): value for name, value in settings.model_dump().items()}
            merged.update(options)
            settings = load_settings(**merged)
        self.settings = ensure_required(settings)

        self.registry = SubscriptionRegistry()
        self.dispatcher = EventDispatcher()
        self.hub = HubClient(self.settings, self.registry, transport=transport)
        self.app = create_app(self.settings, self.registry, self.dispatcher)

        self.address: Optional[Tuple[str, int]] = None
        self._server: Optional[_EmbeddedServer] = None
        self._serve_task: Optional[asyncio.Task] = None

    def on(self, channel: str, observer: Optional[Observer] = None):
        return self.dispatcher.on(channel, observer)

    def once(self, channel: str, observer: Observer) -> Observer:
        return self.dispatcher.once(channel, observer)

    def off(self, channel: str, observer: Observer) -> None:
        self.dispatcher.off(channel, observer)

    async def subscribe(self, topic: str, options: Optional[Mapping[str, Any]] = None) -> None:
        await self.hub.subscribe(topic, options)

    async def unsubscribe(self, topic: str, options: Optional[Mapping[str, Any]] = None) -> None:
        await self.hub.unsubscribe(topic, options)

    def is_listening(self) -> bool:
        return (
            self._server is not None
            and self._server.started
            and self._serve_task is not None
            and not self._serve_task.done()
        )

    def _bind(self, host: str, port: int) -> socket.socket:
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        try:
            return socket.create_server((host, port), family=family)
        except OSError as exc:
            self.dispatcher.emit("error", exc)
            raise FatalError(f"Cannot listen on {host}:{port}: {exc}") from exc

    async def listen(self, port: Optional[int] = None, host: Optional[str] = None) -> None:
        if self._serve_task is not None and not self._serve_task.done():
            raise FatalError("Listening is already started")

        host = host or self.settings.LISTEN_HOST
        port = self.settings.LISTEN_PORT if port is None else port
        sock = self._bind(host, port)
        config = uvicorn.Config(
            self.app,
            host=host,
            port=port,
            ssl_keyfile=self.settings.SSL_KEYFILE,
            ssl_certfile=self.settings.SSL_CERTFILE,
            lifespan="off",
            log_config=None,
            access_log=False,
        )
        server = _EmbeddedServer(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))
        while not server.started:
            if task.done():
                sock.close()
                exc = None if task.cancelled() else task.exception()
                self.dispatcher.emit("error", exc)
                raise FatalError("Callback server failed to start") from exc
            await asyncio.sleep(0.01)

        self._server, self._serve_task = server, task
        self.address = sock.getsockname()[:2]
        logger.info("listening on %s:%s", *self.address)
        self.dispatcher.emit("listening", self.address)

    async def close(self) -> None:
        """Stop accepting connections. The hub is not notified."""

        server, task = self._server, self._serve_task
        self._server = self._serve_task = None
        self.address = None
        try:
            if server is not None and task is not None and not task.done():
                server.should_exit = True
                await task
        finally:
            await self.hub.aclose()

    async def __aenter__(self) -> "HelixWebhook":
        await self.listen()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
