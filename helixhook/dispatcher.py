from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List, Optional

logger = logging.getLogger(__name__)

Observer = Callable[[Any], None]

WILDCARD = "*"


class EventDispatcher:
    """Named-channel fan-out with synchronous, in-order delivery."""

    def __init__(self) -> None:
        self._observers: DefaultDict[str, List[Observer]] = defaultdict(list)

    def on(self, channel: str, observer: Optional[Observer] = None):
        """Register `observer` on `channel`; usable as a decorator."""

        if observer is None:
            def decorator(fn: Observer) -> Observer:
                self.on(channel, fn)
                return fn

            return decorator
        if observer not in self._observers[channel]:
            self._observers[channel].append(observer)
        return observer

    def once(self, channel: str, observer: Observer) -> Observer:
        def _once(payload: Any) -> None:
            self.off(channel, _once)
            observer(payload)

        return self.on(channel, _once)

    def off(self, channel: str, observer: Observer) -> None:
        observers = self._observers.get(channel)
        if observers and observer in observers:
            observers.remove(observer)

    def listeners(self, channel: str) -> tuple[Observer, ...]:
        return tuple(self._observers.get(channel, ()))

    def emit(self, channel: str, payload: Any) -> int:
        """Deliver `payload` to the observers of `channel`, returning how many ran."""

        delivered = 0
        for observer in list(self._observers.get(channel, ())):
            try:
                observer(payload)
            except Exception:  # noqa: BLE001
                logger.exception("observer failed on channel %r", channel)
            delivered += 1
        return delivered
