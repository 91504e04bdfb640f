"""In-memory subscription registry keyed by canonical topic endpoint."""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class SubscriptionRegistry:
    """Maps an endpoint URL to the secret used to sign its notifications.

    A `None` secret means the subscription exists but signing is disabled.
    """

    def __init__(self) -> None:
        self._secrets: Dict[str, Optional[str]] = {}
        self._lock = threading.Lock()

    def put(self, endpoint: str, secret: Optional[str] = None) -> None:
        with self._lock:
            self._secrets[endpoint] = secret
        logger.debug("registry put %s", endpoint)

    def delete(self, endpoint: Optional[str]) -> None:
        if endpoint is None:
            return
        with self._lock:
            removed = endpoint in self._secrets
            self._secrets.pop(endpoint, None)
        if removed:
            logger.debug("registry delete %s", endpoint)

    def get(self, endpoint: str) -> Optional[str]:
        with self._lock:
            return self._secrets.get(endpoint)

    def keys(self) -> List[str]:
        """Snapshot of the registered endpoints."""

        with self._lock:
            return list(self._secrets)

    def __contains__(self, endpoint: object) -> bool:
        with self._lock:
            return endpoint in self._secrets

    def __len__(self) -> int:
        with self._lock:
            return len(self._secrets)
