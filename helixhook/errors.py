"""Error taxonomy shared by the hub client and the callback server."""

from __future__ import annotations

from typing import Optional

import httpx


class BaseError(Exception):
    """Root of every helixhook error."""


class FatalError(BaseError):
    """Library error the caller is expected to handle or abort on."""


class ConfigurationError(FatalError):
    """Raised while constructing the engine with unusable options."""


class RequestDenied(FatalError):
    """The hub refused a subscribe/unsubscribe request, or it never got there."""

    def __init__(
        self,
        response: Optional[httpx.Response] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        if response is not None:
            message = f"hub answered {response.status_code}"
        elif cause is not None:
            message = str(cause) or type(cause).__name__
        else:
            message = "request denied"
        super().__init__(message)
        self.response = response
        self.cause = cause


class WebhookError(BaseError):
    """Inbound notification rejected locally; only emitted, never raised."""

    TOPIC = "topic"
    SIGNATURE_MISSING = "signature_missing"
    TOO_LARGE = "too_large"
    MALFORMED_JSON = "malformed_json"
    SIGNATURE_INCORRECT = "signature_incorrect"

    MESSAGES = {
        TOPIC: "Topic is missing or incorrect",
        SIGNATURE_MISSING: '"x-hub-signature" is missing',
        TOO_LARGE: "Request is very large",
        MALFORMED_JSON: "JSON is malformed",
        SIGNATURE_INCORRECT: '"x-hub-signature" is incorrect',
    }

    def __init__(self, kind: str, endpoint: Optional[str] = None) -> None:
        super().__init__(self.MESSAGES.get(kind, kind))
        self.kind = kind
        self.endpoint = endpoint
