from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

REQS = Counter(
    "helixhook_requests_total",
    "Callback requests",
    ["method", "status"],
)
NOTIFICATIONS = Counter(
    "helixhook_notifications_total",
    "Notifications dispatched",
    ["topic"],
)
WEBHOOK_ERRORS = Counter(
    "helixhook_webhook_errors_total",
    "Notifications rejected locally",
    ["kind"],
)
HUB_REQUESTS = Counter(
    "helixhook_hub_requests_total",
    "Subscribe/unsubscribe requests sent to the hub",
    ["mode", "outcome"],
)


def router() -> APIRouter:
    r = APIRouter()

    @r.get("/metrics", include_in_schema=False)
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return r
