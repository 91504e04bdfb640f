import json
import logging
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from helixhook import HelixWebhook
from helixhook.callback import NotificationEnvelope, self_link, topic_name
from helixhook.errors import WebhookError

STREAMS = "https://api.twitch.tv/helix/streams?user_id=5678"


def _hook(**options) -> HelixWebhook:
    options.setdefault("client_id", "test-client")
    options.setdefault("callback_url", "https://example.com/hook")
    options.setdefault("secret", None)
    return HelixWebhook(**options)


def _link(url: str) -> dict[str, str]:
    return {"Link": f'<{url}>; rel="self"'}


def _errors(hook: HelixWebhook) -> list[WebhookError]:
    errors: list[WebhookError] = []
    hook.on("webhook-error", errors.append)
    return errors


def test_missing_link_header_soft_accepts():
    hook = _hook()
    errors = _errors(hook)
    delivered = []
    hook.on("streams", delivered.append)
    hook.on("*", delivered.append)

    response = TestClient(hook.app).post("/", json={"data": []})

    assert response.status_code == 202
    assert len(errors) == 1
    assert errors[0].kind == WebhookError.TOPIC
    assert str(errors[0]) == "Topic is missing or incorrect"
    assert delivered == []


def test_link_to_api_root_is_incorrect_topic():
    hook = _hook()
    errors = _errors(hook)

    response = TestClient(hook.app).post(
        "/", headers=_link("https://api.twitch.tv/helix/"), json={}
    )

    assert response.status_code == 202
    assert [e.kind for e in errors] == [WebhookError.TOPIC]


def test_link_without_self_relation_is_ignored():
    hook = _hook()
    errors = _errors(hook)

    response = TestClient(hook.app).post(
        "/", headers={"Link": '<https://api.twitch.tv/helix/webhooks/hub>; rel="hub"'}, json={}
    )

    assert response.status_code == 202
    assert [e.kind for e in errors] == [WebhookError.TOPIC]


def test_streams_notification_reaches_topic_and_wildcard():
    hook = _hook()
    order: list[tuple[str, NotificationEnvelope]] = []
    hook.on("streams", lambda env: order.append(("streams", env)))
    hook.on("*", lambda env: order.append(("*", env)))
    body = {
        "data": [
            {"started_at": "2017-12-01T10:09:45Z"},
            {"started_at": "2017-12-02T11:49:47Z"},
        ]
    }

    response = TestClient(hook.app).post("/", headers=_link(STREAMS), json=body)

    assert response.status_code == 200
    assert response.content == b""
    assert [channel for channel, _ in order] == ["streams", "*"]
    envelope = order[0][1]
    assert order[1][1] is envelope
    assert envelope.topic == "streams"
    assert envelope.endpoint == STREAMS
    assert envelope.options == {"user_id": "5678"}
    assert envelope.event["data"][0]["started_at"] == datetime(
        2017, 12, 1, 10, 9, 45, tzinfo=timezone.utc
    )
    assert isinstance(envelope.event["data"][1]["started_at"], datetime)


def test_follows_timestamp_with_nanoseconds():
    hook = _hook()
    seen = []
    hook.on("users/follows", seen.append)

    TestClient(hook.app).post(
        "/",
        headers=_link("https://api.twitch.tv/helix/users/follows?to_id=1337"),
        json={"timestamp": "2017-08-07T13:52:14.403795077Z"},
    )

    assert len(seen) == 1
    assert seen[0].event["timestamp"] == datetime(
        2017, 8, 7, 13, 52, 14, 403795, tzinfo=timezone.utc
    )


def test_unknown_topic_passes_through():
    hook = _hook(base_api_url="http://127.0.0.1:9999")
    seen = []
    hook.on("test", seen.append)

    response = TestClient(hook.app).post(
        "/",
        headers=_link("http://127.0.0.1:9999/test?param=value"),
        json={"test": True, "started_at": "2017-12-01T10:09:45Z"},
    )

    assert response.status_code == 200
    assert seen[0].topic == "test"
    assert seen[0].options == {"param": "value"}
    assert seen[0].event == {"test": True, "started_at": "2017-12-01T10:09:45Z"}


def test_unparseable_date_is_left_alone():
    hook = _hook()
    seen = []
    hook.on("streams", seen.append)

    TestClient(hook.app).post(
        "/", headers=_link(STREAMS), json={"data": [{"started_at": "yesterday"}, "x"]}
    )

    assert seen[0].event["data"] == [{"started_at": "yesterday"}, "x"]


def test_malformed_json():
    hook = _hook()
    errors = _errors(hook)

    response = TestClient(hook.app).post("/", headers=_link(STREAMS), content=b"text,")

    assert response.status_code == 202
    assert [e.kind for e in errors] == [WebhookError.MALFORMED_JSON]
    assert str(errors[0]) == "JSON is malformed"


def test_oversized_body_closes_connection():
    hook = _hook()
    errors = _errors(hook)
    delivered = []
    hook.on("*", delivered.append)

    response = TestClient(hook.app).post(
        "/", headers=_link(STREAMS), content=b"0" * 1_000_001
    )

    assert response.status_code == 202
    assert response.headers["connection"] == "close"
    assert [e.kind for e in errors] == [WebhookError.TOO_LARGE]
    assert str(errors[0]) == "Request is very large"
    assert delivered == []


def test_body_at_the_cap_is_read_in_full():
    hook = _hook()
    errors = _errors(hook)

    # a million zeros is not JSON, so the parse step reports it
    response = TestClient(hook.app).post(
        "/", headers=_link(STREAMS), content=b"0" * 1_000_000
    )

    assert response.status_code == 202
    assert [e.kind for e in errors] == [WebhookError.MALFORMED_JSON]


def test_unsigned_mode_needs_no_registry_entry():
    hook = _hook()
    seen = []
    hook.on("streams", seen.append)

    response = TestClient(hook.app).post(
        "/", headers=_link(STREAMS), content=json.dumps({"data": []})
    )

    assert response.status_code == 200
    assert len(hook.registry) == 0
    assert len(seen) == 1


def test_failing_observer_does_not_break_delivery():
    hook = _hook()
    seen = []

    def broken(envelope):
        raise RuntimeError("observer bug")

    hook.on("streams", broken)
    hook.on("*", seen.append)

    response = TestClient(hook.app).post("/", headers=_link(STREAMS), json={"data": []})

    assert response.status_code == 200
    assert len(seen) == 1


def test_rejections_are_logged(caplog):
    hook = _hook()

    with caplog.at_level(logging.WARNING, logger="helixhook.callback"):
        TestClient(hook.app).post("/", json={})

    assert "Topic is missing or incorrect" in caplog.text


def test_self_link_among_several_relations():
    header = (
        '<https://api.twitch.tv/helix/webhooks/hub>; rel="hub", '
        '<https://api.twitch.tv/helix/streams?user_id=5678>; rel="self"'
    )

    assert self_link(header) == STREAMS
    assert self_link("garbage") is None
    assert self_link(None) is None


def test_topic_name_strips_base_path():
    assert topic_name(STREAMS, "/helix/") == "streams"
    assert topic_name("https://api.twitch.tv/helix/users/follows?to_id=1", "/helix/") == "users/follows"
    assert topic_name("https://api.twitch.tv/helix/", "/helix/") is None
    assert topic_name("https://api.twitch.tv/helix", "/helix/") is None


def test_link_to_api_root_without_slash_is_incorrect_topic():
    hook = _hook()
    errors = _errors(hook)

    response = TestClient(hook.app).post(
        "/", headers=_link("https://api.twitch.tv/helix"), json={}
    )

    assert response.status_code == 202
    assert [e.kind for e in errors] == [WebhookError.TOPIC]
