import base64
from unittest.mock import MagicMock

import pytest
import requests

from impt.imptest.transport import (
    SENTINEL_SINCE,
    BuildAPIClient,
    PollCursor,
    TransportConfig,
    TransportError,
)


def make_client(*payloads, status_code=200):
    http = MagicMock()
    responses = []
    for payload in payloads:
        response = MagicMock()
        response.status_code = status_code
        if isinstance(payload, Exception):
            response.json.side_effect = payload
        else:
            response.json.return_value = payload
        responses.append(response)
    http.request.side_effect = responses
    config = TransportConfig(api_endpoint="https://api.example/v4/", api_key="secret")
    return BuildAPIClient(config, session=http), http


def test_request_sends_basic_auth_and_query():
    client, http = make_client({"success": True, "logs": []})
    client.request("GET", "/devices/d1/logs", {"since": "now", "skip": None})

    method, url = http.request.call_args.args
    kwargs = http.request.call_args.kwargs
    assert (method, url) == ("GET", "https://api.example/v4/devices/d1/logs")
    assert kwargs["params"] == {"since": "now"}
    assert kwargs["json"] is None
    token = base64.b64encode(b"secret").decode("ascii")
    assert kwargs["headers"]["Authorization"] == f"Basic {token}"
    assert kwargs["timeout"] == 60.0


def test_post_sends_json_body():
    client, http = make_client({"success": True, "revision": {"version": "12"}})
    assert client.create_revision("m1", device_code="dev", agent_code="agt") == 12
    kwargs = http.request.call_args.kwargs
    assert http.request.call_args.args == ("POST", "https://api.example/v4/models/m1/revisions")
    assert kwargs["json"] == {"device_code": "dev", "agent_code": "agt"}
    assert kwargs["params"] is None


def test_revision_without_version_is_an_error():
    client, _ = make_client({"success": True, "revision": {}})
    with pytest.raises(TransportError):
        client.create_revision("m1")


def test_restart_endpoints():
    client, http = make_client({"success": True}, {"success": True})
    client.restart_device("d1")
    client.restart_model("m1")
    urls = [call.args[1] for call in http.request.call_args_list]
    assert urls == ["https://api.example/v4/devices/d1/restart", "https://api.example/v4/models/m1/restart"]


def test_error_object_format():
    client, _ = make_client(
        {"success": False, "error": {"code": "InvalidLogToken", "message_short": "expired"}}, status_code=400
    )
    with pytest.raises(TransportError) as excinfo:
        client.request("GET", "/x")
    error = excinfo.value
    assert str(error) == 'Build API error "InvalidLogToken": expired'
    assert error.status == 400 and error.code == "InvalidLogToken"
    assert error.is_invalid_token and not error.is_timeout


def test_flat_error_format():
    client, _ = make_client({"code": "WrongModel", "message": "no such model"}, status_code=404)
    with pytest.raises(TransportError, match='Build API error "WrongModel": no such model'):
        client.request("GET", "/x")


def test_undecodable_body_uses_http_status():
    client, _ = make_client(ValueError("not json"), status_code=504)
    with pytest.raises(TransportError) as excinfo:
        client.request("GET", "/x")
    assert str(excinfo.value) == "Build API error HTTP/504"
    assert excinfo.value.is_timeout


def test_request_timeout_is_reported_as_gateway_timeout():
    client, http = make_client()
    http.request.side_effect = requests.Timeout("read timed out")
    with pytest.raises(TransportError) as excinfo:
        client.request("GET", "/x")
    assert excinfo.value.is_timeout


def test_connection_failure_is_transport_error():
    client, http = make_client()
    http.request.side_effect = requests.ConnectionError("refused")
    with pytest.raises(TransportError) as excinfo:
        client.request("GET", "/x")
    assert not excinfo.value.is_timeout and not excinfo.value.is_invalid_token


def test_fetch_logs_with_sentinel_returns_cursor():
    client, http = make_client({"success": True, "logs": [], "poll_url": "/v4/devices/d1/logs/poll/abc"})
    batch = client.fetch_logs("d1", SENTINEL_SINCE)
    assert batch.cursor == PollCursor("/devices/d1/logs/poll/abc")
    assert batch.logs == []
    assert http.request.call_args.kwargs["params"] == {"since": SENTINEL_SINCE}


def test_fetch_logs_follows_cursor():
    client, http = make_client(
        {"success": True, "logs": [{"type": "status", "message": "x"}, "junk"], "poll_url": "/v4/next"}
    )
    batch = client.fetch_logs("d1", PollCursor("/devices/d1/logs/poll/abc"))
    assert http.request.call_args.args[1] == "https://api.example/v4/devices/d1/logs/poll/abc"
    assert batch.logs == [{"type": "status", "message": "x"}]
    assert batch.cursor == PollCursor("/next")


def test_poll_url_without_version_prefix_is_kept():
    assert PollCursor.from_poll_url("/devices/d1/poll") == PollCursor("/devices/d1/poll")
    assert PollCursor.from_poll_url("/v12/devices/d1/poll") == PollCursor("/devices/d1/poll")
