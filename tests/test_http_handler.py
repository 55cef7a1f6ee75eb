"""Tests for the blocking robot HTTP transport."""

import json

import pytest
import requests

from opentrons_sequencer.common.config import Settings
from opentrons_sequencer.common.errors import (
    MalformedResponseError,
    NetworkError,
    RequestRejectedError,
    StartError,
    UploadError,
)
from opentrons_sequencer.runner import http_handler
from opentrons_sequencer.runner.http_handler import HTTPClient, RobotAPI


def make_response(status_code=200, payload=None, text=None):
    response = requests.Response()
    response.status_code = status_code
    if text is None:
        text = json.dumps(payload if payload is not None else {})
    response._content = text.encode("utf-8")
    response.url = "http://robot:31950"
    return response


class StubSession:
    """Stands in for requests.Session: replays queued responses or exceptions."""

    def __init__(self, *replies):
        self.headers = {}
        self.replies = list(replies)
        self.requests = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    delays = []
    monkeypatch.setattr(http_handler.time, "sleep", delays.append)
    return delays


def robot_with(*replies, retries=3):
    session = StubSession(*replies)
    client = HTTPClient("http://robot:31950/", api_version="3", retries=retries,
                        backoff_base=0.5, backoff_max=1.0, session=session)
    return RobotAPI(client), session


def test_version_header_and_base_url():
    api, session = robot_with(make_response(200, {"data": {"id": "p1"}}))
    api.upload_protocol("heat.py", "print('hi')")

    assert session.headers["Opentrons-Version"] == "3"
    method, url, kwargs = session.requests[0]
    assert (method, url) == ("POST", "http://robot:31950/protocols")
    name, (filename, content, content_type) = kwargs["files"][0]
    assert name == "files"
    assert filename == "heat.py"
    assert content == b"print('hi')"


def test_upload_returns_protocol_id():
    api, _ = robot_with(make_response(201, {"data": {"id": "abc123"}}))
    assert api.upload_protocol("a.py", "") == "abc123"


def test_upload_rejected_raises_upload_error():
    api, _ = robot_with(make_response(422, text='{"errors": ["bad"]}'))
    with pytest.raises(UploadError) as info:
        api.upload_protocol("a.py", "")
    assert info.value.status_code == 422
    assert "bad" in info.value.body


def test_upload_without_id_is_malformed():
    api, _ = robot_with(make_response(201, {"data": {"files": []}}))
    with pytest.raises(MalformedResponseError):
        api.upload_protocol("a.py", "")


def test_non_json_body_is_malformed():
    api, _ = robot_with(make_response(201, text="<html>oops</html>"))
    with pytest.raises(MalformedResponseError):
        api.upload_protocol("a.py", "")


def test_connection_errors_are_retried_with_backoff(no_sleep):
    api, session = robot_with(
        requests.exceptions.ConnectionError("refused"),
        requests.exceptions.ReadTimeout("slow"),
        make_response(200, {"data": {"id": "run-1", "status": "running"}}),
    )
    assert api.get_run("run-1")["status"] == "running"
    assert len(session.requests) == 3
    assert no_sleep == [0.5, 1.0]


def test_post_is_retried_when_connection_was_refused(no_sleep):
    api, session = robot_with(
        requests.exceptions.ConnectTimeout("no route"),
        make_response(201, {"data": {"id": "run-1"}}),
    )
    assert api.create_run("p1") == "run-1"
    assert len(session.requests) == 2
    assert no_sleep == [0.5]


def test_post_is_not_resent_after_read_timeout(no_sleep):
    # the robot may have played the run already; a second play would get 409
    api, session = robot_with(
        requests.exceptions.ReadTimeout("slow"),
        make_response(409, text="run already running"),
    )
    with pytest.raises(StartError) as info:
        api.play_run("run-0")

    assert isinstance(info.value.__cause__, NetworkError)
    assert info.value.status_code is None
    assert len(session.requests) == 1
    assert no_sleep == []


def test_backoff_is_capped_and_bounded(no_sleep):
    errors = [requests.exceptions.ConnectionError("refused") for _ in range(4)]
    api, session = robot_with(*errors, retries=3)
    with pytest.raises(UploadError) as info:
        api.upload_protocol("a.py", "")

    assert isinstance(info.value.__cause__, NetworkError)
    assert len(session.requests) == 4
    assert no_sleep == [0.5, 1.0, 1.0]


def test_non_transient_request_errors_are_not_retried(no_sleep):
    api, session = robot_with(requests.exceptions.InvalidURL("bad url"))
    with pytest.raises(StartError):
        api.create_run("p1")
    assert len(session.requests) == 1
    assert no_sleep == []


def test_create_run_sends_protocol_and_runtime_params():
    api, session = robot_with(make_response(201, {"data": {"id": "run-1"}}))
    api.create_run("p1", {"volume": 50})

    _, url, kwargs = session.requests[0]
    assert url.endswith("/runs")
    assert kwargs["json"] == {"data": {"protocolId": "p1", "runTimeParameterValues": {"volume": 50}}}


def test_create_run_rejected_raises_start_error():
    api, _ = robot_with(make_response(409, text="robot busy"))
    with pytest.raises(StartError) as info:
        api.create_run("p1")
    assert info.value.status_code == 409


def test_play_posts_action():
    api, session = robot_with(make_response(201, {"data": {"actionType": "play"}}))
    api.play_run("run-1")

    _, url, kwargs = session.requests[0]
    assert url == "http://robot:31950/runs/run-1/actions"
    assert kwargs["json"] == {"data": {"actionType": "play"}}


def test_get_run_returns_data():
    api, _ = robot_with(make_response(200, {"data": {"id": "run-1", "status": "running"}}))
    assert api.get_run("run-1")["status"] == "running"


def test_get_run_without_data_is_malformed():
    api, _ = robot_with(make_response(200, {"status": "running"}))
    with pytest.raises(MalformedResponseError):
        api.get_run("run-1")


def test_delete_tolerates_missing_protocol():
    api, _ = robot_with(make_response(404, text="not found"))
    api.delete_protocol("gone")


def test_context_manager_closes_session():
    api, session = robot_with()
    with api:
        pass
    assert session.closed


def test_from_settings_uses_configuration():
    settings = Settings(robot_url="http://10.0.0.5:31950", api_version="4", retries=5, request_timeout=3)
    with RobotAPI.from_settings(settings) as api:
        assert api.http.base_url == "http://10.0.0.5:31950"
        assert api.http.retries == 5
        assert api.http.timeout == 3
        assert api.http.session.headers["Opentrons-Version"] == "4"


def test_get_run_rejected_is_not_a_network_error():
    api, _ = robot_with(make_response(404, text="run not found"))
    with pytest.raises(RequestRejectedError) as info:
        api.get_run("deleted")
    assert not isinstance(info.value, NetworkError)
    assert info.value.status_code == 404
    assert "not found" in info.value.body


def test_health_returns_payload():
    api, session = robot_with(make_response(200, {"name": "trixie", "api_version": "7.0.0"}))
    assert api.health()["name"] == "trixie"
    assert session.requests[0][1] == "http://robot:31950/health"


def test_health_rejected():
    api, _ = robot_with(make_response(503, text="starting"))
    with pytest.raises(RequestRejectedError) as info:
        api.health()
    assert info.value.status_code == 503
