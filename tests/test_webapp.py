"""Tests for the RPC control surface."""

import httpx
import pytest
from fastapi.testclient import TestClient

from worktrack.client import DaemonClient
from worktrack.engine import SessionEngine
from worktrack.errors import Conflict, NotFound
from worktrack.lifecycle import DaemonRunner
from worktrack.webapp import create_app


@pytest.fixture
def runner(store, settings):
    return DaemonRunner(SessionEngine(store, settings))


@pytest.fixture
def client(runner):
    with TestClient(create_app(runner)) as test_client:
        yield test_client


def rpc(client, command, **args):
    return client.post("/rpc", json={"command": command, "args": args})


class TestEnvelope:
    def test_start_returns_session(self, client):
        response = rpc(client, "start")

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["result"]["session"]["state"] == "active"

    def test_unknown_command(self, client):
        response = rpc(client, "dance")

        assert response.status_code == 400
        assert response.json() == {
            "ok": False,
            "error": {"kind": "BadRequest", "message": "unknown command 'dance'"},
        }

    def test_unexpected_argument(self, client):
        response = rpc(client, "pause", force=True)

        assert response.status_code == 400
        assert response.json()["error"]["kind"] == "BadRequest"

    def test_malformed_envelope(self, client):
        response = client.post("/rpc", json={"args": {}})

        assert response.status_code == 400
        assert response.json()["error"]["kind"] == "BadRequest"

    def test_conflict_and_not_found(self, client):
        rpc(client, "start")
        rpc(client, "pause")

        paused_again = rpc(client, "pause")
        missing = rpc(client, "session.link", id="nope", issue_id="ABC-1")

        assert paused_again.status_code == 409
        assert paused_again.json()["error"]["kind"] == "Conflict"
        assert missing.status_code == 404
        assert missing.json()["error"]["kind"] == "NotFound"

    def test_outcome_retry_is_safe(self, client):
        rpc(client, "session.start", id="s-1")
        args = {"id": "s-1", "type": "pr_created", "description": "PR", "reference": "#12"}

        first = rpc(client, "session.outcome", **args).json()["result"]
        second = rpc(client, "session.outcome", **args).json()["result"]

        assert first["created"] is True
        assert second["created"] is False

    def test_invalid_relationship(self, client):
        rpc(client, "session.start", id="s-1")

        response = rpc(client, "session.link", id="s-1", issue_id="ABC-1", relationship="loves")

        assert response.status_code == 400

    def test_shutdown_requests_exit(self, client, runner):
        requested = []
        runner.set_exit_handler(lambda: requested.append(True))

        response = rpc(client, "shutdown")

        assert response.json() == {"ok": True, "result": {"shutting_down": True}}
        assert requested == [True]


class TestStatus:
    def test_status_endpoint(self, client):
        rpc(client, "session.start", id="s-1", project="proj")

        body = client.get("/api/status").json()

        assert body["status"] == "running"
        assert body["engine_running"] is True
        assert body["session"]["id"] == "s-1"
        assert body["settings"]["idle_threshold_seconds"] == 10.0

    def test_status_over_rpc(self, client):
        body = rpc(client, "status").json()

        assert body["ok"] is True
        assert body["result"]["session"] is None


class TestClientErrors:
    """The socket client turns error envelopes back into typed exceptions."""

    def test_typed_errors(self, client):
        def forward(request):
            reply = client.request(
                request.method,
                request.url.path,
                content=request.content,
                headers={"content-type": "application/json"},
            )
            return httpx.Response(reply.status_code, content=reply.content, headers=reply.headers)

        daemon = DaemonClient(transport=httpx.MockTransport(forward))
        try:
            daemon.call("session.start", id="s-1")
            daemon.call("session.end", id="s-1")
            with pytest.raises(Conflict):
                daemon.call("session.outcome", id="s-1", type="commit", description="late")
            with pytest.raises(NotFound):
                daemon.call("work-on", work_item_id="NOPE-1")
            assert daemon.call("status")["session"] is None
        finally:
            daemon.close()
