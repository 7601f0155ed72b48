"""Tests for the fresh-auth command line."""

import io
import json

import httpx
import pytest

from fresh_auth import cli
from fresh_auth.broker import BrokerClient


@pytest.fixture
def run(monkeypatch, make_broker, capsys):
    """Run the CLI with a scripted broker; returns (exit code, stdout, stderr)."""
    def _run(*argv, session="sess-123"):
        broker = make_broker(session=session)
        monkeypatch.setattr(cli, "build_broker", lambda: broker)
        code = 0
        try:
            cli.main(list(argv))
        except SystemExit as e:
            code = e.code
        out, err = capsys.readouterr()
        return code, out, err
    return _run


class TestSessionCommands:
    """Tests for login/logout/status/request."""

    def test_api_call_without_session(self, run, fake):
        code, _, err = run("notion", "search", "x", session=None)
        assert code == 1
        assert "No agent session. Run 'fresh-auth login' first." in err
        assert fake.requests == []

    def test_logout_without_session(self, run, fake):
        code, out, _ = run("logout", session=None)
        assert code == 0
        assert out.strip() == "No active session."
        assert fake.requests == []

    def test_logout_revokes_and_clears(self, run, fake, settings):
        fake.add("DELETE", "/api/agent/session", json_body={"ok": True})
        code, out, _ = run("logout")
        assert code == 0
        assert out.strip() == "Session cleared."
        assert fake.requests[0].headers["X-Agent-Session"] == "sess-123"
        assert not settings.agent_session_file.exists()

    def test_logout_clears_even_if_broker_fails(self, run, fake, settings):
        fake.add("DELETE", "/api/agent/session", status=500, text="down")
        code, out, _ = run("logout")
        assert code == 0
        assert not settings.agent_session_file.exists()

    def test_status_without_session(self, run, fake):
        code, out, _ = run("status", session=None)
        status = json.loads(out)
        assert code == 0
        assert status["sessionSaved"] is False
        assert status["next"] == "fresh-auth login"
        assert fake.requests == []

    def test_status_reports_grants(self, run, fake):
        fake.add("GET", "/api/agent/status", json_body={"valid": True, "user": {"email": "a@b.c"}})
        fake.add("GET", "/api/proxy/status/notion",
                 json_body={"hasGrant": True, "scopes": ["read", "write"], "expiresAt": "2030-01-01T00:00:00Z"})
        fake.add("GET", "/api/proxy/status/msgraph", json_body={
            "hasGrant": True, "scopes": ["Mail.Read", "Mail.Send", "People.Read", "Calendars.Read"],
        })
        code, out, _ = run("status")
        status = json.loads(out)
        assert code == 0
        assert status["authenticated"] is True
        assert status["agent"]["user"]["email"] == "a@b.c"
        assert status["grants"]["notion"]["hasGrant"] is True
        coverage = status["grants"]["msgraph"]["services"]
        assert coverage["mail"]["covered"] and coverage["cal"]["covered"]
        assert not coverage["drive"]["covered"]

    def test_status_grant_error(self, run, fake):
        fake.add("GET", "/api/agent/status", status=401, json_body={"error": "no_agent_session"})
        fake.add("GET", "/api/proxy/status/*", status=401, json_body={"error": "no_agent_session"})
        code, out, _ = run("status")
        status = json.loads(out)
        assert status["authenticated"] is False
        assert status["grants"]["notion"]["hasGrant"] is False
        assert "login" in status["grants"]["notion"]["error"]

    def test_request_unknown_service(self, run, fake):
        code, _, err = run("request", "slack")
        assert code == 1
        assert "Unknown service: slack" in err
        assert fake.requests == []

    def test_request_auto_approved(self, run, fake):
        fake.add("POST", "/api/auth-request", json_body={"autoApproved": True})
        code, out, _ = run("request", "cal")
        assert code == 0
        assert out.strip() == "Access granted."
        assert fake.bodies("POST", "/api/auth-request")[0]["service"] == "msgraph"

    def test_request_denied(self, run, fake):
        fake.add("POST", "/api/auth-request", json_body={
            "pollUrl": "https://broker.test/api/auth-request/r/poll", "approveUrl": "https://broker.test/a",
        })
        fake.add("GET", "/api/auth-request/r/poll", json_body={"status": "denied"})
        code, _, err = run("request", "notion")
        assert code == 1
        assert "Authorization denied." in err

    def test_request_numeric_expires_at(self, run, fake):
        fake.add("POST", "/api/auth-request", json_body={
            "pollUrl": "https://broker.test/api/auth-request/r/poll", "approveUrl": "https://broker.test/a",
            "expiresAt": 4_102_444_800_000,
        })
        fake.add("GET", "/api/auth-request/r/poll", json_body={"status": "approved"})
        code, out, _ = run("request", "notion")
        assert code == 0
        assert out.strip() == "Access granted."

    def test_request_non_object_body(self, run, fake):
        fake.add("POST", "/api/auth-request", json_body=[])
        code, _, err = run("request", "notion")
        assert code == 1
        assert "Malformed response" in err

    def test_request_null_poll_body(self, run, fake):
        fake.add("POST", "/api/auth-request", json_body={
            "pollUrl": "https://broker.test/api/auth-request/r/poll", "approveUrl": "https://broker.test/a",
        })
        fake.add("GET", "/api/auth-request/r/poll", text="null")
        code, _, err = run("request", "notion")
        assert code == 1
        assert "Malformed response" in err

    def test_network_error(self, monkeypatch, settings, capsys):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        broker = BrokerClient(settings, client=httpx.AsyncClient(transport=httpx.MockTransport(refuse)))
        broker.store.save("sess-123")
        monkeypatch.setattr(cli, "build_broker", lambda: broker)
        with pytest.raises(SystemExit) as exc:
            cli.main(["notion", "me"])
        assert exc.value.code == 1
        assert "Network error: ConnectError: connection refused" in capsys.readouterr().err


class TestNotionCommands:
    """Tests for notion subcommands."""

    def test_search_prints_json(self, run, fake):
        fake.add("POST", "/api/proxy/notion/search", json_body={"results": [
            {"object": "page", "id": "p1", "url": "u", "properties": {}},
        ]})
        code, out, _ = run("notion", "search", "plans")
        assert code == 0
        assert json.loads(out) == [{"id": "p1", "type": "page", "title": "Untitled", "url": "u"}]

    def test_database_name_lists_matches(self, run, fake):
        fake.add("POST", "/api/proxy/notion/search", json_body={"results": [
            {"object": "database", "id": "db-1", "title": [{"plain_text": "Roadmap"}], "url": "u"},
        ]})
        code, _, err = run("notion", "query-db", "Roadmap")
        assert code == 1
        assert "'Roadmap' is not a database ID." in err
        assert "db-1  Roadmap" in err
        assert fake.bodies("POST", "/api/proxy/notion/search")[0]["filter"] == {"property": "object", "value": "database"}

    def test_create_passes_property_args(self, run, fake):
        db_id = "12345678123412341234123456789abc"
        fake.add("GET", "/api/proxy/notion/databases/12345678-1234-1234-1234-123456789abc",
                 json_body={"properties": {"Name": {"type": "title"}, "Stage": {"type": "status"}}})
        fake.add("POST", "/api/proxy/notion/pages", json_body={"id": "new", "url": "u", "properties": {}})
        code, out, _ = run("notion", "create", db_id, "Ship", "-p", "Stage=Done", "--number-Points=3")
        assert code == 0
        props = fake.bodies("POST", "/api/proxy/notion/pages")[0]["properties"]
        assert props["Stage"] == {"status": {"name": "Done"}}
        assert props["Points"] == {"number": 3}
        assert props["Name"] == {"title": [{"text": {"content": "Ship"}}]}

    def test_update_without_properties_fails(self, run, fake):
        fake.add("GET", "/api/proxy/notion/pages/p1", json_body={"id": "p1", "parent": {}, "properties": {}})
        code, _, err = run("notion", "update", "p1")
        assert code == 1
        assert "No properties provided" in err

    def test_append_body_from_stdin(self, run, fake, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("# Title\n- item\n"))
        fake.add("PATCH", "/api/proxy/notion/blocks/p1/children", json_body={})
        code, out, _ = run("notion", "append-body", "p1", "-")
        assert code == 0
        assert json.loads(out)["blocks_written"] == 2
        children = fake.bodies("PATCH", "/api/proxy/notion/blocks/p1/children")[0]["children"]
        assert [c["type"] for c in children] == ["heading_1", "bulleted_list_item"]


class TestGraphCommands:
    """Tests for drive/mail/cal subcommands."""

    def test_mail_unread(self, run, fake):
        fake.add("GET", "/proxy/msgraph/me/messages", json_body={"value": [{
            "id": "m" * 30, "subject": "Hello", "isRead": False,
            "from": {"emailAddress": {"name": "Ada", "address": "ada@x.io"}},
            "receivedDateTime": "2030-01-01T09:00:00Z",
        }]})
        code, out, _ = run("mail", "unread", "--count", "5")
        assert code == 0
        assert "Unread messages (1):" in out
        assert "Ada <ada@x.io>" in out
        assert fake.requests[0].url.params["$top"] == "5"

    def test_drive_proxy_error(self, run, fake):
        fake.add("GET", "/proxy/msgraph/me/drive/items/x", status=404, json_body={"error": {"code": "itemNotFound"}})
        code, _, err = run("drive", "info", "x")
        assert code == 1
        assert "API error (404)" in err
