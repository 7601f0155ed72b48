"""Broker protocol client.

Thin async wrappers around the broker's agent and grant endpoints:

- POST /api/agent/init          start agent registration (login)
- GET  {pollUrl}                registration / grant request status
- POST /api/auth-request        request a scoped, time-boxed grant
- GET  /api/agent/status        validate the agent session
- GET  /api/proxy/status/{svc}  current grant for a broker service
- DELETE /api/agent/session     revoke the agent session

plus `collect_status`, which gathers the agent and grant status reads.

Every call except registration carries the agent session in the
X-Agent-Session header.
"""

import asyncio
import json
import logging
import platform
import socket
from typing import Any, Optional

import httpx

from fresh_auth.config import SESSION_HEADER, Settings
from fresh_auth.errors import (
    CLI_NAME,
    AuthorizationRequired,
    BrokerError,
    NotLoggedIn,
    RegistrationError,
    classify_auth_error,
)
from fresh_auth.services import ServiceGrant, broker_services
from fresh_auth.session import SessionStore

logger = logging.getLogger("fresh-auth")


def read_error_body(response: httpx.Response) -> tuple[Optional[Any], str]:
    """Return (parsed JSON or None, raw text) for a response body."""
    text = response.text
    if not text:
        return None, ""
    try:
        return json.loads(text), text
    except ValueError:
        return None, text


def error_message(data: Any) -> str:
    """The `message` or `error` field of a JSON error payload, if any."""
    if isinstance(data, dict):
        for key in ("message", "error"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    return ""


def parse_json(response: httpx.Response) -> dict:
    """Decode a success body that must be a JSON object.

    Raises:
        BrokerError: The body is not JSON, or is JSON but not an object.
    """
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        raise BrokerError(
            f"Malformed response from {response.request.url} ({response.status_code})",
            response.status_code,
        )
    return data


def device_info() -> str:
    return f"fresh-auth {platform.system().lower()} {platform.machine()} {socket.gethostname()}"


class BrokerClient:
    """Owns the HTTP client, settings and session store shared by all calls.

    Args:
        settings: Runtime settings.
        store: Session store; built from settings if omitted.
        client: Preconfigured httpx.AsyncClient (tests pass one backed by a
            MockTransport). Created lazily otherwise.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[SessionStore] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.store = store or SessionStore.from_settings(settings)
        self._client = client

    async def __aenter__(self) -> "BrokerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    def get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.settings.http_timeout)
        return self._client

    def require_session(self) -> str:
        """Load the agent session or raise NotLoggedIn."""
        session = self.store.load()
        if not session:
            raise NotLoggedIn()
        return session

    def url(self, path: str) -> str:
        return self.settings.url(path)

    async def send(
        self,
        method: str,
        url: str,
        headers: Optional[dict] = None,
        json_body: Any = None,
    ) -> httpx.Response:
        """Issue one request; redirects are never followed automatically."""
        request_headers = dict(headers or {})
        content = None
        if json_body is not None:
            request_headers["Content-Type"] = "application/json"
            content = json.dumps(json_body)
        logger.debug(f"{method} {url}")
        return await self.get_client().request(
            method,
            url,
            headers=request_headers,
            content=content,
            follow_redirects=False,
        )

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    async def register(self, agent_name: str) -> dict:
        """Start agent registration. Returns the broker's registration record."""
        response = await self.send(
            "POST",
            self.url("/api/agent/init"),
            json_body={"agentName": agent_name, "deviceInfo": device_info()},
        )
        if not response.is_success:
            data, text = read_error_body(response)
            raise RegistrationError(
                error_message(data)
                or f"Registration init failed: {text or response.reason_phrase}"
            )
        return parse_json(response)

    async def poll_registration(self, poll_url: str) -> dict:
        """Fetch registration status. The poll URL needs no session header."""
        response = await self.send("GET", poll_url)
        if not response.is_success:
            data, text = read_error_body(response)
            raise RegistrationError(
                error_message(data)
                or f"Registration poll failed: {text or response.reason_phrase}"
            )
        return parse_json(response)

    # -------------------------------------------------------------------------
    # Grants
    # -------------------------------------------------------------------------

    async def create_auth_request(self, grant: ServiceGrant, session: str) -> dict:
        """POST /api/auth-request for the grant's broker service and scopes."""
        response = await self.send(
            "POST",
            self.url("/api/auth-request"),
            headers={SESSION_HEADER: session},
            json_body=grant.request_body(),
        )
        if not response.is_success:
            data, text = read_error_body(response)
            message = error_message(data)
            if message:
                raise BrokerError(message, response.status_code)
            raise BrokerError(
                f"Failed to create auth request ({response.status_code}): "
                f"{text or response.reason_phrase}",
                response.status_code,
            )
        return parse_json(response)

    async def poll_auth_request(self, poll_url: str, session: str, service: str) -> dict:
        """Fetch grant request status.

        Raises:
            AuthorizationRequired: The broker answered with a structured error.
            BrokerError: Any other non-success response.
        """
        response = await self.send("GET", poll_url, headers={SESSION_HEADER: session})
        if not response.is_success:
            data, text = read_error_body(response)
            if data is not None:
                raise AuthorizationRequired(
                    classify_auth_error(data, service), response.status_code
                )
            raise BrokerError(
                f"Auth request poll failed ({response.status_code}): "
                f"{text or response.reason_phrase}",
                response.status_code,
            )
        return parse_json(response)

    async def grant_status(self, broker_service: str, session: str) -> tuple[bool, Optional[Any]]:
        """GET /api/proxy/status/{service}. Returns (ok, parsed body)."""
        response = await self.send(
            "GET",
            self.url(f"/api/proxy/status/{broker_service}"),
            headers={SESSION_HEADER: session},
        )
        data, _ = read_error_body(response)
        return response.is_success, data

    async def agent_status(self, session: str) -> tuple[bool, Optional[Any]]:
        """GET /api/agent/status. Returns (ok, parsed body)."""
        response = await self.send(
            "GET", self.url("/api/agent/status"), headers={SESSION_HEADER: session}
        )
        data, _ = read_error_body(response)
        return response.is_success, data

    async def delete_session(self, session: str) -> bool:
        """Revoke the session on the broker. Best effort: never raises."""
        try:
            response = await self.send(
                "DELETE", self.url("/api/agent/session"), headers={SESSION_HEADER: session}
            )
        except httpx.HTTPError as e:
            logger.debug(f"Session revoke failed: {e}")
            return False
        return response.is_success


# =============================================================================
# Status
# =============================================================================


def _grant_summary(broker_service: str, ok: bool, data: Any) -> dict:
    if not ok:
        summary = {"hasGrant": False}
        if data is not None:
            summary["error"] = classify_auth_error(data, broker_service).remediation()
        return summary

    data = data if isinstance(data, dict) else {}
    scopes = data.get("scopes") or []
    summary = {
        "hasGrant": bool(data.get("hasGrant")),
        "scopes": scopes,
        "expiresAt": data.get("expiresAt"),
    }
    services = broker_services().get(broker_service, [])
    if len(services) > 1:
        active = set(scopes)
        summary["services"] = {
            s.name: {"scopes": list(s.scopes), "covered": active.issuperset(s.scopes)}
            for s in services
        }
    return summary


async def collect_status(broker: BrokerClient) -> dict:
    """Session, agent and per-service grant status as one JSON-ready dict.

    The agent check and each grant lookup are independent, so they run
    concurrently.
    """
    session = broker.store.load()
    status: dict = {
        "authService": broker.settings.auth_service_url,
        "sessionFile": str(broker.store.primary),
        "sessionSaved": bool(session),
    }
    if not session:
        status["authenticated"] = False
        status["reason"] = "no_agent_session"
        status["next"] = f"{CLI_NAME} login"
        return status

    names = list(broker_services())
    agent, *grants = await asyncio.gather(
        broker.agent_status(session),
        *(broker.grant_status(name, session) for name in names),
    )

    agent_ok, agent_data = agent
    status["authenticated"] = agent_ok
    if isinstance(agent_data, dict):
        status["agent"] = agent_data
    status["grants"] = {
        name: _grant_summary(name, ok, data) for name, (ok, data) in zip(names, grants)
    }
    return status
