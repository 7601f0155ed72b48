"""Grant request and approval polling.

A grant is a scoped, time-boxed authorization for one broker service. Getting
one is a small state machine:

    INIT -> REQUESTED -> APPROVED                 (broker auto-approved)
    INIT -> REQUESTED -> PENDING -> APPROVED
                                 -> DENIED        (denied or expired)
                                 -> TIMED_OUT     (local deadline passed)

Approval may need a human to click a link or finish OAuth on another device,
so the client polls the request's poll URL at a fixed interval until a
terminal state or the deadline.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote

from fresh_auth.broker import BrokerClient
from fresh_auth.config import (
    DEFAULT_GRANT_WINDOW_SECONDS,
    DEFAULT_REGISTRATION_WINDOW_SECONDS,
    POLL_INTERVAL_SECONDS,
)
from fresh_auth.errors import GrantDenied, GrantTimeout, RegistrationError
from fresh_auth.services import ServiceGrant

logger = logging.getLogger("fresh-auth")


class GrantState(Enum):
    """Lifecycle of one grant attempt."""
    INIT = "init"
    REQUESTED = "requested"
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"


class RequestStatus(str, Enum):
    """Status values the broker reports for a grant request."""
    PENDING = "pending"
    OAUTH_PENDING = "oauth_pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


# Epoch values above this are milliseconds (year 5138 in seconds)
EPOCH_MILLIS_THRESHOLD = 100_000_000_000

TERMINAL_FAILURES = {
    RequestStatus.DENIED.value: "Authorization denied.",
    RequestStatus.EXPIRED.value: "Authorization request expired.",
}


def parse_deadline(expires_at: Any, now: float) -> float:
    """Epoch deadline from `expiresAt`, or now + 5 minutes.

    Accepts ISO 8601 strings and numeric epochs in seconds or milliseconds.
    """
    if isinstance(expires_at, (int, float)) and not isinstance(expires_at, bool) and expires_at > 0:
        return expires_at / 1000 if expires_at > EPOCH_MILLIS_THRESHOLD else float(expires_at)
    if isinstance(expires_at, str) and expires_at:
        try:
            return datetime.fromisoformat(expires_at.replace("Z", "+00:00")).timestamp()
        except ValueError:
            pass
    if expires_at is not None:
        logger.debug(f"Unparseable expiresAt {expires_at!r}, using default window")
    return now + DEFAULT_GRANT_WINDOW_SECONDS


@dataclass
class PendingRequest:
    """A grant request waiting for a human decision."""
    poll_url: str
    approve_url: str
    deadline: float
    request_id: Optional[str] = None


@dataclass
class GrantOutcome:
    """Result of a successful grant attempt."""
    service: str
    auto_approved: bool
    polls: int = 0


class GrantFlow:
    """Runs grant attempts against the broker.

    One instance can run many attempts; each `run()` starts again from INIT.

    Args:
        broker: Broker protocol client.
        sleep: Awaitable sleep, injectable for tests.
        clock: Wall-clock seconds since the epoch, injectable for tests.
        poll_interval: Seconds between polls.
    """

    def __init__(
        self,
        broker: BrokerClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ):
        self.broker = broker
        self.sleep = sleep
        self.clock = clock
        self.poll_interval = poll_interval
        self.state = GrantState.INIT

    async def request(self, grant: ServiceGrant, session: str) -> Optional[PendingRequest]:
        """Create the grant request.

        Returns:
            None if the broker auto-approved it, otherwise the pending request.
        """
        self.state = GrantState.REQUESTED
        response = await self.broker.create_auth_request(grant, session)
        if response.get("autoApproved"):
            self.state = GrantState.APPROVED
            return None

        self.state = GrantState.PENDING
        return PendingRequest(
            poll_url=response.get("pollUrl") or "",
            approve_url=response.get("approveUrl") or "",
            deadline=parse_deadline(response.get("expiresAt"), self.clock()),
            request_id=response.get("requestId"),
        )

    async def wait(self, grant: ServiceGrant, pending: PendingRequest, session: str) -> int:
        """Poll until the request is approved.

        Returns:
            Number of polls performed.

        Raises:
            GrantDenied: The broker reported denied or expired.
            GrantTimeout: The deadline passed first.
            AuthorizationRequired: The poll endpoint returned a structured error.
        """
        last_status = None
        polls = 0

        while self.clock() < pending.deadline:
            result = await self.broker.poll_auth_request(pending.poll_url, session, grant.name)
            polls += 1
            status = result.get("status")

            if status != last_status:
                last_status = status
                if status == RequestStatus.OAUTH_PENDING:
                    logger.info("OAuth connection required. Complete it in your browser...")

            if status == RequestStatus.APPROVED:
                self.state = GrantState.APPROVED
                return polls

            if isinstance(status, str) and status in TERMINAL_FAILURES:
                self.state = GrantState.DENIED
                raise GrantDenied(
                    result.get("message") or TERMINAL_FAILURES[status],
                    status,
                )

            await self.sleep(self.poll_interval)

        self.state = GrantState.TIMED_OUT
        raise GrantTimeout()

    async def run(self, grant: ServiceGrant) -> GrantOutcome:
        """One full grant attempt: request, then poll if approval is pending.

        Raises:
            NotLoggedIn: No agent session is saved.
        """
        self.state = GrantState.INIT
        session = self.broker.require_session()

        pending = await self.request(grant, session)
        if pending is None:
            logger.info("Access granted automatically (within policy).")
            return GrantOutcome(service=grant.name, auto_approved=True)

        logger.info(f"Authorization required for {grant.label} access.")
        logger.info(f"Approve at: {pending.approve_url}")
        logger.info("Waiting for approval...")
        polls = await self.wait(grant, pending, session)
        return GrantOutcome(service=grant.name, auto_approved=False, polls=polls)


# =============================================================================
# Agent Registration (login)
# =============================================================================


@dataclass
class Registration:
    """A started agent registration awaiting approval."""
    poll_url: str
    verify_url: str
    deadline: float
    code: str = ""


class LoginFlow:
    """Registers this agent with the broker and waits for a human to approve it.

    The session id is saved as soon as the broker hands one out, even while
    approval is still pending, and again whenever a poll returns one.
    """

    def __init__(
        self,
        broker: BrokerClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ):
        self.broker = broker
        self.sleep = sleep
        self.clock = clock
        self.poll_interval = poll_interval

    def _save(self, data: dict) -> Optional[str]:
        session_id = data.get("agentSessionId")
        if isinstance(session_id, str) and session_id.strip():
            self.broker.store.save(session_id)
            return session_id.strip()
        return None

    async def start(self, agent_name: str) -> Registration:
        data = await self.broker.register(agent_name)
        if self._save(data):
            logger.info("Session saved (pending approval).")

        base = self.broker.settings.auth_service_url
        code = str(data.get("code") or "")
        expires_in = data.get("expiresIn")
        if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool) or expires_in <= 0:
            expires_in = DEFAULT_REGISTRATION_WINDOW_SECONDS
        return Registration(
            poll_url=data.get("pollUrl") or f"{base}/api/agent/poll/{data.get('registrationId')}",
            verify_url=data.get("verifyUrl") or f"{base}/agent/verify?code={quote(code, safe='')}",
            deadline=self.clock() + expires_in,
            code=code,
        )

    async def wait(self, registration: Registration) -> str:
        """Poll until approved and return the saved session id.

        Raises:
            RegistrationError: Denied, expired or timed out.
        """
        while self.clock() < registration.deadline:
            status = await self.broker.poll_registration(registration.poll_url)
            session_id = self._save(status)
            state = status.get("status")

            if state == RequestStatus.APPROVED and session_id:
                return session_id
            if state == RequestStatus.DENIED:
                raise RegistrationError(status.get("message") or "Registration denied.")
            if state == RequestStatus.EXPIRED:
                raise RegistrationError(status.get("message") or "Registration expired. Run login again.")

            await self.sleep(self.poll_interval)

        raise RegistrationError("Timed out waiting for login approval.")

    async def run(self, agent_name: str) -> str:
        registration = await self.start(agent_name)
        logger.info("Approve registration at:")
        logger.info(f"  {registration.verify_url}")
        logger.info("Waiting for approval...")
        session_id = await self.wait(registration)
        logger.info("Login successful.")
        return session_id
