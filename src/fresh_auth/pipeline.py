"""Resilient request pipeline for proxied API calls.

Every Notion or Microsoft Graph call goes through `ProxyPipeline.call` (JSON)
or `ProxyPipeline.fetch_content` (raw bytes). When the broker rejects a call
because no usable grant exists, the pipeline runs one grant flow for the
calling service and repeats the call once. Nothing else is retried: network
errors and every other failure propagate immediately.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from fresh_auth.broker import BrokerClient, error_message, parse_json, read_error_body
from fresh_auth.config import SESSION_HEADER
from fresh_auth.errors import (
    AuthErrorKind,
    AuthorizationRequired,
    BrokerError,
    classify_auth_error,
    is_retryable_auth_error,
)
from fresh_auth.grants import GrantFlow
from fresh_auth.services import ServiceGrant

logger = logging.getLogger("fresh-auth")

# Statuses the broker reserves for authorization problems
AUTH_STATUS_CODES = frozenset({401, 403, 429})
REDIRECT_STATUS_CODES = frozenset({301, 302})

# Original attempt plus at most one retry after a grant
MAX_ATTEMPTS = 2

# Kinds that are surfaced even when the broker uses a non-auth status
_REMEDIABLE_KINDS = frozenset({
    AuthErrorKind.NO_SESSION,
    AuthErrorKind.ACCOUNT_NOT_LINKED,
    AuthErrorKind.SCOPE_OR_TOKEN_EXPIRED,
    AuthErrorKind.ELEVATION_REQUIRED,
})


class ProxyPipeline:
    """Sends proxied requests with the agent session and grant recovery.

    Args:
        broker: Broker client providing HTTP, settings and the session store.
        grants: Grant flow used for recovery; built from the broker if omitted.
    """

    def __init__(self, broker: BrokerClient, grants: Optional[GrantFlow] = None):
        self.broker = broker
        self.grants = grants or GrantFlow(broker)
        # Concurrent calls share one grant attempt; the generation counts completed ones
        self._grant_lock = asyncio.Lock()
        self._grant_generation = 0

    @property
    def auto_request(self) -> bool:
        return self.broker.settings.auto_request

    def proxy_url(self, service: ServiceGrant, endpoint: str) -> str:
        return self.broker.url(f"{service.proxy_prefix}{endpoint}")

    async def _obtain_grant(self, service: ServiceGrant, generation: int) -> None:
        """Run one grant flow unless another call finished one since `generation`."""
        async with self._grant_lock:
            if self._grant_generation != generation:
                logger.debug(f"Grant for {service.name} obtained by a concurrent call")
                return
            await self.grants.run(service)
            self._grant_generation += 1
        logger.info("Authorization granted. Retrying request...")

    async def _send_authorized(
        self,
        service: ServiceGrant,
        method: str,
        endpoint: str,
        body: Any = None,
        headers: Optional[dict] = None,
    ) -> httpx.Response:
        """Send with grant recovery; returns the first non-auth response.

        Raises:
            NotLoggedIn: No session is saved (checked before any I/O).
            AuthorizationRequired: The broker refused and a human must act.
            BrokerError: Auth status without a parseable body.
        """
        for attempt in range(MAX_ATTEMPTS):
            session = self.broker.require_session()
            generation = self._grant_generation
            request_headers = {**(headers or {}), SESSION_HEADER: session}
            response = await self.broker.send(
                method,
                self.proxy_url(service, endpoint),
                headers=request_headers,
                json_body=body,
            )

            if response.status_code not in AUTH_STATUS_CODES:
                return response

            data, text = read_error_body(response)
            if attempt == 0 and self.auto_request and is_retryable_auth_error(data):
                logger.debug(f"{method} {endpoint}: {response.status_code}, requesting grant")
                await self._obtain_grant(service, generation)
                continue

            if data is not None:
                raise AuthorizationRequired(
                    classify_auth_error(data, service.name), response.status_code
                )
            raise BrokerError(
                text or f"Authentication failed ({response.status_code})",
                response.status_code,
            )

        # Unreachable: the retry branch only runs on the first attempt
        raise BrokerError("Request retry limit exceeded")

    async def call(
        self,
        service: ServiceGrant,
        method: str,
        endpoint: str,
        body: Any = None,
        headers: Optional[dict] = None,
    ) -> Any:
        """Make a proxied JSON API call and return the decoded body.

        Args:
            service: Service the call belongs to; picks the proxy prefix and
                the grant requested on an auth failure.
            method: HTTP method.
            endpoint: Path under the service's proxy prefix, with query.
            body: JSON body, or None for no body.
            headers: Extra headers (e.g. Notion-Version).

        Raises:
            AuthorizationRequired: Auth failure a human must resolve.
            BrokerError: Any other non-success response.
        """
        response = await self._send_authorized(service, method, endpoint, body, headers)

        if not response.is_success:
            data, text = read_error_body(response)
            if data is not None:
                problem = classify_auth_error(data, service.name)
                if problem.kind in _REMEDIABLE_KINDS:
                    raise AuthorizationRequired(problem, response.status_code)
            message = error_message(data)
            if message:
                raise BrokerError(message, response.status_code)
            raise BrokerError(
                f"API error ({response.status_code}): {text or response.reason_phrase}",
                response.status_code,
            )

        return parse_json(response)

    async def fetch_content(self, service: ServiceGrant, endpoint: str) -> bytes:
        """Download raw content, following one redirect without the session.

        Content endpoints answer with a redirect to a pre-signed URL; that URL
        must not receive the agent session header.
        """
        response = await self._send_authorized(service, "GET", endpoint)

        if response.status_code in REDIRECT_STATUS_CODES:
            location = response.headers.get("location")
            if not location:
                raise BrokerError("Download redirect missing location", response.status_code)
            response = await self.broker.send("GET", location)

        if not response.is_success:
            raise BrokerError(f"Download failed ({response.status_code})", response.status_code)
        return response.content
