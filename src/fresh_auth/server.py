"""MCP tool server exposing the broker-backed operations.

Supports two transport modes:
- stdio (default): the MCP client launches `fresh-auth serve` directly
- http: standalone streamable-HTTP server on localhost:2053 with /health

Tools never raise; failures come back as `error: CODE - message` text with a
hint the calling agent can act on.
"""

import json
import logging
from typing import Awaitable, Callable

import httpx
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from fresh_auth.broker import BrokerClient, collect_status
from fresh_auth.config import get_settings
from fresh_auth.errors import (
    CLI_NAME,
    AuthErrorKind,
    AuthorizationRequired,
    BrokerError,
    FreshAuthError,
    GrantDenied,
    GrantTimeout,
    NotLoggedIn,
)
from fresh_auth.graph import GraphClient, render_drive_search, render_event_days, render_mail_list
from fresh_auth.notion import NotionClient, resolve_notion_ref
from fresh_auth.pipeline import ProxyPipeline
from fresh_auth.session import SessionStore

logger = logging.getLogger("fresh-auth")

HTTP_HOST = "127.0.0.1"
HTTP_PORT = 2053


# =============================================================================
# Error Formatting
# =============================================================================


def _error(code: str, message: str, hint: str | None = None) -> str:
    """Format error with optional remediation hint.

    Args:
        code: Error code (e.g., NO_SESSION, GRANT_DENIED)
        message: Human-readable description
        hint: What to do next

    Returns:
        Formatted error string with hint if provided.
    """
    parts = [f"error: {code} - {message}"]
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


HINTS = {
    "no_session": f"Run '{CLI_NAME} login' in a terminal and approve the registration.",
    "no_grant": f"Run '{CLI_NAME} request <service>' and approve the grant.",
    "account_not_linked": "Open the link above to connect the account, then retry.",
    "scope_or_token_expired": "Open the link above to re-authorize, then retry.",
    "elevation_required": "Open the link above to approve the additional access, then retry.",
    "grant_denied": "Ask the account owner to approve, or request again later.",
    "grant_timeout": "Approve the pending request in the browser, then retry.",
    "network": "Check connectivity to the auth service.",
}


def describe_failure(e: Exception) -> str:
    """Map a failure to the tool error text."""
    if isinstance(e, NotLoggedIn):
        return _error("NO_SESSION", str(e), hint=HINTS["no_session"])
    if isinstance(e, AuthorizationRequired):
        if e.kind is AuthErrorKind.GENERIC:
            return _error("AUTH_FAILED", str(e))
        return _error(e.kind.name, str(e), hint=HINTS[e.kind.value])
    if isinstance(e, GrantDenied):
        return _error("GRANT_DENIED", str(e), hint=HINTS["grant_denied"])
    if isinstance(e, GrantTimeout):
        return _error("GRANT_TIMEOUT", str(e), hint=HINTS["grant_timeout"])
    if isinstance(e, BrokerError):
        code = f"HTTP_{e.status_code}" if e.status_code else "BROKER_ERROR"
        return _error(code, str(e))
    if isinstance(e, httpx.HTTPError):
        return _error("NETWORK", f"{type(e).__name__}: {e}", hint=HINTS["network"])
    return _error("FAILED", str(e))


def build_broker() -> BrokerClient:
    return BrokerClient(get_settings())


async def _run_tool(operation: Callable[[ProxyPipeline], Awaitable[str]]) -> str:
    """Run one tool call with a fresh broker client, turning failures into text."""
    try:
        async with build_broker() as broker:
            return await operation(ProxyPipeline(broker))
    except (FreshAuthError, httpx.HTTPError, ValueError) as e:
        logger.warning(f"Tool call failed: {e}")
        return describe_failure(e)


# =============================================================================
# MCP Tools
# =============================================================================

mcp = FastMCP("fresh-auth", host=HTTP_HOST, port=HTTP_PORT)


@mcp.tool()
async def auth_status() -> str:
    """Report the agent session and current grants for every service.

    Returns JSON with sessionSaved, authenticated and per-service grants.
    """
    async def op(pipeline: ProxyPipeline) -> str:
        return json.dumps(await collect_status(pipeline.broker), indent=2)
    return await _run_tool(op)


@mcp.tool()
async def notion_search(query: str = "") -> str:
    """Search Notion pages and databases by title.

    Args:
        query: Search text; empty lists recently edited items.
    """
    async def op(pipeline: ProxyPipeline) -> str:
        results = await NotionClient.from_pipeline(pipeline).search(query)
        if not results:
            return f'No Notion results for "{query}".'
        return "\n".join(f"{r['type']}: {r['title']} ({r['id']})" for r in results)
    return await _run_tool(op)


@mcp.tool()
async def notion_page_markdown(ref: str) -> str:
    """Read a Notion page as markdown.

    Args:
        ref: Page UUID or Notion URL.
    """
    async def op(pipeline: ProxyPipeline) -> str:
        notion = NotionClient.from_pipeline(pipeline)
        return await notion.get_markdown(resolve_notion_ref(ref)) or "(empty page)"
    return await _run_tool(op)


@mcp.tool()
async def drive_search(query: str) -> str:
    """Search OneDrive files, with each result's folder path."""
    async def op(pipeline: ProxyPipeline) -> str:
        return render_drive_search(await GraphClient(pipeline).drive_search(query), query)
    return await _run_tool(op)


@mcp.tool()
async def mail_inbox(count: int = 20, unread_only: bool = False) -> str:
    """List recent Outlook messages.

    Args:
        count: Maximum messages to return.
        unread_only: Only unread messages.
    """
    async def op(pipeline: ProxyPipeline) -> str:
        messages = await GraphClient(pipeline).mail_inbox(count, unread_only)
        return render_mail_list(messages, unread_only)
    return await _run_tool(op)


@mcp.tool()
async def calendar_events(days: int = 7, details: bool = False) -> str:
    """List calendar events for the next few days, grouped by date."""
    async def op(pipeline: ProxyPipeline) -> str:
        event_days = await GraphClient(pipeline).calendar_events(days, details)
        return render_event_days(event_days, days, details)
    return await _run_tool(op)


# =============================================================================
# HTTP Endpoints (/health)
# =============================================================================

async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    settings = get_settings()
    return JSONResponse({
        "status": "ok",
        "authService": settings.auth_service_url,
        "sessionSaved": SessionStore.from_settings(settings).load() is not None,
    })


def serve(http: bool = False) -> None:
    """Run the MCP server over stdio, or over HTTP on localhost:2053."""
    if http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])

        logger.info(f"Starting fresh-auth MCP server on http://{HTTP_HOST}:{HTTP_PORT}")
        uvicorn.run(app, host=HTTP_HOST, port=HTTP_PORT, log_level="warning")
    else:
        mcp.run()
