"""Microsoft Graph access through the broker's msgraph proxy.

OneDrive, Outlook mail and calendar each call the pipeline with their own
service entry, so a grant requested after an auth failure carries only the
scopes that command group needs.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import httpx

from fresh_auth.errors import BrokerError
from fresh_auth.pipeline import ProxyPipeline
from fresh_auth.services import CAL, DRIVE, MAIL

logger = logging.getLogger("fresh-auth")

# Graph $batch accepts at most 20 requests per call
BATCH_SIZE = 20

TEXT_EXTENSIONS = frozenset({
    "txt", "md", "json", "xml", "csv", "html", "css", "js", "ts", "py",
    "sh", "yaml", "yml", "log", "ini", "conf",
})

PLAIN_TEXT_BODY = {"Prefer": 'outlook.body-content-type="text"'}


# =============================================================================
# Formatting
# =============================================================================


def format_bytes(size: Optional[int]) -> str:
    if not size:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while size >= 1024 ** (i + 1) and i < len(units) - 1:
        i += 1
    value = round(size / 1024 ** i, 1)
    return f"{value:g} {units[i]}"


_HTML_RULES = [
    (re.compile(r'<style[\s\S]*?</style>', re.IGNORECASE), ""),
    (re.compile(r'<script[\s\S]*?</script>', re.IGNORECASE), ""),
    (re.compile(r'</?[^>]+>'), ""),
    (re.compile(r'&nbsp;'), " "),
    (re.compile(r'&lt;'), "<"),
    (re.compile(r'&gt;'), ">"),
    (re.compile(r'&quot;'), '"'),
    (re.compile(r'&#39;'), "'"),
    (re.compile(r'&amp;'), "&"),
    (re.compile(r'[ \t]+\n'), "\n"),
    (re.compile(r'\n{3,}'), "\n\n"),
]


def strip_html(html: Optional[str]) -> str:
    """Crude HTML to text: drop style/script and tags, decode common entities."""
    if not html:
        return ""
    text = html
    for pattern, replacement in _HTML_RULES:
        text = pattern.sub(replacement, text)
    return text.strip()


def truncate(text: str, length: int) -> str:
    if len(text) <= length:
        return text
    return text[: length - 1] + "…"


def format_email_address(addr: Optional[dict]) -> str:
    if not addr:
        return ""
    name = (addr.get("name") or "").strip()
    email = (addr.get("address") or "").strip()
    if name and email:
        return f"{name} <{email}>"
    return name or email


def drive_path(parent_reference: Optional[dict]) -> str:
    """Display path from a parentReference, relative to the drive root."""
    raw = (parent_reference or {}).get("path") or ""
    return re.sub(r'^/drive/root:?', "", raw) or "/"


def encode_drive_path(folder_path: str) -> str:
    return "/".join(quote(part, safe="") for part in folder_path.split("/"))


def parse_graph_datetime(value: str, tz_name: Optional[str] = None) -> datetime:
    """Parse a Graph dateTime into a local, timezone-aware datetime.

    Graph returns naive timestamps in the requested zone (UTC by default).
    Date-only values are treated as local midnight.
    """
    if len(value) == 10:
        return datetime.combine(date.fromisoformat(value), time()).astimezone()
    # Graph uses 7 fractional digits; fromisoformat accepts at most 6
    value = re.sub(r'(\.\d{6})\d+', r'\1', value.replace("Z", "+00:00"))
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None and (tz_name or "UTC").upper() == "UTC":
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone()


def local_day_bounds(start_day: date, days: int) -> tuple[str, str]:
    start = datetime.combine(start_day, time()).astimezone()
    end = datetime.combine(start_day + timedelta(days=days), time()).astimezone()
    return start.astimezone(timezone.utc).isoformat(), end.astimezone(timezone.utc).isoformat()


# =============================================================================
# Results
# =============================================================================


@dataclass
class EventDay:
    """Calendar events falling on one local date."""
    day: date
    events: list[dict] = field(default_factory=list)


def event_datetime(event: dict, key: str = "start") -> Optional[datetime]:
    """The event's start or end as a local datetime; None if missing or unparseable."""
    value = event.get(key)
    if not isinstance(value, dict):
        return None
    raw = value.get("dateTime") or value.get("date")
    if not isinstance(raw, str) or not raw:
        return None
    try:
        return parse_graph_datetime(raw, value.get("timeZone"))
    except ValueError:
        return None


def event_start(event: dict) -> Optional[datetime]:
    return event_datetime(event, "start")


def group_events_by_day(events: list[dict]) -> list[EventDay]:
    """Group events by local start date, in date order."""
    grouped: dict[date, EventDay] = {}
    for event in events:
        start = event_start(event)
        if start is None:
            logger.debug(f"Skipping event without a usable start: {event.get('id') or event.get('subject')!r}")
            continue
        day = start.date()
        grouped.setdefault(day, EventDay(day)).events.append(event)
    return [grouped[d] for d in sorted(grouped)]


# =============================================================================
# Graph API Client
# =============================================================================


class GraphClient:
    """OneDrive, mail and calendar operations through the broker proxy."""

    def __init__(self, pipeline: ProxyPipeline):
        self.pipeline = pipeline

    # -------------------------------------------------------------------------
    # Drive
    # -------------------------------------------------------------------------

    async def drive_list(self, folder_path: str = "") -> list[dict]:
        endpoint = "/me/drive/root/children"
        if folder_path:
            endpoint = f"/me/drive/root:{encode_drive_path(folder_path)}:/children"
        query = (
            "?$select=id,name,size,createdDateTime,lastModifiedDateTime,webUrl,"
            "file,folder,parentReference&$top=100"
        )
        result = await self.pipeline.call(DRIVE, "GET", endpoint + query)
        return result.get("value") or []

    async def _batch_paths(self, ids: list[str]) -> dict[str, str]:
        """Resolve parent paths for one chunk of ids; a failed batch yields {}."""
        requests = [
            {"id": str(i), "method": "GET", "url": f"/me/drive/items/{item_id}?$select=id,name,parentReference"}
            for i, item_id in enumerate(ids)
        ]
        try:
            result = await self.pipeline.call(DRIVE, "POST", "/$batch", {"requests": requests})
        except (BrokerError, httpx.HTTPError) as e:
            logger.debug(f"Path lookup batch failed: {e}")
            return {}

        paths = {}
        for resp in result.get("responses") or []:
            body = resp.get("body") or {}
            if resp.get("status") != 200 or not (body.get("parentReference") or {}).get("path"):
                continue
            try:
                index = int(resp.get("id"))
            except (TypeError, ValueError):
                continue
            if 0 <= index < len(ids):
                paths[ids[index]] = drive_path(body["parentReference"])
        return paths

    async def drive_search(self, query: str) -> list[dict]:
        """Search the drive; each item gets a `path` resolved in concurrent batches."""
        endpoint = (
            f"/me/drive/root/search(q='{quote(query, safe='')}')"
            "?$select=id,name,size,lastModifiedDateTime,webUrl,file,folder,parentReference&$top=25"
        )
        result = await self.pipeline.call(DRIVE, "GET", endpoint)
        items = result.get("value") or []
        if not items:
            return []

        ids = [item["id"] for item in items]
        chunks = [ids[i:i + BATCH_SIZE] for i in range(0, len(ids), BATCH_SIZE)]
        path_map: dict[str, str] = {}
        for paths in await asyncio.gather(*(self._batch_paths(chunk) for chunk in chunks)):
            path_map.update(paths)

        for item in items:
            item["path"] = path_map.get(item["id"], "/")
        return items

    async def drive_info(self, item_id: str, select: str = "") -> dict:
        endpoint = f"/me/drive/items/{item_id}"
        if select:
            endpoint += f"?$select={select}"
        return await self.pipeline.call(DRIVE, "GET", endpoint)

    async def drive_download(self, item_id: str, output: Optional[str] = None) -> Path:
        """Download a file to `output` (default: its drive name).

        Raises:
            BrokerError: The item is a folder or the download failed.
        """
        info = await self.drive_info(item_id)
        if info.get("folder"):
            raise BrokerError("Cannot download a folder.")

        target = Path(output or info.get("name") or item_id)
        logger.info(f"Downloading {info.get('name')} ({format_bytes(info.get('size'))})...")
        content = await self.pipeline.fetch_content(DRIVE, f"/me/drive/items/{item_id}/content")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        logger.info(f"Saved to: {target}")
        return target

    async def drive_content(self, item_id: str) -> str:
        """Text of a text-like file.

        Raises:
            BrokerError: Folder, non-text file or failed download.
        """
        info = await self.drive_info(item_id, "id,name,size,file,folder")
        if info.get("folder"):
            raise BrokerError("Cannot get content of a folder")

        name = info.get("name") or ""
        ext = name.rsplit(".", 1)[-1].lower() if "." in name else ""
        mime_type = (info.get("file") or {}).get("mimeType") or ""
        if ext not in TEXT_EXTENSIONS and not mime_type.startswith("text/"):
            raise BrokerError("Not a text file. Use 'drive download' instead.")

        content = await self.pipeline.fetch_content(DRIVE, f"/me/drive/items/{item_id}/content")
        return content.decode("utf-8", errors="replace")

    # -------------------------------------------------------------------------
    # Mail
    # -------------------------------------------------------------------------

    async def mail_inbox(self, count: int = 20, unread_only: bool = False, folder: str = "inbox") -> list[dict]:
        folder_path = "/me/messages" if folder == "inbox" else f"/me/mailFolders/{folder}/messages"
        endpoint = (
            f"{folder_path}?$select=id,subject,from,receivedDateTime,isRead,hasAttachments,"
            f"importance,bodyPreview&$orderby=receivedDateTime desc&$top={count}"
        )
        if unread_only:
            endpoint += "&$filter=isRead eq false"
        result = await self.pipeline.call(MAIL, "GET", endpoint)
        return result.get("value") or []

    async def mail_search(self, query: str, count: int = 15, include_junk: bool = False) -> list[dict]:
        # Inbox only unless junk is wanted
        folder_path = "/me/messages" if include_junk else "/me/mailFolders/inbox/messages"
        endpoint = (
            f'{folder_path}?$search="{quote(query, safe="")}"'
            f"&$select=id,subject,from,receivedDateTime,isRead,hasAttachments,bodyPreview&$top={count}"
        )
        result = await self.pipeline.call(MAIL, "GET", endpoint)
        return result.get("value") or []

    async def mail_read(self, message_id: str) -> dict:
        endpoint = (
            f"/me/messages/{message_id}?$select=id,subject,from,toRecipients,ccRecipients,"
            "receivedDateTime,isRead,hasAttachments,importance,body,webLink"
        )
        return await self.pipeline.call(MAIL, "GET", endpoint, headers=PLAIN_TEXT_BODY)

    # -------------------------------------------------------------------------
    # Calendar
    # -------------------------------------------------------------------------

    async def calendar_view(self, start_day: date, days: int, details: bool = False) -> list[dict]:
        start, end = local_day_bounds(start_day, days)
        select = "subject,start,end,location,isAllDay,organizer"
        if details:
            select += ",attendees,body"
        endpoint = (
            f"/me/calendarView?startDateTime={quote(start)}&endDateTime={quote(end)}"
            f"&$select={select}&$orderby=start/dateTime&$top=50"
        )
        headers = PLAIN_TEXT_BODY if details else None
        result = await self.pipeline.call(CAL, "GET", endpoint, headers=headers)
        return result.get("value") or []

    async def calendar_events(self, days: int = 7, details: bool = False) -> list[EventDay]:
        events = await self.calendar_view(date.today(), days, details)
        return group_events_by_day(events)

    async def calendar_today(self, details: bool = False) -> list[EventDay]:
        return await self.calendar_events(1, details)

    async def calendar_tomorrow(self, details: bool = False) -> list[EventDay]:
        events = await self.calendar_view(date.today() + timedelta(days=1), 1, details)
        return group_events_by_day(events)


# =============================================================================
# Rendering
# =============================================================================


def _local(value: Optional[str], fmt: str = "%Y-%m-%d %H:%M") -> str:
    if not value:
        return ""
    try:
        return parse_graph_datetime(value).strftime(fmt)
    except ValueError:
        return value


def render_drive_list(items: list[dict], folder_path: str = "") -> str:
    if not items:
        return "No files found."
    rule = "─" * 90
    lines = [f"Files in {folder_path or 'root'}:", "", rule,
             f"{'Name':<40} {'Size':<10} {'Modified':<20} ID", rule]
    for item in items:
        icon = "📁" if item.get("folder") else "📄"
        size = format_bytes(item.get("size")) if item.get("size") else "-"
        name = f"{icon} {item.get('name')}"
        modified = _local(item.get("lastModifiedDateTime"), "%Y-%m-%d")
        lines.append(f"{name:<40} {size:<10} {modified:<20} {item.get('id')}")
    return "\n".join(lines)


def render_drive_search(items: list[dict], query: str) -> str:
    if not items:
        return f'No files found matching "{query}".'
    lines = [f'Search results for "{query}":', ""]
    for item in items:
        icon = "📁" if item.get("folder") else "📄"
        lines += [
            f"{icon} {item.get('name')}",
            f"   ID: {item.get('id')}",
            f"   Path: {item.get('path', '/')}",
            f"   Modified: {_local(item.get('lastModifiedDateTime'))}",
        ]
        if item.get("size"):
            lines.append(f"   Size: {format_bytes(item['size'])}")
        lines.append("")
    return "\n".join(lines).rstrip()


def render_drive_info(item: dict) -> str:
    lines = ["File Information:", "─" * 50, f"Name: {item.get('name')}", f"ID: {item.get('id')}",
             f"Type: {'Folder' if item.get('folder') else 'File'}"]
    if item.get("file"):
        lines.append(f"MIME Type: {item['file'].get('mimeType')}")
    if item.get("size"):
        lines.append(f"Size: {format_bytes(item['size'])}")
    lines += [
        f"Created: {_local(item.get('createdDateTime'))}",
        f"Modified: {_local(item.get('lastModifiedDateTime'))}",
        f"Web URL: {item.get('webUrl')}",
        f"Path: {drive_path(item.get('parentReference'))}",
    ]
    return "\n".join(lines)


def render_mail_list(messages: list[dict], unread_only: bool = False, folder: str = "inbox") -> str:
    if not messages:
        return "No unread messages." if unread_only else "No messages found."
    label = ("Unread" if unread_only else "Recent") if folder == "inbox" else folder.capitalize()
    rule = "─" * 95
    lines = [f"{label} messages ({len(messages)}):", "", rule,
             f"{'':<2} {'From':<25} {'Subject':<40} {'Date':<18} ID", rule]
    for msg in messages:
        read = " " if msg.get("isRead") else "●"
        sender = truncate(format_email_address((msg.get("from") or {}).get("emailAddress")), 24)
        subject = truncate(msg.get("subject") or "(No subject)", 39)
        received = _local(msg.get("receivedDateTime"), "%d %b %H:%M")
        lines.append(f"{read} {sender:<25} {subject:<40} {received:<18} {msg.get('id', '')[:20]}…")
        if msg.get("hasAttachments"):
            lines.append("  📎")
    lines += ["", "Use 'fresh-auth mail read <id>' to read a message."]
    return "\n".join(lines)


def render_mail_search(messages: list[dict], query: str) -> str:
    if not messages:
        return f'No messages found matching "{query}".'
    lines = [f'Search results for "{query}" ({len(messages)}):', ""]
    for msg in messages:
        unread = "" if msg.get("isRead") else " [UNREAD]"
        lines += [
            f"{'📧' if msg.get('isRead') else '📬'} {msg.get('subject') or '(No subject)'}{unread}",
            f"   From: {format_email_address((msg.get('from') or {}).get('emailAddress'))}",
            f"   Date: {_local(msg.get('receivedDateTime'))}",
            f"   ID: {msg.get('id')}",
        ]
        if msg.get("bodyPreview"):
            lines.append(f"   Preview: {truncate(msg['bodyPreview'], 100)}")
        lines.append("")
    return "\n".join(lines).rstrip()


def _recipients(values: Optional[list]) -> str:
    return ", ".join(format_email_address((r or {}).get("emailAddress")) for r in values or [])


def render_mail_message(msg: dict) -> str:
    lines = ["═" * 70, f"Subject: {msg.get('subject') or '(No subject)'}", "─" * 70,
             f"From: {format_email_address((msg.get('from') or {}).get('emailAddress'))}"]
    if msg.get("toRecipients"):
        lines.append(f"To: {_recipients(msg['toRecipients'])}")
    if msg.get("ccRecipients"):
        lines.append(f"CC: {_recipients(msg['ccRecipients'])}")
    lines += [f"Date: {_local(msg.get('receivedDateTime'))}", f"Importance: {msg.get('importance')}"]
    if msg.get("hasAttachments"):
        lines.append("Attachments: Yes 📎")
    lines.append(f"ID: {msg.get('id')}")
    if msg.get("webLink"):
        lines.append(f"Web: {msg['webLink']}")
    lines.append("─" * 70)

    body = msg.get("body") or {}
    if body.get("content"):
        is_html = (body.get("contentType") or "").lower() == "html"
        lines.append(strip_html(body["content"]) if is_html else body["content"])
    else:
        lines.append("(No body content)")
    lines.append("═" * 70)
    return "\n".join(lines)


def _event_time(event: dict, key: str) -> str:
    moment = event_datetime(event, key)
    return moment.strftime("%H:%M") if moment else "?"


def day_header(day: date, today: Optional[date] = None) -> str:
    today = today or date.today()
    formatted = day.strftime("%A, %B ") + str(day.day)
    if day == today:
        return f"Today - {formatted}"
    if day == today + timedelta(days=1):
        return f"Tomorrow - {formatted}"
    return formatted


def render_event(event: dict, details: bool = False) -> list[str]:
    time_range = "All day" if event.get("isAllDay") else f"{_event_time(event, 'start')} - {_event_time(event, 'end')}"
    lines = [f"  **{event.get('subject') or '(No title)'}**", f"  {time_range}"]
    location = (event.get("location") or {}).get("displayName")
    if location:
        lines.append(f"  Location: {location}")

    if details:
        organizer = format_email_address(((event.get("organizer") or {}).get("emailAddress")))
        if organizer:
            lines.append(f"  Organizer: {organizer}")
        attendees = []
        for attendee in event.get("attendees") or []:
            label = format_email_address(attendee.get("emailAddress"))
            if label:
                attendees.append(f"{label} ({attendee['type'].lower()})" if attendee.get("type") else label)
        if attendees:
            lines.append("  Participants:")
            lines += [f"    - {a}" for a in attendees]
        body = event.get("body") or {}
        if body.get("content"):
            is_html = (body.get("contentType") or "").lower() == "html"
            text = strip_html(body["content"]) if is_html else body["content"].strip()
            if text:
                lines.append("  Body:")
                lines += [f"    {line}" for line in text.split("\n")]
    lines.append("")
    return lines


def render_event_days(days: list[EventDay], span_days: int, details: bool = False) -> str:
    total = sum(len(d.events) for d in days)
    if not total:
        return "No events scheduled for this period."
    lines: list[str] = []
    for event_day in days:
        lines += [f"## {day_header(event_day.day)}", ""]
        for event in event_day.events:
            lines += render_event(event, details)
    plural = "s" if total != 1 else ""
    lines.append(f"{total} event{plural} over {span_days} day{'s' if span_days != 1 else ''}")
    return "\n".join(lines)
