"""Notion access through the broker's Notion proxy.

Two layers:
- Pure mapping helpers: Notion properties to flat values and back, blocks to
  markdown and markdown to blocks, id/URL handling.
- `NotionClient`: the API operations the CLI and MCP tools use, each one a
  call through the resilient pipeline for the `notion` service.
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Optional

import parsy as P

from fresh_auth.errors import BrokerError
from fresh_auth.pipeline import ProxyPipeline
from fresh_auth.services import NOTION

logger = logging.getLogger("fresh-auth")

# Notion caps children per append and page size per list call
APPEND_CHUNK_SIZE = 100
PAGE_SIZE = 100


# =============================================================================
# ID Handling
# =============================================================================

PROBABLE_ID_PATTERN = re.compile(r'^[0-9a-fA-F-]{32,36}$')
UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)


def is_probable_notion_id(value: str) -> bool:
    return bool(PROBABLE_ID_PATTERN.match(value or ""))


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to standard format with dashes.

    Raises:
        ValueError: If input is not a valid UUID.
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32 or not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def extract_uuid_from_url(url: str) -> Optional[str]:
    """Extract the page/database UUID from a Notion URL, if it has one."""
    match = NOTION_URL_PATTERN.match(url)
    if not match:
        return None
    uuid_match = re.search(r'([0-9a-f]{32}|[0-9a-f-]{36})$', match.group(1), re.IGNORECASE)
    if uuid_match:
        return normalize_uuid(uuid_match.group(1))
    return None


def resolve_notion_ref(ref: str) -> str:
    """Turn a Notion URL into its UUID; other references pass through trimmed."""
    ref = ref.strip()
    if ref.startswith("http"):
        return extract_uuid_from_url(ref) or ref
    if UUID_PATTERN.match(ref):
        return normalize_uuid(ref)
    return ref


# =============================================================================
# Properties
# =============================================================================


def to_plain_rich_text(rich_text: Optional[list]) -> str:
    return "".join((t or {}).get("plain_text", "") for t in rich_text or [])


def extract_title_from_properties(properties: Optional[dict]) -> str:
    for name, prop in (properties or {}).items():
        if isinstance(prop, dict) and prop.get("type") == "title" and isinstance(prop.get("title"), list):
            return to_plain_rich_text(prop["title"]) or name or "Untitled"
    return "Untitled"


def find_title_property_name(properties: Optional[dict]) -> str:
    for name, prop in (properties or {}).items():
        if isinstance(prop, dict) and prop.get("type") == "title":
            return name
    return "Name"


def parse_bool(value: Any) -> bool:
    return str(value).strip().lower() in ("true", "1", "yes")


def _name_or_id(obj: Optional[dict]) -> Optional[str]:
    if not obj:
        return None
    return obj.get("name") or obj.get("id")


def _join(values) -> str:
    return ", ".join(str(v) for v in values if v)


def flatten_property(prop: Any) -> Any:
    """Reduce a Notion property value to a plain scalar or string.

    Returns None for unknown property types and non-dict input.
    """
    if not isinstance(prop, dict):
        return None
    ptype = prop.get("type")

    if ptype in ("title", "rich_text"):
        return to_plain_rich_text(prop.get(ptype))
    if ptype in ("select", "status"):
        return (prop.get(ptype) or {}).get("name")
    if ptype == "multi_select":
        return _join((x or {}).get("name") for x in prop.get("multi_select") or [])
    if ptype in ("number", "checkbox", "url", "email", "phone_number",
                 "created_time", "last_edited_time"):
        return prop.get(ptype)
    if ptype == "date":
        return (prop.get("date") or {}).get("start")
    if ptype == "people":
        return _join(_name_or_id(x) for x in prop.get("people") or [])
    if ptype == "relation":
        return _join((x or {}).get("id") for x in prop.get("relation") or [])
    if ptype == "formula":
        f = prop.get("formula") or {}
        for key in ("string", "number", "boolean"):
            if f.get(key) is not None:
                return f[key]
        return (f.get("date") or {}).get("start")
    if ptype == "rollup":
        r = prop.get("rollup") or {}
        if isinstance(r.get("array"), list):
            return f"{len(r['array'])} items"
        return r.get("number")
    if ptype in ("created_by", "last_edited_by"):
        return _name_or_id(prop.get(ptype))
    if ptype == "files":
        return _join(
            (f or {}).get("name")
            or ((f or {}).get("file") or {}).get("url")
            or ((f or {}).get("external") or {}).get("url")
            for f in prop.get("files") or []
        )
    return None


def flatten_page(page: dict) -> dict:
    """id, url and every property flattened, keyed by property name."""
    row = {"id": page.get("id"), "url": page.get("url")}
    for key, value in (page.get("properties") or {}).items():
        row[key] = flatten_property(value)
    return row


def _split_csv(value: str) -> list[str]:
    return [x.strip() for x in str(value).split(",") if x.strip()]


def to_notion_property_value(ptype: str, raw_value: Any) -> dict:
    """Build a Notion property value of the given type from CLI text.

    Unknown types are written as select.
    """
    value = "" if raw_value is None else raw_value

    if ptype == "title":
        return {"title": [{"text": {"content": value}}]}
    if ptype in ("rich_text", "text"):
        return {"rich_text": [{"text": {"content": value}}]}
    if ptype == "status":
        return {"status": {"name": value}}
    if ptype == "multi_select":
        return {"multi_select": [{"name": name} for name in _split_csv(value)]}
    if ptype == "number":
        try:
            number = float(value)
        except (TypeError, ValueError):
            return {"number": None}
        if number != number or number in (float("inf"), float("-inf")):
            return {"number": None}
        return {"number": int(number) if number.is_integer() else number}
    if ptype == "checkbox":
        return {"checkbox": parse_bool(value)}
    if ptype == "date":
        return {"date": {"start": value}}
    if ptype in ("url", "email", "phone_number"):
        return {ptype: value}
    if ptype == "relation":
        return {"relation": [{"id": rid} for rid in _split_csv(value)]}
    return {"select": {"name": value}}


TYPED_ARG_PATTERN = re.compile(
    r'^--(select|status|text|number|checkbox|date|url|multi-select|email|phone|relation)-([^=]+)=(.*)$',
    re.DOTALL
)
TYPED_ARG_ALIASES = {"multi-select": "multi_select", "phone": "phone_number"}


def parse_explicit_typed_arg(arg: str) -> Optional[tuple[str, str, str]]:
    """Parse `--TYPE-NAME=VALUE` into (type, name, value)."""
    match = TYPED_ARG_PATTERN.match(arg)
    if not match:
        return None
    raw_type, name, value = match.groups()
    return TYPED_ARG_ALIASES.get(raw_type, raw_type), name, value


def parse_property_args(args: list[str], schema: Optional[dict], title_property: str) -> dict:
    """Build a Notion `properties` object from CLI property arguments.

    Accepts `-p NAME=VALUE` (type taken from the schema, select if unknown),
    `--title=VALUE` and `--TYPE-NAME=VALUE`. Malformed pairs are skipped.
    """
    schema_props = (schema or {}).get("properties") or {}
    props: dict = {}
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "-p":
            pair = args[i + 1] if i + 1 < len(args) else ""
            i += 2
            if "=" not in pair:
                continue
            name, value = pair.split("=", 1)
            ptype = (schema_props.get(name) or {}).get("type") or "select"
            props[name] = to_notion_property_value(ptype, value)
            continue

        if arg.startswith("--title="):
            props[title_property] = to_notion_property_value("title", arg[len("--title="):])
        else:
            typed = parse_explicit_typed_arg(arg)
            if typed:
                ptype, name, value = typed
                props[name] = to_notion_property_value(ptype, value)
        i += 1
    return props


def summarize_database(db: dict) -> dict:
    """Database id, title and property names/types/options."""
    properties = []
    for name, value in (db.get("properties") or {}).items():
        options = None
        for key in ("select", "status", "multi_select"):
            opts = (value.get(key) or {}).get("options")
            if opts:
                options = [o.get("name") for o in opts]
                break
        properties.append({"name": name, "type": value.get("type"), "options": options})
    return {
        "id": db.get("id"),
        "title": to_plain_rich_text(db.get("title")) or "Untitled",
        "properties": properties,
    }


# =============================================================================
# Blocks and Markdown
# =============================================================================


def block_text(block: dict, btype: str) -> str:
    return to_plain_rich_text((block.get(btype) or {}).get("rich_text"))


def block_to_markdown(block: dict) -> str:
    """Render one block as a markdown line; unsupported types render empty."""
    btype = block.get("type")
    if btype in ("heading_1", "heading_2", "heading_3"):
        return f"{'#' * int(btype[-1])} {block_text(block, btype)}"
    if btype == "paragraph":
        return block_text(block, btype)
    if btype == "bulleted_list_item":
        return f"- {block_text(block, btype)}"
    if btype == "numbered_list_item":
        return f"1. {block_text(block, btype)}"
    if btype == "to_do":
        mark = "x" if (block.get("to_do") or {}).get("checked") else " "
        return f"- [{mark}] {block_text(block, btype)}"
    if btype == "quote":
        return f"> {block_text(block, btype)}"
    if btype == "code":
        language = (block.get("code") or {}).get("language") or ""
        return f"```{language}\n{block_text(block, btype)}\n```"
    if btype == "divider":
        return "---"
    if btype == "callout":
        emoji = ((block.get("callout") or {}).get("icon") or {}).get("emoji") or "💡"
        return f"> {emoji} {block_text(block, btype)}"
    return ""


MARKER_PREFIX = re.compile(r'^(#+\s|- \[[ x]\]\s|- )')


def block_summary(block: dict) -> dict:
    """Compact JSON view of a block: id, type, text without marker, checked."""
    return {
        "id": block.get("id"),
        "type": block.get("type"),
        "text": MARKER_PREFIX.sub("", block_to_markdown(block), count=1),
        "checked": bool((block.get("to_do") or {}).get("checked")) if block.get("type") == "to_do" else None,
    }


def rich_text(value: str) -> list[dict]:
    """A single unformatted rich text object (code blocks, titles)."""
    if not value:
        return []
    return [{"type": "text", "text": {"content": value}}]


# =============================================================================
# Inline Formatting (Parsy-based)
# =============================================================================


@dataclass
class RichTextSpan:
    """A run of text with markdown inline formatting."""
    text: str
    bold: bool = False
    italic: bool = False
    strikethrough: bool = False
    code: bool = False
    link: Optional[str] = None


ANNOTATIONS = ("bold", "italic", "strikethrough", "code")


def _apply_formatting(spans: list[RichTextSpan], **kwargs) -> list[RichTextSpan]:
    for span in spans:
        for key, value in kwargs.items():
            setattr(span, key, value)
    return spans


def _merge_adjacent_spans(spans: list[RichTextSpan]) -> list[RichTextSpan]:
    """Merge adjacent spans with identical formatting."""
    merged: list[RichTextSpan] = []
    for span in spans:
        if merged and replace(merged[-1], text="") == replace(span, text=""):
            merged[-1].text += span.text
        else:
            merged.append(span)
    return merged


# Characters that can open a formatted run
_SPECIAL_CHARS = set('\\*~`[')


def _make_inline_parser():
    """Build the markdown inline parser: code, bold, strikethrough, italic, links.

    Delimited content is captured with a regex that stops at the closing
    delimiter and then parsed again, so formats nest (`**[a](u)**`).
    """

    def parse_inner(text: str) -> list[RichTextSpan]:
        return _inline_parser_impl.parse(text)

    escaped = (P.string('\\') >> P.char_from('\\*~`[]')).map(RichTextSpan)

    code = (
        P.string('`') >> P.regex(r'[^`]+') << P.string('`')
    ).map(lambda t: RichTextSpan(t, code=True))

    bold = (
        P.string('**') >> P.regex(r'(?:[^*]|\*(?!\*))+') << P.string('**')
    ).map(lambda inner: _apply_formatting(parse_inner(inner), bold=True))

    strikethrough = (
        P.string('~~') >> P.regex(r'(?:[^~]|~(?!~))+') << P.string('~~')
    ).map(lambda inner: _apply_formatting(parse_inner(inner), strikethrough=True))

    italic = (
        P.string('*') >> P.regex(r'[^*]+') << P.string('*')
    ).map(lambda inner: _apply_formatting(parse_inner(inner), italic=True))

    @P.generate
    def link():
        yield P.string('[')
        text = yield P.regex(r'[^\[\]]*')
        yield P.string('](')
        url = yield P.regex(r'[^)\s]+')
        yield P.string(')')
        return _apply_formatting(parse_inner(text), link=url)

    literal_run = P.test_char(lambda c: c not in _SPECIAL_CHARS, 'literal').at_least(1).map(
        lambda chars: RichTextSpan(''.join(chars))
    )
    # A special character that opened nothing is kept as text
    special_fallback = P.any_char.map(RichTextSpan)

    def flatten(items):
        flat = []
        for item in items:
            if isinstance(item, list):
                flat.extend(item)
            else:
                flat.append(item)
        return flat

    _inline_parser_impl = (
        escaped
        | code
        | bold
        | strikethrough
        | italic
        | link
        | literal_run
        | special_fallback
    ).many().map(flatten)

    return _inline_parser_impl


_inline_parser = _make_inline_parser()


def parse_inline_formatting(text: str) -> list[RichTextSpan]:
    """Split markdown text into formatted spans.

    Unclosed delimiters stay literal, so any input parses.
    """
    if not text:
        return []
    try:
        return _merge_adjacent_spans(_inline_parser.parse(text))
    except P.ParseError as e:
        logger.warning(f"Inline formatting parse error: {e}")
        return [RichTextSpan(text)]


def spans_to_rich_text(spans: list[RichTextSpan]) -> list[dict]:
    result = []
    for span in spans:
        if not span.text:
            continue
        text: dict = {"content": span.text}
        if span.link:
            text["link"] = {"url": span.link}
        obj: dict = {"type": "text", "text": text}
        annotations = {key: True for key in ANNOTATIONS if getattr(span, key)}
        if annotations:
            obj["annotations"] = annotations
        result.append(obj)
    return result


def markdown_rich_text(value: str) -> list[dict]:
    """Notion rich text for a line of markdown with inline formatting."""
    return spans_to_rich_text(parse_inline_formatting(value))


def _text_block(btype: str, text: str, **extra) -> dict:
    return {"object": "block", "type": btype, btype: {"rich_text": markdown_rich_text(text), **extra}}


def _code_block(lines: list[str], language: str) -> dict:
    return {
        "object": "block",
        "type": "code",
        "code": {"rich_text": rich_text("\n".join(lines)), "language": language or "plain text"},
    }


TODO_PATTERN = re.compile(r'^- \[([ xX])\] (.*)$')
BULLET_PATTERN = re.compile(r'^[-*] ')
NUMBERED_PATTERN = re.compile(r'^\d+\.\s+')


def markdown_to_blocks(markdown: str) -> list[dict]:
    """Convert markdown to Notion block objects.

    Supports headings (1-3), dividers, to-dos, bulleted and numbered lists,
    quotes, fenced code and paragraphs. Blank lines are dropped; an
    unterminated code fence is closed at the end of input.
    """
    blocks: list[dict] = []
    in_code = False
    code_lang = ""
    code_lines: list[str] = []

    for line in markdown.replace("\r\n", "\n").split("\n"):
        if in_code:
            if line.startswith("```"):
                blocks.append(_code_block(code_lines, code_lang))
                in_code, code_lang, code_lines = False, "", []
            else:
                code_lines.append(line)
            continue

        if line.startswith("```"):
            in_code = True
            code_lang = line[3:].strip()
            continue

        trimmed = line.strip()
        if not trimmed:
            continue

        if trimmed == "---":
            blocks.append({"object": "block", "type": "divider", "divider": {}})
        elif trimmed.startswith("### "):
            blocks.append(_text_block("heading_3", trimmed[4:]))
        elif trimmed.startswith("## "):
            blocks.append(_text_block("heading_2", trimmed[3:]))
        elif trimmed.startswith("# "):
            blocks.append(_text_block("heading_1", trimmed[2:]))
        elif TODO_PATTERN.match(trimmed):
            todo = TODO_PATTERN.match(trimmed)
            blocks.append(_text_block("to_do", todo.group(2), checked=todo.group(1).lower() == "x"))
        elif BULLET_PATTERN.match(trimmed):
            blocks.append(_text_block("bulleted_list_item", trimmed[2:]))
        elif NUMBERED_PATTERN.match(trimmed):
            blocks.append(_text_block("numbered_list_item", NUMBERED_PATTERN.sub("", trimmed, count=1)))
        elif trimmed.startswith("> "):
            blocks.append(_text_block("quote", trimmed[2:]))
        else:
            blocks.append(_text_block("paragraph", trimmed))

    if in_code:
        blocks.append(_code_block(code_lines, code_lang))

    return blocks


# =============================================================================
# Notion API Client
# =============================================================================


class NotionClient:
    """Notion API operations through the broker proxy.

    Args:
        pipeline: Resilient request pipeline.
        api_version: Notion-Version header value.
        backlog_db_id: Database used by the backlog shortcuts.
    """

    def __init__(self, pipeline: ProxyPipeline, api_version: str, backlog_db_id: str = ""):
        self.pipeline = pipeline
        self.api_version = api_version
        self.backlog_db_id = backlog_db_id

    @classmethod
    def from_pipeline(cls, pipeline: ProxyPipeline) -> "NotionClient":
        settings = pipeline.broker.settings
        return cls(pipeline, settings.notion_api_version, settings.notion_backlog_db_id)

    async def request(self, method: str, endpoint: str, body: Any = None) -> dict:
        result = await self.pipeline.call(
            NOTION, method, endpoint, body, headers={"Notion-Version": self.api_version}
        )
        if isinstance(result, dict) and result.get("object") == "error":
            raise BrokerError(f"Error: {result.get('message') or 'Notion proxy error'}")
        return result or {}

    async def me(self) -> dict:
        me = await self.request("GET", "/users/me")
        return {k: me.get(k) for k in ("id", "name", "type", "object")}

    async def search(self, query: str = "") -> list[dict]:
        result = await self.request("POST", "/search", {"query": query, "page_size": PAGE_SIZE})
        out = []
        for item in result.get("results", []):
            if item.get("object") == "database":
                title = to_plain_rich_text(item.get("title")) or "Untitled"
            else:
                title = extract_title_from_properties(item.get("properties"))
            out.append({"id": item.get("id"), "type": item.get("object"), "title": title, "url": item.get("url")})
        return out

    async def find_databases(self, query: str = "") -> list[dict]:
        result = await self.request("POST", "/search", {
            "query": query,
            "page_size": PAGE_SIZE,
            "filter": {"property": "object", "value": "database"},
        })
        return [
            {
                "id": db.get("id"),
                "title": to_plain_rich_text(db.get("title")) or "Untitled",
                "url": db.get("url"),
            }
            for db in result.get("results", [])
        ]

    async def query_database(self, db_id: str) -> dict:
        return await self.request("POST", f"/databases/{db_id}/query", {})

    async def query_rows(
        self,
        db_id: str,
        filter_prop: str = "",
        filter_value: str = "",
    ) -> list[dict]:
        """Flattened rows, optionally keeping only rows whose property equals a value."""
        result = await self.query_database(db_id)
        rows = [flatten_page(page) for page in result.get("results", [])]
        if filter_prop and filter_value:
            rows = [
                row for row in rows
                if str(row.get(filter_prop) if row.get(filter_prop) is not None else "") == filter_value
            ]
        return rows

    async def backlog(self, roadmap: str = "") -> list[dict]:
        """Backlog items grouped by roadmap, in first-seen order."""
        if not self.backlog_db_id:
            raise BrokerError(
                "NOTION_BACKLOG_DB_ID is not set. Set it to use the backlog shortcuts."
            )
        result = await self.query_database(self.backlog_db_id)

        grouped: dict[str, list[dict]] = {}
        for page in result.get("results", []):
            props = page.get("properties") or {}
            roadmap_prop = props.get("Roadmap") or {}
            status_prop = props.get("Status") or {}
            item_roadmap = (
                (roadmap_prop.get("select") or {}).get("name")
                or (roadmap_prop.get("status") or {}).get("name")
                or "Unspecified"
            )
            if roadmap and item_roadmap != roadmap:
                continue
            status = (
                (status_prop.get("status") or {}).get("name")
                or (status_prop.get("select") or {}).get("name")
            )
            grouped.setdefault(item_roadmap, []).append({
                "title": extract_title_from_properties(props),
                "status": status,
            })
        return [{"roadmap": name, "items": items} for name, items in grouped.items()]

    async def get_page(self, page_id: str) -> dict:
        return await self.request("GET", f"/pages/{page_id}")

    async def get_database(self, db_id: str) -> dict:
        return await self.request("GET", f"/databases/{db_id}")

    async def list_block_children(self, block_id: str) -> list[dict]:
        """All children of a block, following pagination."""
        results: list[dict] = []
        cursor = None
        while True:
            endpoint = f"/blocks/{block_id}/children?page_size={PAGE_SIZE}"
            if cursor:
                endpoint += f"&start_cursor={cursor}"
            data = await self.request("GET", endpoint)
            results.extend(data.get("results", []))
            if not data.get("has_more"):
                return results
            cursor = data.get("next_cursor")
            if not cursor:
                logger.debug(f"Block {block_id} reported more children without a cursor")
                return results

    async def get_markdown(self, page_id: str) -> str:
        blocks = await self.list_block_children(page_id)
        return "\n\n".join(line for line in map(block_to_markdown, blocks) if line)

    async def append_children(self, parent_id: str, children: list[dict]) -> None:
        for start in range(0, len(children), APPEND_CHUNK_SIZE):
            chunk = children[start:start + APPEND_CHUNK_SIZE]
            await self.request("PATCH", f"/blocks/{parent_id}/children", {"children": chunk})

    async def create_page(self, db_id: str, title: str, prop_args: list[str]) -> dict:
        schema = await self.get_database(db_id)
        title_property = find_title_property_name(schema.get("properties"))
        props = parse_property_args(prop_args, schema, title_property)
        props[title_property] = to_notion_property_value("title", title)

        page = await self.request("POST", "/pages", {
            "parent": {"database_id": db_id},
            "properties": props,
        })
        return {
            "id": page.get("id"),
            "url": page.get("url"),
            "title": extract_title_from_properties(page.get("properties")),
        }

    async def create_backlog_item(self, title: str, args: list[str]) -> dict:
        if not self.backlog_db_id:
            raise BrokerError(
                "NOTION_BACKLOG_DB_ID is not set. Set it to use the backlog shortcuts."
            )
        translated: list[str] = []
        for arg in args:
            if arg.startswith("--roadmap="):
                translated += ["-p", f"Roadmap={arg[len('--roadmap='):]}"]
            elif arg.startswith("--status="):
                translated += ["-p", f"Status={arg[len('--status='):]}"]
            else:
                translated.append(arg)
        return await self.create_page(self.backlog_db_id, title, translated)

    async def update_page(self, page_id: str, prop_args: list[str]) -> dict:
        """Update page properties; types come from the parent database schema.

        Raises:
            ValueError: No properties were given.
        """
        page = await self.get_page(page_id)
        parent_db_id = (page.get("parent") or {}).get("database_id")
        schema = None
        if parent_db_id:
            try:
                schema = await self.get_database(parent_db_id)
            except BrokerError as e:
                logger.warning(f"Could not load schema for {parent_db_id}: {e}")

        title_property = find_title_property_name(
            (schema or {}).get("properties") or page.get("properties")
        )
        props = parse_property_args(prop_args, schema, title_property)
        if not props:
            raise ValueError("No properties provided. Use -p NAME=VALUE or --TYPE-NAME=VALUE.")

        updated = await self.request("PATCH", f"/pages/{page_id}", {"properties": props})
        return {
            "id": updated.get("id"),
            "url": updated.get("url"),
            "title": extract_title_from_properties(updated.get("properties")),
        }

    async def archive_page(self, page_id: str) -> dict:
        archived = await self.request("PATCH", f"/pages/{page_id}", {"archived": True})
        return {"id": archived.get("id"), "archived": archived.get("archived"), "url": archived.get("url")}

    async def set_body(self, page_id: str, markdown: str) -> dict:
        """Replace page content: archive every existing child, then append."""
        for block in await self.list_block_children(page_id):
            await self.request("PATCH", f"/blocks/{block['id']}", {"archived": True})
        children = markdown_to_blocks(markdown)
        if children:
            await self.append_children(page_id, children)
        return {"id": page_id, "replaced": True, "blocks_written": len(children)}

    async def append_body(self, page_id: str, markdown: str) -> dict:
        children = markdown_to_blocks(markdown)
        if children:
            await self.append_children(page_id, children)
        return {"id": page_id, "appended": True, "blocks_written": len(children)}
