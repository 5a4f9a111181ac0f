"""Confluence MCP server.

Exposes Confluence (a.k.a. KMS) pages, comments, attachments, restrictions
and local page templates as MCP tools:
- confluence_create_page / update / upsert / get / delete: page CRUD
- confluence_search_pages, confluence_get_child_pages: navigation
- confluence_add_comment, confluence_get_page_comments: comments
- confluence_upload_attachment: file attachments
- confluence_set_page_restriction: access restrictions
- confluence_build_code_macro: safe code blocks for storage-format bodies
- confluence_list_templates / load / save: local page templates
- confluence_check_auth: credential check

Credentials: CONF_BASE_URL, CONF_USERNAME, CONF_PASSWORD (and optionally
CONF_SPACE, CONF_TEMPLATES_DIR) from the environment or a .env file.
"""

import asyncio
import base64
import json
import logging
import os
import random
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("confluence-mcp")

# =============================================================================
# Async Rate Limiting
# =============================================================================

_confluence_semaphore: Optional[asyncio.Semaphore] = None
_async_client: Optional[httpx.AsyncClient] = None

MAX_CONCURRENT_REQUESTS = 10
HTTP_TIMEOUT = 30.0  # seconds

# Retry configuration (429 only)
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # max random jitter to add (seconds)


def _compute_retry_delay(attempt: int, retry_after: float | None = None) -> float:
    """Compute exponential backoff delay with jitter for rate limiting.

    Args:
        attempt: Current retry attempt number (0-indexed).
        retry_after: Optional Retry-After header value from server.

    Returns:
        Delay in seconds, including random jitter.
    """
    base_delay = RETRY_BASE_DELAY * (2 ** attempt)
    if retry_after is not None:
        base_delay = max(retry_after, base_delay)
    return base_delay + random.uniform(0, RETRY_JITTER_MAX)


def _parse_retry_after(response: httpx.Response) -> float | None:
    """Return the Retry-After header in seconds, or None if absent/unparseable."""
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _http_error_detail(e: httpx.HTTPStatusError, max_len: int = 300) -> str:
    """Extract a truncated error body from an HTTP status error."""
    if e.response is not None:
        return e.response.text[:max_len]
    return str(e)


def _get_semaphore() -> asyncio.Semaphore:
    """Get or create the rate-limiting semaphore."""
    global _confluence_semaphore
    if _confluence_semaphore is None:
        _confluence_semaphore = asyncio.Semaphore(MAX_CONCURRENT_REQUESTS)
    return _confluence_semaphore


async def _get_async_client() -> httpx.AsyncClient:
    """Get or create the async HTTP client."""
    global _async_client
    if _async_client is None or _async_client.is_closed:
        _async_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT)
    return _async_client


# =============================================================================
# Errors
# =============================================================================


class ConfluenceError(Exception):
    """Base class for errors raised by this server."""


class ConfigError(ConfluenceError):
    """Required connection settings are missing."""


class PageNotFoundError(ConfluenceError):
    """A page named by the caller does not exist."""


class ParentNotFoundError(PageNotFoundError):
    """An explicit parent title did not match any page in the space."""

    def __init__(self, title: str, space: str):
        super().__init__(f"Parent page not found: '{title}' (space={space})")
        self.title = title
        self.space = space


class TemplateNotFoundError(ConfluenceError):
    """No template with the requested name exists in any template directory."""


class BadResponseError(ConfluenceError):
    """The server answered with something other than JSON (e.g. an SSO login page)."""


# =============================================================================
# Credential Management
# =============================================================================

ENV_BASE_URL = "CONF_BASE_URL"
ENV_USERNAME = "CONF_USERNAME"
ENV_PASSWORD = "CONF_PASSWORD"
ENV_SPACE = "CONF_SPACE"
ENV_TEMPLATES_DIR = "CONF_TEMPLATES_DIR"

API_PATH = "/rest/api"
EXPERIMENTAL_API_PATH = "/rest/experimental"


@dataclass
class ConfluenceSettings:
    """Connection settings for one Confluence instance."""
    base_url: str = ""
    username: str = ""
    password: str = ""
    default_space: str = ""
    templates_dir: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "ConfluenceSettings":
        env = os.environ if environ is None else environ
        return cls(
            base_url=env.get(ENV_BASE_URL, "").strip().rstrip("/"),
            username=env.get(ENV_USERNAME, "").strip(),
            password=env.get(ENV_PASSWORD, ""),
            default_space=env.get(ENV_SPACE, "").strip(),
            templates_dir=env.get(ENV_TEMPLATES_DIR) or None,
        )

    def missing(self) -> list[str]:
        """Names of the required variables that are not set."""
        required = [
            (ENV_BASE_URL, self.base_url),
            (ENV_USERNAME, self.username),
            (ENV_PASSWORD, self.password),
        ]
        return [name for name, value in required if not value]

    def require_credentials(self) -> None:
        missing = self.missing()
        if missing:
            raise ConfigError(f"Missing configuration: {', '.join(missing)}")

    def api_url(self, endpoint: str, api: str = API_PATH) -> str:
        return f"{self.base_url}{api}{endpoint}"

    def web_url(self, path: Optional[str]) -> Optional[str]:
        """Absolute URL for a relative `_links` path, or None."""
        if not path:
            return None
        return f"{self.base_url}{path}"


_settings: Optional[ConfluenceSettings] = None


def _get_settings() -> ConfluenceSettings:
    """Get the active settings, loading them from the environment on first use."""
    global _settings
    if _settings is None:
        _settings = ConfluenceSettings.from_env()
    return _settings


def _resolve_space(space: Optional[str]) -> str:
    """Return the explicit space or the configured default; raise if neither."""
    resolved = (space or "").strip() or _get_settings().default_space
    if not resolved:
        raise ValueError(f"space is required (or set {ENV_SPACE})")
    return resolved


# =============================================================================
# Confluence API Client
# =============================================================================


def _decode_response(response: httpx.Response) -> Any:
    if response.status_code == 204 or not response.content:
        return {}
    try:
        return response.json()
    except ValueError as e:
        raise BadResponseError(
            f"Expected a JSON response (HTTP {response.status_code}), got: {response.text[:200]}"
        ) from e


def _confluence_request(
    method: str,
    endpoint: str,
    params: Optional[dict] = None,
    settings: Optional[ConfluenceSettings] = None,
) -> Any:
    """Make an authenticated synchronous request to the Confluence REST API.

    Uses the active settings unless `settings` is given.
    """
    settings = settings or _get_settings()
    settings.require_credentials()

    with httpx.Client(timeout=HTTP_TIMEOUT) as client:
        response = client.request(
            method,
            settings.api_url(endpoint),
            params=params,
            headers={"Accept": "application/json"},
            auth=httpx.BasicAuth(settings.username, settings.password),
        )
        response.raise_for_status()
        return _decode_response(response)


async def _confluence_request_async(
    method: str,
    endpoint: str,
    params: Optional[dict] = None,
    json_body: Optional[Any] = None,
    *,
    api: str = API_PATH,
    files: Optional[dict] = None,
    form: Optional[dict] = None,
    extra_headers: Optional[dict] = None,
) -> Any:
    """Make an authenticated async request with rate limiting and retry.

    Only 429 responses are retried (exponential backoff, Retry-After aware).
    Every other HTTP error is raised as httpx.HTTPStatusError.
    """
    settings = _get_settings()
    settings.require_credentials()
    sem = _get_semaphore()
    client = await _get_async_client()

    headers = {"Accept": "application/json"}
    if extra_headers:
        headers.update(extra_headers)
    url = settings.api_url(endpoint, api)
    auth = httpx.BasicAuth(settings.username, settings.password)

    async with sem:
        for attempt in range(MAX_RETRIES):
            response = await client.request(
                method,
                url,
                params=params,
                json=json_body,
                files=files,
                data=form,
                headers=headers,
                auth=auth,
            )
            if response.status_code == 429 and attempt < MAX_RETRIES - 1:
                delay = _compute_retry_delay(attempt, _parse_retry_after(response))
                logger.warning(f"Rate limited, waiting {delay:.1f}s (attempt {attempt + 1})")
                await asyncio.sleep(delay)
                continue

            response.raise_for_status()
            return _decode_response(response)


# =============================================================================
# Pages
# =============================================================================

PAGE_EXPAND = "version,space,body.storage"


def _storage_body(value: str) -> dict:
    return {"storage": {"value": value, "representation": "storage"}}


async def get_page_by_title(space: str, title: str) -> Optional[dict]:
    """Look up a page by space key and exact title.

    Returns:
        The page object, or None when no page matches. HTTP failures raise.
    """
    data = await _confluence_request_async(
        "GET",
        "/content",
        params={"spaceKey": space, "title": title, "expand": PAGE_EXPAND},
    )
    results = data.get("results") or []
    return results[0] if results else None


async def get_page_by_id(page_id: str) -> dict:
    return await _confluence_request_async(
        "GET", f"/content/{page_id}", params={"expand": PAGE_EXPAND}
    )


async def create_page(
    space: str,
    title: str,
    content: str,
    parent_id: Optional[str] = None,
) -> dict:
    """Create a page in `space`, optionally under `parent_id`."""
    body: dict = {
        "type": "page",
        "title": title,
        "space": {"key": space},
        "body": _storage_body(content),
    }
    if parent_id:
        body["ancestors"] = [{"id": parent_id}]
    return await _confluence_request_async("POST", "/content", json_body=body)


async def update_page(page: dict, content: str, title: Optional[str] = None) -> dict:
    """Replace a page body, bumping its version number."""
    body = {
        "id": page["id"],
        "type": "page",
        "title": title or page["title"],
        "version": {"number": page["version"]["number"] + 1},
        "body": _storage_body(content),
    }
    return await _confluence_request_async("PUT", f"/content/{page['id']}", json_body=body)


async def delete_page(page_id: str) -> None:
    await _confluence_request_async("DELETE", f"/content/{page_id}")


async def list_spaces(space_type: str = "global", limit: int = 200) -> list[dict]:
    data = await _confluence_request_async(
        "GET", "/space", params={"type": space_type, "limit": limit}
    )
    return [
        {"key": s.get("key"), "name": s.get("name"), "type": s.get("type"), "id": s.get("id")}
        for s in data.get("results", [])
    ]


def _cql_quote(value: str) -> str:
    """Quote a value for use inside a CQL string literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def build_title_search_cql(query: str, space: Optional[str] = None) -> str:
    cql = f"title~{_cql_quote(query)}"
    if space:
        cql = f"space={_cql_quote(space)} AND {cql}"
    return cql


async def search_pages(query: str, space: Optional[str] = None, limit: int = 25) -> list[dict]:
    data = await _confluence_request_async(
        "GET",
        "/content/search",
        params={
            "cql": build_title_search_cql(query, space),
            "limit": limit,
            "expand": "space,version",
        },
    )
    return data.get("results", [])


async def get_child_pages(parent_id: str, limit: int = 50) -> list[dict]:
    data = await _confluence_request_async(
        "GET",
        f"/content/{parent_id}/child/page",
        params={"limit": limit, "expand": "version,space"},
    )
    return data.get("results", [])


async def get_page_history(page_id: str, limit: int = 10) -> dict:
    return await _confluence_request_async(
        "GET", f"/content/{page_id}/history", params={"limit": limit}
    )


# =============================================================================
# Parent Resolution
# =============================================================================


@dataclass(frozen=True)
class ParentResolutionRequest:
    """Where a new page should go, as far as the caller has said."""
    space: str
    parent_id: Optional[str] = None
    parent_title: Optional[str] = None
    at_root: Optional[bool] = None


@dataclass(frozen=True)
class Resolved:
    """Creation may proceed. parent_id None means the space root."""
    parent_id: Optional[str]


@dataclass(frozen=True)
class NeedsClarification:
    """Creation must stop and ask the caller where the page belongs."""
    prompt_text: str


ParentResolution = Union[Resolved, NeedsClarification]
PageLookup = Callable[[str, str], Awaitable[Optional[dict]]]

PARENT_CLARIFICATION_PROMPT = (
    "Before creating the page I need to know which parent page it belongs under.\n"
    "\n"
    "Reply with one of the following and I will create the page there:\n"
    "1) Parent page ID (preferred): pass parent_id\n"
    "2) Parent page title: pass parent_title (looked up by title in the same space)\n"
    "3) To create the page at the space root: pass at_root=true explicitly\n"
    "\n"
    "Tip: if you are not sure which parent to use, run confluence_search_pages "
    "with the parent's title first to get its id."
)


async def resolve_parent(
    request: ParentResolutionRequest,
    lookup_page_by_title: PageLookup = get_page_by_title,
) -> ParentResolution:
    """Decide where a new page goes, never guessing.

    First match wins:
    1. at_root is True -> space root, whatever else is set.
    2. parent_id -> used as-is, no lookup.
    3. parent_title -> looked up in the space; a miss raises
       ParentNotFoundError. Lookup failures propagate unchanged.
    4. nothing -> NeedsClarification.
    """
    if not request.space:
        raise ValueError("space is required to resolve a parent page")

    if request.at_root is True:
        return Resolved(parent_id=None)

    if request.parent_id:
        return Resolved(parent_id=request.parent_id)

    if request.parent_title:
        parent = await lookup_page_by_title(request.space, request.parent_title)
        if parent is None:
            raise ParentNotFoundError(request.parent_title, request.space)
        return Resolved(parent_id=parent["id"])

    return NeedsClarification(prompt_text=PARENT_CLARIFICATION_PROMPT)


# =============================================================================
# Comments
# =============================================================================

DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')


async def get_page_comments(page_id: str, limit: int = 50) -> list[dict]:
    """Fetch all comments on a page, replies included."""
    data = await _confluence_request_async(
        "GET",
        f"/content/{page_id}/child/comment",
        params={
            "limit": limit,
            "expand": "body.storage,version,ancestors",
            "depth": "all",
        },
    )
    return data.get("results", [])


def build_user_comments_cql(
    username: str,
    space: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> str:
    """Build the CQL for comments by one author.

    Raises:
        ValueError: If a date is not in YYYY-MM-DD form.
    """
    for label, value in (("start_date", start_date), ("end_date", end_date)):
        if value and not DATE_PATTERN.match(value):
            raise ValueError(f"{label} must be YYYY-MM-DD, got {value!r}")

    cql = f"type=comment AND creator={_cql_quote(username)}"
    if space:
        cql += f" AND space={_cql_quote(space)}"
    if start_date:
        cql += f" AND created>={_cql_quote(start_date)}"
    if end_date:
        cql += f" AND created<={_cql_quote(end_date)}"
    return cql


async def search_user_comments(
    username: str,
    space: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    limit: int = 50,
) -> list[dict]:
    data = await _confluence_request_async(
        "GET",
        "/content/search",
        params={
            "cql": build_user_comments_cql(username, space, start_date, end_date),
            "limit": limit,
            "expand": "body.storage,version,space,container",
        },
    )
    return data.get("results", [])


async def add_comment(
    page_id: str,
    comment_html: str,
    parent_comment_id: Optional[str] = None,
) -> dict:
    """Add a comment (or a reply to `parent_comment_id`) to a page.

    Posts to /content rather than /content/{id}/child/comment, which some
    server versions reject with 405.
    """
    body: dict = {
        "type": "comment",
        "title": "comment",
        "container": {"type": "page", "id": page_id},
        "body": _storage_body(comment_html),
    }
    if parent_comment_id:
        body["ancestors"] = [{"id": parent_comment_id}]
    return await _confluence_request_async("POST", "/content", json_body=body)


# =============================================================================
# Attachments
# =============================================================================


async def upload_attachment(
    page_id: str,
    file_name: str,
    data: bytes,
    comment: Optional[str] = None,
) -> dict:
    """Upload a file to a page and return its id, title and absolute links."""
    settings = _get_settings()
    result = await _confluence_request_async(
        "POST",
        f"/content/{page_id}/child/attachment",
        files={"file": (file_name, data, "application/octet-stream")},
        form={"comment": comment} if comment else None,
        extra_headers={"X-Atlassian-Token": "no-check"},
    )

    first = result
    if isinstance(result, dict) and "results" in result:
        results = result["results"]
        first = results[0] if isinstance(results, list) and results else results
    first = first or {}
    links = first.get("_links", {})

    return {
        "id": first.get("id"),
        "title": first.get("title") or first.get("filename"),
        "mediaType": first.get("metadata", {}).get("mediaType"),
        "download": settings.web_url(links.get("download")),
        "webui": settings.web_url(links.get("webui")),
    }


# =============================================================================
# Page Restrictions
# =============================================================================


class RestrictionType(Enum):
    """Access modes a page can be put into."""
    NONE = "none"            # everyone can view and edit
    EDIT_ONLY = "edit_only"  # everyone can view, only the user can edit
    VIEW_ONLY = "view_only"  # only the user can view and edit


# Status codes meaning "there was nothing to clear" or "endpoint not offered"
_CLEAR_TOLERATED_STATUSES = frozenset({404, 405})


async def _delete_tolerating_absent(endpoint: str, api: str) -> None:
    try:
        await _confluence_request_async("DELETE", endpoint, api=api)
    except httpx.HTTPStatusError as e:
        if e.response is None or e.response.status_code not in _CLEAR_TOLERATED_STATUSES:
            raise
        logger.debug(f"Nothing to clear at {api}{endpoint} (HTTP {e.response.status_code})")


async def _clear_user_restrictions(page_id: str) -> None:
    for operation in ("read", "update"):
        await _delete_tolerating_absent(
            f"/content/{page_id}/restriction/byOperation/{operation}/user",
            api=EXPERIMENTAL_API_PATH,
        )


def build_restriction_payload(restriction_type: RestrictionType, username: str) -> list[dict]:
    """Restriction entries for the experimental restriction endpoint."""
    if restriction_type is RestrictionType.VIEW_ONLY:
        operations = ["read", "update"]
    elif restriction_type is RestrictionType.EDIT_ONLY:
        operations = ["update"]
    else:
        operations = []

    return [
        {
            "operation": operation,
            "restrictions": {
                "user": [{"type": "known", "username": username}],
                "group": [],
            },
        }
        for operation in operations
    ]


async def set_page_restriction(
    page_id: str,
    restriction_type: RestrictionType,
    username: Optional[str] = None,
) -> str:
    """Put a page into one of the RestrictionType modes.

    Returns:
        A message describing the new access state.
    """
    target_user = username or _get_settings().username
    if restriction_type is not RestrictionType.NONE and not target_user:
        raise ValueError(f"username is required (or set {ENV_USERNAME})")

    await _clear_user_restrictions(page_id)

    if restriction_type is RestrictionType.NONE:
        await _delete_tolerating_absent(f"/content/{page_id}/restriction", api=API_PATH)
        return "all page restrictions removed; the page is open to everyone"

    await _confluence_request_async(
        "POST",
        f"/content/{page_id}/restriction",
        json_body=build_restriction_payload(restriction_type, target_user),
        api=EXPERIMENTAL_API_PATH,
    )
    if restriction_type is RestrictionType.EDIT_ONLY:
        return f"only {target_user} can edit; everyone else can view"
    return f"only {target_user} can view and edit"


async def get_page_restrictions(page_id: str) -> dict:
    return await _confluence_request_async("GET", f"/content/{page_id}/restriction")


# =============================================================================
# Code Macro
# =============================================================================

CDATA_TERMINATOR = "]]>"
# Closes the section between "]]" and ">" and reopens a new one
CDATA_TERMINATOR_SPLIT = "]]]]><![CDATA[>"

CODE_LANGUAGE_ALIASES = MappingProxyType({
    "js": "javascript",
    "jsx": "javascript",
    "node": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "sh": "bash",
    "shell": "bash",
    "zsh": "bash",
    "yml": "yaml",
    "py": "python",
    "golang": "go",
    "ps": "powershell",
})

# Values the code macro renders; anything else fails with InvalidValueException
KNOWN_SAFE_CODE_LANGUAGES = frozenset({
    "bash", "c", "cpp", "csharp", "css", "diff", "go", "groovy", "html",
    "ini", "java", "javascript", "json", "kotlin", "lua", "makefile",
    "objectivec", "perl", "php", "plaintext", "powershell", "python", "ruby",
    "rust", "scala", "sql", "swift", "typescript", "xml", "yaml",
})


@dataclass(frozen=True)
class CodeBlock:
    """Source text to embed as a code macro."""
    raw_text: str
    language_hint: Optional[str] = None
    show_line_numbers: bool = False
    collapse_block: bool = False


def escape_for_cdata(text: Optional[str]) -> str:
    """Split every "]]>" so the text can sit inside a CDATA section."""
    return ("" if text is None else str(text)).replace(CDATA_TERMINATOR, CDATA_TERMINATOR_SPLIT)


def normalize_code_language(language: Optional[str]) -> Optional[str]:
    """Map a language hint to a value the code macro accepts.

    Returns:
        The normalized language, or None when the hint is empty or unknown
        (the macro then renders plain text instead of failing).
    """
    if not language:
        return None
    raw = str(language).strip().lower()
    if not raw:
        return None
    normalized = CODE_LANGUAGE_ALIASES.get(raw, raw)
    return normalized if normalized in KNOWN_SAFE_CODE_LANGUAGES else None


def _macro_parameter(name: str, value: str) -> str:
    return f'<ac:parameter ac:name="{name}">{value}</ac:parameter>'


def build_code_macro(block: CodeBlock) -> str:
    """Render a CodeBlock as a storage-format code macro.

    Parameter order is fixed: language (only when recognized), linenumbers,
    collapse. Never fails.
    """
    params = []
    language = normalize_code_language(block.language_hint)
    if language:
        params.append(_macro_parameter("language", language))
    params.append(_macro_parameter("linenumbers", "true" if block.show_line_numbers else "false"))
    params.append(_macro_parameter("collapse", "true" if block.collapse_block else "false"))

    return (
        '<ac:structured-macro ac:name="code">'
        + "".join(params)
        + f"<ac:plain-text-body><![CDATA[{escape_for_cdata(block.raw_text)}]]></ac:plain-text-body>"
        + "</ac:structured-macro>"
    )


# =============================================================================
# Templates
# =============================================================================

TEMPLATE_SUFFIX = ".html"
TEMPLATE_NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')
BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"


@dataclass
class TemplateInfo:
    """A template file and the directory tier it was found in."""
    name: str
    path: Path
    source: str  # "custom" or "builtin"


def _validate_template_name(name: str) -> str:
    if not name or not TEMPLATE_NAME_PATTERN.match(name):
        raise ValueError(
            f"Invalid template name {name!r}: use letters, digits, '.', '_' or '-'"
        )
    return name


def _custom_templates_dir() -> Optional[Path]:
    configured = _get_settings().templates_dir
    if not configured:
        return None
    return Path(configured).expanduser().resolve()


def template_dirs() -> list[tuple[str, Path]]:
    """Template directories in priority order."""
    dirs = []
    custom = _custom_templates_dir()
    if custom is not None:
        dirs.append(("custom", custom))
    dirs.append(("builtin", BUILTIN_TEMPLATES_DIR))
    return dirs


def list_templates() -> list[TemplateInfo]:
    """List templates; a name in a higher-priority directory hides the others."""
    templates: dict[str, TemplateInfo] = {}
    for source, directory in template_dirs():
        if not directory.is_dir():
            continue
        for path in sorted(directory.glob(f"*{TEMPLATE_SUFFIX}")):
            name = path.name[: -len(TEMPLATE_SUFFIX)]
            if name not in templates:
                templates[name] = TemplateInfo(name=name, path=path, source=source)
    return [templates[name] for name in sorted(templates)]


def load_template(name: str) -> str:
    _validate_template_name(name)
    for _, directory in template_dirs():
        path = directory / f"{name}{TEMPLATE_SUFFIX}"
        if path.is_file():
            return path.read_text(encoding="utf-8")
    raise TemplateNotFoundError(f"Template not found: {name}")


def save_template(name: str, content: str) -> Path:
    """Write a template to the custom directory, or the built-in one if unset."""
    _validate_template_name(name)
    target_dir = _custom_templates_dir() or BUILTIN_TEMPLATES_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / f"{name}{TEMPLATE_SUFFIX}"
    path.write_text(content, encoding="utf-8")
    logger.info(f"Saved template {name} to {path}")
    return path


def _page_content(content: Optional[str], template: Optional[str]) -> Optional[str]:
    """Body for a page write: the named template wins over inline content."""
    if template:
        return load_template(template)
    return content


# =============================================================================
# Self-Healing Error Messages
# =============================================================================


def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format error with optional self-healing hint.

    Args:
        code: Error code (e.g., PAGE_NOT_FOUND, RATE_LIMITED)
        message: Human-readable description
        hint: Suggestion on how to fix the issue
        ref: The reference that failed (for context)

    Returns:
        Formatted error string with hint if provided.
    """
    parts = [f"error: {code} - {message}"]
    if ref:
        parts.append(f"ref: {ref}")
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


HINTS = {
    "not_configured": f"Set {ENV_BASE_URL}, {ENV_USERNAME} and {ENV_PASSWORD} (environment or .env file).",
    "page_not_found": "Use confluence_search_pages to find the page by title, or pass page_id.",
    "parent_not_found": "Check the parent title, or use confluence_search_pages to get the parent's id and pass parent_id.",
    "template_not_found": "Use confluence_list_templates to see available templates.",
    "invalid_credentials": f"Check {ENV_USERNAME} / {ENV_PASSWORD}.",
    "permission_denied": "The configured user lacks permission for this page or space.",
    "rate_limited": "Too many requests. Wait a moment and try again.",
    "bad_response": f"The server did not return JSON; check {ENV_BASE_URL} points at Confluence and no SSO login page is in the way.",
}


def _tool_error(action: str, exc: Exception) -> ToolError:
    """Translate an exception into a tool error for the agent."""
    hint = None
    ref = None
    if isinstance(exc, ToolError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code if exc.response is not None else None
        code, hint = {
            401: ("INVALID_CREDENTIALS", HINTS["invalid_credentials"]),
            403: ("PERMISSION_DENIED", HINTS["permission_denied"]),
            404: ("NOT_FOUND", None),
            429: ("RATE_LIMITED", HINTS["rate_limited"]),
        }.get(status, ("HTTP_ERROR", None))
        message = f"HTTP {status}: {_http_error_detail(exc, 200)}"
    elif isinstance(exc, httpx.TimeoutException):
        code, message = "TIMEOUT", "request timed out"
    elif isinstance(exc, httpx.RequestError):
        code, message = "NETWORK_ERROR", f"{type(exc).__name__}: {exc}"
    elif isinstance(exc, ParentNotFoundError):
        code, message, hint, ref = "PARENT_NOT_FOUND", str(exc), HINTS["parent_not_found"], exc.title
    elif isinstance(exc, PageNotFoundError):
        code, message, hint = "PAGE_NOT_FOUND", str(exc), HINTS["page_not_found"]
    elif isinstance(exc, TemplateNotFoundError):
        code, message, hint = "TEMPLATE_NOT_FOUND", str(exc), HINTS["template_not_found"]
    elif isinstance(exc, BadResponseError):
        code, message, hint = "BAD_RESPONSE", str(exc), HINTS["bad_response"]
    elif isinstance(exc, ConfigError):
        code, message, hint = "NOT_CONFIGURED", str(exc), HINTS["not_configured"]
    elif isinstance(exc, ValueError):
        code, message = "INVALID_ARGUMENT", str(exc)
    else:
        code, message = "UNEXPECTED", f"{type(exc).__name__}: {exc}"

    logger.warning(f"{action} failed: {code} {message}")
    return ToolError(_error(code, f"{action} failed: {message}", hint=hint, ref=ref))


def _to_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


# =============================================================================
# Output Formatting
# =============================================================================


def _page_url(page: dict) -> Optional[str]:
    return _get_settings().web_url(page.get("_links", {}).get("webui"))


def format_page_written(verb: str, page: dict) -> str:
    lines = [
        f"page {verb}",
        f"id: {page.get('id')}",
        f"title: {page.get('title')}",
    ]
    version = page.get("version", {}).get("number")
    if version is not None and verb != "created":
        lines.append(f"version: {version}")
    url = _page_url(page)
    if url:
        lines.append(f"url: {url}")
    return "\n".join(lines)


def summarize_page(page: dict, include_url: bool = True) -> dict:
    summary = {
        "id": page.get("id"),
        "title": page.get("title"),
        "space": page.get("space", {}).get("key"),
        "version": page.get("version", {}).get("number"),
    }
    if include_url:
        summary["url"] = _page_url(page)
    return summary


def summarize_user_comment(comment: dict) -> dict:
    container = comment.get("container")
    space = comment.get("space")
    return {
        "id": comment.get("id"),
        "body": comment.get("body", {}).get("storage", {}).get("value"),
        "container": (
            {"id": container.get("id"), "title": container.get("title"), "type": container.get("type")}
            if container else None
        ),
        "space": {"key": space.get("key"), "name": space.get("name")} if space else None,
        "createdAt": comment.get("version", {}).get("when"),
        "url": _get_settings().web_url(comment.get("_links", {}).get("webui")),
    }


# =============================================================================
# MCP Server
# =============================================================================

mcp = FastMCP("confluence-mcp", host="127.0.0.1", port=2052)


async def _resolve_and_create(
    space: str,
    title: str,
    content: Optional[str],
    template: Optional[str],
    parent_id: Optional[str],
    parent_title: Optional[str],
    at_root: bool,
) -> str:
    resolution = await resolve_parent(
        ParentResolutionRequest(
            space=space,
            parent_id=parent_id,
            parent_title=parent_title,
            at_root=at_root,
        )
    )
    if isinstance(resolution, NeedsClarification):
        logger.info(f"No parent given for '{title}' in {space}; asking for clarification")
        return resolution.prompt_text

    body = _page_content(content, template)
    if not body:
        raise ValueError("content (or template) is required")

    page = await create_page(space, title, body, resolution.parent_id)
    return format_page_written("created", page)


@mcp.tool()
async def confluence_list_spaces(space_type: str = "global") -> str:
    """List the Confluence (KMS) spaces visible to the configured user.

    Args:
        space_type: "global" (default) or "personal".
    """
    try:
        if space_type not in ("global", "personal"):
            raise ValueError("space_type must be 'global' or 'personal'")
        return _to_json(await list_spaces(space_type=space_type))
    except Exception as e:
        raise _tool_error("list spaces", e) from e


@mcp.tool()
async def confluence_create_page(
    title: str,
    content: Optional[str] = None,
    space: Optional[str] = None,
    template: Optional[str] = None,
    parent_id: Optional[str] = None,
    parent_title: Optional[str] = None,
    at_root: bool = False,
) -> str:
    """Create a new Confluence (KMS) page.

    The parent must be stated: if none of parent_id, parent_title or
    at_root=true is given, nothing is created and a question is returned.

    Args:
        title: Page title.
        content: Page body in storage format (HTML).
        space: Space key (defaults to CONF_SPACE).
        template: Template name (without .html); replaces content.
        parent_id: Parent page ID (preferred).
        parent_title: Parent page title, looked up in the same space.
        at_root: Create at the space root.
    """
    try:
        return await _resolve_and_create(
            _resolve_space(space), title, content, template, parent_id, parent_title, at_root
        )
    except Exception as e:
        raise _tool_error("create page", e) from e


@mcp.tool()
async def confluence_update_page(
    title: Optional[str] = None,
    page_id: Optional[str] = None,
    space: Optional[str] = None,
    content: Optional[str] = None,
    template: Optional[str] = None,
    new_title: Optional[str] = None,
) -> str:
    """Update an existing Confluence (KMS) page.

    Args:
        title: Title used to find the page (with space) when page_id is absent.
        page_id: Page ID; takes precedence over title.
        space: Space key (defaults to CONF_SPACE).
        content: New body in storage format.
        template: Template name; replaces content.
        new_title: Optional new title.
    """
    try:
        if page_id:
            page = await get_page_by_id(page_id)
        elif title:
            resolved_space = _resolve_space(space)
            page = await get_page_by_title(resolved_space, title)
            if page is None:
                raise PageNotFoundError(f"Page not found: '{title}' (space={resolved_space})")
        else:
            raise ValueError("page_id or title is required")

        body = _page_content(content, template)
        if not body:
            raise ValueError("content (or template) is required")

        result = await update_page(page, body, new_title)
        return format_page_written("updated", result)
    except Exception as e:
        raise _tool_error("update page", e) from e


@mcp.tool()
async def confluence_upsert_page(
    title: str,
    content: Optional[str] = None,
    space: Optional[str] = None,
    template: Optional[str] = None,
    parent_id: Optional[str] = None,
    parent_title: Optional[str] = None,
    at_root: bool = False,
) -> str:
    """Update the page with this title if it exists, otherwise create it.

    Parent arguments only apply when the page is created; as with
    confluence_create_page, a missing parent returns a question instead.

    Args:
        title: Page title.
        content: Page body in storage format.
        space: Space key (defaults to CONF_SPACE).
        template: Template name; replaces content.
        parent_id: Parent page ID (preferred).
        parent_title: Parent page title, looked up in the same space.
        at_root: Create at the space root.
    """
    try:
        resolved_space = _resolve_space(space)
        body = _page_content(content, template)
        if not body:
            raise ValueError("content (or template) is required")

        existing = await get_page_by_title(resolved_space, title)
        if existing is not None:
            result = await update_page(existing, body)
            return format_page_written("updated", result)

        return await _resolve_and_create(
            resolved_space, title, body, None, parent_id, parent_title, at_root
        )
    except Exception as e:
        raise _tool_error("upsert page", e) from e


@mcp.tool()
async def confluence_get_page(
    title: Optional[str] = None,
    page_id: Optional[str] = None,
    space: Optional[str] = None,
) -> str:
    """Get a Confluence (KMS) page with its storage-format body.

    Args:
        title: Page title (with space) when page_id is absent.
        page_id: Page ID; takes precedence over title.
        space: Space key (defaults to CONF_SPACE).
    """
    try:
        if page_id:
            page = await get_page_by_id(page_id)
        elif title:
            resolved_space = _resolve_space(space)
            page = await get_page_by_title(resolved_space, title)
            if page is None:
                raise PageNotFoundError(f"Page not found: '{title}' (space={resolved_space})")
        else:
            raise ValueError("page_id or title is required")

        summary = summarize_page(page)
        summary["content"] = page.get("body", {}).get("storage", {}).get("value")
        return _to_json(summary)
    except Exception as e:
        raise _tool_error("get page", e) from e


@mcp.tool()
async def confluence_delete_page(page_id: str) -> str:
    """Delete a Confluence (KMS) page.

    Args:
        page_id: ID of the page to delete.
    """
    try:
        await delete_page(page_id)
        return f"page {page_id} deleted"
    except Exception as e:
        raise _tool_error("delete page", e) from e


@mcp.tool()
async def confluence_search_pages(query: str, space: Optional[str] = None, limit: int = 25) -> str:
    """Search Confluence (KMS) pages by title.

    Args:
        query: Text matched against page titles.
        space: Optional space key to restrict the search.
        limit: Maximum results (default 25).
    """
    try:
        results = await search_pages(query, space=space, limit=limit)
        return _to_json([summarize_page(p) for p in results])
    except Exception as e:
        raise _tool_error("search pages", e) from e


@mcp.tool()
async def confluence_get_child_pages(parent_id: str, limit: int = 50) -> str:
    """List the direct child pages of a page.

    Args:
        parent_id: Parent page ID.
        limit: Maximum results (default 50).
    """
    try:
        children = await get_child_pages(parent_id, limit=limit)
        return _to_json([summarize_page(p, include_url=False) for p in children])
    except Exception as e:
        raise _tool_error("get child pages", e) from e


@mcp.tool()
async def confluence_get_page_history(page_id: str, limit: int = 10) -> str:
    """Get the version history of a page.

    Args:
        page_id: Page ID.
        limit: Maximum history entries (default 10).
    """
    try:
        return _to_json(await get_page_history(page_id, limit=limit))
    except Exception as e:
        raise _tool_error("get page history", e) from e


@mcp.tool()
async def confluence_add_comment(
    page_id: str,
    content: str,
    parent_comment_id: Optional[str] = None,
) -> str:
    """Add a comment to a page, or reply to an existing comment.

    Args:
        page_id: Page to comment on.
        content: Comment body in storage format (plain text must be wrapped, e.g. <p>...</p>).
        parent_comment_id: Comment to reply to; omit for a top-level comment.
    """
    try:
        if not content:
            raise ValueError("content is required")
        result = await add_comment(page_id, content, parent_comment_id)
    except Exception as e:
        raise _tool_error("add comment", e) from e

    lines = ["comment added", f"page id: {page_id}", f"comment id: {result.get('id')}"]
    if parent_comment_id:
        lines.append(f"parent comment id: {parent_comment_id}")
    url = _get_settings().web_url(result.get("_links", {}).get("webui"))
    if url:
        lines.append(f"url: {url}")
    return "\n".join(lines)


@mcp.tool()
async def confluence_get_page_comments(page_id: str, limit: int = 50) -> str:
    """Get all comments on a page, replies included.

    Args:
        page_id: Page ID.
        limit: Maximum comments (default 50).
    """
    try:
        comments = await get_page_comments(page_id, limit=limit)
    except Exception as e:
        raise _tool_error("get page comments", e) from e

    if not comments:
        return "no comments on this page"
    formatted = [
        {
            "id": c.get("id"),
            "title": c.get("title"),
            "body": c.get("body", {}).get("storage", {}).get("value"),
        }
        for c in comments
    ]
    return f"{len(comments)} comment(s):\n\n{_to_json(formatted)}"


@mcp.tool()
async def confluence_search_user_comments(
    username: str,
    space: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    limit: int = 50,
) -> str:
    """Find comments written by one user, optionally by space and date range.

    Args:
        username: Comment author.
        space: Optional space key.
        start_date: Optional YYYY-MM-DD; comments on or after this date.
        end_date: Optional YYYY-MM-DD; comments on or before this date.
        limit: Maximum results (default 50).
    """
    try:
        comments = await search_user_comments(
            username, space=space, start_date=start_date, end_date=end_date, limit=limit
        )
    except Exception as e:
        raise _tool_error("search user comments", e) from e

    if not comments:
        return f"no comments found for {username}"
    formatted = [summarize_user_comment(c) for c in comments]
    return f"{len(comments)} comment(s) by {username}:\n\n{_to_json(formatted)}"


def _read_attachment_source(
    file_path: Optional[str],
    filename: Optional[str],
    content_base64: Optional[str],
) -> tuple[str, bytes]:
    """Return (file name, bytes) from a local path or base64 content."""
    if file_path and content_base64:
        raise ValueError("pass either file_path or content_base64, not both")
    if file_path:
        path = Path(file_path).expanduser()
        if not path.is_file():
            raise ValueError(f"File not found: {path}")
        return filename or path.name, path.read_bytes()
    if content_base64:
        if not filename:
            raise ValueError("filename is required with content_base64")
        return filename, base64.b64decode(content_base64, validate=True)
    raise ValueError("file_path or content_base64 is required")


@mcp.tool()
async def confluence_upload_attachment(
    page_id: str,
    file_path: Optional[str] = None,
    filename: Optional[str] = None,
    content_base64: Optional[str] = None,
    comment: Optional[str] = None,
) -> str:
    """Upload an attachment to a page (needs edit permission).

    Args:
        page_id: Page to attach to.
        file_path: Local file path (preferred; absolute paths recommended).
        filename: Attachment name; required with content_base64.
        content_base64: File content as base64, instead of file_path.
        comment: Optional attachment comment.
    """
    try:
        file_name, data = _read_attachment_source(file_path, filename, content_base64)
        result = await upload_attachment(page_id, file_name, data, comment)
    except Exception as e:
        raise _tool_error("upload attachment", e) from e

    lines = ["attachment uploaded", f"page id: {page_id}"]
    for label, key in (("attachment id", "id"), ("file", "title"), ("download", "download"), ("page", "webui")):
        if result.get(key):
            lines.append(f"{label}: {result[key]}")
    return "\n".join(lines)


@mcp.tool()
def confluence_build_code_macro(
    code: str,
    language: Optional[str] = None,
    linenumbers: bool = False,
    collapse: bool = False,
) -> str:
    """Build a storage-format code macro that is safe to embed in a page body.

    Args:
        code: Raw source text; CDATA terminators are handled.
        language: Optional language; aliases like js/ts/sh/yml are normalized,
            unknown values are left out instead of breaking the macro.
        linenumbers: Show line numbers.
        collapse: Render collapsed.
    """
    return build_code_macro(CodeBlock(
        raw_text=code,
        language_hint=language,
        show_line_numbers=linenumbers,
        collapse_block=collapse,
    ))


@mcp.tool()
async def confluence_set_page_restriction(
    page_id: str,
    restriction_type: str,
    username: Optional[str] = None,
) -> str:
    """Set who can view or edit a page.

    Args:
        page_id: Page ID.
        restriction_type: "none" (open to everyone), "edit_only" (everyone
            views, only the user edits) or "view_only" (only the user views
            and edits).
        username: User to grant access (defaults to CONF_USERNAME).
    """
    try:
        mode = RestrictionType(restriction_type)
        return await set_page_restriction(page_id, mode, username)
    except Exception as e:
        raise _tool_error("set page restriction", e) from e


@mcp.tool()
async def confluence_get_page_restrictions(page_id: str) -> str:
    """Get the current view/edit restrictions of a page.

    Args:
        page_id: Page ID.
    """
    try:
        return _to_json(await get_page_restrictions(page_id))
    except Exception as e:
        raise _tool_error("get page restrictions", e) from e


@mcp.tool()
def confluence_list_templates() -> str:
    """List local page templates (custom directory first, then built-in)."""
    try:
        templates = list_templates()
    except Exception as e:
        raise _tool_error("list templates", e) from e
    return _to_json([
        {"name": t.name, "path": str(t.path), "source": t.source}
        for t in templates
    ])


@mcp.tool()
def confluence_load_template(template_name: str) -> str:
    """Return the content of a local page template.

    Args:
        template_name: Template name without the .html suffix.
    """
    try:
        return load_template(template_name)
    except Exception as e:
        raise _tool_error("load template", e) from e


@mcp.tool()
def confluence_save_template(template_name: str, content: str) -> str:
    """Save storage-format content as a reusable local page template.

    Args:
        template_name: Template name without the .html suffix.
        content: Template body.
    """
    try:
        path = save_template(template_name, content)
    except Exception as e:
        raise _tool_error("save template", e) from e
    return f"template '{template_name}' saved to {path}"


@mcp.resource("template://{name}")
def template_resource(name: str) -> str:
    """A local page template."""
    return load_template(name)


@mcp.tool()
def confluence_check_auth() -> str:
    """Verify the configured credentials against the Confluence server."""
    try:
        user = _confluence_request("GET", "/user/current")
    except Exception as e:
        raise _tool_error("check auth", e) from e

    name = user.get("displayName") or user.get("username") or "unknown"
    return f"authenticated as '{name}' on {_get_settings().base_url}"


# =============================================================================
# Connectivity Check
# =============================================================================


def _mask_secret(value: str) -> str:
    return value[:4] + "****"


def check_connection(settings: ConfluenceSettings) -> tuple[bool, list[str]]:
    """Check configuration and connectivity, returning (ok, report lines)."""
    lines = []
    for name, value in (
        (ENV_BASE_URL, settings.base_url),
        (ENV_USERNAME, settings.username),
        (ENV_PASSWORD, settings.password),
        (ENV_SPACE, settings.default_space),
    ):
        if not value:
            lines.append(f"missing: {name}")
        else:
            shown = _mask_secret(value) if name == ENV_PASSWORD else value
            lines.append(f"ok: {name} = {shown}")

    if settings.missing():
        return False, lines

    try:
        spaces = _confluence_request("GET", "/space", params={"limit": 10}, settings=settings)
        results = spaces.get("results", [])
        lines.append(f"ok: connected, {len(results)} space(s) visible")
        for s in results:
            lines.append(f"  {s.get('key')}  {s.get('name')}")

        if settings.default_space:
            space = _confluence_request("GET", f"/space/{settings.default_space}", settings=settings)
            lines.append(f"ok: space {settings.default_space} accessible ({space.get('name')})")
    except httpx.HTTPStatusError as e:
        status = e.response.status_code if e.response is not None else None
        lines.append(f"failed: HTTP {status}: {_http_error_detail(e, 200)}")
        return False, lines
    except httpx.RequestError as e:
        lines.append(f"failed: {type(e).__name__}: {e}")
        return False, lines
    except (ConfluenceError, ValueError) as e:
        lines.append(f"failed: {e}")
        return False, lines

    return True, lines


# =============================================================================
# HTTP Endpoints (/health)
# =============================================================================

async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    settings = _get_settings()
    configured = not settings.missing()

    auth_status = None
    if configured:
        try:
            user = await asyncio.to_thread(_confluence_request, "GET", "/user/current")
            auth_status = user.get("displayName") or user.get("username") or "connected"
        except Exception as e:
            auth_status = f"error: {type(e).__name__}"

    return JSONResponse({
        "status": "ok",
        "configured": configured,
        "base_url": settings.base_url or None,
        "user": auth_status,
    })


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Run the Confluence MCP server.

    Supports two transport modes:
    - stdio (default): launched by the MCP client
    - http: standalone server on port 2052

    Usage:
        confluence-mcp            # stdio mode
        confluence-mcp --http     # HTTP mode on localhost:2052
        confluence-mcp --check    # verify configuration and connectivity
    """
    import argparse

    parser = argparse.ArgumentParser(description="Confluence MCP Server")
    parser.add_argument(
        "--env-file",
        help="Path to a .env file (default: search from the working directory)"
    )
    parser.add_argument(
        "--password-file",
        help=f"Path to a file containing the password (overrides {ENV_PASSWORD})"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server on localhost:2052 instead of stdio"
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Check configuration and connectivity, then exit"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    if args.env_file:
        env_path = Path(args.env_file).expanduser()
        if not env_path.exists():
            logger.error(f"Env file not found: {env_path}")
            raise SystemExit(1)
        load_dotenv(env_path)
    else:
        load_dotenv()

    global _settings
    _settings = ConfluenceSettings.from_env()

    if args.password_file:
        password_path = Path(args.password_file).expanduser()
        if not password_path.exists():
            logger.error(f"Password file not found: {password_path}")
            raise SystemExit(1)
        _settings.password = password_path.read_text().strip()
        if not _settings.password:
            logger.error("Password file is empty")
            raise SystemExit(1)

    if args.check:
        ok, lines = check_connection(_settings)
        print("\n".join(lines))
        raise SystemExit(0 if ok else 1)

    missing = _settings.missing()
    if missing:
        logger.warning(f"Missing configuration: {', '.join(missing)}; tools will fail until set")
    else:
        logger.info(f"Using Confluence at {_settings.base_url} as {_settings.username}")

    if args.http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])

        logger.info("Starting Confluence MCP server on http://127.0.0.1:2052")
        uvicorn.run(app, host="127.0.0.1", port=2052, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()
