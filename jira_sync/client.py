"""HTTP client for the Jira REST APIs with bounded pagination and base-path probing."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, TypeVar
from urllib.parse import urlparse

import requests

from .credentials import BasicAuth, BearerAuth, Credentials, OAuthAuth
from .models import JiraBoard, JiraField, JiraIssue, JiraSprint, JiraSprintReport
from .settings import MAX_PAGE_SIZE

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_PAGES = 5

# Sibling context paths tried when a Jira base URL points at a bare origin
JIRA_CONTEXT_PATHS: tuple[str, ...] = ("jira",)

ISSUE_FIELDS = "summary,description,status,assignee,priority,created,issuetype"


def _issue_fields(extra_fields: Iterable[str]) -> str:
    return ",".join([ISSUE_FIELDS, *[f for f in extra_fields if f]])


_FALLBACK_MESSAGES: dict[int, str] = {
    401: "Unauthorized (401). Check the Jira base URL, username/email and token.",
    403: "Forbidden (403). The token lacks access to Jira or project permissions.",
    404: "Not found (404). The Jira base URL is likely incorrect.",
}


class ExternalServiceError(Exception):
    """Raised when a Jira call fails.

    ``kind`` classifies the failure: ``unauthorized`` (likely a bad token),
    ``forbidden`` (token lacks scope), ``not_found`` (likely a wrong base
    URL), ``connection`` (no HTTP response) or ``other``.
    """

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Jira API error {status_code}: {message}")

    @property
    def kind(self) -> str:
        if self.status_code == 0:
            return "connection"
        return {401: "unauthorized", 403: "forbidden", 404: "not_found"}.get(
            self.status_code, "other"
        )


def _provider_message(resp: requests.Response) -> str | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    messages = body.get("errorMessages")
    if isinstance(messages, list) and messages:
        return str(messages[0])
    errors = body.get("errors")
    if isinstance(errors, dict) and errors:
        return "; ".join(f"{k}: {v}" for k, v in errors.items())
    if body.get("message"):
        return str(body["message"])
    return None


def error_from_response(resp: requests.Response) -> ExternalServiceError:
    """Build an ExternalServiceError, preferring the provider's own message."""
    status = resp.status_code
    message = _FALLBACK_MESSAGES.get(status) or _provider_message(resp)
    if not message:
        message = f"Jira request failed with HTTP {status}"
        if resp.reason:
            message += f" ({resp.reason})"
    return ExternalServiceError(status, message)


def apply_auth(session: requests.Session, credentials: Credentials) -> None:
    """Configure session authentication for the credential's auth scheme."""
    auth = credentials.auth
    if isinstance(auth, BasicAuth):
        session.auth = (auth.user, auth.token)
    elif isinstance(auth, BearerAuth):
        session.headers["Authorization"] = f"Bearer {auth.token}"
    elif isinstance(auth, OAuthAuth):
        session.headers["Authorization"] = f"Bearer {auth.token}"
    else:
        raise TypeError(f"Unsupported Jira auth scheme: {type(auth).__name__}")


def candidate_base_urls(base_url: str, context_paths: Iterable[str]) -> list[str]:
    """Base URLs worth trying for a service behind an unknown context path.

    The stored URL always comes first. Only a bare origin
    (``https://host`` or ``https://host/``) gets ``{origin}/{context}``
    siblings.
    """
    stripped = base_url.rstrip("/")
    candidates = [stripped]
    parsed = urlparse(stripped)
    if parsed.scheme and parsed.netloc and parsed.path in ("", "/"):
        origin = f"{parsed.scheme}://{parsed.netloc}"
        for context in context_paths:
            candidate = f"{origin}/{context.strip('/')}"
            if candidate not in candidates:
                candidates.append(candidate)
    return candidates


def paginate(
    fetch_page: Callable[[int, int], Any],
    *,
    items_key: str = "values",
    page_size: int = MAX_PAGE_SIZE,
    max_pages: int = DEFAULT_MAX_PAGES,
) -> list[Any]:
    """Collect items from an offset/limit listing.

    Stops on a short or empty page, ``isLast``, a reached ``total``, or
    after ``max_pages`` pages no matter what the server reports.

    Args:
        fetch_page: Called with ``(start_at, limit)``; returns the page body.
        items_key: Key of the item list in the page body.
        page_size: Requested page size, capped at 50.
        max_pages: Hard page cap.
    """
    page_size = max(1, min(page_size, MAX_PAGE_SIZE))
    results: list[Any] = []
    start_at = 0

    for _ in range(max_pages):
        data = fetch_page(start_at, page_size)
        if isinstance(data, list):
            items = data
            data = {}
        else:
            items = (data or {}).get(items_key) or []
        results.extend(items)

        if len(items) < page_size or data.get("isLast") is True:
            break
        total = data.get("total")
        if isinstance(total, int) and start_at + len(items) >= total:
            break
        start_at += len(items)
    else:
        logger.warning(
            "Stopped paging after %d pages (%d items); more results may exist",
            max_pages, len(results),
        )

    return results


def fetch_with_base_path_probe(
    candidates: list[str],
    fetch: Callable[[str], T],
) -> tuple[str, T]:
    """Run ``fetch`` against each candidate base URL until one succeeds.

    Returns:
        ``(base_url, result)`` for the first candidate that did not raise.

    Raises:
        ExternalServiceError: every candidate failed; the error of the first
            (stored) URL is raised.
    """
    first_error: ExternalServiceError | None = None
    for base_url in candidates:
        try:
            return base_url, fetch(base_url)
        except ExternalServiceError as e:
            logger.warning("Base URL candidate %s failed: %s", base_url, e)
            if first_error is None:
                first_error = e
    if first_error is None:
        raise ValueError("No base URL candidates to probe")
    raise first_error


class JiraApiClient:
    """HTTP client for the Jira agile, core and greenhopper REST APIs.

    Listing calls page with ``startAt``/``maxResults`` and are capped at
    ``max_pages`` pages. Until a listing call succeeds the client probes
    sibling context paths of a bare-origin base URL, then pins the working
    one for every later request.
    """

    def __init__(
        self,
        credentials: Credentials,
        *,
        page_size: int = MAX_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        context_paths: Iterable[str] = JIRA_CONTEXT_PATHS,
    ):
        self.credentials = credentials
        self.base_url = credentials.base_url.rstrip("/")
        self.page_size = min(page_size, MAX_PAGE_SIZE)
        self.max_pages = max_pages
        self.timeout = credentials.request_timeout / 1000
        # OAuth base URLs are synthesized, nothing to probe
        self._candidates = (
            [self.base_url]
            if isinstance(credentials.auth, OAuthAuth)
            else candidate_base_urls(self.base_url, context_paths)
        )
        self._base_url_pinned = len(self._candidates) == 1
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )
        apply_auth(self._session, credentials)

    # --- Plumbing ---

    def _api_path(self, api: str) -> str:
        if api == "agile":
            return "/rest/agile/1.0"
        if api == "greenhopper":
            return "/rest/greenhopper/1.0"
        if api == "core":
            return "/rest/api/2"
        if api == "core_latest":
            return "/rest/api/3" if self.credentials.deployment == "cloud" else "/rest/api/2"
        raise ValueError(f"Unknown Jira API: {api}")

    def _request(
        self,
        method: str,
        api: str,
        path: str,
        *,
        params: dict | None = None,
        base_url: str | None = None,
    ) -> Any:
        """Make an authenticated request; no retries."""
        url = f"{base_url or self.base_url}{self._api_path(api)}{path}"

        logger.debug("Jira API %s %s %s", method, url, params or "")
        try:
            resp = self._session.request(method, url, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise ExternalServiceError(0, f"Request to {url} timed out") from e
        except requests.RequestException as e:
            raise ExternalServiceError(0, f"Connection error: {e}") from e

        if not resp.ok:
            raise error_from_response(resp)

        if resp.status_code == 204 or not resp.content:
            return None

        try:
            return resp.json()
        except ValueError as e:
            raise ExternalServiceError(
                resp.status_code, f"Jira returned a non-JSON response from {url}"
            ) from e

    def _paginate_at(
        self,
        base_url: str,
        api: str,
        path: str,
        params: dict | None,
        items_key: str,
    ) -> list[Any]:
        def fetch_page(start_at: int, limit: int) -> Any:
            page_params = dict(params or {}, startAt=start_at, maxResults=limit)
            return self._request("GET", api, path, params=page_params, base_url=base_url)

        return paginate(
            fetch_page,
            items_key=items_key,
            page_size=self.page_size,
            max_pages=self.max_pages,
        )

    def _at_base_url(self, fetch: Callable[[str], T]) -> T:
        """Run ``fetch`` at the pinned base URL, probing candidates until one answers."""
        if self._base_url_pinned:
            return fetch(self.base_url)

        base_url, result = fetch_with_base_path_probe(self._candidates, fetch)
        if base_url != self.base_url:
            logger.info("Using Jira base URL %s (configured: %s)", base_url, self.base_url)
        self.base_url = base_url
        self._base_url_pinned = True
        return result

    def _get(self, api: str, path: str, params: dict | None = None) -> Any:
        """Single GET with base URL probing."""
        return self._at_base_url(
            lambda base_url: self._request("GET", api, path, params=params, base_url=base_url)
        )

    def _list(
        self,
        api: str,
        path: str,
        params: dict | None = None,
        items_key: str = "values",
    ) -> list[Any]:
        """Paginated GET with base URL probing."""
        return self._at_base_url(
            lambda base_url: self._paginate_at(base_url, api, path, params, items_key)
        )

    # --- Identity ---

    def get_myself(self) -> dict:
        """Fetch the authenticated user; used as a connection test."""
        return self._get("core_latest", "/myself") or {}

    # --- Boards ---

    def list_boards(self, board_type: str | None = "scrum") -> list[JiraBoard]:
        """List boards visible to the credentials."""
        params = {"type": board_type} if board_type else None
        return [JiraBoard(**b) for b in self._list("agile", "/board", params)]

    # --- Sprints ---

    def list_board_sprints(self, board_id: int, state: str | None = None) -> list[JiraSprint]:
        """List sprints of a board, optionally filtered by state (active, closed, future)."""
        params = {"state": state} if state else None
        sprints = [JiraSprint(**s) for s in self._list("agile", f"/board/{board_id}/sprint", params)]
        for sprint in sprints:
            sprint.boardId = sprint.originBoardId or sprint.boardId or board_id
        return sprints

    def list_legacy_closed_sprints(self, board_id: int) -> list[JiraSprint]:
        """Closed sprints from the greenhopper sprint query (older Jira servers)."""
        data = self._get(
            "greenhopper",
            f"/rapidview/{board_id}/sprintquery",
            {"includeHistoricSprints": "true", "includeFutureSprints": "false"},
        ) or {}
        raw = data.get("sprints") or data.get("values") or []
        sprints: list[JiraSprint] = []
        for item in raw if isinstance(raw, list) else []:
            state = str(item.get("state") or item.get("status") or "").upper()
            if state not in ("CLOSED", "COMPLETE", "COMPLETED"):
                continue
            sprints.append(
                JiraSprint(
                    id=int(item["id"]),
                    name=item.get("name") or f"Sprint {item['id']}",
                    state="CLOSED",
                    startDate=item.get("startDate") or None,
                    endDate=item.get("endDate") or None,
                    completeDate=item.get("completeDate") or None,
                    boardId=board_id,
                )
            )
        return sprints

    # --- Issues ---

    def list_sprint_issues(
        self,
        sprint_id: int,
        extra_fields: Iterable[str] = (),
    ) -> list[JiraIssue]:
        """List the issues of a sprint."""
        items = self._list(
            "agile",
            f"/sprint/{sprint_id}/issue",
            {"fields": _issue_fields(extra_fields)},
            items_key="issues",
        )
        return [JiraIssue(**item) for item in items]

    def get_issue(self, key: str, extra_fields: Iterable[str] = ()) -> JiraIssue:
        """Fetch one issue by key."""
        data = self._get("core", f"/issue/{key}", {"fields": _issue_fields(extra_fields)}) or {}
        return JiraIssue(**data)

    def search_sprint_issues(
        self,
        sprint_id: int,
        extra_fields: Iterable[str] = (),
    ) -> list[JiraIssue]:
        """Issues matching ``Sprint = <id>``, including ones moved out since."""
        items = self._list(
            "core",
            "/search",
            {"jql": f"Sprint = {sprint_id}", "fields": _issue_fields(extra_fields)},
            items_key="issues",
        )
        return [JiraIssue(**item) for item in items]

    def get_sprint_report(self, board_id: int, sprint_id: int) -> JiraSprintReport:
        """Completed and not-completed issues from the greenhopper sprint report."""
        data = self._get(
            "greenhopper",
            "/rapid/charts/sprintreport",
            {"rapidViewId": board_id, "sprintId": sprint_id},
        ) or {}
        return JiraSprintReport(**(data.get("contents") or {}))

    # --- Fields ---

    def list_fields(self) -> list[JiraField]:
        """List all field definitions (used to find the story points field)."""
        data = self._get("core", "/field") or []
        return [JiraField(**f) for f in data if isinstance(f, dict) and f.get("id")]

    def close(self) -> None:
        """Close the HTTP session."""
        self._session.close()
