from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Tuple

import requests

logger = logging.getLogger("devpet.github")

GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"

ACTIVITY_QUERY = """
query ($startTime: DateTime, $endTime: DateTime, $first: Int) {
    viewer {
        contributionsCollection(from: $startTime, to: $endTime) {
            pullRequestContributions(first: $first) {
                nodes {
                    pullRequest {
                        title
                        repository { name owner { login } }
                        createdAt
                    }
                }
            }
            issueContributions(first: $first) {
                nodes {
                    issue {
                        title
                        repository { name owner { login } }
                        createdAt
                    }
                }
            }
            totalCommitContributions
        }
    }
    rateLimit {
        limit
        remaining
        used
        resetAt
    }
}
"""


class GithubApiError(RuntimeError):
    """Raised when the GitHub API returns an error or an unexpected payload."""


class RateLimited(GithubApiError):
    """Raised when GitHub rate limits the token.

    retry_after_s is best-effort parsed from Retry-After.
    """

    def __init__(self, message: str, retry_after_s: float | None = None):
        super().__init__(message)
        self.retry_after_s = retry_after_s


@dataclass(frozen=True)
class ContributionItem:
    title: str
    created_at: datetime
    repository: str = ""


@dataclass(frozen=True)
class RateLimitInfo:
    limit: int
    remaining: int
    used: int
    reset_at: str


@dataclass(frozen=True)
class ActivitySnapshot:
    """Absolute contribution counters for a date range, as returned by GitHub."""

    total_commits: int
    issues: Tuple[ContributionItem, ...] = ()
    pull_requests: Tuple[ContributionItem, ...] = ()
    rate_limit: Optional[RateLimitInfo] = field(default=None, compare=False)


def month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """Return the first instant and the last millisecond of now's UTC month."""

    now = now.astimezone(timezone.utc)
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    last_day = calendar.monthrange(now.year, now.month)[1]
    end = datetime(now.year, now.month, last_day, 23, 59, 59, 999000, tzinfo=timezone.utc)
    return start, end


def parse_github_datetime(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso_millis(dt: datetime) -> str:
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _parse_retry_after_seconds(headers: Mapping[str, Any]) -> float | None:
    """Parse Retry-After (seconds only). Returns None if unparseable."""

    ra = headers.get("Retry-After")
    if not ra:
        return None
    try:
        return float(str(ra).strip())
    except ValueError:
        return None


def _parse_items(nodes: Any, key: str) -> Tuple[ContributionItem, ...]:
    if not isinstance(nodes, list):
        raise GithubApiError(f"{key}Contributions.nodes must be a list")

    items: List[ContributionItem] = []
    for node in nodes:
        entry = node.get(key) if isinstance(node, Mapping) else None
        if not isinstance(entry, Mapping):
            raise GithubApiError(f"{key} contribution node is missing '{key}'")
        title = entry.get("title")
        created_at = entry.get("createdAt")
        if not isinstance(title, str) or not isinstance(created_at, str):
            raise GithubApiError(f"{key} contribution must have string title and createdAt")

        repo = entry.get("repository")
        repo_name = ""
        if isinstance(repo, Mapping):
            owner = repo.get("owner")
            login = owner.get("login") if isinstance(owner, Mapping) else None
            name = repo.get("name")
            if isinstance(name, str):
                repo_name = f"{login}/{name}" if isinstance(login, str) else name

        try:
            created = parse_github_datetime(created_at)
        except ValueError as exc:
            raise GithubApiError(f"invalid createdAt {created_at!r}") from exc
        items.append(ContributionItem(title=title, created_at=created, repository=repo_name))
    return tuple(items)


def _parse_rate_limit(raw: Any) -> Optional[RateLimitInfo]:
    if not isinstance(raw, Mapping):
        return None
    try:
        return RateLimitInfo(
            limit=int(raw["limit"]),
            remaining=int(raw["remaining"]),
            used=int(raw["used"]),
            reset_at=str(raw["resetAt"]),
        )
    except (KeyError, TypeError, ValueError):
        return None


def parse_activity_response(data: Mapping[str, Any]) -> ActivitySnapshot:
    viewer = data.get("viewer")
    if not isinstance(viewer, Mapping):
        raise GithubApiError("response is missing 'viewer'")
    collection = viewer.get("contributionsCollection")
    if not isinstance(collection, Mapping):
        raise GithubApiError("response is missing 'contributionsCollection'")

    total = collection.get("totalCommitContributions")
    if isinstance(total, bool) or not isinstance(total, int):
        raise GithubApiError("'totalCommitContributions' must be an int")

    issues_raw = collection.get("issueContributions")
    prs_raw = collection.get("pullRequestContributions")
    if not isinstance(issues_raw, Mapping) or not isinstance(prs_raw, Mapping):
        raise GithubApiError("response is missing issue or pull request contributions")

    return ActivitySnapshot(
        total_commits=total,
        issues=_parse_items(issues_raw.get("nodes"), "issue"),
        pull_requests=_parse_items(prs_raw.get("nodes"), "pullRequest"),
        rate_limit=_parse_rate_limit(data.get("rateLimit")),
    )


class GithubClient:
    """Fetch the token owner's contribution activity from the GitHub GraphQL API.

    The token needs the `read:user` scope, plus `repo` for private contributions.
    """

    def __init__(
        self,
        token: str,
        *,
        session: Optional[requests.Session] = None,
        api_url: str = GITHUB_GRAPHQL_URL,
        timeout_s: float = 10.0,
    ) -> None:
        if not token:
            raise ValueError("GitHub token must be non-empty")
        self.token = token
        self.session = session or requests.Session()
        self.api_url = api_url
        self.timeout_s = timeout_s

    def fetch_activity(self, start: datetime, end: datetime, max_events: int) -> ActivitySnapshot:
        """Fetch commit count, issues and pull requests for [start, end]."""

        logger.debug("fetching activity from %s to %s", start.isoformat(), end.isoformat())
        resp = self.session.post(
            self.api_url,
            headers={"Authorization": f"Bearer {self.token}"},
            json={
                "query": ACTIVITY_QUERY,
                "variables": {
                    "startTime": _iso_millis(start),
                    "endTime": _iso_millis(end),
                    "first": int(max_events),
                },
            },
            timeout=self.timeout_s,
        )

        if resp.status_code == 429:
            ra = _parse_retry_after_seconds(resp.headers)
            raise RateLimited("github rate limited (429)", retry_after_s=ra)
        if not 200 <= resp.status_code < 300:
            raise GithubApiError(f"github request failed: {resp.status_code} {resp.text[:200]}")

        body = resp.json()
        if not isinstance(body, Mapping):
            raise GithubApiError("github response was not a JSON object")

        errors = body.get("errors")
        if errors:
            messages = []
            for err in errors if isinstance(errors, list) else [errors]:
                if isinstance(err, Mapping):
                    if err.get("type") == "RATE_LIMITED":
                        raise RateLimited(f"github rate limited: {err.get('message')}")
                    messages.append(str(err.get("message")))
                else:
                    messages.append(str(err))
            raise GithubApiError("github graphql errors: " + "; ".join(messages))

        data = body.get("data")
        if not isinstance(data, Mapping):
            raise GithubApiError("github response is missing 'data'")
        return parse_activity_response(data)

    def fetch_activity_for_month(self, max_events: int, *, now: Optional[datetime] = None) -> ActivitySnapshot:
        start, end = month_bounds(now or datetime.now(timezone.utc))
        return self.fetch_activity(start, end, max_events)

    def close(self) -> None:
        self.session.close()


def utc_month_index(now: datetime) -> int:
    """Zero-based month (0-11) of now in UTC."""

    return now.astimezone(timezone.utc).month - 1
