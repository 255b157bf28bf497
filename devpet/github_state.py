from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence, Tuple

from devpet.github_client import (
    ActivitySnapshot,
    ContributionItem,
    RateLimitInfo,
    month_bounds,
    parse_github_datetime,
    utc_month_index,
)
from devpet.state_store import StateFileError, load_state_record, save_state_record

logger = logging.getLogger("devpet.github")

NowFn = Callable[[], datetime]

DEFAULT_STATE_PATH = Path("./github-state.json")

# Upper bound of issues/PRs fetched per poll. More new events than this within
# one poll interval are not detected.
DEFAULT_MAX_EVENTS = 20


class ActivityProvider(Protocol):
    def fetch_activity(self, start: datetime, end: datetime, max_events: int) -> ActivitySnapshot: ...


@dataclass(frozen=True)
class DiffState:
    previous_commit_count: int
    current_month: int
    last_issue_at: Optional[datetime] = None
    last_pull_request_at: Optional[datetime] = None


@dataclass(frozen=True)
class DeltaEvent:
    new_commits: int
    new_issues: Tuple[str, ...] = ()
    new_pull_requests: Tuple[str, ...] = ()
    rate_limit: Optional[RateLimitInfo] = field(default=None, compare=False)

    @property
    def empty(self) -> bool:
        return self.new_commits == 0 and not self.new_issues and not self.new_pull_requests


class GithubState:
    """Turn successive GitHub activity snapshots into "new since last time" deltas.

    GitHub's contribution counters are scoped to the requested range, which is
    always the current UTC month, so the stored commit baseline is only valid
    while the stored month matches the current one. State is written after
    every successful step(); a failed fetch leaves both memory and disk as
    they were.

    Not safe for concurrent step() calls.
    """

    def __init__(
        self,
        provider: ActivityProvider,
        *,
        path: Path = DEFAULT_STATE_PATH,
        max_events: int = DEFAULT_MAX_EVENTS,
        now_fn: NowFn | None = None,
    ) -> None:
        self.provider = provider
        self.path = path
        self.max_events = max_events
        self._now_fn = now_fn or _utcnow
        self._state = self._load_or_default()

    @property
    def state(self) -> DiffState:
        return self._state

    def step(self) -> DeltaEvent:
        now = self._now_fn()
        start, end = month_bounds(now)
        snapshot = self.provider.fetch_activity(start, end, self.max_events)

        state = self._state
        month = utc_month_index(now)
        if state.current_month != month:
            logger.info("month changed (%s -> %s); resetting commit baseline", state.current_month, month)
            state = replace(state, previous_commit_count=0, current_month=month)

        new_commits = max(0, snapshot.total_commits - state.previous_commit_count)
        if new_commits > 0:
            logger.info("new commits detected: %s (%s total)", new_commits, snapshot.total_commits)
            state = replace(state, previous_commit_count=snapshot.total_commits)

        new_issues = _newer_than(snapshot.issues, state.last_issue_at)
        if new_issues:
            logger.info("new issues detected: %s", len(new_issues))
            state = replace(state, last_issue_at=max(i.created_at for i in new_issues))

        new_prs = _newer_than(snapshot.pull_requests, state.last_pull_request_at)
        if new_prs:
            logger.info("new pull requests detected: %s", len(new_prs))
            state = replace(state, last_pull_request_at=max(p.created_at for p in new_prs))

        save_state_record(self.path, _state_to_record(state))
        self._state = state

        if snapshot.rate_limit is not None:
            rl = snapshot.rate_limit
            logger.debug(
                "rate limit remaining=%s/%s used=%s reset_at=%s",
                rl.remaining,
                rl.limit,
                rl.used,
                rl.reset_at,
                extra={"fields": {"rate_limit_remaining": rl.remaining, "rate_limit_limit": rl.limit}},
            )

        return DeltaEvent(
            new_commits=new_commits,
            new_issues=tuple(_clean_title(i.title) for i in new_issues),
            new_pull_requests=tuple(_clean_title(p.title) for p in new_prs),
            rate_limit=snapshot.rate_limit,
        )

    def _load_or_default(self) -> DiffState:
        record = load_state_record(self.path)
        if record is None:
            return DiffState(previous_commit_count=0, current_month=utc_month_index(self._now_fn()))
        return _state_from_record(record, origin=str(self.path))


def _newer_than(items: Sequence[ContributionItem], mark: Optional[datetime]) -> Tuple[ContributionItem, ...]:
    if mark is None:
        return tuple(items)
    return tuple(item for item in items if item.created_at > mark)


def _clean_title(title: str) -> str:
    return title.replace("`", "").replace("\r", " ").replace("\n", " ").strip()


def _format_dt(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _state_to_record(state: DiffState) -> dict[str, Any]:
    return {
        "previousCommitCount": state.previous_commit_count,
        "currentMonth": state.current_month,
        "lastFetchedIssueDate": _format_dt(state.last_issue_at),
        "lastFetchedPullRequestDate": _format_dt(state.last_pull_request_at),
    }


def _require_count(record: Mapping[str, Any], key: str, *, origin: str) -> int:
    v = record.get(key, 0)
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        raise StateFileError(f"{origin}: '{key}' must be a non-negative int")
    return v


def _optional_dt(record: Mapping[str, Any], key: str, *, origin: str) -> Optional[datetime]:
    v = record.get(key)
    if v is None:
        return None
    if not isinstance(v, str):
        raise StateFileError(f"{origin}: '{key}' must be an ISO-8601 string or null")
    try:
        return parse_github_datetime(v)
    except ValueError as exc:
        raise StateFileError(f"{origin}: '{key}' is not a valid ISO-8601 timestamp") from exc


def _state_from_record(record: Mapping[str, Any], *, origin: str) -> DiffState:
    month = _require_count(record, "currentMonth", origin=origin)
    if month > 11:
        raise StateFileError(f"{origin}: 'currentMonth' must be between 0 and 11")
    return DiffState(
        previous_commit_count=_require_count(record, "previousCommitCount", origin=origin),
        current_month=month,
        last_issue_at=_optional_dt(record, "lastFetchedIssueDate", origin=origin),
        last_pull_request_at=_optional_dt(record, "lastFetchedPullRequestDate", origin=origin),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
