from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from devpet.channel import CommandChannel
from devpet.github_client import ActivitySnapshot, ContributionItem, RateLimited
from devpet.github_state import DeltaEvent, GithubState
from devpet.poll_loop import PollLoop, forward_delta, github_job, spotify_job
from devpet.spotify_client import NowPlaying


class _Transport:
    def __init__(self) -> None:
        self.written: List[bytes] = []

    def write(self, data: bytes) -> None:
        self.written.append(data)

    def set_line_handler(self, handler: Callable[[bytes], None]) -> None:
        return None

    def set_error_handler(self, handler: Callable[[BaseException], None]) -> None:
        return None

    def close(self) -> None:
        return None


class _Clock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_forward_delta_sends_one_command_per_event() -> None:
    transport = _Transport()
    channel = CommandChannel(transport)

    sent = forward_delta(
        channel,
        DeltaEvent(new_commits=3, new_issues=("Fix bug", "Crash"), new_pull_requests=("Add mood",)),
    )

    assert sent == 4
    assert transport.written == [
        b"new-commits 3\n",
        b"new-issue Fix bug\n",
        b"new-issue Crash\n",
        b"new-pr Add mood\n",
    ]


def test_forward_empty_delta_sends_nothing() -> None:
    transport = _Transport()
    assert forward_delta(CommandChannel(transport), DeltaEvent(new_commits=0)) == 0
    assert transport.written == []


def test_github_job_steps_engine_and_forwards() -> None:
    class _Engine:
        def step(self) -> DeltaEvent:
            return DeltaEvent(new_commits=1)

    transport = _Transport()
    github_job(_Engine(), CommandChannel(transport))()  # type: ignore[arg-type]
    assert transport.written == [b"new-commits 1\n"]


def test_github_job_forwards_every_event_when_titles_contain_line_breaks(tmp_path: Path) -> None:
    provider_snapshot = ActivitySnapshot(
        total_commits=0,
        issues=(
            ContributionItem(title="bad\rtitle", created_at=datetime(2026, 3, 2, tzinfo=timezone.utc)),
            ContributionItem(title="good", created_at=datetime(2026, 3, 1, tzinfo=timezone.utc)),
        ),
    )

    class _Provider:
        def fetch_activity(self, start: datetime, end: datetime, max_events: int) -> ActivitySnapshot:
            return provider_snapshot

    engine = GithubState(
        _Provider(),
        path=tmp_path / "github-state.json",
        now_fn=lambda: datetime(2026, 3, 10, tzinfo=timezone.utc),
    )
    transport = _Transport()
    github_job(engine, CommandChannel(transport))()

    assert transport.written == [b"new-issue bad title\n", b"new-issue good\n"]



def test_spotify_job_sends_music_play_on_change() -> None:
    class _Tracker:
        def __init__(self) -> None:
            self.values: List[Optional[NowPlaying]] = [NowPlaying("Harder", ("Daft Punk",)), None]

        def step(self) -> Optional[NowPlaying]:
            return self.values.pop(0)

    transport = _Transport()
    job = spotify_job(_Tracker(), CommandChannel(transport))  # type: ignore[arg-type]
    job()
    job()
    assert transport.written == [b"music-play Harder^Daft Punk\n"]


def test_jobs_run_when_due() -> None:
    clock = _Clock()
    calls: List[str] = []
    loop = PollLoop(time_fn=clock)
    loop.add_job("fast", 10, lambda: calls.append("fast"))
    loop.add_job("slow", 30, lambda: calls.append("slow"), run_immediately=False)

    assert loop.run_pending() == 10
    clock.now = 10
    loop.run_pending()
    clock.now = 30
    loop.run_pending()

    assert calls == ["fast", "fast", "fast", "slow"]


def test_failing_job_is_isolated_and_retried() -> None:
    clock = _Clock()
    attempts: List[int] = []

    def _flaky() -> None:
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("network down")

    loop = PollLoop(time_fn=clock)
    job = loop.add_job("flaky", 5, _flaky)

    loop.run_pending()
    assert job.failures == 1
    assert job.next_run_at == 5

    clock.now = 5
    loop.run_pending()
    assert job.failures == 0
    assert len(attempts) == 2


def test_retry_after_delays_next_run() -> None:
    clock = _Clock()

    def _limited() -> None:
        raise RateLimited("slow down", retry_after_s=120)

    loop = PollLoop(time_fn=clock)
    job = loop.add_job("github", 60, _limited)
    loop.run_pending()

    assert job.next_run_at == 120


def test_run_returns_after_stop() -> None:
    loop = PollLoop()
    calls: List[int] = []

    def _once() -> None:
        calls.append(1)
        loop.stop()

    loop.add_job("once", 3600, _once)
    loop.run()

    assert calls == [1]
    assert loop.stopped is True
