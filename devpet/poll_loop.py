from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from devpet.channel import CommandChannel
from devpet.github_state import DeltaEvent, GithubState
from devpet.spotify_client import NowPlayingTracker, SpotifyClient, format_music_payload

logger = logging.getLogger("devpet.poll")

TimeFn = Callable[[], float]


def forward_delta(channel: CommandChannel, delta: DeltaEvent) -> int:
    """Send one DeltaEvent to the pet. Returns the number of commands sent."""

    sent = 0
    if delta.new_commits > 0:
        channel.send("new-commits", str(delta.new_commits))
        sent += 1
    for title in delta.new_issues:
        channel.send("new-issue", title)
        sent += 1
    for title in delta.new_pull_requests:
        channel.send("new-pr", title)
        sent += 1
    return sent


def github_job(engine: GithubState, channel: CommandChannel) -> Callable[[], None]:
    def _run() -> None:
        delta = engine.step()
        forward_delta(channel, delta)

    return _run


def spotify_job(tracker: NowPlayingTracker, channel: CommandChannel) -> Callable[[], None]:
    def _run() -> None:
        track = tracker.step()
        if track is not None:
            channel.send("music-play", format_music_payload(track))

    return _run


def token_refresh_job(client: SpotifyClient) -> Callable[[], None]:
    return client.refresh_access_token


@dataclass
class PeriodicJob:
    name: str
    interval_s: float
    fn: Callable[[], None]
    next_run_at: float = 0.0
    failures: int = 0


class PollLoop:
    """Run periodic jobs cooperatively on a single thread.

    A job is never started while its previous run is still in progress, so
    engine steps are serialized. A failing job is logged and retried at its
    next tick (or later, when the error carries `retry_after_s`).
    """

    def __init__(
        self,
        jobs: Sequence[PeriodicJob] = (),
        *,
        time_fn: TimeFn | None = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.jobs: List[PeriodicJob] = list(jobs)
        self._time_fn = time_fn or time.monotonic
        self._stop = stop_event or threading.Event()

    def add_job(self, name: str, interval_s: float, fn: Callable[[], None], *, run_immediately: bool = True) -> PeriodicJob:
        if interval_s <= 0:
            raise ValueError(f"interval for job {name!r} must be > 0")
        first = 0.0 if run_immediately else self._time_fn() + interval_s
        job = PeriodicJob(name=name, interval_s=interval_s, fn=fn, next_run_at=first)
        self.jobs.append(job)
        return job

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_pending(self) -> float:
        """Run every due job once. Returns seconds until the next job is due."""

        for job in self.jobs:
            if self._stop.is_set():
                break
            if self._time_fn() < job.next_run_at:
                continue
            self._run_job(job)

        if not self.jobs:
            return 1.0
        now = self._time_fn()
        return max(0.0, min(job.next_run_at for job in self.jobs) - now)

    def run(self) -> None:
        logger.info("poll loop started jobs=%s", [job.name for job in self.jobs])
        while not self._stop.is_set():
            wait_s = self.run_pending()
            self._stop.wait(wait_s)
        logger.info("poll loop stopped")

    def _run_job(self, job: PeriodicJob) -> None:
        started = self._time_fn()
        try:
            job.fn()
        except Exception as exc:
            job.failures += 1
            delay = job.interval_s
            retry_after_s = getattr(exc, "retry_after_s", None)
            if isinstance(retry_after_s, (int, float)):
                delay = max(delay, float(retry_after_s))
            job.next_run_at = self._time_fn() + delay
            logger.error("job %s failed (failures=%s, retry in %.1fs): %r", job.name, job.failures, delay, exc)
            return

        job.failures = 0
        # Schedule from the start of the run so slow fetches don't drift the cadence.
        job.next_run_at = max(started + job.interval_s, self._time_fn())
