from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import requests

from devpet.state_store import load_state_record, save_state_record

logger = logging.getLogger("devpet.spotify")

SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
SPOTIFY_API_URL = "https://api.spotify.com/v1"

DEFAULT_STATE_PATH = Path("./spotify-state.json")

# Refresh a little before the advertised expiry.
_EXPIRY_MARGIN_S = 60.0

TimeFn = Callable[[], float]


class SpotifyAuthError(RuntimeError):
    """Raised when no usable access token can be obtained."""


class SpotifyApiError(RuntimeError):
    """Raised when the Spotify Web API returns an unexpected response."""


@dataclass(frozen=True)
class NowPlaying:
    track: str
    artists: Tuple[str, ...]


def _one_line(text: str) -> str:
    return text.replace("\r", " ").replace("\n", " ").strip()


def format_music_payload(now_playing: NowPlaying) -> str:
    """`trackName^artist1, artist2`, the payload of the `music-play` command.

    Line breaks become spaces. Accented letters are sent without their accents
    by `encode`; other non-ASCII characters arrive at the pet as `?`.
    """

    track = _one_line(now_playing.track.replace("^", " "))
    artists = ", ".join(_one_line(a) for a in now_playing.artists)
    return f"{track}^{artists}"


def parse_currently_playing(body: Mapping[str, Any]) -> Optional[NowPlaying]:
    item = body.get("item")
    if not isinstance(item, Mapping):
        # Ads and some podcast states come back without an item.
        return None
    name = item.get("name")
    if not isinstance(name, str):
        raise SpotifyApiError("currently-playing item has no name")

    artists_raw = item.get("artists")
    artists = []
    if isinstance(artists_raw, list):
        for a in artists_raw:
            if isinstance(a, Mapping) and isinstance(a.get("name"), str):
                artists.append(a["name"])
    return NowPlaying(track=name, artists=tuple(artists))


class SpotifyClient:
    """Minimal Spotify Web API client for the currently playing track.

    The refresh token comes from configuration (it is obtained once through
    Spotify's authorization-code flow) or from the persisted token state, which
    also caches the current access token between runs.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        refresh_token: Optional[str] = None,
        state_path: Path = DEFAULT_STATE_PATH,
        session: Optional[requests.Session] = None,
        timeout_s: float = 10.0,
        time_fn: TimeFn | None = None,
    ) -> None:
        if not client_id or not client_secret:
            raise ValueError("Spotify client id and client secret must be non-empty")
        self.client_id = client_id
        self.client_secret = client_secret
        self.state_path = state_path
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self._time_fn = time_fn or time.time

        self.refresh_token: Optional[str] = refresh_token
        self.access_token: Optional[str] = None
        self.expires_at: float = 0.0
        self._load_state()

    def refresh_access_token(self) -> None:
        if not self.refresh_token:
            raise SpotifyAuthError("no Spotify refresh token available")

        resp = self.session.post(
            SPOTIFY_TOKEN_URL,
            auth=(self.client_id, self.client_secret),
            data={
                "grant_type": "refresh_token",
                "refresh_token": self.refresh_token,
                "client_id": self.client_id,
            },
            timeout=self.timeout_s,
        )
        if not 200 <= resp.status_code < 300:
            raise SpotifyAuthError(f"failed to refresh token: {resp.status_code} {resp.text[:200]}")

        data = resp.json()
        token = data.get("access_token") if isinstance(data, Mapping) else None
        if not isinstance(token, str) or not token:
            raise SpotifyAuthError("token response is missing access_token")

        self.access_token = token
        expires_in = data.get("expires_in")
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
            self.expires_at = self._time_fn() + float(expires_in)
        else:
            self.expires_at = self._time_fn() + 3600.0
        # Spotify may rotate the refresh token.
        rotated = data.get("refresh_token")
        if isinstance(rotated, str) and rotated:
            self.refresh_token = rotated

        self._save_state()
        logger.info("spotify access token refreshed")

    def get_playing_track(self) -> Optional[NowPlaying]:
        """Return the currently playing track, or None when nothing is playing."""

        self._ensure_token()
        resp = self._get_currently_playing()
        if resp.status_code == 401:
            self.refresh_access_token()
            resp = self._get_currently_playing()

        if resp.status_code == 204:
            return None
        if not 200 <= resp.status_code < 300:
            raise SpotifyApiError(f"currently-playing failed: {resp.status_code} {resp.text[:200]}")

        body = resp.json()
        if not isinstance(body, Mapping):
            raise SpotifyApiError("currently-playing response was not a JSON object")
        if body.get("is_playing") is False:
            return None
        return parse_currently_playing(body)

    def close(self) -> None:
        self.session.close()

    def _get_currently_playing(self) -> requests.Response:
        return self.session.get(
            f"{SPOTIFY_API_URL}/me/player/currently-playing",
            headers={"Authorization": f"Bearer {self.access_token}"},
            timeout=self.timeout_s,
        )

    def _ensure_token(self) -> None:
        if self.access_token and self._time_fn() < self.expires_at - _EXPIRY_MARGIN_S:
            return
        self.refresh_access_token()

    def _load_state(self) -> None:
        data = load_state_record(self.state_path)
        if data is None:
            return

        stored_refresh = data.get("refreshToken")
        if isinstance(stored_refresh, str) and stored_refresh:
            self.refresh_token = stored_refresh

        token = data.get("token")
        if isinstance(token, Mapping):
            access = token.get("access_token")
            expires_at = token.get("expires_at")
            if isinstance(access, str) and isinstance(expires_at, (int, float)):
                self.access_token = access
                self.expires_at = float(expires_at)

    def _save_state(self) -> None:
        record: Dict[str, Any] = {
            "refreshToken": self.refresh_token,
            "token": {
                "access_token": self.access_token,
                "expires_at": self.expires_at,
            },
        }
        save_state_record(self.state_path, record)


class NowPlayingTracker:
    """Report a track only when it differs from the last reported one."""

    def __init__(self, client: SpotifyClient) -> None:
        self.client = client
        self.last: Optional[NowPlaying] = None

    def step(self) -> Optional[NowPlaying]:
        current = self.client.get_playing_track()
        if current == self.last:
            return None
        # Stopping playback clears the marker so a replay of the same track is reported.
        self.last = current
        return current
