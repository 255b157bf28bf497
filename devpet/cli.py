from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import Callable, Iterable, List, Optional, TextIO

import serial

from devpet.channel import CommandChannel
from devpet.config import ConfigError, Settings, load_dotenv_files, load_settings
from devpet.github_client import GithubClient
from devpet.github_state import GithubState
from devpet.observability import configure_logging, parse_log_level
from devpet.poll_loop import PollLoop, github_job, spotify_job, token_refresh_job
from devpet.protocol import CommandNameError
from devpet.spotify_client import NowPlayingTracker, SpotifyClient, format_music_payload
from devpet.state_store import StateFileError
from devpet.transport import SerialLineTransport

logger = logging.getLogger("devpet.cli")

EXIT_OK = 0
EXIT_STARTUP_ERROR = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devpet",
        description="DevPet backend: serial link to the pet plus GitHub/Spotify activity polling",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Open the serial link and run the poll loop")

    gh = sub.add_parser("github-test", help="Poll GitHub only and print every step result")
    gh.add_argument("--interval-s", type=float, default=None, help="Seconds between polls")

    sp = sub.add_parser("spotify-test", help="Poll Spotify only and print the playing track")
    sp.add_argument("--interval-s", type=float, default=None, help="Seconds between polls")

    sub.add_parser("console", help="Send commands typed on stdin to the pet")
    return parser


def _install_signal_handlers(loop: PollLoop) -> None:
    def _handle(signum: int, _frame: object) -> None:
        logger.info("received signal %s; stopping", signum)
        loop.stop()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


def _build_github_state(settings: Settings) -> tuple[GithubState, GithubClient]:
    client = GithubClient(settings.require_github_token())
    return GithubState(client, path=settings.github_state_path, max_events=settings.max_events), client


def _build_spotify_client(settings: Settings) -> SpotifyClient:
    client_id, client_secret = settings.require_spotify_credentials()
    client = SpotifyClient(
        client_id,
        client_secret,
        refresh_token=settings.spotify_refresh_token,
        state_path=settings.spotify_state_path,
    )
    if not client.refresh_token:
        client.close()
        raise ConfigError(
            "DEVPET_SPOTIFY_REFRESH_TOKEN (or spotify_refresh_token in the config file, "
            f"or a stored token in {settings.spotify_state_path}) is required"
        )
    return client


def _open_channel(settings: Settings) -> tuple[CommandChannel, SerialLineTransport]:
    transport = SerialLineTransport.open(settings.require_serial_port(), baud_rate=settings.serial_baud)
    channel = CommandChannel(transport, debug=settings.debug_channel)
    transport.start()
    return channel, transport


def cmd_run(settings: Settings) -> int:
    engine, github = _build_github_state(settings)
    spotify = _build_spotify_client(settings) if settings.spotify_enabled else None

    try:
        channel, _transport = _open_channel(settings)
    except serial.SerialException as exc:
        logger.error("failed to open serial port %s: %s", settings.serial_port, exc)
        github.close()
        if spotify is not None:
            spotify.close()
        return EXIT_STARTUP_ERROR

    loop = PollLoop()
    loop.add_job("github", settings.github_poll_interval_s, github_job(engine, channel))
    if spotify is not None:
        loop.add_job("spotify", settings.spotify_poll_interval_s, spotify_job(NowPlayingTracker(spotify), channel))
        loop.add_job(
            "spotify-token",
            settings.token_refresh_interval_s,
            token_refresh_job(spotify),
            run_immediately=False,
        )

    logger.info(
        "devpet started serial=%s github_state=%s spotify=%s",
        settings.serial_port,
        settings.github_state_path,
        "enabled" if spotify is not None else "disabled",
    )

    _install_signal_handlers(loop)
    try:
        loop.run()
    finally:
        channel.close()
        github.close()
        if spotify is not None:
            spotify.close()
    return EXIT_OK


def _print_job(fn: Callable[[], object], out: TextIO, prefix: str) -> Callable[[], None]:
    def _run() -> None:
        result = fn()
        print(f"[{prefix}] {result}", file=out, flush=True)

    return _run


def cmd_github_test(settings: Settings, interval_s: Optional[float], out: TextIO = sys.stdout) -> int:
    engine, github = _build_github_state(settings)
    loop = PollLoop()
    loop.add_job("github-test", interval_s or settings.github_poll_interval_s, _print_job(engine.step, out, "github"))
    _install_signal_handlers(loop)
    try:
        loop.run()
    finally:
        github.close()
    return EXIT_OK


def cmd_spotify_test(settings: Settings, interval_s: Optional[float], out: TextIO = sys.stdout) -> int:
    client = _build_spotify_client(settings)

    def _describe() -> str:
        track = client.get_playing_track()
        return "nothing playing" if track is None else format_music_payload(track)

    loop = PollLoop()
    loop.add_job("spotify-test", interval_s or settings.spotify_poll_interval_s, _print_job(_describe, out, "spotify"))
    _install_signal_handlers(loop)
    try:
        loop.run()
    finally:
        client.close()
    return EXIT_OK


def run_console(channel: CommandChannel, lines: Iterable[str], out: TextIO = sys.stdout) -> int:
    """Send `name payload` lines to the pet until EOF or `exit`. Returns the count sent."""

    sent = 0
    for raw in lines:
        line = raw.strip()
        if not line:
            continue
        if line == "exit":
            break
        name, _, payload = line.partition(" ")
        try:
            ok = channel.send(name, payload.strip())
        except CommandNameError as exc:
            print(f"[console] {exc}", file=out, flush=True)
            continue
        if ok:
            sent += 1
        else:
            print("[console] send failed; link degraded", file=out, flush=True)
    return sent


def cmd_console(settings: Settings) -> int:
    try:
        channel, _transport = _open_channel(settings)
    except serial.SerialException as exc:
        logger.error("failed to open serial port %s: %s", settings.serial_port, exc)
        return EXIT_STARTUP_ERROR

    try:
        run_console(channel, sys.stdin)
    except KeyboardInterrupt:
        pass
    finally:
        channel.close()
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    load_dotenv_files()
    try:
        settings = load_settings()
    except ConfigError as exc:
        print(f"[devpet] invalid config: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    configure_logging(level=parse_log_level(settings.log_level), log_format=settings.log_format)

    try:
        if args.command == "run":
            return cmd_run(settings)
        if args.command == "github-test":
            return cmd_github_test(settings, args.interval_s)
        if args.command == "spotify-test":
            return cmd_spotify_test(settings, args.interval_s)
        if args.command == "console":
            return cmd_console(settings)
    except (ConfigError, StateFileError) as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG_ERROR

    return EXIT_STARTUP_ERROR
