from __future__ import annotations

import io
import json
from pathlib import Path
from typing import Callable, List

import pytest

from devpet import cli
from devpet.channel import CommandChannel


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


def test_parser_subcommands() -> None:
    parser = cli.build_parser()
    assert parser.parse_args(["run"]).command == "run"
    args = parser.parse_args(["github-test", "--interval-s", "5"])
    assert args.command == "github-test"
    assert args.interval_s == 5.0
    assert parser.parse_args(["spotify-test"]).interval_s is None
    with pytest.raises(SystemExit):
        parser.parse_args([])


def test_console_sends_until_exit() -> None:
    transport = _Transport()
    channel = CommandChannel(transport)
    out = io.StringIO()

    sent = cli.run_console(
        channel,
        ["ping\n", "\n", "log [INFO] hello\n", "Bad Name\n", "exit\n", "ping\n"],
        out=out,
    )

    assert sent == 2
    assert transport.written == [b"ping\n", b"log [INFO] hello\n"]
    assert "invalid command name" in out.getvalue()


@pytest.fixture
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    for name in (
        "DEVPET_CONFIG_PATH",
        "DEVPET_GITHUB_TOKEN",
        "DEVPET_SERIAL_PORT",
        "DEVPET_SPOTIFY_CLIENT_ID",
        "DEVPET_SPOTIFY_CLIENT_SECRET",
        "DEVPET_SPOTIFY_REFRESH_TOKEN",
        "DEVPET_SPOTIFY_STATE_PATH",
        "DEVPET_LOG_FORMAT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(cli, "load_dotenv_files", lambda: None)
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)
    return tmp_path


def test_missing_github_token_exits_with_config_error(_isolated_env: Path) -> None:
    assert cli.main(["github-test"]) == cli.EXIT_CONFIG_ERROR


def test_missing_spotify_credentials_exits_with_config_error(_isolated_env: Path) -> None:
    assert cli.main(["spotify-test"]) == cli.EXIT_CONFIG_ERROR


def test_missing_spotify_refresh_token_exits_with_config_error(
    _isolated_env: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("DEVPET_SPOTIFY_CLIENT_ID", "id")
    monkeypatch.setenv("DEVPET_SPOTIFY_CLIENT_SECRET", "secret")
    assert cli.main(["spotify-test"]) == cli.EXIT_CONFIG_ERROR


def test_stored_spotify_refresh_token_satisfies_startup(
    _isolated_env: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    (_isolated_env / "spotify-state.json").write_text(json.dumps({"refreshToken": "stored"}), encoding="utf-8")
    monkeypatch.setenv("DEVPET_SPOTIFY_CLIENT_ID", "id")
    monkeypatch.setenv("DEVPET_SPOTIFY_CLIENT_SECRET", "secret")

    client = cli._build_spotify_client(cli.load_settings())
    try:
        assert client.refresh_token == "stored"
    finally:
        client.close()



def test_invalid_config_exits_with_config_error(_isolated_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEVPET_LOG_FORMAT", "xml")
    assert cli.main(["run"]) == cli.EXIT_CONFIG_ERROR


def test_corrupted_state_exits_with_config_error(_isolated_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (_isolated_env / "github-state.json").write_text("{broken", encoding="utf-8")
    monkeypatch.setenv("DEVPET_GITHUB_TOKEN", "ghp_abc")
    assert cli.main(["github-test"]) == cli.EXIT_CONFIG_ERROR


def test_github_test_prints_step_results(_isolated_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from devpet.github_client import ActivitySnapshot

    monkeypatch.setenv("DEVPET_GITHUB_TOKEN", "ghp_abc")
    monkeypatch.setattr(cli, "_install_signal_handlers", lambda loop: None)

    def _fetch(self, start, end, max_events):  # type: ignore[no-untyped-def]
        return ActivitySnapshot(total_commits=3)

    monkeypatch.setattr("devpet.github_client.GithubClient.fetch_activity", _fetch)

    out = io.StringIO()
    settings = cli.load_settings()

    real_print_job = cli._print_job

    def _print_once(fn, stream, prefix):  # type: ignore[no-untyped-def]
        job = real_print_job(fn, stream, prefix)

        def _run() -> None:
            job()
            raise KeyboardInterrupt

        return _run

    monkeypatch.setattr(cli, "_print_job", _print_once)
    with pytest.raises(KeyboardInterrupt):
        cli.cmd_github_test(settings, 1.0, out=out)

    assert "[github] DeltaEvent(new_commits=3" in out.getvalue()
    saved = json.loads((_isolated_env / "github-state.json").read_text(encoding="utf-8"))
    assert saved["previousCommitCount"] == 3
