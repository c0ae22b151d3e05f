"""Tests for argument handling and the startup sequence."""
from __future__ import annotations

import pytest

from twinsftp import cli
from twinsftp.controller import Controller
from twinsftp.errors import SessionError
from twinsftp.settings import SettingsManager


class StubSession:
    username = "alice"
    sftp = None

    def __init__(self) -> None:
        self.closed = False

    def is_active(self) -> bool:
        return not self.closed

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def isolated(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setattr(cli, "setup_logging", lambda level, log_file: None)
    monkeypatch.setattr(cli, "SettingsManager", lambda path: SettingsManager(tmp_path / "settings.json"))


def test_parser_options() -> None:
    args = cli.build_parser().parse_args(["alice@host", "-u", "bob", "-p", "2200", "--log-level", "debug"])
    assert args.destination == "alice@host"
    assert args.user == "bob"
    assert args.port == 2200
    assert args.log_level == "debug"


def test_parser_rejects_bad_port() -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.build_parser().parse_args(["host", "-p", "99999"])
    assert excinfo.value.code == 2


def test_session_failure_exits_with_one(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    def refuse(*args, **kwargs):
        raise SessionError("unable to authenticate session for alice@host")

    monkeypatch.setattr(cli, "open_session", refuse)

    assert cli.main(["alice@host"]) == 1
    assert "Error: unable to authenticate session for alice@host" in capsys.readouterr().err


def test_successful_run_closes_session(monkeypatch: pytest.MonkeyPatch) -> None:
    session = StubSession()
    calls = {}

    def fake_open(host, username, port, **kwargs):
        calls["target"] = (host, username, port)
        return session

    def fake_run(controller, ticks):
        calls["controller"] = controller
        calls["ticks"] = ticks
        return 0

    monkeypatch.setattr(cli, "open_session", fake_open)
    monkeypatch.setattr(cli, "run_curses", fake_run)

    assert cli.main(["alice@host:2222", "-u", "bob"]) == 0
    assert calls["target"] == ("host", "bob", 2222)
    assert isinstance(calls["controller"], Controller)
    assert calls["ticks"] == 30
    assert session.closed


def test_interrupt_force_quits(monkeypatch: pytest.MonkeyPatch) -> None:
    session = StubSession()
    seen = {}

    def interrupted(controller, ticks):
        seen["controller"] = controller
        raise KeyboardInterrupt

    monkeypatch.setattr(cli, "open_session", lambda *a, **k: session)
    monkeypatch.setattr(cli, "run_curses", interrupted)

    assert cli.main(["host", "-u", "bob"]) == 130
    assert seen["controller"].is_terminated
    assert session.closed
