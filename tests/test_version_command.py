from __future__ import annotations

import sys

import pytest
from typer.testing import CliRunner

from codeloop.cli import app, main

runner = CliRunner()


def test_version_command_runs() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "codeloop version" in result.stdout


def test_version_flag_routes_to_command(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr(sys, "argv", ["codeloop", "--version"])

    with pytest.raises(SystemExit) as exc:
        main()

    assert exc.value.code == 0
    assert "codeloop version" in capsys.readouterr().out
