"""Tests for the PrakritiMitra CLI."""

from typer.testing import CliRunner

from prakritimitra import __version__
from prakritimitra.auth import decode_token
from prakritimitra.cli import app
from prakritimitra.config import Settings

runner = CliRunner()


def test_version() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_token_command(monkeypatch) -> None:
    monkeypatch.setenv("PRAKRITI_JWT_SECRET", "cli-test-secret-long-enough-for-hs256")
    result = runner.invoke(app, ["token", "org-1", "--name", "Ravi", "--role", "organizer"])
    assert result.exit_code == 0

    principal = decode_token(result.output.strip(), Settings())
    assert principal.id == "org-1"
    assert principal.name == "Ravi"
    assert principal.is_organizer


def test_token_command_rejects_unknown_role() -> None:
    result = runner.invoke(app, ["token", "u1", "--role", "root"])
    assert result.exit_code == 1


def test_init_db(tmp_path, monkeypatch) -> None:
    db = tmp_path / "cli.db"
    monkeypatch.setenv("PRAKRITI_DATABASE_URL", f"sqlite+aiosqlite:///{db}")
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0
    assert db.exists()
