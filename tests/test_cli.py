"""
tests/test_cli.py -- Tests for the operator CLI in main.py.

Each test points DATABASE_URL at a fresh SQLite file and clears the
get_settings() cache around the run.
"""

from __future__ import annotations

import pytest

import main
from core.config import get_settings


@pytest.fixture
def cli_db(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_no_command_prints_help(capsys) -> None:
    assert main.main([]) == 2
    assert "seed-catalog" in capsys.readouterr().out


def test_check_config(cli_db, capsys) -> None:
    assert main.main(["check-config"]) == 0
    assert "Database ............ ok" in capsys.readouterr().out


def test_seed_is_idempotent(cli_db, capsys) -> None:
    assert main.main(["seed-catalog"]) == 0
    first = capsys.readouterr().out
    assert "super_admin" in first
    assert main.main(["seed-catalog"]) == 0
    assert "0 new grant(s)." in capsys.readouterr().out


def test_bootstrap_invite(cli_db, capsys) -> None:
    main.main(["seed-catalog"])
    capsys.readouterr()

    assert main.main(["invite", "First@Example.com", "--role", "super_admin"]) == 0

    out = capsys.readouterr().out
    assert "first@example.com as super_admin" in out
    assert "Token:" in out


def test_invite_unknown_role_fails(cli_db, capsys) -> None:
    assert main.main(["invite", "x@example.com", "--role", "ghost"]) == 1
    assert "validation_error" in capsys.readouterr().err


def test_purge(cli_db, capsys) -> None:
    assert main.main(["purge"]) == 0
    assert "invitations" in capsys.readouterr().out


@pytest.mark.parametrize("email", ["a b@c", "x@y", "<script>@z", "a@b..c"])
def test_invite_malformed_email_fails(cli_db, capsys, email) -> None:
    main.main(["seed-catalog"])
    capsys.readouterr()

    assert main.main(["invite", email, "--role", "super_admin"]) == 1
    assert "validation_error" in capsys.readouterr().err
