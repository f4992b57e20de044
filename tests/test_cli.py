"""
tests/test_cli.py -- Tests for the main.py administration CLI.

Each test runs main() against a fresh SQLite file under tmp_path and checks
the exit code plus what an operator would see on stdout.
"""

from __future__ import annotations

import json

import pytest

from main import main


@pytest.fixture()
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'admin.db'}"


def _run(db_url: str, *argv: str) -> int:
    return main(["--db-url", db_url, *argv])


def test_add_and_show_user(db_url, capsys) -> None:
    assert _run(db_url, "users", "add", "user_1", "alice@example.com") == 0
    assert _run(db_url, "users", "show", "alice@example.com") == 0
    out = capsys.readouterr().out
    assert "Created user user_1 <alice@example.com>" in out
    assert "active" in out


def test_duplicate_user(db_url, capsys) -> None:
    _run(db_url, "users", "add", "user_1", "alice@example.com")
    assert _run(db_url, "users", "add", "user_2", "alice@example.com") == 1
    assert "[!]" in capsys.readouterr().out


def test_delete_user(db_url, capsys) -> None:
    _run(db_url, "users", "add", "user_1", "alice@example.com")
    assert _run(db_url, "users", "delete", "user_1") == 0
    assert _run(db_url, "users", "delete", "nobody") == 1
    _run(db_url, "users", "show", "alice@example.com")
    assert "deleted" in capsys.readouterr().out


def test_show_unknown_user(db_url) -> None:
    assert _run(db_url, "users", "show", "nobody@example.com") == 1


def test_key_lifecycle(db_url, capsys) -> None:
    _run(db_url, "users", "add", "user_1", "alice@example.com")
    capsys.readouterr()

    assert _run(db_url, "keys", "create", "user_1", "CI pipeline", "--expires-in-days", "90") == 0
    raw_key = next(line.strip() for line in capsys.readouterr().out.splitlines() if line.strip().startswith("wtyk_"))
    assert len(raw_key) == 69

    assert _run(db_url, "keys", "list", "user_1", "--json") == 0
    keys = json.loads(capsys.readouterr().out)
    assert len(keys) == 1
    assert keys[0]["name"] == "CI pipeline"
    assert keys[0]["key_prefix"] == raw_key[:16]
    assert keys[0]["expires_at"] is not None
    assert raw_key not in json.dumps(keys)

    assert _run(db_url, "keys", "revoke", "user_2", keys[0]["id"]) == 1
    assert _run(db_url, "keys", "revoke", "user_1", keys[0]["id"]) == 0
    capsys.readouterr()

    _run(db_url, "keys", "list", "user_1")
    assert "revoked" in capsys.readouterr().out


def test_create_key_for_deleted_user(db_url, capsys) -> None:
    _run(db_url, "users", "add", "user_1", "alice@example.com")
    _run(db_url, "users", "delete", "user_1")
    assert _run(db_url, "keys", "create", "user_1", "ci") == 1
    assert "No active user" in capsys.readouterr().out


def test_list_empty(db_url, capsys) -> None:
    assert _run(db_url, "keys", "list", "user_1") == 0
    assert "No API keys" in capsys.readouterr().out


def test_subcommand_required() -> None:
    with pytest.raises(SystemExit):
        main([])
