"""Unit tests for main.py -- operator CLI commands.

Each test points the CLI at its own on-disk SQLite file under tmp_path, since
main() opens and closes its own PrincipalStore.
"""

import pytest

import main
from auth.store import PrincipalStore
from auth.tokens import verify_password


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'cli.db'}"


def _open(db_url: str) -> PrincipalStore:
    return PrincipalStore(db_url=db_url)


def test_no_command_prints_help(capsys):
    assert main.main([]) == 0
    assert "create-admin" in capsys.readouterr().out


def test_create_admin_with_password_flag(db_url, capsys):
    rc = main.main(
        ["--database-url", db_url, "create-admin", "--username", "root", "--email", "Root@Acme.io", "--password", "adminpass"]
    )
    assert rc == 0
    assert "created" in capsys.readouterr().out

    store = _open(db_url)
    admin = store.get_admin_by_email("root@acme.io")
    store.close()
    assert admin.username == "root"
    assert verify_password("adminpass", admin.hashed_password)


def test_create_admin_prompts_for_password(db_url, monkeypatch):
    answers = iter(["adminpass", "adminpass"])
    monkeypatch.setattr(main.getpass, "getpass", lambda prompt="": next(answers))
    assert main.main(["--database-url", db_url, "create-admin", "--username", "root", "--email", "r@acme.io"]) == 0


def test_create_admin_prompt_mismatch(db_url, monkeypatch):
    answers = iter(["adminpass", "different"])
    monkeypatch.setattr(main.getpass, "getpass", lambda prompt="": next(answers))
    assert main.main(["--database-url", db_url, "create-admin", "--username", "root", "--email", "r@acme.io"]) == 1


def test_create_admin_duplicate_and_short_password(db_url, capsys):
    args = ["--database-url", db_url, "create-admin", "--username", "root", "--email", "r@acme.io"]
    assert main.main(args + ["--password", "adminpass"]) == 0
    assert main.main(args + ["--password", "adminpass"]) == 1
    assert main.main(["--database-url", db_url, "create-admin", "--username", "x", "--email", "x@acme.io", "--password", "123"]) == 1
    assert "[!]" in capsys.readouterr().out


def test_purge_otps_on_empty_db(db_url, capsys):
    assert main.main(["--database-url", db_url, "purge-otps"]) == 0
    assert "Removed 0" in capsys.readouterr().out


def test_configure_mail_updates_only_given_fields(db_url, capsys):
    assert main.main(["--database-url", db_url, "configure-mail", "--company-name", "Acme", "--smtp-port", "465"]) == 0
    assert main.main(["--database-url", db_url, "configure-mail", "--smtp-password", "hunter2", "--show"]) == 0
    out = capsys.readouterr().out
    assert "hunter2" not in out
    assert "********" in out

    store = _open(db_url)
    cfg = store.get_app_config()
    store.close()
    assert cfg.company_name == "Acme"
    assert cfg.smtp_port == 465
    assert cfg.smtp_password == "hunter2"


def test_create_admin_password_over_72_bytes(db_url, capsys):
    args = ["--database-url", db_url, "create-admin", "--username", "root", "--email", "r@acme.io"]
    assert main.main(args + ["--password", "p" * 80]) == 1
    assert "72 bytes" in capsys.readouterr().out

    store = _open(db_url)
    assert store.has_admins() is False
    store.close()
