import sqlite3

from db import get_connection, is_integrity_error, is_postgres, qp


def test_sqlite_connection_from_database_url(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'nested' / 'pay.db'}")
    conn = get_connection()
    try:
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    finally:
        conn.close()
    assert (tmp_path / "nested" / "pay.db").exists()


def test_placeholders_follow_the_backend(monkeypatch):
    assert not is_postgres()
    assert qp("SELECT ? , ?") == "SELECT ? , ?"
    monkeypatch.setenv("DATABASE_URL", "postgresql://user@localhost/soufit")
    assert is_postgres()
    assert qp("SELECT ? , ?") == "SELECT %s , %s"


def test_integrity_error_detection():
    assert is_integrity_error(sqlite3.IntegrityError("UNIQUE constraint failed"))
    assert not is_integrity_error(sqlite3.OperationalError("database is locked"))
    assert not is_integrity_error(RuntimeError("boom"))
