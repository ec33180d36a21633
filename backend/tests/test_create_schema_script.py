from pathlib import Path

from pocketledger.persistence import SqlStorage
from scripts.create_schema import main


def test_creates_missing_tables(tmp_path: Path, capsys) -> None:
    url = f"sqlite:///{tmp_path / 'fresh.db'}"
    assert main(["--database-url", url]) == 0
    out = capsys.readouterr().out
    assert "Created: users" in out

    storage = SqlStorage(url)
    try:
        assert storage.missing_tables() == []
    finally:
        storage.close()

    assert main(["--database-url", url]) == 0
    assert "Created" not in capsys.readouterr().out


def test_prints_ddl(capsys) -> None:
    assert main(["--print-sql"]) == 0
    assert "CREATE TABLE IF NOT EXISTS bills" in capsys.readouterr().out


def test_requires_a_database_url(monkeypatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    assert main(["--database-url", ""]) == 2
