from sqlalchemy import create_engine, inspect, text

from db import database
from db.database import get_session, init_db
from db.models import ControllerConfig


def test_init_db_adds_columns_missing_from_older_databases(tmp_path):
    url = f"sqlite:///{tmp_path / 'old.db'}"
    engine = create_engine(url)
    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE controller_configs ("
            "id INTEGER PRIMARY KEY, name VARCHAR(255) NOT NULL UNIQUE, "
            "hostname VARCHAR(255) NOT NULL)"
        ))
    engine.dispose()

    init_db(url)
    init_db(url)

    check = create_engine(url)
    columns = {c["name"] for c in inspect(check).get_columns("controller_configs")}
    check.dispose()
    assert "verify_url" in columns


def test_init_db_creates_parent_directory(tmp_path):
    db_file = tmp_path / "nested" / "data" / "certsync.db"

    init_db(f"sqlite:///{db_file}")
    with get_session() as session:
        assert session.query(ControllerConfig).count() == 0

    assert db_file.exists()


def test_db_path_env_override(tmp_path, monkeypatch):
    monkeypatch.delenv("CERTSYNC_DB_URL")
    monkeypatch.setenv("CERTSYNC_DB_PATH", str(tmp_path / "alt.db"))

    assert database.get_db_url() == f"sqlite:///{tmp_path / 'alt.db'}"
