from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from sqlalchemy import text

from signage.config import DATABASE_URL


def _engine_kwargs(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if url in {"sqlite://", "sqlite:///:memory:"}:
        # one shared connection, otherwise every session sees an empty database
        kwargs["poolclass"] = StaticPool
    return kwargs


engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

Base = declarative_base()


def ensure_sqlite_schema():
    """
    Lightweight runtime schema patching for SQLite.

    `Base.metadata.create_all()` won't add new columns to existing tables.
    This keeps local/dev installs working without requiring Alembic.
    """
    if not DATABASE_URL.startswith("sqlite"):
        return

    with engine.begin() as conn:
        cols = conn.execute(text("PRAGMA table_info(device)")).fetchall()
        col_names = {row[1] for row in cols}  # (cid, name, type, notnull, dflt_value, pk)
        if not col_names:
            return
        if "player_version" not in col_names:
            conn.execute(text("ALTER TABLE device ADD COLUMN player_version VARCHAR(50)"))
        if "device_info" not in col_names:
            conn.execute(text("ALTER TABLE device ADD COLUMN device_info JSON"))
        if "tags" not in col_names:
            conn.execute(text("ALTER TABLE device ADD COLUMN tags JSON"))
        conn.execute(text("UPDATE device SET device_info='{}' WHERE device_info IS NULL"))
        conn.execute(text("UPDATE device SET tags='[]' WHERE tags IS NULL"))
        conn.execute(
            text(
                "UPDATE device SET status='offline' "
                "WHERE status IS NULL OR status NOT IN ('online', 'offline', 'error', 'maintenance')"
            )
        )


def init_db() -> None:
    # models must be imported so their tables are registered on Base.metadata
    from signage.models import device, device_log  # noqa: F401

    Base.metadata.create_all(bind=engine)
    ensure_sqlite_schema()
