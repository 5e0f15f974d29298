import os
from sqlalchemy import create_engine, text, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import NullPool

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set")
DB_SCHEMA = os.getenv("DB_SCHEMA", "payment")

engine = create_engine(
    DATABASE_URL,
    poolclass=NullPool,   # Lambda-friendly default
    pool_pre_ping=True,
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


def _is_postgres() -> bool:
    return engine.dialect.name == "postgresql"


def _quote_ident(ident: str) -> str:
    return '"' + ident.replace('"', '""') + '"'


@event.listens_for(engine, "connect")
def _set_search_path(dbapi_conn, _):
    if not _is_postgres():
        return
    schema = _quote_ident(DB_SCHEMA)
    cur = dbapi_conn.cursor()
    cur.execute(f"SET search_path TO {schema}")
    cur.close()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """
    Handlers that open one transaction per unit of work (cleanup rule,
    webhook, sweep) take the factory instead of a single session.
    """
    return SessionLocal


def init_schema():
    """
    Deploy-time helper. Lambda cold starts should not run this.
    """
    from . import models  # noqa: F401  registers tables on Base.metadata

    if _is_postgres():
        schema = _quote_ident(DB_SCHEMA)
        with engine.begin() as conn:
            conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema}"))
            conn.execute(text(f"SET search_path TO {schema}"))
    Base.metadata.create_all(bind=engine)
