# leadflow/db.py
from pathlib import Path

from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from leadflow import models  # registers tables before create_all()
from leadflow.config import settings

DATABASE_URL = settings.DATABASE_URL


def make_engine(url: str):
    # SQLite needs this connect arg and a real folder; in-memory DBs share one connection
    if not url.startswith("sqlite"):
        return create_engine(url)
    connect_args = {"check_same_thread": False}
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(url, connect_args=connect_args, poolclass=StaticPool)
    db_path = url.split("sqlite:///", 1)[-1]
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args=connect_args)


engine = make_engine(DATABASE_URL)


def create_db_and_tables() -> None:
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session


def dedupe_insert(session: Session, source: str, event_id: str) -> bool:
    """Return True if first time seen; False if duplicate."""
    try:
        session.add(models.WebhookDedup(source=source, event_id=event_id))
        session.commit()
        return True
    except IntegrityError:
        session.rollback()
        return False
