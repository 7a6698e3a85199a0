from typing import Iterator
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine

from codearena.config import get_settings


def make_engine(url: str, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, echo=False, **kwargs)


engine = make_engine(get_settings().db_url)


def create_tables(bind: Engine):
    from codearena import models  # noqa: F401  ensure tables are registered
    SQLModel.metadata.create_all(bind)


def init_db():
    create_tables(engine)


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session
