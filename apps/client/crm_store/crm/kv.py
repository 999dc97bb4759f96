from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import DateTime, Engine, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class Base(DeclarativeBase):
    pass


class KeyValueSlot(Base):
    __tablename__ = "crm_kv_slot"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class SqlKeyValueStore:
    """Durable string slots in a single table, one row per key."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        Base.metadata.create_all(bind=engine)
        self._session_factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    @classmethod
    def from_url(cls, url: str) -> "SqlKeyValueStore":
        if url.startswith("sqlite") and ":memory:" in url:
            engine = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        elif url.startswith("sqlite"):
            engine = create_engine(url, connect_args={"check_same_thread": False})
        else:
            engine = create_engine(url)
        return cls(engine)

    def get(self, key: str) -> str | None:
        with self._session() as session:
            slot = session.get(KeyValueSlot, key)
            return slot.value if slot is not None else None

    def set(self, key: str, value: str) -> None:
        with self._session() as session:
            slot = session.get(KeyValueSlot, key)
            if slot is None:
                session.add(KeyValueSlot(key=key, value=value))
            else:
                slot.value = value
            session.commit()

    def dispose(self) -> None:
        self.engine.dispose()

    def _session(self) -> Session:
        return self._session_factory()
