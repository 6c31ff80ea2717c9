"""SQLAlchemy schema, engine cache and session helpers for the catalog database."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "db"})

TAG_SOURCE_AUTO = "auto"
TAG_SOURCE_MANUAL = "manual"


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class Photo(Base):
    """One imported image file and its extracted metadata."""

    __tablename__ = "photos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    path: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    content_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    file_name: Mapped[str] = mapped_column(String, nullable=False)
    ext: Mapped[str] = mapped_column(String, nullable=False)
    format: Mapped[str | None] = mapped_column(String, nullable=True)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    mtime: Mapped[float] = mapped_column(Float, nullable=False)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    make: Mapped[str | None] = mapped_column(String, nullable=True)
    model: Mapped[str | None] = mapped_column(String, nullable=True)
    lens: Mapped[str | None] = mapped_column(String, nullable=True)
    body_serial: Mapped[str | None] = mapped_column(String, nullable=True)
    date_taken: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    iso: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fnumber: Mapped[float | None] = mapped_column(Float, nullable=True)
    focal_length: Mapped[float | None] = mapped_column(Float, nullable=True)
    exposure_time: Mapped[float | None] = mapped_column(Float, nullable=True)
    exposure_comp: Mapped[float | None] = mapped_column(Float, nullable=True)
    gps_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    gps_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    thumb_path: Mapped[str | None] = mapped_column(String, nullable=True)
    preview_path: Mapped[str | None] = mapped_column(String, nullable=True)
    dhash: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    rating: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    picked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rejected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    import_batch_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        Index("idx_photos_date_taken", "date_taken"),
        Index("idx_photos_camera", "make", "model"),
        Index("idx_photos_rating", "rating"),
        Index("idx_photos_import_batch", "import_batch_id"),
    )


class Tag(Base):
    """Label attached to a photo, either proposed by tagging or set by hand."""

    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    photo_id: Mapped[int] = mapped_column(ForeignKey("photos.id", ondelete="CASCADE"), nullable=False)
    tag: Mapped[str] = mapped_column(String, nullable=False)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False, default=TAG_SOURCE_AUTO)
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("photo_id", "tag", name="uq_tags_photo_tag"),
        Index("idx_tags_tag", "tag"),
    )


class PhotoEmbedding(Base):
    """Embedding vector of a photo for one embedding scheme."""

    __tablename__ = "photo_embeddings"

    photo_id: Mapped[int] = mapped_column(ForeignKey("photos.id", ondelete="CASCADE"), primary_key=True)
    scheme: Mapped[str] = mapped_column(String, primary_key=True)
    dim: Mapped[int] = mapped_column(Integer, nullable=False)
    vector: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (Index("idx_photo_embeddings_scheme", "scheme"),)


_ENGINE_CACHE: dict[str, Engine] = {}
_ENGINE_LOCK = Lock()


def normalize_database_url(target: str | Path) -> str:
    """Turn a path or URL into an absolute SQLAlchemy URL string."""

    if isinstance(target, Path):
        return f"sqlite:///{target.resolve()}"

    raw = str(target).strip()
    if not raw:
        raise ValueError("database target cannot be empty")
    if "://" not in raw:
        return f"sqlite:///{Path(raw).resolve()}"

    url = make_url(raw)
    if url.drivername.startswith("sqlite"):
        database = url.database or ""
        if database and database != ":memory:" and not Path(database).is_absolute():
            url = url.set(database=str((Path.cwd() / database).resolve()))
            return url.render_as_string(hide_password=False)
    return raw


def get_engine(target: str | Path) -> Engine:
    """Return a cached engine for ``target``, creating the schema on first use."""

    normalized = normalize_database_url(target)
    engine = _ENGINE_CACHE.get(normalized)
    if engine is not None:
        return engine

    with _ENGINE_LOCK:
        engine = _ENGINE_CACHE.get(normalized)
        if engine is not None:
            return engine

        sa_url = make_url(normalized)
        is_sqlite = sa_url.drivername.startswith("sqlite")
        engine_kwargs: dict[str, Any] = {}
        if is_sqlite:
            if sa_url.database and sa_url.database != ":memory:":
                Path(sa_url.database).parent.mkdir(parents=True, exist_ok=True)
            engine_kwargs["connect_args"] = {"timeout": 30.0, "check_same_thread": False}
        else:
            engine_kwargs["pool_pre_ping"] = True

        engine = create_engine(normalized, **engine_kwargs)

        if is_sqlite:

            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
                """WAL for concurrent readers, foreign keys for tag/embedding cascades."""

                cursor = dbapi_connection.cursor()
                try:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA busy_timeout = 30000")
                    cursor.execute("PRAGMA foreign_keys = ON")
                finally:
                    cursor.close()

        try:
            Base.metadata.create_all(engine)
        except OperationalError as exc:
            if "already exists" not in str(exc).lower():
                raise
            LOGGER.info("db_create_all_table_exists_race", extra={"target": normalized, "error": str(exc)})

        _ENGINE_CACHE[normalized] = engine
        return engine


def dispose_engine(target: str | Path) -> None:
    """Close pooled connections for ``target`` and forget the cached engine."""

    normalized = normalize_database_url(target)
    with _ENGINE_LOCK:
        engine = _ENGINE_CACHE.pop(normalized, None)
    if engine is not None:
        engine.dispose()


def open_session(target: str | Path) -> Session:
    """Open a session whose loaded objects stay usable after commit."""

    return Session(get_engine(target), expire_on_commit=False)


def dialect_insert(session: Session, table: Any) -> Any:
    """Return a dialect-aware INSERT statement supporting ON CONFLICT."""

    name = session.get_bind().dialect.name
    if name == "sqlite":
        return sqlite_insert(table)
    if name.startswith("postgresql"):
        return pg_insert(table)
    raise NotImplementedError(f"Unsupported dialect for upsert: {name}")


__all__ = [
    "Base",
    "Photo",
    "PhotoEmbedding",
    "TAG_SOURCE_AUTO",
    "TAG_SOURCE_MANUAL",
    "Tag",
    "dialect_insert",
    "dispose_engine",
    "get_engine",
    "normalize_database_url",
    "open_session",
]
