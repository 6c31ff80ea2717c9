"""Catalog persistence: import writes, fingerprint checks, queries and culling."""

from __future__ import annotations

import csv
import os
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import numpy as np
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from photo_tagger.db import (
    TAG_SOURCE_AUTO,
    TAG_SOURCE_MANUAL,
    Photo,
    PhotoEmbedding,
    Tag,
    dialect_insert,
    get_engine,
    open_session,
)
from photo_tagger.embedding import deserialize_vector, serialize_vector
from photo_tagger.errors import PhotoNotFound, StoreUnavailable
from photo_tagger.hasher import from_signed64, to_signed64
from photo_tagger.metadata import PhotoMetadata
from photo_tagger.tagging import TagDecision
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "store"})

SORT_FIELDS: dict[str, object] = {
    "date_taken": Photo.date_taken,
    "file_name": Photo.file_name,
    "rating": Photo.rating,
    "size_bytes": Photo.size_bytes,
    "mtime": Photo.mtime,
    "created_at": Photo.created_at,
}

_SEARCH_COLUMNS = (Photo.file_name, Photo.make, Photo.model, Photo.lens)

CSV_FIELDS: tuple[str, ...] = (
    "filename",
    "path",
    "camera",
    "lens",
    "date",
    "iso",
    "fnumber",
    "focal",
    "shutter",
    "tags",
)

# Columns owned by the user; an import never overwrites them.
_USER_COLUMNS = frozenset({"id", "rating", "picked", "rejected", "created_at"})


@dataclass(frozen=True)
class PhotoRecord:
    """Everything the import pipeline writes for one photo."""

    path: str
    file_name: str
    ext: str
    format: str
    size_bytes: int
    mtime: float
    content_hash: str | None
    metadata: PhotoMetadata
    width: int | None
    height: int | None
    thumb_path: str | None
    preview_path: str | None
    dhash: int | None
    import_batch_id: str | None


@dataclass(frozen=True)
class EmbeddingRecord:
    scheme: str
    vector: np.ndarray


@dataclass(frozen=True)
class SmartViewCounts:
    """Photo counts behind the fixed catalog views."""

    unsorted: int
    picks: int
    rejects: int
    last_import: int
    all: int


@dataclass(frozen=True)
class CsvExportRow:
    filename: str
    path: str
    camera: str | None
    lens: str | None
    date: datetime | None
    iso: int | None
    fnumber: float | None
    focal: float | None
    shutter: float | None
    tags: tuple[str, ...]

    def as_csv_dict(self) -> dict[str, object]:
        return {
            "filename": self.filename,
            "path": self.path,
            "camera": self.camera or "",
            "lens": self.lens or "",
            "date": self.date.isoformat(sep=" ") if self.date else "",
            "iso": "" if self.iso is None else self.iso,
            "fnumber": "" if self.fnumber is None else self.fnumber,
            "focal": "" if self.focal is None else self.focal,
            "shutter": "" if self.shutter is None else self.shutter,
            "tags": ";".join(self.tags),
        }


@dataclass
class PhotoQuery:
    """Filters and ordering for :meth:`CatalogStore.query_photos`."""

    search: str | None = None
    tag: str | None = None
    camera_make: str | None = None
    camera_model: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    min_rating: int | None = None
    picked: bool | None = None
    rejected: bool | None = None
    sort_by: str = "date_taken"
    descending: bool = True
    limit: int | None = None
    offset: int = 0
    extra_sort: Sequence[str] = field(default_factory=tuple)


class CatalogStore:
    """Thin repository over the catalog database.

    Each public method opens its own short session so the store can be shared
    by pipeline workers and on-demand queries running in other threads.
    """

    def __init__(self, target: str | Path) -> None:
        self.target = target
        self._engine = get_engine(target)

    def _session(self) -> Session:
        return open_session(self.target)

    def fingerprints_under(self, root: Path) -> dict[str, tuple[float, int]]:
        """Return ``path -> (mtime, size)`` for every photo stored under ``root``."""

        prefix = os.path.join(str(root.resolve()), "")
        try:
            with self._session() as session:
                rows = session.execute(
                    select(Photo.path, Photo.mtime, Photo.size_bytes).where(
                        Photo.path.startswith(prefix, autoescape=True)
                    )
                ).all()
        except OperationalError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return {path: (mtime, size) for path, mtime, size in rows}

    def is_unchanged(self, path: Path | str, size_bytes: int, mtime: float) -> bool:
        with self._session() as session:
            row = session.execute(
                select(Photo.mtime, Photo.size_bytes).where(Photo.path == str(path))
            ).first()
        return row is not None and row.mtime == mtime and row.size_bytes == size_bytes

    def save_import(
        self,
        record: PhotoRecord,
        tags: Iterable[TagDecision] = (),
        embedding: EmbeddingRecord | None = None,
    ) -> int:
        """Upsert one photo with its automatic tags and embedding in a single transaction.

        Manual and locked tags are preserved; unlocked automatic tags are
        replaced. Raises :class:`StoreUnavailable` when the database cannot be
        reached or written.
        """

        now = time.time()
        values = {
            "path": record.path,
            "content_hash": record.content_hash,
            "file_name": record.file_name,
            "ext": record.ext,
            "format": record.format,
            "size_bytes": record.size_bytes,
            "mtime": record.mtime,
            "width": record.width,
            "height": record.height,
            "thumb_path": record.thumb_path,
            "preview_path": record.preview_path,
            "dhash": to_signed64(record.dhash) if record.dhash is not None else None,
            "import_batch_id": record.import_batch_id,
            "created_at": now,
            "updated_at": now,
        }
        meta = record.metadata.as_dict()
        for key in ("width", "height"):
            if values[key] is None:
                values[key] = meta[key]
        for key, value in meta.items():
            if key not in values:
                values[key] = value

        try:
            with self._session() as session, session.begin():
                stmt = dialect_insert(session, Photo).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["path"],
                    set_={key: stmt.excluded[key] for key in values if key not in _USER_COLUMNS},
                )
                session.execute(stmt)
                photo_id = session.execute(select(Photo.id).where(Photo.path == record.path)).scalar_one()

                self._replace_auto_tags(session, photo_id, tags)
                if embedding is not None:
                    self._upsert_embedding(session, photo_id, embedding, now)
        except OperationalError as exc:
            LOGGER.error("store_write_unavailable", extra={"path": record.path, "error": str(exc)})
            raise StoreUnavailable(str(exc)) from exc

        return photo_id

    @staticmethod
    def _replace_auto_tags(session: Session, photo_id: int, tags: Iterable[TagDecision]) -> None:
        session.execute(
            delete(Tag).where(
                and_(Tag.photo_id == photo_id, Tag.source == TAG_SOURCE_AUTO, Tag.locked.is_(False))
            )
        )
        rows = [
            {
                "photo_id": photo_id,
                "tag": decision.label,
                "confidence": decision.confidence,
                "source": TAG_SOURCE_AUTO,
                "locked": False,
            }
            for decision in tags
        ]
        if rows:
            stmt = dialect_insert(session, Tag).values(rows)
            session.execute(stmt.on_conflict_do_nothing(index_elements=["photo_id", "tag"]))

    @staticmethod
    def _upsert_embedding(session: Session, photo_id: int, embedding: EmbeddingRecord, now: float) -> None:
        vector = np.asarray(embedding.vector, dtype=np.float32)
        stmt = dialect_insert(session, PhotoEmbedding).values(
            photo_id=photo_id,
            scheme=embedding.scheme,
            dim=int(vector.shape[0]),
            vector=serialize_vector(vector),
            updated_at=now,
        )
        session.execute(
            stmt.on_conflict_do_update(
                index_elements=["photo_id", "scheme"],
                set_={"dim": stmt.excluded.dim, "vector": stmt.excluded.vector, "updated_at": stmt.excluded.updated_at},
            )
        )

    def get_photo(self, photo_id: int) -> Photo:
        with self._session() as session:
            photo = session.get(Photo, photo_id)
        if photo is None:
            raise PhotoNotFound(f"photo {photo_id} not found")
        return photo

    def get_photo_by_path(self, path: Path | str) -> Photo | None:
        with self._session() as session:
            return session.execute(select(Photo).where(Photo.path == str(path))).scalar_one_or_none()

    def get_tags(self, photo_id: int) -> list[Tag]:
        with self._session() as session:
            return list(session.execute(select(Tag).where(Tag.photo_id == photo_id).order_by(Tag.tag)).scalars())

    def count_photos(self) -> int:
        with self._session() as session:
            return int(session.execute(select(func.count(Photo.id))).scalar_one())

    def query_photos(self, query: PhotoQuery | None = None) -> list[Photo]:
        """Return photos matching ``query``; sort fields outside :data:`SORT_FIELDS` raise ``ValueError``."""

        query = query or PhotoQuery()
        stmt = select(Photo)
        if query.search:
            stmt = stmt.where(
                or_(*(column.icontains(query.search, autoescape=True) for column in _SEARCH_COLUMNS))
            )
        if query.tag:
            stmt = stmt.where(Photo.id.in_(select(Tag.photo_id).where(Tag.tag == query.tag)))
        if query.camera_make:
            stmt = stmt.where(Photo.make == query.camera_make)
        if query.camera_model:
            stmt = stmt.where(Photo.model == query.camera_model)
        if query.date_from is not None:
            stmt = stmt.where(Photo.date_taken >= query.date_from)
        if query.date_to is not None:
            stmt = stmt.where(Photo.date_taken <= query.date_to)
        if query.min_rating is not None:
            stmt = stmt.where(Photo.rating >= query.min_rating)
        if query.picked is not None:
            stmt = stmt.where(Photo.picked == query.picked)
        if query.rejected is not None:
            stmt = stmt.where(Photo.rejected == query.rejected)

        order = []
        for name in (query.sort_by, *query.extra_sort):
            column = SORT_FIELDS.get(name)
            if column is None:
                raise ValueError(f"unsupported sort field: {name!r}")
            order.append(column.desc() if query.descending else column.asc())
        order.append(Photo.id.asc())
        stmt = stmt.order_by(*order).offset(max(0, query.offset))
        if query.limit is not None:
            stmt = stmt.limit(max(0, query.limit))

        with self._session() as session:
            return list(session.execute(stmt).scalars())

    def _update_photos(self, photo_ids: Sequence[int], **values: object) -> int:
        if not photo_ids:
            return 0
        with self._session() as session, session.begin():
            result = session.execute(
                update(Photo).where(Photo.id.in_(list(photo_ids))).values(updated_at=time.time(), **values)
            )
        return int(result.rowcount or 0)

    def set_rating(self, photo_ids: Sequence[int], rating: int) -> int:
        if not 0 <= rating <= 5:
            raise ValueError(f"rating must be within 0..5, got {rating}")
        return self._update_photos(photo_ids, rating=rating)

    def set_picked(self, photo_ids: Sequence[int], picked: bool = True) -> int:
        """Mark photos picked; picking clears the rejected flag."""

        if picked:
            return self._update_photos(photo_ids, picked=True, rejected=False)
        return self._update_photos(photo_ids, picked=False)

    def set_rejected(self, photo_ids: Sequence[int], rejected: bool = True) -> int:
        """Mark photos rejected; rejecting clears the picked flag."""

        if rejected:
            return self._update_photos(photo_ids, rejected=True, picked=False)
        return self._update_photos(photo_ids, rejected=False)

    def add_manual_tag(self, photo_id: int, tag: str) -> None:
        """Attach a locked manual tag that later imports never remove."""

        with self._session() as session, session.begin():
            if session.get(Photo, photo_id) is None:
                raise PhotoNotFound(f"photo {photo_id} not found")
            stmt = dialect_insert(session, Tag).values(
                photo_id=photo_id, tag=tag, confidence=1.0, source=TAG_SOURCE_MANUAL, locked=True
            )
            session.execute(
                stmt.on_conflict_do_update(
                    index_elements=["photo_id", "tag"],
                    set_={"source": TAG_SOURCE_MANUAL, "locked": True, "confidence": 1.0},
                )
            )

    def remove_tag(self, photo_id: int, tag: str) -> bool:
        """Delete a manual tag; automatic tags are left to the next import. Returns whether a row went away."""

        with self._session() as session, session.begin():
            result = session.execute(
                delete(Tag).where(Tag.photo_id == photo_id, Tag.tag == tag, Tag.source == TAG_SOURCE_MANUAL)
            )
        return bool(result.rowcount)

    def replace_auto_tags(self, photo_id: int, tags: Iterable[TagDecision]) -> None:
        """Swap the unlocked automatic tags of one photo; manual and locked tags stay."""

        with self._session() as session, session.begin():
            if session.get(Photo, photo_id) is None:
                raise PhotoNotFound(f"photo {photo_id} not found")
            self._replace_auto_tags(session, photo_id, tags)

    def latest_import_batch_id(self) -> str | None:
        with self._session() as session:
            return session.execute(
                select(Photo.import_batch_id)
                .where(Photo.import_batch_id.is_not(None))
                .order_by(Photo.created_at.desc(), Photo.id.desc())
                .limit(1)
            ).scalar_one_or_none()

    def get_smart_view_counts(self) -> SmartViewCounts:
        """Count unsorted photos, picks, rejects, the latest import batch and the whole catalog."""

        batch_id = self.latest_import_batch_id()
        count = func.count(Photo.id)
        with self._session() as session:
            unsorted = session.execute(
                select(count).where(Photo.rating == 0, Photo.picked.is_(False), Photo.rejected.is_(False))
            ).scalar_one()
            picks = session.execute(
                select(count).where(Photo.picked.is_(True), Photo.rejected.is_(False))
            ).scalar_one()
            rejects = session.execute(select(count).where(Photo.rejected.is_(True))).scalar_one()
            last_import = 0
            if batch_id is not None:
                last_import = session.execute(select(count).where(Photo.import_batch_id == batch_id)).scalar_one()
            total = session.execute(select(count)).scalar_one()
        return SmartViewCounts(
            unsorted=int(unsorted),
            picks=int(picks),
            rejects=int(rejects),
            last_import=int(last_import),
            all=int(total),
        )

    def export_rows(self, query: PhotoQuery | None = None) -> list[CsvExportRow]:
        """Return one export row per photo matching ``query``, tags sorted by name."""

        photos = self.query_photos(query)
        tags_by_photo: dict[int, list[str]] = {photo.id: [] for photo in photos}
        if photos:
            with self._session() as session:
                rows = session.execute(
                    select(Tag.photo_id, Tag.tag).where(Tag.photo_id.in_(list(tags_by_photo))).order_by(Tag.tag)
                ).all()
            for photo_id, tag in rows:
                tags_by_photo[photo_id].append(tag)

        return [
            CsvExportRow(
                filename=photo.file_name,
                path=photo.path,
                camera=photo.make,
                lens=photo.lens,
                date=photo.date_taken,
                iso=photo.iso,
                fnumber=photo.fnumber,
                focal=photo.focal_length,
                shutter=photo.exposure_time,
                tags=tuple(tags_by_photo[photo.id]),
            )
            for photo in photos
        ]

    def export_csv(self, destination: Path | str, query: PhotoQuery | None = None) -> int:
        """Write the export rows for ``query`` to ``destination``; return the number of photos written."""

        rows = self.export_rows(query)
        target = Path(destination)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("w", encoding="utf-8", newline="") as fh:
            writer = csv.DictWriter(fh, fieldnames=CSV_FIELDS)
            writer.writeheader()
            for row in rows:
                writer.writerow(row.as_csv_dict())
        LOGGER.info("catalog_exported", extra={"path": str(target), "rows": len(rows)})
        return len(rows)

    def load_hashes(self) -> dict[int, int]:
        """Return ``photo_id -> unsigned dHash`` for every hashed photo."""

        with self._session() as session:
            rows = session.execute(select(Photo.id, Photo.dhash).where(Photo.dhash.is_not(None))).all()
        return {photo_id: from_signed64(value) for photo_id, value in rows}

    def load_embeddings(self, scheme: str) -> dict[int, np.ndarray]:
        with self._session() as session:
            rows = session.execute(
                select(PhotoEmbedding.photo_id, PhotoEmbedding.vector).where(PhotoEmbedding.scheme == scheme)
            ).all()
        return {photo_id: deserialize_vector(blob) for photo_id, blob in rows}

    def get_embedding(self, photo_id: int, scheme: str) -> np.ndarray | None:
        with self._session() as session:
            blob = session.execute(
                select(PhotoEmbedding.vector).where(
                    PhotoEmbedding.photo_id == photo_id, PhotoEmbedding.scheme == scheme
                )
            ).scalar_one_or_none()
        return deserialize_vector(blob) if blob is not None else None


__all__ = [
    "CSV_FIELDS",
    "CatalogStore",
    "CsvExportRow",
    "EmbeddingRecord",
    "PhotoQuery",
    "PhotoRecord",
    "SORT_FIELDS",
    "SmartViewCounts",
]
