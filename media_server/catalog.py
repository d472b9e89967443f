"""Media records kept next to assembled objects: descriptive fields and counters."""

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from media_server.assembler import AssembledObject
from media_server.errors import MediaNotFound
from media_server.models import MediaComment, MediaRecord

LIST_LIMIT = 50


def find_by_filename(db: Session, filename: str) -> MediaRecord | None:
    return db.scalar(select(MediaRecord).where(MediaRecord.filename == filename))


def get_media(db: Session, media_id: str) -> MediaRecord:
    record = db.scalar(
        select(MediaRecord).where(MediaRecord.id == media_id).options(selectinload(MediaRecord.comments))
    )
    if record is None:
        raise MediaNotFound("media not found")
    return record


def record_assembled_object(db: Session, assembled: AssembledObject) -> tuple[MediaRecord, bool]:
    """Insert the record for ``assembled``; the flag is true only for the caller that inserted it."""
    existing = find_by_filename(db, assembled.object_id)
    if existing is not None:
        return existing, False

    metadata = assembled.metadata
    record = MediaRecord(
        filename=assembled.object_id,
        title=metadata.get("title") or "Untitled",
        media_type=metadata.get("media_type") or "long",
        username=metadata.get("username") or "Anonymous",
        tags=list(metadata.get("tags") or []),
        size_bytes=assembled.size_bytes,
        chunk_count=assembled.chunk_count,
        content_type=assembled.content_type,
        location=assembled.location,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent replay of the same assembly inserted it first.
        db.rollback()
        return find_by_filename(db, assembled.object_id), False
    db.refresh(record)
    return record, True


def set_durable_key(db: Session, record: MediaRecord, durable_key: str) -> MediaRecord:
    record.durable_key = durable_key
    db.commit()
    db.refresh(record)
    return record


def increment_views(db: Session, filename: str) -> None:
    db.execute(update(MediaRecord).where(MediaRecord.filename == filename).values(views=MediaRecord.views + 1))
    db.commit()


def _bump(db: Session, media_id: str, column) -> MediaRecord:
    result = db.execute(update(MediaRecord).where(MediaRecord.id == media_id).values({column: column + 1}))
    if not result.rowcount:
        db.rollback()
        raise MediaNotFound("media not found")
    db.commit()
    return get_media(db, media_id)


def add_like(db: Session, media_id: str) -> MediaRecord:
    return _bump(db, media_id, MediaRecord.likes)


def add_dislike(db: Session, media_id: str) -> MediaRecord:
    return _bump(db, media_id, MediaRecord.dislikes)


def add_comment(db: Session, media_id: str, username: str | None, text: str) -> MediaComment:
    get_media(db, media_id)
    comment = MediaComment(media_id=media_id, username=username or "Anonymous", text=text)
    db.add(comment)
    db.commit()
    db.refresh(comment)
    return comment


def list_media(db: Session, media_type: str, limit: int = LIST_LIMIT) -> list[MediaRecord]:
    return list(
        db.scalars(
            select(MediaRecord)
            .where(MediaRecord.media_type == media_type)
            .order_by(MediaRecord.created_at.desc())
            .limit(limit)
        ).all()
    )
