import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from media_server.db import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MediaRecord(Base):
    __tablename__ = "media_records"
    __table_args__ = (Index("idx_media_records_type_created", "media_type", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    filename: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="Untitled")
    media_type: Mapped[str] = mapped_column(String(32), nullable=False, default="long")
    username: Mapped[str] = mapped_column(String(128), nullable=False, default="Anonymous")
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False)
    location: Mapped[str] = mapped_column(Text, nullable=False)
    durable_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    likes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dislikes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    comments: Mapped[list["MediaComment"]] = relationship(
        back_populates="media", cascade="all, delete-orphan", order_by="MediaComment.id"
    )


class MediaComment(Base):
    __tablename__ = "media_comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    media_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("media_records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    username: Mapped[str] = mapped_column(String(128), nullable=False, default="Anonymous")
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    media: Mapped[MediaRecord] = relationship(back_populates="comments")
