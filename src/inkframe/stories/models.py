"""SQLAlchemy models for stories and their pages."""

from typing import Optional

from sqlalchemy import ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from inkframe.common.models import Base, TimestampMixin, generate_uuid


class StoryModel(Base, TimestampMixin):
    __tablename__ = "stories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    slug: Mapped[str] = mapped_column(String(160), unique=True, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    style: Mapped[str] = mapped_column(String(64), nullable=False, default="noir")
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)


class PageModel(Base, TimestampMixin):
    __tablename__ = "pages"
    __table_args__ = (
        UniqueConstraint("story_id", "page_number", name="uq_page_story_number"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    story_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    page_number: Mapped[int] = mapped_column(Integer, nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    character_image_urls: Mapped[list] = mapped_column(JSON, default=list)
    # Null until the generated image has been persisted.
    generated_image_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
