"""Story service: story and page persistence."""

import re
import uuid
from typing import Optional

from sqlalchemy import delete, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from inkframe.common.exceptions import StoryAccessError, StoryNotFoundError
from inkframe.stories.models import PageModel, StoryModel

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(title: str, max_length: int = 60) -> str:
    """Lowercase, dash-separated slug with a random suffix for uniqueness."""
    base = _SLUG_STRIP.sub("-", title.lower()).strip("-")[:max_length].rstrip("-")
    suffix = uuid.uuid4().hex[:8]
    return f"{base}-{suffix}" if base else f"story-{suffix}"


def fallback_title(prompt: str) -> str:
    prompt = prompt.strip()
    return prompt if len(prompt) <= 50 else prompt[:50].rstrip() + "..."


class StoryService:
    """Story and page CRUD operations."""

    # ── Stories ──

    async def create_story(
        self,
        session: AsyncSession,
        user_id: str,
        title: str,
        style: str = "noir",
        description: Optional[str] = None,
    ) -> StoryModel:
        story = StoryModel(
            slug=slugify(title),
            title=title,
            description=description,
            style=style,
            user_id=user_id,
        )
        session.add(story)
        await session.flush()
        return story

    async def get_story(self, session: AsyncSession, story_id: str) -> Optional[StoryModel]:
        result = await session.execute(
            select(StoryModel).where(StoryModel.id == story_id)
        )
        return result.scalar_one_or_none()

    async def get_story_by_slug(self, session: AsyncSession, slug: str) -> Optional[StoryModel]:
        result = await session.execute(
            select(StoryModel).where(StoryModel.slug == slug)
        )
        return result.scalar_one_or_none()

    async def get_owned_story(
        self,
        session: AsyncSession,
        user_id: str,
        story_id: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> StoryModel:
        """Look a story up by id or slug and check ownership."""
        if story_id is not None:
            story = await self.get_story(session, story_id)
        elif slug is not None:
            story = await self.get_story_by_slug(session, slug)
        else:
            raise ValueError("story_id or slug is required")
        if story is None:
            raise StoryNotFoundError()
        if story.user_id != user_id:
            raise StoryAccessError()
        return story

    async def list_stories(self, session: AsyncSession, user_id: str) -> list[StoryModel]:
        """A user's stories that have at least one rendered page, newest first."""
        rendered = exists().where(
            PageModel.story_id == StoryModel.id,
            PageModel.generated_image_url.is_not(None),
        )
        result = await session.execute(
            select(StoryModel)
            .where(StoryModel.user_id == user_id, rendered)
            .order_by(StoryModel.created_at.desc())
        )
        return list(result.scalars().all())

    async def delete_story(self, session: AsyncSession, story_id: str) -> bool:
        await session.execute(delete(PageModel).where(PageModel.story_id == story_id))
        result = await session.execute(delete(StoryModel).where(StoryModel.id == story_id))
        return result.rowcount == 1

    # ── Pages ──

    async def list_pages(
        self, session: AsyncSession, story_id: str, rendered_only: bool = False,
    ) -> list[PageModel]:
        query = select(PageModel).where(PageModel.story_id == story_id)
        if rendered_only:
            query = query.where(PageModel.generated_image_url.is_not(None))
        result = await session.execute(query.order_by(PageModel.page_number))
        return list(result.scalars().all())

    async def get_page(self, session: AsyncSession, page_id: str) -> Optional[PageModel]:
        result = await session.execute(select(PageModel).where(PageModel.id == page_id))
        return result.scalar_one_or_none()

    async def next_page_number(self, session: AsyncSession, story_id: str) -> int:
        result = await session.execute(
            select(func.max(PageModel.page_number)).where(PageModel.story_id == story_id)
        )
        return (result.scalar() or 0) + 1

    async def get_page_image(
        self, session: AsyncSession, story_id: str, page_number: int,
    ) -> Optional[str]:
        result = await session.execute(
            select(PageModel.generated_image_url).where(
                PageModel.story_id == story_id,
                PageModel.page_number == page_number,
            )
        )
        return result.scalar_one_or_none()

    async def create_page(
        self,
        session: AsyncSession,
        story_id: str,
        page_number: int,
        prompt: str,
        character_image_urls: list[str] | None = None,
    ) -> PageModel:
        page = PageModel(
            story_id=story_id,
            page_number=page_number,
            prompt=prompt,
            character_image_urls=character_image_urls or [],
        )
        session.add(page)
        await session.flush()
        return page

    async def set_page_image(
        self,
        session: AsyncSession,
        page_id: str,
        image_url: Optional[str],
        prompt: Optional[str] = None,
    ) -> bool:
        page = await self.get_page(session, page_id)
        if page is None:
            return False
        page.generated_image_url = image_url
        if prompt is not None:
            page.prompt = prompt
        await session.flush()
        return True

    async def delete_page(self, session: AsyncSession, page_id: str) -> bool:
        result = await session.execute(delete(PageModel).where(PageModel.id == page_id))
        return result.rowcount == 1
