"""Generation flows: new story, continue story, add page and redraw page."""

import logging
import time
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError

from inkframe.common.config import InkframeSettings
from inkframe.common.database import DatabaseManager
from inkframe.common.exceptions import PageMissingError, StoryAccessError, StoryNotFoundError
from inkframe.generation.saga import GenerationFlow, Rejection
from inkframe.generation.schemas import (
    AddPageRequest,
    GenerateComicRequest,
    NewStoryResponse,
    PageGenerationResponse,
)
from inkframe.providers.executor import GenerationOutcome
from inkframe.providers.together import ImageRequest
from inkframe.storage.service import ObjectStorage, build_object_key
from inkframe.stories.models import PageModel, StoryModel
from inkframe.stories.service import StoryService, fallback_title

logger = logging.getLogger(__name__)

DEFAULT_PANEL_LAYOUT = "4-panel"
PAGE_NUMBER_ATTEMPTS = 3


def compose_prompt(
    prompt: str,
    style: str,
    panel_layout: Optional[str] = None,
    previous_context: str = "",
    is_continuation: bool = False,
) -> str:
    line = f"{style} comic page, {panel_layout or DEFAULT_PANEL_LAYOUT} layout: {prompt}"
    if is_continuation and previous_context:
        line += f" (continuing from: {previous_context})"
    return line


def _lookup_rejection(error: Exception) -> Rejection:
    if isinstance(error, StoryAccessError):
        return Rejection(403, error.message, error.code)
    return Rejection(404, "Story not found", "NOT_FOUND")


class _StoryFlow(GenerationFlow):
    """Shared collaborators plus stored-object bookkeeping."""

    def __init__(
        self,
        user_id: str,
        settings: InkframeSettings,
        db: DatabaseManager,
        stories: StoryService,
        storage: ObjectStorage,
        clock: Callable[[], float] = time.time,
    ):
        self.user_id = user_id
        self.settings = settings
        self.db = db
        self.stories = stories
        self.storage = storage
        self._clock = clock
        self._stored_key: Optional[str] = None

    async def _store_image(self, story_id: str, page_number: int, source_url: str) -> str:
        key = build_object_key(story_id, page_number, int(self._clock() * 1000))
        self._stored_key = key
        return await self.storage.store_remote_image(source_url, key)

    async def _delete_stored_image(self) -> None:
        if self._stored_key is None:
            return
        key, self._stored_key = self._stored_key, None
        try:
            await self.storage.delete_object(key)
        except Exception:
            logger.exception("Failed to delete stored image %s", key)

    async def _create_next_page(
        self, story_id: str, prompt: str, character_images: list[str],
    ) -> PageModel:
        """Append a page, retrying when a concurrent request took the same number."""
        attempt = 1
        while True:
            try:
                async with self.db.get_session() as session:
                    page_number = await self.stories.next_page_number(session, story_id)
                    return await self.stories.create_page(
                        session, story_id, page_number, prompt,
                        character_image_urls=character_images,
                    )
            except IntegrityError:
                if attempt >= PAGE_NUMBER_ATTEMPTS:
                    raise
                attempt += 1
                logger.info("Page number taken in story %s, retrying", story_id)

    async def _set_page_image(self, page_id: str, image_url: str, **kwargs: Any) -> None:
        async with self.db.get_session() as session:
            updated = await self.stories.set_page_image(session, page_id, image_url, **kwargs)
        if not updated:
            raise PageMissingError(page_id)

    async def _previous_image(self, story_id: str, page_number: int) -> Optional[str]:
        if page_number <= 1:
            return None
        async with self.db.get_session() as session:
            return await self.stories.get_page_image(session, story_id, page_number - 1)


class NewStoryFlow(_StoryFlow):
    """Creates a story with its first page."""

    burst_scope = "generate-comic"
    scope = "generate-comic:new-story"

    def __init__(self, request: GenerateComicRequest, **kwargs: Any):
        super().__init__(**kwargs)
        self.request = request
        self.story: Optional[StoryModel] = None
        self.page_id: Optional[str] = None

    async def validate(self) -> Optional[Rejection]:
        return None

    async def prepare(self) -> ImageRequest:
        async with self.db.get_session() as session:
            self.story = await self.stories.create_story(
                session, self.user_id,
                title=fallback_title(self.request.prompt),
                style=self.request.style,
            )
            page = await self.stories.create_page(
                session, self.story.id, 1, self.request.prompt,
                character_image_urls=self.request.character_images,
            )
            self.page_id = page.id

        return ImageRequest(
            prompt=compose_prompt(
                self.request.prompt, self.request.style,
                self.request.panel_layout, self.request.previous_context,
                is_continuation=self.request.is_continuation,
            ),
            reference_images=list(self.request.character_images),
            temperature=self.settings.image_temperature,
        )

    async def persist(self, outcome: GenerationOutcome) -> dict[str, Any]:
        image_url = await self._store_image(self.story.id, 1, outcome.image_url)
        await self._set_page_image(self.page_id, image_url)
        return NewStoryResponse(
            image_url=image_url,
            story_id=self.story.id,
            story_slug=self.story.slug,
            page_id=self.page_id,
            page_number=1,
            title=self.story.title,
            description=self.story.description,
        ).model_dump()

    async def undo(self) -> None:
        await self._delete_stored_image()
        if self.story is not None:
            async with self.db.get_session() as session:
                await self.stories.delete_story(session, self.story.id)
            self.story = None


class ContinueStoryFlow(_StoryFlow):
    """Appends the next page to one of the caller's stories."""

    burst_scope = "generate-comic"

    def __init__(self, request: GenerateComicRequest, **kwargs: Any):
        super().__init__(**kwargs)
        if request.story_id is None:
            raise ValueError("ContinueStoryFlow requires a story_id")
        self.request = request
        self.story_id = request.story_id
        self.scope = f"generate-comic:{request.story_id}"
        self.page_id: Optional[str] = None
        self.page_number: Optional[int] = None

    async def validate(self) -> Optional[Rejection]:
        try:
            async with self.db.get_session() as session:
                await self.stories.get_owned_story(session, self.user_id, story_id=self.story_id)
        except (StoryNotFoundError, StoryAccessError) as e:
            return _lookup_rejection(e)
        return None

    async def prepare(self) -> ImageRequest:
        page = await self._create_next_page(
            self.story_id, self.request.prompt, self.request.character_images,
        )
        self.page_id = page.id
        self.page_number = page.page_number

        return ImageRequest(
            prompt=compose_prompt(
                self.request.prompt, self.request.style,
                self.request.panel_layout, self.request.previous_context,
                is_continuation=self.request.is_continuation,
            ),
            reference_images=list(self.request.character_images),
            temperature=self.settings.image_temperature,
        )

    async def persist(self, outcome: GenerationOutcome) -> dict[str, Any]:
        image_url = await self._store_image(self.story_id, self.page_number, outcome.image_url)
        await self._set_page_image(self.page_id, image_url)
        return PageGenerationResponse(
            image_url=image_url, page_id=self.page_id, page_number=self.page_number,
        ).model_dump()

    async def undo(self) -> None:
        await self._delete_stored_image()
        if self.page_id is not None:
            async with self.db.get_session() as session:
                await self.stories.delete_page(session, self.page_id)
            self.page_id = None


class AddPageFlow(_StoryFlow):
    """Adds a page to a story by slug, or redraws an existing page.

    The previous page's image is passed to the provider as a reference so the
    new page stays visually consistent.
    """

    burst_scope = "add-page"

    def __init__(self, request: AddPageRequest, **kwargs: Any):
        super().__init__(**kwargs)
        self.request = request
        self.scope = f"add-page:{request.story_slug}:{request.page_id or 'new'}"
        self.story: Optional[StoryModel] = None
        self.page_id: Optional[str] = request.page_id
        self.page_number: Optional[int] = None
        self._created_page = False
        self._original_image_url: Optional[str] = None
        self._original_prompt: Optional[str] = None
        self._image_replaced = False

    @property
    def is_redraw(self) -> bool:
        return self.request.page_id is not None

    async def validate(self) -> Optional[Rejection]:
        try:
            async with self.db.get_session() as session:
                self.story = await self.stories.get_owned_story(
                    session, self.user_id, slug=self.request.story_slug,
                )
                if self.is_redraw:
                    page = await self.stories.get_page(session, self.request.page_id)
                    if page is None or page.story_id != self.story.id:
                        return Rejection(404, "Page not found", "NOT_FOUND")
                    self.page_number = page.page_number
                    self._original_image_url = page.generated_image_url
                    self._original_prompt = page.prompt
        except (StoryNotFoundError, StoryAccessError) as e:
            return _lookup_rejection(e)
        return None

    async def prepare(self) -> ImageRequest:
        if not self.is_redraw:
            page = await self._create_next_page(
                self.story.id, self.request.prompt, self.request.character_images,
            )
            self._created_page = True
            self.page_id = page.id
            self.page_number = page.page_number

        references = list(self.request.character_images)
        previous = await self._previous_image(self.story.id, self.page_number)
        if previous:
            references.insert(0, previous)

        return ImageRequest(
            prompt=compose_prompt(self.request.prompt, self.story.style, self.request.panel_layout),
            reference_images=references,
            temperature=self.settings.image_temperature,
        )

    async def persist(self, outcome: GenerationOutcome) -> dict[str, Any]:
        image_url = await self._store_image(self.story.id, self.page_number, outcome.image_url)
        self._image_replaced = self.is_redraw
        await self._set_page_image(self.page_id, image_url, prompt=self.request.prompt)
        return PageGenerationResponse(
            image_url=image_url, page_id=self.page_id, page_number=self.page_number,
        ).model_dump()

    async def undo(self) -> None:
        await self._delete_stored_image()
        if self._created_page and self.page_id is not None:
            async with self.db.get_session() as session:
                await self.stories.delete_page(session, self.page_id)
            self._created_page = False
        elif self._image_replaced:
            async with self.db.get_session() as session:
                await self.stories.set_page_image(
                    session, self.page_id, self._original_image_url,
                    prompt=self._original_prompt,
                )
            self._image_replaced = False
            logger.info("Restored previous image of page %s", self.page_id)
