"""Stories API router."""

from fastapi import APIRouter, Depends, HTTPException

from inkframe.common.exceptions import StoryAccessError, StoryNotFoundError
from inkframe.common.security import require_user
from inkframe.stories.schemas import PageResponse, StoryResponse, StorySummary

router = APIRouter()


def _get_service():
    from inkframe.deps import get_story_service
    return get_story_service()


def _get_db():
    from inkframe.deps import get_db
    return get_db()


@router.get("/stories", response_model=list[StorySummary])
async def list_stories(user_id: str = Depends(require_user)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        stories = await svc.list_stories(session, user_id)
        return [
            StorySummary(
                id=s.id, slug=s.slug, title=s.title,
                description=s.description, style=s.style,
                created_at=s.created_at,
            )
            for s in stories
        ]


@router.get("/stories/{slug}", response_model=StoryResponse)
async def get_story(slug: str, user_id: str = Depends(require_user)):
    svc = _get_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            story = await svc.get_owned_story(session, user_id, slug=slug)
            pages = await svc.list_pages(session, story.id, rendered_only=True)
    except StoryNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except StoryAccessError as e:
        raise HTTPException(status_code=403, detail=e.message)

    return StoryResponse(
        id=story.id,
        slug=story.slug,
        title=story.title,
        description=story.description,
        style=story.style,
        created_at=story.created_at,
        pages=[
            PageResponse(
                id=p.id,
                page_number=p.page_number,
                prompt=p.prompt,
                image_url=p.generated_image_url,
                character_image_urls=p.character_image_urls or [],
                created_at=p.created_at,
            )
            for p in pages
        ],
    )
