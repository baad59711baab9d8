"""Generation API router."""

from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from inkframe.common.security import require_user
from inkframe.generation.flows import AddPageFlow, ContinueStoryFlow, NewStoryFlow
from inkframe.generation.saga import GenerationFlow, GenerationRequest, SagaResult
from inkframe.generation.schemas import AddPageRequest, GenerateComicRequest
from inkframe.idempotency.service import IDEMPOTENCY_HEADER

router = APIRouter()


def _get_saga():
    from inkframe.deps import get_generation_saga
    return get_generation_saga()


def _flow_kwargs(user_id: str) -> dict:
    from inkframe.common.config import get_settings
    from inkframe.deps import get_db, get_object_storage, get_story_service
    return {
        "user_id": user_id,
        "settings": get_settings(),
        "db": get_db(),
        "stories": get_story_service(),
        "storage": get_object_storage(),
    }


async def _run(flow: GenerationFlow, user_id: str, idempotency_key: Optional[str]) -> JSONResponse:
    request = GenerationRequest(
        scope=flow.scope,
        burst_scope=flow.burst_scope,
        user_id=user_id,
        idempotency_key=idempotency_key,
    )
    result: SagaResult = await _get_saga().run(request, flow)
    headers = {"X-Idempotent-Replay": "true"} if result.replayed else None
    return JSONResponse(status_code=result.status_code, content=result.body, headers=headers)


@router.post("/generate-comic")
async def generate_comic(
    body: GenerateComicRequest,
    user_id: str = Depends(require_user),
    idempotency_key: Optional[str] = Header(None, alias=IDEMPOTENCY_HEADER),
):
    if body.story_id is None:
        flow: GenerationFlow = NewStoryFlow(body, **_flow_kwargs(user_id))
    else:
        flow = ContinueStoryFlow(body, **_flow_kwargs(user_id))
    return await _run(flow, user_id, idempotency_key)


@router.post("/add-page")
async def add_page(
    body: AddPageRequest,
    user_id: str = Depends(require_user),
    idempotency_key: Optional[str] = Header(None, alias=IDEMPOTENCY_HEADER),
):
    flow = AddPageFlow(body, **_flow_kwargs(user_id))
    return await _run(flow, user_id, idempotency_key)
