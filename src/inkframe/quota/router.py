"""Credits API router."""

from fastapi import APIRouter, Depends

from inkframe.common.security import require_user
from inkframe.quota.schemas import CreditsResponse

router = APIRouter()


def _get_ledger():
    from inkframe.deps import get_quota_ledger
    return get_quota_ledger()


@router.get("/credits", response_model=CreditsResponse)
async def check_credits(user_id: str = Depends(require_user)):
    status = await _get_ledger().peek(user_id)
    return CreditsResponse(
        credits_remaining=status.remaining,
        limit=status.limit,
        reset_at=status.reset_at,
    )
