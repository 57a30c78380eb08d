from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from autocategorizer.api.dependencies import get_usage_tracker_optional
from autocategorizer.api.schemas import UsageResponse
from autocategorizer.services.usage import UsageTracker

router = APIRouter()


@router.get("/usage/{user_id}", response_model=UsageResponse)
async def get_usage(
    user_id: str,
    usage: Annotated[UsageTracker | None, Depends(get_usage_tracker_optional)],
) -> UsageResponse:
    if usage is None:
        raise HTTPException(status_code=404, detail="Usage tracking is disabled")
    return UsageResponse(
        user_id=user_id,
        used=usage.current_usage(user_id),
        remaining=usage.remaining_quota(user_id),
        limit=usage.max_calls_per_day,
    )
