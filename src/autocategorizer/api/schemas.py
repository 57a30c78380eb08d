from pydantic import BaseModel

from autocategorizer.models import Transaction


class CategorizeRequest(BaseModel):
    transactions: list[Transaction]


class CorrectionRequest(BaseModel):
    category_id: int
    actor: str = "user"


class ReviewRequest(BaseModel):
    actor: str = "user"


class BatchReviewRequest(BaseModel):
    candidate_ids: list[int]
    actor: str = "user"


class UsageResponse(BaseModel):
    user_id: str
    used: int
    remaining: int
    limit: int
