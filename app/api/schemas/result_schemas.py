from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime


class ResultResponse(BaseModel):
    result_id: str
    attempt_id: str
    user_id: str
    test_id: str
    course_id: str
    score: float
    max_score: float
    percentage: float
    passed: bool
    calculated_at: datetime
    org_id: Optional[str] = None
    branch_id: Optional[str] = None


class ResultListResponse(BaseModel):
    results: List[ResultResponse]
    total: int
    page: int
    limit: int
