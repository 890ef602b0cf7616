from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class UserRankResponse(BaseModel):
    course_id: str
    user_id: str
    rank: int
    previous_rank: Optional[int] = None
    average_score: float
    tests_completed: int
    total_points: float
    last_updated: datetime
