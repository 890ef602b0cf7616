from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, List
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def round2(value: float) -> float:
    # half-up, round() would send 0.125 to 0.12
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def new_id() -> str:
    return str(uuid4())


class TenantScope(BaseModel):
    org_id: Optional[str] = None
    branch_id: Optional[str] = None

    def query(self) -> dict:
        '''mongo filter fragment restricting a collection to this tenant'''
        q = {}
        if self.org_id:
            q["org_id"] = self.org_id
        if self.branch_id:
            q["branch_id"] = self.branch_id
        return q

    def cache_prefix(self) -> str:
        return f"org:{self.org_id or 'global'}:branch:{self.branch_id or 'global'}"


class AttemptStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Attempt(BaseModel):
    attempt_id: str
    test_id: str
    user_id: str
    status: AttemptStatus
    org_id: Optional[str] = None
    branch_id: Optional[str] = None


class ExamTest(BaseModel):
    test_id: str
    course_id: Optional[str] = None
    title: Optional[str] = None
    passing_score: Optional[float] = None
    org_id: Optional[str] = None
    branch_id: Optional[str] = None


class SelectedOption(BaseModel):
    option_id: Optional[str] = None
    is_correct: bool = False


class Answer(BaseModel):
    question_id: str
    points_awarded: Optional[float] = None
    selected_option: Optional[SelectedOption] = None


class Question(BaseModel):
    question_id: str
    points: float = 0


class ScoreBreakdown(BaseModel):
    score: float
    max_score: float
    percentage: float


class Result(BaseModel):
    result_id: str = Field(default_factory=new_id)
    attempt_id: str
    user_id: str
    test_id: str
    course_id: str
    score: float
    max_score: float
    percentage: float
    passed: bool
    calculated_at: datetime = Field(default_factory=utcnow)
    org_id: Optional[str] = None
    branch_id: Optional[str] = None

    @property
    def scope(self) -> TenantScope:
        return TenantScope(org_id=self.org_id, branch_id=self.branch_id)


class LeaderboardEntry(BaseModel):
    entry_id: str = Field(default_factory=new_id)
    course_id: str
    user_id: str
    rank: int = 0
    previous_rank: Optional[int] = None
    average_score: float
    tests_completed: int
    total_points: float
    last_updated: datetime = Field(default_factory=utcnow)
    org_id: Optional[str] = None
    branch_id: Optional[str] = None
    version: int = 0


class ResultFilter(BaseModel):
    user_id: Optional[str] = None
    test_id: Optional[str] = None
    course_id: Optional[str] = None
    passed: Optional[bool] = None
    min_percentage: Optional[float] = Field(None, ge=0, le=100)
    max_percentage: Optional[float] = Field(None, ge=0, le=100)

    def query(self) -> dict:
        q = {}
        for key in ("user_id", "test_id", "course_id", "passed"):
            value = getattr(self, key)
            if value is not None:
                q[key] = value
        bounds = {}
        if self.min_percentage is not None:
            bounds["$gte"] = self.min_percentage
        if self.max_percentage is not None:
            bounds["$lte"] = self.max_percentage
        if bounds:
            q["percentage"] = bounds
        return q


class ResultPage(BaseModel):
    results: List[Result]
    total: int
    page: int
    limit: int
