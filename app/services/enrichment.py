'''
read time annotations over ranked rows. nothing here is persisted or feeds back into the ranking,
rank / average_score / total_points / tests_completed stay exactly what the aggregator wrote
'''

import math
from typing import Annotated, Dict, List, Literal, Optional, Union

import numpy as np
from pydantic import BaseModel, Field

from app.core.models import LeaderboardEntry, round2


class BasicEntry(BaseModel):
    kind: Literal["basic"] = "basic"
    rank: int
    user_id: str
    average_score: float
    total_points: float
    tests_completed: int


class EnrichedEntry(BasicEntry):
    kind: Literal["enriched"] = "enriched"
    percentile: float
    badges: List[str] = []
    consistency_rating: str
    previous_rank: Optional[int] = None
    rank_change: int = 0


LeaderboardRow = Annotated[Union[BasicEntry, EnrichedEntry], Field(discriminator="kind")]


def basic(entry: LeaderboardEntry) -> BasicEntry:
    return BasicEntry(
        rank=entry.rank,
        user_id=entry.user_id,
        average_score=entry.average_score,
        total_points=entry.total_points,
        tests_completed=entry.tests_completed,
    )


def percentile(rank: int, participants: int) -> float:
    # share of the course ranked below this user
    if participants <= 0:
        return 0.0
    return round2((participants - rank) / participants * 100)


def consistency_rating(percentages: List[float]) -> str:
    if len(percentages) < 2:
        return "insufficient_data"
    spread = float(np.std(percentages))
    if spread <= 5:
        return "excellent"
    if spread <= 10:
        return "good"
    if spread <= 20:
        return "fair"
    return "variable"


def badges_for(entry: LeaderboardEntry, participants: int, percentages: List[float]) -> List[str]:
    badges = []
    if entry.rank == 1:
        badges.append("champion")
    if entry.rank <= 3:
        badges.append("podium")
    if participants >= 10 and entry.rank <= math.ceil(participants * 0.1):
        badges.append("top_10_percent")
    if any(p >= 100 for p in percentages):
        badges.append("perfect_score")
    if consistency_rating(percentages) == "excellent":
        badges.append("consistent")
    return badges


def enrich(entries: List[LeaderboardEntry], participants: int,
           percentages: Dict[str, List[float]]) -> List[EnrichedEntry]:
    '''
    participants is the size of the whole course leaderboard, entries may be a single page of it.
    percentages maps user_id to the percentages of that user's results in the course
    '''
    rows = []
    for entry in entries:
        user_percentages = percentages.get(entry.user_id, [])
        rows.append(EnrichedEntry(
            **basic(entry).model_dump(exclude={"kind"}),
            percentile=percentile(entry.rank, participants),
            badges=badges_for(entry, participants, user_percentages),
            consistency_rating=consistency_rating(user_percentages),
            previous_rank=entry.previous_rank,
            rank_change=(entry.previous_rank - entry.rank) if entry.previous_rank else 0,
        ))
    return rows
