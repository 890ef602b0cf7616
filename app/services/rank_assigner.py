from typing import List, Tuple

from app.core.models import LeaderboardEntry


def ranking_key(entry: LeaderboardEntry) -> Tuple[float, float, str]:
    # user_id is the final tie breaker, it survives rebuilds so equal rows never swap places
    return (-entry.average_score, -entry.total_points, entry.user_id)


def assign_ranks(entries: List[LeaderboardEntry]) -> List[LeaderboardEntry]:
    '''
    returns copies of the entries sorted best first with rank = 1 based position.
    ranks are always exactly 1..N, whatever rows were added or dropped before the call.
    previous_rank is carried forward only when the rank actually moves
    '''
    ranked = []
    for position, entry in enumerate(sorted(entries, key=ranking_key), 1):
        update = {"rank": position}
        if entry.rank and entry.rank != position:
            update["previous_rank"] = entry.rank
        ranked.append(entry.model_copy(update=update))
    return ranked


def rank_changes(before: List[LeaderboardEntry], after: List[LeaderboardEntry]) -> List[Tuple[str, int, int]]:
    '''(user_id, old_rank, new_rank) for users present in both that moved'''
    old = {e.user_id: e.rank for e in before if e.rank}
    return [
        (e.user_id, old[e.user_id], e.rank)
        for e in after
        if e.user_id in old and old[e.user_id] != e.rank
    ]
