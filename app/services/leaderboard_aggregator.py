'''
keeps the leaderboard collection in line with the results collection.

every aggregate-then-rank cycle for a course runs
1. under a per course asyncio lock, serialising cycles inside this process
2. under a fencing token, a counter in leaderboard_versions bumped before the cycle reads anything.
   entry writes carry the token and only replace rows with a lower version, and only rows backed by
   results the cycle itself read may be inserted, so a row another cycle deleted stays deleted. after the writes the
   counter is read again and if another process started a cycle meanwhile the whole cycle runs again.

so two api processes / celery workers updating the same course can not leave a ranking built from
an older snapshot on top of a newer one.
'''

import asyncio
import logging
import time
import weakref
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.config import settings
from app.core.errors import LeaderboardConflictError, ScopeIntegrityError
from app.core.models import LeaderboardEntry, Result, round2, utcnow
from app.services.providers import clean_doc, collaborator_query
from app.services.rank_assigner import assign_ranks, rank_changes

logger = logging.getLogger(__name__)

RankChange = Tuple[str, int, int]


def check_scope(results: List[Result], course_id: str) -> str:
    '''the single organisation a set of results belongs to'''
    orgs = set()
    for r in results:
        if not r.org_id:
            raise ScopeIntegrityError(
                f"Result {r.result_id} in course {course_id} has no organisation scope"
            )
        orgs.add(r.org_id)
    if len(orgs) > 1:
        raise ScopeIntegrityError(
            f"Results of course {course_id} span several organisations: {sorted(orgs)}"
        )
    return orgs.pop()


def build_entry(course_id: str, user_id: str, results: List[Result],
                existing: Optional[LeaderboardEntry] = None) -> LeaderboardEntry:
    org_id = check_scope(results, course_id)
    # the latest result decides the branch, a user may have moved between branches
    latest = max(results, key=lambda r: r.calculated_at)

    total_points = round2(sum(r.score for r in results))
    tests_completed = len(results)

    entry = LeaderboardEntry(
        course_id=course_id,
        user_id=user_id,
        average_score=round2(total_points / tests_completed),
        tests_completed=tests_completed,
        total_points=total_points,
        last_updated=utcnow(),
        org_id=org_id,
        branch_id=latest.branch_id,
    )
    if existing:
        # identity and last known rank survive the recompute
        entry.entry_id = existing.entry_id
        entry.rank = existing.rank
        entry.previous_rank = existing.previous_rank
    return entry


def group_by_user(results: List[Result]) -> Dict[str, List[Result]]:
    grouped = defaultdict(list)
    for r in results:
        grouped[r.user_id].append(r)
    return grouped


class LeaderboardAggregator:
    def __init__(self, db, max_retries: int = settings.LEADERBOARD_MAX_RETRIES):
        self.db = db
        self.max_retries = max_retries
        # a course lock lives only while some cycle holds or waits on it
        self._locks = weakref.WeakValueDictionary()

    def _course_lock(self, course_id: str) -> asyncio.Lock:
        lock = self._locks.get(course_id)
        if lock is None:
            lock = self._locks[course_id] = asyncio.Lock()
        return lock

    @collaborator_query
    async def update_user_score(self, course_id: str, user_id: str) -> Optional[LeaderboardEntry]:
        '''
        recompute one user's aggregate and re-rank the whole course,
        one user's change moves everyone below them. None when the user has no results left
        '''
        async with self._course_lock(course_id):
            entries = await self._run_cycle(
                course_id, lambda token: self._user_cycle(course_id, user_id, token)
            )
        return next((e for e in entries if e.user_id == user_id), None)

    @collaborator_query
    async def rebuild_course(self, course_id: str) -> List[LeaderboardEntry]:
        '''replace the course's entries with ones computed from all of its results, in one pass'''
        async with self._course_lock(course_id):
            return await self._run_cycle(
                course_id, lambda token: self._rebuild_cycle(course_id, token)
            )

    async def _run_cycle(self, course_id: str, cycle) -> List[LeaderboardEntry]:
        for attempt in range(1, self.max_retries + 1):
            started = time.monotonic()
            token = await self._claim_token(course_id)

            entries, changes = await cycle(token)

            if await self._current_token(course_id) == token:
                await self._record_history(course_id, changes, entries)
                logger.info(
                    f"Leaderboard for course {course_id} ranked {len(entries)} users "
                    f"(token {token}, {(time.monotonic() - started) * 1000:.1f}ms)"
                )
                return entries

            logger.warning(
                f"Leaderboard cycle for course {course_id} superseded at token {token}, "
                f"retrying ({attempt}/{self.max_retries})"
            )

        raise LeaderboardConflictError(course_id, self.max_retries)

    async def _user_cycle(self, course_id: str, user_id: str, token: int):
        results = await self._load_results({"course_id": course_id, "user_id": user_id})
        current = await self._load_entries(course_id)
        others = [e for e in current if e.user_id != user_id]

        if not results:
            # tombstone, the user left the leaderboard
            await self.db.leaderboard.delete_one(
                {"course_id": course_id, "user_id": user_id, "version": {"$lt": token}}
            )
            logger.info(f"Removed user {user_id} from leaderboard of course {course_id}")
        else:
            existing = next((e for e in current if e.user_id == user_id), None)
            entry = build_entry(course_id, user_id, results, existing)
            other_orgs = {e.org_id for e in others}
            if other_orgs and other_orgs != {entry.org_id}:
                raise ScopeIntegrityError(
                    f"User {user_id} results belong to {entry.org_id}, course {course_id} to {sorted(other_orgs, key=str)}"
                )
            others.append(entry)

        # only this user's results were read, rows of the others may be updated but never recreated
        return await self._write_ranked(others, current, token, upsert_users={user_id})

    async def _rebuild_cycle(self, course_id: str, token: int):
        results = await self._load_results({"course_id": course_id})
        if results:
            check_scope(results, course_id)

        current = await self._load_entries(course_id)
        existing = {e.user_id: e for e in current}

        grouped = group_by_user(results)
        entries = [
            build_entry(course_id, user_id, user_results, existing.get(user_id))
            for user_id, user_results in grouped.items()
        ]

        # users without results are gone from the course
        removed = await self.db.leaderboard.delete_many({
            "course_id": course_id,
            "user_id": {"$nin": list(grouped)},
            "version": {"$lt": token},
        })
        if removed.deleted_count:
            logger.info(f"Removed {removed.deleted_count} stale entries from course {course_id}")

        return await self._write_ranked(entries, current, token, upsert_users=set(grouped))

    async def _write_ranked(self, entries: List[LeaderboardEntry], before: List[LeaderboardEntry],
                            token: int, upsert_users: Set[str]):
        ranked = assign_ranks(entries)
        for entry in ranked:
            entry.version = token
            await self._write_entry(entry, token, upsert=entry.user_id in upsert_users)
        return ranked, rank_changes(before, ranked)

    async def _write_entry(self, entry: LeaderboardEntry, token: int, upsert: bool) -> bool:
        '''
        upsert is for rows backed by results this cycle read. any other row is only updated in place,
        a newer cycle may have deleted it and that delete must stick
        '''
        doc = entry.model_dump()
        entry_id = doc.pop("entry_id")
        update = {"$set": doc}
        if upsert:
            update["$setOnInsert"] = {"entry_id": entry_id}
        try:
            outcome = await self.db.leaderboard.update_one(
                {"course_id": entry.course_id, "user_id": entry.user_id, "version": {"$lt": token}},
                update,
                upsert=upsert,
            )
        except DuplicateKeyError:
            # a newer cycle already owns this row, the token check after the writes decides what happens next
            logger.debug(f"Skipped stale write for user {entry.user_id} in course {entry.course_id}")
            return False
        return upsert or outcome.matched_count > 0

    async def _claim_token(self, course_id: str) -> int:
        doc = await self.db.leaderboard_versions.find_one_and_update(
            {"course_id": course_id},
            {"$inc": {"version": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return doc["version"]

    async def _current_token(self, course_id: str) -> int:
        doc = await self.db.leaderboard_versions.find_one({"course_id": course_id})
        return doc["version"] if doc else 0

    async def _load_results(self, query: dict) -> List[Result]:
        docs = await self.db.results.find(query).to_list(None)
        return [Result(**clean_doc(d)) for d in docs]

    async def _load_entries(self, course_id: str) -> List[LeaderboardEntry]:
        docs = await self.db.leaderboard.find({"course_id": course_id}).to_list(None)
        return [LeaderboardEntry(**clean_doc(d)) for d in docs]

    async def _record_history(self, course_id: str, changes: List[RankChange],
                              entries: List[LeaderboardEntry]) -> None:
        if not changes:
            return
        scopes = {e.user_id: (e.org_id, e.branch_id) for e in entries}
        now = utcnow()
        try:
            await self.db.rank_history.insert_many([
                {
                    "course_id": course_id,
                    "user_id": user_id,
                    "previous_rank": old,
                    "rank": new,
                    "org_id": scopes[user_id][0],
                    "branch_id": scopes[user_id][1],
                    "recorded_at": now,
                }
                for user_id, old, new in changes
            ], ordered=False)
        except PyMongoError as e:
            # the ranking is already committed, losing a movement record does not undo it
            logger.error(f"Recording {len(changes)} rank moves for course {course_id} failed: {e}")
