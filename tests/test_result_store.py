import asyncio
import logging

import pytest
from pymongo.errors import AutoReconnect

from app.core.errors import (
    ConflictError, InvalidStateError, NotFoundError, ScopeIntegrityError, TransientComputeError,
)
from app.core.models import AttemptStatus, ResultFilter, TenantScope

from fakes import leaderboard_ranks


async def submitted(seed, attempt_id, user_id, correct=(), test_id="test-1"):
    await seed.attempt(attempt_id, test_id, user_id)
    for question_id in correct:
        await seed.answer(attempt_id, question_id, correct=True)


async def test_create_scores_and_persists_the_result(engine, db, seed, two_question_test):
    await submitted(seed, "A1", "u1", correct=["test-1-q1"])

    result = await engine.create_result("A1")

    assert (result.score, result.max_score, result.percentage) == (5, 10, 50.0)
    assert result.passed is False  # default threshold is 60%
    assert result.course_id == "course-1"
    assert (result.org_id, result.branch_id) == ("org-1", "branch-1")

    stored = await db.results.find_one({"attempt_id": "A1"})
    assert stored["result_id"] == result.result_id
    assert stored["percentage"] == 50.0


async def test_create_puts_the_user_on_the_leaderboard(engine, db, seed, two_question_test):
    await submitted(seed, "A1", "u1", correct=["test-1-q1"])

    await engine.create_result("A1")

    entry = await engine.get_user_rank("course-1", "u1")
    assert entry.rank == 1
    assert entry.tests_completed == 1
    assert entry.total_points == 5
    assert entry.average_score == 5


async def test_create_requires_a_submitted_attempt(engine, db, seed, two_question_test):
    await seed.attempt("A1", "test-1", "u1", status=AttemptStatus.IN_PROGRESS)

    with pytest.raises(InvalidStateError):
        await engine.create_result("A1")

    assert db.results.docs == []


async def test_create_unknown_attempt(engine):
    with pytest.raises(NotFoundError):
        await engine.create_result("missing")


async def test_create_attempt_of_unknown_test(engine, seed):
    await seed.attempt("A1", "ghost-test", "u1")

    with pytest.raises(NotFoundError):
        await engine.create_result("A1")


async def test_create_test_without_course(engine, seed):
    await seed.test("loose", course_id=None, questions=[1])
    await seed.attempt("A1", "loose", "u1")

    with pytest.raises(InvalidStateError):
        await engine.create_result("A1")


async def test_second_create_conflicts_without_touching_state(engine, db, seed, two_question_test):
    await submitted(seed, "A2", "u1", correct=["test-1-q1", "test-1-q2"])
    await submitted(seed, "B1", "u2", correct=["test-1-q1"])
    await engine.create_result("A2")
    await engine.create_result("B1")

    results_before = list(db.results.docs)
    leaderboard_before = [dict(d) for d in db.leaderboard.docs]

    with pytest.raises(ConflictError):
        await engine.create_result("A2")

    assert db.results.docs == results_before
    assert db.leaderboard.docs == leaderboard_before


async def test_concurrent_double_submit_creates_one_result(engine, db, seed, two_question_test):
    await submitted(seed, "A2", "u1", correct=["test-1-q1"])

    outcomes = await asyncio.gather(
        engine.create_result("A2"),
        engine.create_result("A2"),
        return_exceptions=True,
    )

    conflicts = [o for o in outcomes if isinstance(o, ConflictError)]
    created = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(conflicts) == 1
    assert len(created) == 1
    assert await db.results.count_documents({"attempt_id": "A2"}) == 1
    assert await leaderboard_ranks(db) == [("u1", 1)]


async def test_per_test_passing_score(engine, seed):
    await seed.test("easy", course_id="course-1", passing_score=40, questions=[5, 5])
    await seed.attempt("A1", "easy", "u1")
    await seed.answer("A1", "easy-q1", correct=True)

    result = await engine.create_result("A1")

    assert result.percentage == 50.0
    assert result.passed is True


async def test_scope_is_inherited_from_the_test(engine, seed):
    await seed.test("t", course_id="course-1", questions=[10], org_id="org-9", branch_id="b-9")
    await seed.attempt("A1", "t", "u1", org_id=None, branch_id=None)
    await seed.answer("A1", "t-q1", correct=True, org_id="org-9", branch_id="b-9")

    result = await engine.create_result("A1")

    assert (result.org_id, result.branch_id) == ("org-9", "b-9")
    assert result.score == 10


async def test_create_without_any_scope_fails(engine, db, seed):
    await seed.test("t", course_id="course-1", questions=[10], org_id=None, branch_id=None)
    await seed.attempt("A1", "t", "u1", org_id=None, branch_id=None)

    with pytest.raises(ScopeIntegrityError):
        await engine.create_result("A1")

    assert db.results.docs == []


async def test_recalculate_overwrites_scores_in_place(engine, db, seed, two_question_test):
    await submitted(seed, "A1", "u1", correct=["test-1-q1"])
    original = await engine.create_result("A1")

    # marker awards the second question afterwards
    await seed.answer("A1", "test-1-q2", points_awarded=5)
    updated = await engine.recalculate_result(original.result_id)

    assert updated.result_id == original.result_id
    assert (updated.score, updated.percentage, updated.passed) == (10, 100.0, True)
    assert updated.calculated_at >= original.calculated_at

    stored = await db.results.find_one({"result_id": original.result_id})
    assert stored["score"] == 10
    assert await db.results.count_documents({}) == 1

    entry = await engine.get_user_rank("course-1", "u1")
    assert entry.total_points == 10


async def test_recalculate_unknown_result(engine):
    with pytest.raises(NotFoundError):
        await engine.recalculate_result("missing")


async def test_recalculate_respects_caller_scope(engine, seed, two_question_test):
    await submitted(seed, "A1", "u1", correct=["test-1-q1"])
    result = await engine.create_result("A1")

    with pytest.raises(NotFoundError):
        await engine.recalculate_result(result.result_id, TenantScope(org_id="org-2"))


async def test_failed_leaderboard_update_does_not_fail_creation(engine, db, seed, two_question_test, caplog):
    await submitted(seed, "A1", "u1", correct=["test-1-q1"])
    db.leaderboard_versions.failures["find_one_and_update"] = AutoReconnect("primary stepped down")

    with caplog.at_level(logging.ERROR):
        result = await engine.create_result("A1")

    assert await db.results.count_documents({"result_id": result.result_id}) == 1
    assert db.leaderboard.docs == []
    assert "Leaderboard update failed" in caplog.text

    # explicit refresh brings the leaderboard back in line
    del db.leaderboard_versions.failures["find_one_and_update"]
    await engine.refresh_leaderboard("course-1")
    assert await leaderboard_ranks(db) == [("u1", 1)]


async def test_results_summary_is_queued_for_the_user(engine, db, seed, two_question_test):
    await submitted(seed, "A1", "u1", correct=["test-1-q1"])

    result = await engine.create_result("A1")

    [notification] = db.notifications.docs
    assert notification["user_id"] == "u1"
    assert notification["summary"]["result_id"] == result.result_id
    assert notification["summary"]["percentage"] == 50.0


async def test_notification_failure_is_swallowed(engine, db, seed, two_question_test):
    await submitted(seed, "A1", "u1", correct=["test-1-q1"])
    db.notifications.failures["insert_one"] = AutoReconnect("mail outbox unavailable")

    result = await engine.create_result("A1")

    assert result.score == 5
    assert db.notifications.docs == []


async def test_list_results_filters_and_pages(engine, seed):
    for i, score in enumerate([20, 55, 70, 90]):
        await seed.result(f"u{i}", score)
    await seed.result("u9", 99, org_id="org-2")

    page = await engine.list_results(ResultFilter(min_percentage=50), TenantScope(org_id="org-1"), page=1, limit=2)

    assert page.total == 3
    assert len(page.results) == 2
    assert all(r.org_id == "org-1" and r.percentage >= 50 for r in page.results)

    passed = await engine.list_results(ResultFilter(passed=True, course_id="course-1"))
    assert {r.user_id for r in passed.results} == {"u2", "u3", "u9"}


async def test_collaborator_outage_is_transient(engine, db, seed, two_question_test):
    await submitted(seed, "A1", "u1", correct=["test-1-q1"])
    db.attempts.failures["find_one"] = AutoReconnect("connection reset")

    with pytest.raises(TransientComputeError):
        await engine.create_result("A1")
