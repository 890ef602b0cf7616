import pytest

from app.core.models import LeaderboardEntry
from app.services.enrichment import (
    BasicEntry, EnrichedEntry, badges_for, basic, consistency_rating, enrich, percentile,
)


def entry(user_id, rank, average_score=50, previous_rank=None):
    return LeaderboardEntry(course_id="c1", user_id=user_id, rank=rank, previous_rank=previous_rank,
                            average_score=average_score, tests_completed=2, total_points=average_score * 2)


@pytest.mark.parametrize("rank, participants, expected", [(1, 4, 75), (4, 4, 0), (2, 3, 33.33), (1, 1, 0), (1, 0, 0)])
def test_percentile(rank, participants, expected):
    assert percentile(rank, participants) == expected


@pytest.mark.parametrize("percentages, rating", [
    ([], "insufficient_data"),
    ([80], "insufficient_data"),
    ([80, 82], "excellent"),
    ([70, 90], "good"),
    ([50, 90], "fair"),
    ([0, 100], "variable"),
])
def test_consistency_rating(percentages, rating):
    assert consistency_rating(percentages) == rating


def test_champion_of_a_large_course_collects_every_badge():
    badges = badges_for(entry("u1", 1), 10, [100, 98])

    assert badges == ["champion", "podium", "top_10_percent", "perfect_score", "consistent"]


def test_badges_depend_on_rank_and_course_size():
    assert badges_for(entry("u2", 2), 5, [50, 90]) == ["podium"]
    # top 10% needs at least ten participants
    assert "top_10_percent" not in badges_for(entry("u1", 1), 9, [])
    assert "top_10_percent" in badges_for(entry("u2", 2), 20, [])
    assert badges_for(entry("u9", 9), 20, [40]) == []


def test_enrich_keeps_ranking_fields_untouched():
    source = [entry("u1", 1, 90, previous_rank=3), entry("u2", 2, 80, previous_rank=1)]

    rows = enrich(source, 4, {"u1": [90, 90], "u2": [70, 90]})

    for row, original in zip(rows, source):
        assert isinstance(row, EnrichedEntry)
        assert row.kind == "enriched"
        assert (row.rank, row.average_score, row.total_points, row.tests_completed) == (
            original.rank, original.average_score, original.total_points, original.tests_completed,
        )
    assert [(r.rank_change, r.percentile) for r in rows] == [(2, 75), (-1, 50)]
    assert rows[0].consistency_rating == "excellent"
    assert rows[1].consistency_rating == "good"


def test_enrich_without_results_or_history():
    [row] = enrich([entry("u1", 1)], 1, {})

    assert row.consistency_rating == "insufficient_data"
    assert row.rank_change == 0
    assert row.badges == ["champion", "podium"]


def test_basic_rows_carry_no_annotations():
    row = basic(entry("u1", 3))

    assert isinstance(row, BasicEntry)
    assert row.kind == "basic"
    assert not hasattr(row, "percentile")


async def test_enriched_leaderboard_page(engine, seed):
    for user_id, scores in [("a", [95, 97]), ("b", [80, 60]), ("c", [70]), ("d", [50]), ("e", [10])]:
        for score in scores:
            await seed.result(user_id, score)
    await engine.refresh_leaderboard("course-1")

    first = await engine.get_course_leaderboard("course-1", page=1, limit=2, enrich_rows=True)
    second = await engine.get_course_leaderboard("course-1", page=2, limit=2, enrich_rows=True)
    plain = await engine.get_course_leaderboard("course-1", page=1, limit=2)

    assert first.total == 5
    assert [(r.user_id, r.rank, r.kind) for r in first.entries] == [("a", 1, "enriched"), ("b", 2, "enriched")]
    assert first.entries[0].consistency_rating == "excellent"
    assert first.entries[0].percentile == 80
    # percentile is against the whole course, not the page
    assert [(r.user_id, r.percentile) for r in second.entries] == [("c", 40), ("d", 20)]
    assert {r.kind for r in plain.entries} == {"basic"}


async def test_page_size_is_clamped(engine, seed):
    for i in range(3):
        await seed.result(f"u{i}", 50 + i)
    await engine.refresh_leaderboard("course-1")

    page = await engine.get_course_leaderboard("course-1", limit=1000)

    assert page.limit == 100
    assert [r.rank for r in page.entries] == [1, 2, 3]
