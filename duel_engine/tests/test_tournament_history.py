"""
Tests for finished-tournament history pages, detail views and recaps.
"""
import pytest

from duel_engine.exceptions import NotFoundError
from duel_engine.orm.tournament import TournamentFormat, TournamentStatus
from duel_engine.tests.conftest import PROBLEM

PLAYERS = ["a", "b", "c", "d", "e", "f"]


async def _cancelled(engine, guild="guild-1"):
    tournament = await engine.create_tournament(
        guild, "a", TournamentFormat.SWISS, ["a", "b"], length_minutes=40, round_count=1
    )
    await engine.cancel_tournament(guild, "a")
    return tournament


async def _all_bye_swiss(engine, rounds):
    """Swiss tournament whose rounds are all byes, so every round completes at once."""
    tournament = await engine.create_tournament(
        "guild-1", "a", TournamentFormat.SWISS, PLAYERS, length_minutes=40, round_count=rounds
    )
    for _ in range(rounds):
        await engine.start_round(tournament.id, PROBLEM, [(user, None) for user in PLAYERS])
    return tournament


@pytest.mark.asyncio
async def test_cancelled_tournament_without_rounds_is_listed(engine):
    tournament = await _cancelled(engine)

    page = await engine.get_history_page("guild-1")
    assert page.total == 1
    assert page.total_pages == 1
    entry = page.entries[0]
    assert entry.id == tournament.id
    assert entry.status == TournamentStatus.CANCELLED.value
    assert entry.current_round == 0
    assert entry.participant_count == 2
    assert entry.winner_id is None

    detail = await engine.get_history_detail(tournament.id)
    assert detail.rounds == []
    assert [e.user_id for e in detail.standings] == ["a", "b"]


@pytest.mark.asyncio
async def test_history_pagination(engine):
    for _ in range(7):
        await _cancelled(engine)
    await _cancelled(engine, guild="guild-2")

    first = await engine.get_history_page("guild-1", page=1, page_size=3)
    last = await engine.get_history_page("guild-1", page=3, page_size=3)
    beyond = await engine.get_history_page("guild-1", page=4, page_size=3)

    assert (first.total, first.total_pages, len(first.entries)) == (7, 3, 3)
    assert len(last.entries) == 1
    assert beyond.entries == []
    ids = {e.id for e in first.entries} | {e.id for e in last.entries}
    assert len(ids) == 4


@pytest.mark.asyncio
async def test_history_page_empty_guild(engine):
    page = await engine.get_history_page("nowhere")
    assert page.entries == []
    assert page.total == 0
    assert page.total_pages == 0


@pytest.mark.asyncio
async def test_active_tournament_is_not_history(engine):
    await engine.create_tournament(
        "guild-1", "a", TournamentFormat.SWISS, ["a", "b"], length_minutes=40, round_count=1
    )
    assert (await engine.get_history_page("guild-1")).total == 0


@pytest.mark.asyncio
async def test_history_detail_limits_rounds_and_standings(engine, link_users):
    await link_users({user: 1500 for user in PLAYERS})
    tournament = await _all_bye_swiss(engine, rounds=4)
    assert await engine.advance_tournament("guild-1") is None

    detail = await engine.get_history_detail(tournament.id)

    assert detail.entry.status == TournamentStatus.COMPLETED.value
    assert detail.entry.participant_count == 6
    assert detail.entry.winner_id == "a"
    assert [r.round_number for r in detail.rounds] == [4, 3, 2]
    assert all(r.bye_count == 6 for r in detail.rounds)
    assert [e.user_id for e in detail.standings] == ["a", "b", "c", "d", "e"]
    assert detail.standings[0].score == 4.0
    assert detail.standings[0].matches_played == 4
    assert set(detail.participant_handles) == {"a", "b", "c", "d", "e"}
    assert detail.participant_handles["a"] == "a_cf"


@pytest.mark.asyncio
async def test_recap_lists_every_round_and_player(engine, link_users):
    await link_users({"a": 1500, "b": 1500})
    tournament = await _all_bye_swiss(engine, rounds=4)
    await engine.advance_tournament("guild-1")

    recap = await engine.get_recap(tournament.id)

    assert [r.round_number for r in recap.rounds] == [4, 3, 2, 1]
    assert len(recap.standings) == 6
    assert recap.arena_problems == []
    assert recap.participant_handles == {"a": "a_cf", "b": "b_cf"}
    assert recap.rounds[0].problem_name == PROBLEM.name


@pytest.mark.asyncio
async def test_history_detail_unknown_tournament(engine):
    with pytest.raises(NotFoundError):
        await engine.get_history_detail("missing")
    with pytest.raises(NotFoundError):
        await engine.get_recap("missing")
