"""
Tests for swiss/elimination tournaments: rounds, match resolution, standings.
"""
import pytest

from duel_engine.exceptions import (
    ForbiddenError, InvalidSpecError, NotFoundError, TournamentStateError
)
from duel_engine.orm.challenge import ChallengeStatus
from duel_engine.orm.tournament import (
    TournamentFormat, TournamentMatch, TournamentParticipant, TournamentStatus,
    RoundStatus, MatchStatus,
)
from duel_engine.services.tournament_engine import compute_swiss_standings, decide_match
from duel_engine.tests.conftest import PROBLEM

DEADLINE = 1000 + 40 * 60


async def _swiss(engine, players, round_count=3, fmt=TournamentFormat.SWISS):
    return await engine.create_tournament(
        "guild-1", players[0], fmt, players, length_minutes=40, round_count=round_count
    )


async def _challenge_status(scheduler, challenge_id):
    async with scheduler.session_factory() as db:
        return (await scheduler.store.get(db, challenge_id)).status


def _standing(standings, user_id):
    return next(entry for entry in standings if entry.user_id == user_id)


# =============================================================================
# Pure helpers
# =============================================================================

def _participant(user_id, seed, score):
    return TournamentParticipant(
        user_id=user_id, seed=seed, score=score, wins=0, losses=0, draws=0, eliminated=False
    )


def _match(player1, player2, winner=None, is_draw=False, status=MatchStatus.COMPLETED.value):
    return TournamentMatch(
        player1_id=player1, player2_id=player2, winner_id=winner, is_draw=is_draw, status=status
    )


def test_sonneborn_berger_example():
    participants = [
        _participant("A", 1, 1.0),
        _participant("B", 2, 1.0),
        _participant("C", 3, 0.5),
        _participant("D", 4, 0.0),
    ]
    matches = [_match("A", "C", winner="A"), _match("B", "D", winner="B")]

    standings = compute_swiss_standings(participants, matches)

    assert [entry.user_id for entry in standings[:2]] == ["A", "B"]
    assert _standing(standings, "A").tiebreak == 0.5
    assert _standing(standings, "B").tiebreak == 0.0


def test_seed_breaks_full_ties():
    participants = [_participant("late", 2, 1.0), _participant("early", 1, 1.0)]
    standings = compute_swiss_standings(participants, [])
    assert [entry.user_id for entry in standings] == ["early", "late"]
    assert [entry.rank for entry in standings] == [1, 2]


def test_byes_and_open_matches_do_not_feed_tiebreak():
    participants = [_participant("A", 1, 1.0), _participant("B", 2, 1.0)]
    matches = [
        _match("A", None, winner="A", status=MatchStatus.BYE.value),
        _match("A", "B", status=MatchStatus.ACTIVE.value),
    ]
    standings = compute_swiss_standings(participants, matches)
    assert _standing(standings, "A").tiebreak == 0.0
    assert _standing(standings, "A").matches_played == 1


def test_decide_match_rules():
    p1, p2 = _participant("A", 1, 0), _participant("B", 2, 0)
    assert decide_match("swiss", p1, p2, {"A": 1200, "B": 1100}) == ("B", False)
    assert decide_match("swiss", p1, p2, {"A": 1200, "B": None}) == ("A", False)
    assert decide_match("swiss", p1, p2, {"A": None, "B": None}) == (None, True)
    assert decide_match("swiss", p1, p2, {"A": 1200, "B": 1200}) == (None, True)
    assert decide_match("elimination", p1, p2, {"A": None, "B": None}) == ("A", False)
    assert decide_match("elimination", p2, p1, {"A": 1300, "B": 1300}) == ("A", False)


# =============================================================================
# Creation and rounds
# =============================================================================

@pytest.mark.asyncio
async def test_create_tournament_seeds_in_entry_order(engine):
    tournament = await _swiss(engine, ["alice", "bob", "carol"])
    standings = await engine.get_standings(tournament.id)

    assert tournament.status == TournamentStatus.ACTIVE.value
    assert tournament.current_round == 0
    assert [(e.user_id, e.seed) for e in standings] == [("alice", 1), ("bob", 2), ("carol", 3)]


@pytest.mark.asyncio
async def test_create_tournament_validation(engine):
    with pytest.raises(InvalidSpecError):
        await _swiss(engine, ["alice"])
    with pytest.raises(InvalidSpecError):
        await _swiss(engine, ["alice", "alice"])
    with pytest.raises(InvalidSpecError):
        await engine.create_tournament("guild-1", "alice", TournamentFormat.SWISS, ["alice", "bob"], 45)

    await _swiss(engine, ["alice", "bob"])
    with pytest.raises(TournamentStateError):
        await _swiss(engine, ["carol", "dave"])


@pytest.mark.asyncio
async def test_default_round_count_from_roster_size(engine):
    tournament = await engine.create_tournament(
        "guild-1", "a", TournamentFormat.ELIMINATION, ["a", "b", "c", "d", "e"], 40
    )
    assert tournament.round_count == 3


@pytest.mark.asyncio
async def test_start_round_creates_backing_challenges_and_byes(engine, scheduler):
    tournament = await _swiss(engine, ["alice", "bob", "carol"])
    summary = await engine.start_round(tournament.id, PROBLEM, [("alice", "bob"), ("carol", None)])

    assert summary.round_number == 1
    assert summary.match_count == 2
    assert summary.bye_count == 1
    assert summary.completed_count == 1
    assert summary.status == RoundStatus.ACTIVE.value

    matches = await engine.list_round_matches(tournament.id, 1)
    duel, bye = matches
    assert duel.status == MatchStatus.ACTIVE.value
    assert duel.challenge_id is not None
    assert bye.status == MatchStatus.BYE.value
    assert bye.winner_id == "carol"
    assert bye.challenge_id is None

    challenge = (await scheduler.get_active_challenges_for_users(["alice"]))["alice"]
    assert challenge.id == duel.challenge_id
    assert challenge.tournament_id == tournament.id
    assert challenge.length_minutes == 40

    carol = _standing(await engine.get_standings(tournament.id), "carol")
    assert carol.score == 1.0
    assert carol.wins == 1


@pytest.mark.asyncio
async def test_start_round_rejects_bad_pairings(engine):
    tournament = await _swiss(engine, ["alice", "bob", "carol"])
    with pytest.raises(InvalidSpecError):
        await engine.start_round(tournament.id, PROBLEM, [("alice", "mallory")])
    with pytest.raises(InvalidSpecError):
        await engine.start_round(tournament.id, PROBLEM, [("alice", "bob"), ("bob", None)])
    with pytest.raises(InvalidSpecError):
        await engine.start_round(tournament.id, PROBLEM, [])
    with pytest.raises(NotFoundError):
        await engine.start_round("missing", PROBLEM, [("alice", "bob")])

    assert await engine.list_round_summaries(tournament.id) == []


@pytest.mark.asyncio
async def test_start_round_rejected_while_round_in_progress(engine):
    tournament = await _swiss(engine, ["alice", "bob"])
    await engine.start_round(tournament.id, PROBLEM, [("alice", "bob")])
    with pytest.raises(TournamentStateError):
        await engine.start_round(tournament.id, PROBLEM, [("alice", "bob")])


# =============================================================================
# Match resolution from challenges
# =============================================================================

@pytest.mark.asyncio
async def test_earliest_solver_wins_the_match(engine, scheduler, source, clock, link_users):
    await link_users({"alice": 1500, "bob": 1500})
    tournament = await _swiss(engine, ["alice", "bob"])
    await engine.start_round(tournament.id, PROBLEM, [("alice", "bob")])

    source.accept("alice_cf", 1700, "A", at=1300)
    source.accept("bob_cf", 1700, "A", at=1200)
    clock.now = 1400
    report = await scheduler.tick()
    assert len(report.completed) == 1

    match = (await engine.list_round_matches(tournament.id, 1))[0]
    assert match.status == MatchStatus.COMPLETED.value
    assert match.winner_id == "bob"
    assert match.is_draw is False

    standings = await engine.get_standings(tournament.id)
    assert standings[0].user_id == "bob"
    assert _standing(standings, "bob").wins == 1
    assert _standing(standings, "alice").losses == 1
    assert _standing(standings, "alice").score == 0.0

    rounds = await engine.list_round_summaries(tournament.id)
    assert rounds[0].status == RoundStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_single_solver_wins_after_deadline(engine, scheduler, source, clock, link_users):
    await link_users({"alice": 1500, "bob": 1500})
    tournament = await _swiss(engine, ["alice", "bob"])
    await engine.start_round(tournament.id, PROBLEM, [("alice", "bob")])

    source.accept("alice_cf", 1700, "A", at=1100)
    clock.now = 1200
    await scheduler.tick()
    assert (await engine.list_round_matches(tournament.id, 1))[0].status == MatchStatus.ACTIVE.value

    clock.now = DEADLINE
    await scheduler.tick()

    match = (await engine.list_round_matches(tournament.id, 1))[0]
    assert match.winner_id == "alice"


@pytest.mark.asyncio
async def test_no_solves_is_a_swiss_draw(engine, scheduler, clock, link_users):
    await link_users({"alice": 1500, "bob": 1500})
    tournament = await _swiss(engine, ["alice", "bob"])
    await engine.start_round(tournament.id, PROBLEM, [("alice", "bob")])

    clock.now = DEADLINE
    await scheduler.tick()

    match = (await engine.list_round_matches(tournament.id, 1))[0]
    assert match.is_draw is True
    assert match.winner_id is None
    assert match.status == MatchStatus.COMPLETED.value
    for entry in await engine.get_standings(tournament.id):
        assert entry.score == 0.5
        assert entry.draws == 1


@pytest.mark.asyncio
async def test_on_challenge_completed_is_idempotent(engine, scheduler, source, clock, link_users):
    await link_users({"alice": 1500, "bob": 1500})
    tournament = await _swiss(engine, ["alice", "bob"])
    await engine.start_round(tournament.id, PROBLEM, [("alice", "bob")])
    challenge_id = (await engine.list_round_matches(tournament.id, 1))[0].challenge_id

    source.accept("alice_cf", 1700, "A", at=1100)
    clock.now = DEADLINE
    await scheduler.tick()

    standings_once = await engine.get_standings(tournament.id)
    matches_once = await engine.list_round_matches(tournament.id, 1)

    assert await engine.on_challenge_completed(challenge_id) is None
    assert await engine.on_challenge_completed(challenge_id) is None
    assert await engine.sync_completed_matches() == 0

    assert await engine.get_standings(tournament.id) == standings_once
    assert await engine.list_round_matches(tournament.id, 1) == matches_once


@pytest.mark.asyncio
async def test_unknown_challenge_is_a_no_op(engine):
    assert await engine.on_challenge_completed("not-a-match") is None


@pytest.mark.asyncio
async def test_missed_notification_is_recovered(engine, scheduler, source, clock, link_users):
    await link_users({"alice": 1500, "bob": 1500})
    tournament = await _swiss(engine, ["alice", "bob"])
    await engine.start_round(tournament.id, PROBLEM, [("alice", "bob")])

    scheduler.set_completion_listener(None)
    source.accept("bob_cf", 1700, "A", at=1100)
    clock.now = DEADLINE
    await scheduler.tick()
    assert (await engine.list_round_matches(tournament.id, 1))[0].status == MatchStatus.ACTIVE.value

    assert await engine.sync_completed_matches() == 1
    assert (await engine.list_round_matches(tournament.id, 1))[0].winner_id == "bob"


# =============================================================================
# Elimination
# =============================================================================

@pytest.mark.asyncio
async def test_elimination_loser_is_flagged(engine, scheduler, source, clock, link_users):
    await link_users({"alice": 1500, "bob": 1500})
    tournament = await _swiss(engine, ["alice", "bob"], round_count=1, fmt=TournamentFormat.ELIMINATION)
    await engine.start_round(tournament.id, PROBLEM, [("alice", "bob")])

    source.accept("bob_cf", 1700, "A", at=1100)
    clock.now = 1200
    await scheduler.tick()
    clock.now = DEADLINE
    await scheduler.tick()

    standings = await engine.get_standings(tournament.id)
    assert _standing(standings, "alice").eliminated is True
    assert _standing(standings, "bob").eliminated is False


@pytest.mark.asyncio
async def test_elimination_tie_goes_to_better_seed(engine, scheduler, clock, link_users):
    await link_users({"alice": 1500, "bob": 1500})
    tournament = await _swiss(engine, ["alice", "bob"], round_count=1, fmt=TournamentFormat.ELIMINATION)
    await engine.start_round(tournament.id, PROBLEM, [("alice", "bob")])

    clock.now = DEADLINE
    await scheduler.tick()

    match = (await engine.list_round_matches(tournament.id, 1))[0]
    assert match.winner_id == "alice"
    assert match.is_draw is False


@pytest.mark.asyncio
async def test_elimination_bracket_runs_to_a_single_winner(engine):
    players = ["a", "b", "c", "d"]
    tournament = await _swiss(engine, players, round_count=2, fmt=TournamentFormat.ELIMINATION)
    await engine.start_round(tournament.id, PROBLEM, [("a", "b"), ("c", "d")])
    semi_one, semi_two = await engine.list_round_matches(tournament.id, 1)
    await engine.resolve_match(semi_one.id, winner_id="a")
    await engine.resolve_match(semi_two.id, winner_id="c")

    # b was knocked out
    with pytest.raises(InvalidSpecError):
        await engine.advance_tournament("guild-1", PROBLEM, [("a", "b")])

    second = await engine.advance_tournament("guild-1", PROBLEM, [("a", "c")])
    assert second.round_number == 2

    final = (await engine.list_round_matches(tournament.id, 2))[0]
    await engine.resolve_match(final.id, winner_id="c")

    assert await engine.advance_tournament("guild-1") is None
    history = await engine.get_history_page("guild-1")
    assert history.entries[0].status == TournamentStatus.COMPLETED.value
    assert history.entries[0].winner_id == "c"


# =============================================================================
# Manual resolution, advance and cancel
# =============================================================================

@pytest.mark.asyncio
async def test_resolve_match_without_duel(engine, scheduler):
    tournament = await _swiss(engine, ["alice", "bob"])
    await engine.start_round(tournament.id, PROBLEM, [("alice", "bob")])
    match = (await engine.list_round_matches(tournament.id, 1))[0]

    with pytest.raises(InvalidSpecError):
        await engine.resolve_match(match.id)
    with pytest.raises(InvalidSpecError):
        await engine.resolve_match(match.id, winner_id="mallory")

    resolved = await engine.resolve_match(match.id, winner_id="bob")
    assert resolved.winner_id == "bob"
    assert await _challenge_status(scheduler, match.challenge_id) == ChallengeStatus.CANCELLED.value

    assert await engine.resolve_match(match.id, winner_id="alice") is None
    bob = _standing(await engine.get_standings(tournament.id), "bob")
    assert bob.wins == 1
    assert bob.score == 1.0


@pytest.mark.asyncio
async def test_swiss_tiebreak_through_engine(engine):
    players = ["A", "B", "C", "D", "E"]
    tournament = await _swiss(engine, players, round_count=3)

    await engine.start_round(tournament.id, PROBLEM, [("A", "C"), ("B", "D")])
    first = {m.match_number: m.id for m in await engine.list_round_matches(tournament.id, 1)}
    await engine.resolve_match(first[1], winner_id="A")
    await engine.resolve_match(first[2], winner_id="B")

    await engine.start_round(tournament.id, PROBLEM, [("C", "E")])
    second = (await engine.list_round_matches(tournament.id, 2))[0]
    await engine.resolve_match(second.id, is_draw=True)

    standings = await engine.get_standings(tournament.id, "swiss")
    assert [e.user_id for e in standings] == ["A", "B", "C", "E", "D"]
    assert _standing(standings, "A").tiebreak == 0.5
    assert _standing(standings, "B").tiebreak == 0.0
    assert _standing(standings, "C").tiebreak == 0.25


@pytest.mark.asyncio
async def test_advance_completes_swiss_after_last_round(engine):
    tournament = await _swiss(engine, ["alice", "bob"], round_count=1)

    with pytest.raises(InvalidSpecError):
        await engine.advance_tournament("guild-1")

    await engine.advance_tournament("guild-1", PROBLEM, [("alice", "bob")])
    with pytest.raises(TournamentStateError):
        await engine.advance_tournament("guild-1")

    match = (await engine.list_round_matches(tournament.id, 1))[0]
    await engine.resolve_match(match.id, winner_id="alice")

    assert await engine.advance_tournament("guild-1") is None
    with pytest.raises(NotFoundError):
        await engine.advance_tournament("guild-1")

    detail = await engine.get_history_detail(tournament.id)
    assert detail.entry.status == TournamentStatus.COMPLETED.value
    assert detail.entry.winner_id == "alice"


@pytest.mark.asyncio
async def test_cancel_tournament_cancels_live_challenges(engine, scheduler, link_users, get_rating):
    await link_users({"alice": 1500, "bob": 1500})
    tournament = await _swiss(engine, ["alice", "bob"])
    await engine.start_round(tournament.id, PROBLEM, [("alice", "bob")])
    challenge_id = (await engine.list_round_matches(tournament.id, 1))[0].challenge_id

    with pytest.raises(ForbiddenError):
        await engine.cancel_tournament("guild-1", "bob")

    cancelled = await engine.cancel_tournament("guild-1", "alice")
    assert cancelled.status == TournamentStatus.CANCELLED.value
    assert await _challenge_status(scheduler, challenge_id) == ChallengeStatus.CANCELLED.value
    assert await get_rating("alice") == 1500
    assert await scheduler.get_active_count() == 0

    with pytest.raises(NotFoundError):
        await engine.cancel_tournament("guild-1", "alice")

    # The guild is free for a new tournament
    await _swiss(engine, ["carol", "dave"])


@pytest.mark.asyncio
async def test_challenges_cancelled_by_tournament_get_final_render(engine, scheduler, sink, clock, link_users):
    await link_users({"alice": 1500, "bob": 1500, "carol": 1500, "dave": 1500})
    tournament = await _swiss(engine, ["alice", "bob", "carol", "dave"])
    await engine.start_round(tournament.id, PROBLEM, [("alice", "bob"), ("carol", "dave")])
    first, second = await engine.list_round_matches(tournament.id, 1)

    clock.now = 1010
    await scheduler.tick()
    assert first.challenge_id in scheduler._last_rendered
    assert second.challenge_id in scheduler._last_rendered

    await engine.resolve_match(first.id, winner_id="alice")
    final = sink.for_entity(first.challenge_id)[-1]
    assert final.status == ChallengeStatus.CANCELLED.value
    assert final.final is True
    assert first.challenge_id not in scheduler._last_rendered

    await engine.cancel_tournament("guild-1", "alice")
    final = sink.for_entity(second.challenge_id)[-1]
    assert final.status == ChallengeStatus.CANCELLED.value
    assert final.title.startswith("Challenge cancelled")
    assert scheduler._last_rendered == {}


@pytest.mark.asyncio
async def test_round_left_open_by_racing_resolutions_closes_on_advance(engine):
    tournament = await _swiss(engine, ["a", "b", "c", "d"], round_count=2)
    await engine.start_round(tournament.id, PROBLEM, [("a", "b"), ("c", "d")])
    for match in await engine.list_round_matches(tournament.id, 1):
        await engine.resolve_match(match.id, winner_id=match.player1_id)

    # Two concurrent resolutions that each missed the other leave the round active
    async with engine.session_factory() as db:
        async with db.begin():
            round_ = await engine.store.get_round(db, tournament.id, 1)
            round_.status = RoundStatus.ACTIVE.value

    summary = await engine.advance_tournament("guild-1", PROBLEM, [("a", "c"), ("b", "d")])

    assert summary.round_number == 2
    first_round = (await engine.list_round_summaries(tournament.id, round_number=1))[0]
    assert first_round.status == RoundStatus.COMPLETED.value
    assert first_round.completed_count == 2


@pytest.mark.asyncio
async def test_round_with_open_match_still_blocks_advance(engine):
    tournament = await _swiss(engine, ["a", "b", "c", "d"], round_count=2)
    await engine.start_round(tournament.id, PROBLEM, [("a", "b"), ("c", "d")])
    first = (await engine.list_round_matches(tournament.id, 1))[0]
    await engine.resolve_match(first.id, winner_id="a")

    with pytest.raises(TournamentStateError):
        await engine.advance_tournament("guild-1", PROBLEM, [("a", "c"), ("b", "d")])
