import pytest

from thebox import db
from thebox.models import GameSession, Guess, PositionState, PowerUp, Screenshot, TierScreenshot
from thebox.services.daily import sessions as svc
from thebox.services.daily.errors import (
    ChallengeNotFound,
    InvalidHint,
    InvalidPosition,
    PowerUpUnavailable,
    SessionCompleted,
    SessionNotFound,
)


def _state(session, position):
    tier_session = session.tier_sessions[0]
    return PositionState.query.filter_by(tier_session_id=tier_session.id, position=position).one()


def _wrong_game(answer_for, session, position):
    return answer_for(session, 1 if position != 1 else 2)


def test_start_creates_session_with_ten_fresh_positions(game_session):
    assert game_session.current_position == 1
    assert game_session.total_score == 0
    assert not game_session.is_completed
    positions = game_session.tier_sessions[0].positions
    assert [p.position for p in positions] == list(range(1, 11))
    assert {p.status for p in positions} == {'not_visited'}


def test_start_is_idempotent(game_session, user, challenge_date):
    again = svc.start_or_resume(user.id, today=challenge_date)
    assert again.id == game_session.id
    assert GameSession.query.count() == 1


def test_start_without_challenge_raises(user, challenge_date):
    with pytest.raises(ChallengeNotFound):
        svc.start_or_resume(user.id, today=challenge_date)


def test_other_users_session_is_not_found(game_session, make_user):
    intruder = make_user('mallory')
    with pytest.raises(SessionNotFound):
        svc.get_session(game_session.id, user_id=intruder.id)


def test_correct_guess_scores_and_advances(game_session, answer_for):
    outcome = svc.submit_guess(game_session.id, 1, answer_for(game_session, 1), None, 2500)

    assert outcome.is_correct
    assert outcome.score_earned == 200
    assert outcome.total_score == 200
    assert outcome.next_position == 2
    assert _state(game_session, 1).status == 'correct'
    assert _state(game_session, 2).status == 'in_progress'
    assert db.session.get(GameSession, game_session.id).current_position == 2

    guess = Guess.query.one()
    assert guess.is_correct and guess.score_earned == 200 and guess.time_taken_ms == 2500

    assignment = TierScreenshot.query.filter_by(position=1).first()
    assert db.session.get(Screenshot, assignment.screenshot_id).correct_guesses == 1


def test_text_guess_uses_matcher(game_session, answer_for):
    from thebox.models import Game

    name = db.session.get(Game, answer_for(game_session, 1)).name
    outcome = svc.submit_guess(game_session.id, 1, None, f"  {name.lower()} ", 4000)
    assert outcome.is_correct
    assert outcome.score_earned == 175


def test_injected_matcher(game_session):
    outcome = svc.submit_guess(game_session.id, 3, None, 'anything', 1000, matcher=lambda text, shot: True)
    assert outcome.is_correct


def test_wrong_guess_penalises_total_but_not_below_zero(game_session, answer_for):
    outcome = svc.submit_guess(game_session.id, 1, _wrong_game(answer_for, game_session, 1), None, 1000)
    assert not outcome.is_correct
    assert outcome.total_score == 0
    assert outcome.wrong_guess_penalty == 30
    assert _state(game_session, 1).status == 'in_progress'
    assert _state(game_session, 1).wrong_guesses == 1

    svc.submit_guess(game_session.id, 1, answer_for(game_session, 1), None, 1000)
    outcome = svc.submit_guess(game_session.id, 2, _wrong_game(answer_for, game_session, 2), None, 1000)
    assert outcome.total_score == 170


def test_correct_position_is_terminal(game_session, answer_for):
    svc.submit_guess(game_session.id, 1, answer_for(game_session, 1), None, 2500)
    with pytest.raises(InvalidPosition):
        svc.submit_guess(game_session.id, 1, answer_for(game_session, 1), None, 2500)
    with pytest.raises(InvalidPosition):
        svc.navigate_to(game_session.id, 1)
    assert Guess.query.count() == 1


def test_out_of_range_position(game_session, answer_for):
    with pytest.raises(InvalidPosition):
        svc.submit_guess(game_session.id, 11, answer_for(game_session, 1), None, 2500)
    with pytest.raises(InvalidPosition):
        svc.navigate_to(game_session.id, 0)


def test_skip_records_nothing_and_moves_on(game_session):
    svc.skip(game_session.id, 1)

    assert _state(game_session, 1).status == 'skipped'
    assert Guess.query.count() == 0
    session = db.session.get(GameSession, game_session.id)
    assert session.current_position == 2
    assert session.total_score == 0


def test_skipped_position_can_still_be_solved(game_session, answer_for):
    svc.skip(game_session.id, 4)
    svc.submit_guess(game_session.id, 4, _wrong_game(answer_for, game_session, 4), None, 1000)
    assert _state(game_session, 4).status == 'skipped'

    outcome = svc.submit_guess(game_session.id, 4, answer_for(game_session, 4), None, 1000)
    assert outcome.is_correct
    assert _state(game_session, 4).status == 'correct'


def test_skip_on_correct_position_is_noop(game_session, answer_for):
    svc.submit_guess(game_session.id, 1, answer_for(game_session, 1), None, 2500)
    svc.skip(game_session.id, 1)
    assert _state(game_session, 1).status == 'correct'


def test_navigate_moves_cursor_without_scoring(game_session):
    svc.navigate_to(game_session.id, 7)
    session = db.session.get(GameSession, game_session.id)
    assert session.current_position == 7
    assert session.total_score == 0
    assert _state(game_session, 7).status == 'in_progress'


def test_hint_reveals_fact_and_costs_on_solve(game_session, answer_for):
    from thebox.models import Game

    game = db.session.get(Game, answer_for(game_session, 2))
    assert svc.use_hint(game_session.id, 2, 'year') == str(game.release_year)
    assert svc.use_hint(game_session.id, 2, 'year') == str(game.release_year)
    assert _state(game_session, 2).hints_used == ['year']

    outcome = svc.submit_guess(game_session.id, 2, game.id, None, 2500)
    assert outcome.hint_penalty == 20
    assert outcome.score_earned == 180


def test_unknown_hint_type(game_session):
    with pytest.raises(InvalidHint):
        svc.use_hint(game_session.id, 1, 'genre')


def test_hint_on_guess_without_power_up_is_charged(game_session, answer_for):
    outcome = svc.submit_guess(game_session.id, 1, answer_for(game_session, 1), None, 2500,
                               power_up_used='hint_publisher')
    assert outcome.score_earned == 170
    assert outcome.power_up_used is None
    assert _state(game_session, 1).hints_used == ['publisher']
    assert _state(game_session, 1).free_hints == []
    assert Guess.query.one().power_up_used is None


def test_held_hint_power_up_is_spent_on_guess(game_session, answer_for):
    svc.earn_power_up(game_session.id, 'hint_year', round_index=1)
    outcome = svc.submit_guess(game_session.id, 3, answer_for(game_session, 3), None, 2500,
                               power_up_used='hint_year')

    assert outcome.score_earned == 200
    assert outcome.hint_penalty == 0
    assert outcome.power_up_used == 'hint_year'
    power_up = PowerUp.query.one()
    assert power_up.is_used and power_up.used_at_round == 3
    assert _state(game_session, 3).hints_used == ['year']
    assert _state(game_session, 3).free_hints == ['year']
    assert Guess.query.one().power_up_used == 'hint_year'


def test_use_hint_spends_held_power_up_first(game_session, answer_for):
    svc.earn_power_up(game_session.id, 'hint_developer', round_index=2)

    assert svc.use_hint(game_session.id, 2, 'developer').startswith('Studio')
    power_up = PowerUp.query.one()
    assert power_up.is_used and power_up.used_at_round == 2
    free = svc.submit_guess(game_session.id, 2, answer_for(game_session, 2), None, 2500)
    assert free.hint_penalty == 0
    assert free.score_earned == 200

    svc.use_hint(game_session.id, 3, 'developer')
    assert _state(game_session, 3).free_hints == []
    charged = svc.submit_guess(game_session.id, 3, answer_for(game_session, 3), None, 2500)
    assert charged.hint_penalty == 30
    assert charged.score_earned == 170


def test_double_timer_requires_a_held_power_up(game_session, answer_for):
    with pytest.raises(PowerUpUnavailable):
        svc.submit_guess(game_session.id, 1, answer_for(game_session, 1), None, 45000, power_up_used='double_timer')
    assert _state(game_session, 1).status == 'not_visited'

    svc.earn_power_up(game_session.id, 'double_timer', round_index=1)
    outcome = svc.submit_guess(game_session.id, 1, answer_for(game_session, 1), None, 45000,
                               power_up_used='double_timer')
    assert outcome.score_earned == 100
    assert not outcome.timed_out
    power_up = PowerUp.query.one()
    assert power_up.is_used and power_up.used_at_round == 1


def test_power_up_awarded_once_per_round(game_session):
    first = svc.earn_power_up(game_session.id, 'double_timer', round_index=5)
    again = svc.earn_power_up(game_session.id, 'hint_year', round_index=5)
    assert again.id == first.id
    assert PowerUp.query.count() == 1


def test_late_correct_guess_finds_position_but_earns_nothing(game_session, answer_for):
    outcome = svc.submit_guess(game_session.id, 1, answer_for(game_session, 1), None, 31000)
    assert outcome.is_correct
    assert outcome.timed_out
    assert outcome.score_earned == 0
    assert _state(game_session, 1).status == 'correct'


def test_finding_everything_ends_the_session(game_session, answer_for):
    for position in range(1, 11):
        outcome = svc.submit_guess(game_session.id, position, answer_for(game_session, position), None, 2500)

    assert outcome.is_completed
    assert outcome.next_position is None
    assert outcome.summary.completion_reason == 'all_found'
    assert outcome.summary.total_score == 2000
    assert outcome.summary.unfound_count == 0
    assert db.session.get(GameSession, game_session.id).is_completed


def test_end_session_applies_unfound_penalty_once(game_session, answer_for):
    for position in range(1, 9):
        svc.submit_guess(game_session.id, position, answer_for(game_session, position), None, 2500)

    summary = svc.end_session(game_session.id)
    assert summary.claimed
    assert summary.unfound_count == 2
    assert summary.penalty_applied == 100
    assert summary.total_score == 1500
    assert summary.completion_reason == 'voluntary'

    replay = svc.end_session(game_session.id, reason='forced')
    assert not replay.claimed
    assert replay == summary
    assert db.session.get(GameSession, game_session.id).total_score == 1500


def test_penalty_floors_at_zero(game_session):
    summary = svc.end_session(game_session.id)
    assert summary.unfound_count == 10
    assert summary.total_score == 0


def test_completed_session_rejects_actions(game_session, answer_for):
    svc.end_session(game_session.id)
    with pytest.raises(SessionCompleted):
        svc.submit_guess(game_session.id, 1, answer_for(game_session, 1), None, 1000)
    with pytest.raises(SessionCompleted):
        svc.skip(game_session.id, 1)
    with pytest.raises(SessionCompleted):
        svc.navigate_to(game_session.id, 2)
    with pytest.raises(SessionCompleted):
        svc.use_hint(game_session.id, 2, 'year')
    with pytest.raises(SessionCompleted):
        svc.earn_power_up(game_session.id, 'double_timer', 1)


def test_resume_completed_session_returns_it_unchanged(game_session, user, challenge_date):
    svc.end_session(game_session.id)
    resumed = svc.start_or_resume(user.id, today=challenge_date)
    assert resumed.id == game_session.id
    assert resumed.is_completed


def test_session_state_view(game_session, answer_for):
    svc.submit_guess(game_session.id, 1, answer_for(game_session, 1), None, 2500)
    state = svc.session_state(db.session.get(GameSession, game_session.id))
    assert state['total_screenshots'] == 10
    assert state['screenshots_found'] == 1
    assert state['current_position'] == 2
    assert state['time_limit_seconds'] == 30
    assert state['summary'] is None
