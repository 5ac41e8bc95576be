"""Per-player session state machine for the daily challenge.

Every mutation re-checks ``is_completed = false`` inside its own UPDATE so
that a guess racing the midnight sweep either lands before the session is
closed or is rejected with SessionCompleted. ``end_session`` claims
completion with a conditional UPDATE and applies the unfound penalty in
the same transaction, which is what makes it safe to call from a player
request and from the sweeper at the same time.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional

from flask import current_app
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError

from thebox import db
from thebox.models import (
    DailyChallenge,
    GameSession,
    Guess,
    PositionState,
    PowerUp,
    Tier,
    TierScreenshot,
    TierSession,
)
from .catalog import catalog as default_catalog
from .errors import (
    ChallengeNotFound,
    ChallengeTooOld,
    DailyError,
    InvalidHint,
    InvalidPosition,
    PowerUpUnavailable,
    SessionCompleted,
    SessionNotFound,
)
from .generator import get_today_challenge, today_utc
from .matching import is_match as default_matcher
from .positions import (
    PositionStatus,
    next_open_position,
    status_after_wrong_guess,
    status_on_visit,
    transition,
)
from .scoring import DOUBLE_TIMER, ScoringRules, score_guess, unfound_penalty

END_REASONS = ('voluntary', 'forced', 'all_found')
HINT_TYPES = ('year', 'publisher', 'developer')
HINT_POWER_UPS = {f"hint_{h}": h for h in HINT_TYPES}
POWER_UP_TYPES = (DOUBLE_TIMER,) + tuple(HINT_POWER_UPS)


@dataclass
class SessionSummary:
    session_id: int
    user_id: int
    challenge_id: int
    challenge_date: date
    total_score: int
    screenshots_found: int
    unfound_count: int
    penalty_applied: int
    completion_reason: str
    completed_at: datetime
    is_catch_up: bool = False
    newly_earned: List[dict] = field(default_factory=list, compare=False)
    # True only for the call that performed the completion
    claimed: bool = field(default=False, compare=False)

    def to_dict(self):
        return {
            'session_id': self.session_id,
            'user_id': self.user_id,
            'challenge_id': self.challenge_id,
            'challenge_date': self.challenge_date.isoformat(),
            'total_score': self.total_score,
            'screenshots_found': self.screenshots_found,
            'unfound_count': self.unfound_count,
            'penalty_applied': self.penalty_applied,
            'completion_reason': self.completion_reason,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'is_catch_up': self.is_catch_up,
            'newly_earned_achievements': self.newly_earned,
        }


@dataclass
class GuessOutcome:
    is_correct: bool
    position: int
    position_status: str
    score_earned: int
    total_score: int
    screenshots_found: int
    next_position: Optional[int]
    hint_penalty: int = 0
    wrong_guess_penalty: int = 0
    timed_out: bool = False
    power_up_used: Optional[str] = None
    is_completed: bool = False
    summary: Optional[SessionSummary] = None

    def to_dict(self):
        return {
            'is_correct': self.is_correct,
            'position': self.position,
            'position_status': self.position_status,
            'score_earned': self.score_earned,
            'total_score': self.total_score,
            'screenshots_found': self.screenshots_found,
            'next_position': self.next_position,
            'hint_penalty': self.hint_penalty,
            'wrong_guess_penalty': self.wrong_guess_penalty,
            'timed_out': self.timed_out,
            'power_up_used': self.power_up_used,
            'is_completed': self.is_completed,
            'summary': self.summary.to_dict() if self.summary else None,
        }


def _utcnow():
    return datetime.now(timezone.utc)


def _rules() -> ScoringRules:
    return ScoringRules.from_config(current_app.config)


def _floored(column, delta):
    return case((column + delta > 0, column + delta), else_=0)


# ---- lookups ----

def get_session(session_id: int, user_id: Optional[int] = None) -> GameSession:
    session = db.session.get(GameSession, session_id)
    if session is None or (user_id is not None and session.user_id != user_id):
        raise SessionNotFound(f"Session {session_id} not found")
    return session


def _active_session(session_id: int, user_id: Optional[int]) -> GameSession:
    session = get_session(session_id, user_id)
    if session.is_completed:
        raise SessionCompleted(f"Session {session_id} is already completed")
    return session


def _tier_session(session: GameSession) -> TierSession:
    tier_session = (
        TierSession.query.join(Tier, TierSession.tier_id == Tier.id)
        .filter(TierSession.game_session_id == session.id, Tier.tier_number == session.current_tier)
        .first()
    )
    if tier_session is None:
        raise SessionNotFound(f"Session {session.id} has no tier {session.current_tier}")
    return tier_session


def _position_state(tier_session: TierSession, position: int) -> PositionState:
    state = PositionState.query.filter_by(tier_session_id=tier_session.id, position=position).first()
    if state is None:
        raise InvalidPosition(f"Position {position} is out of range")
    return state


def _statuses(tier_session_id: int) -> dict:
    rows = db.session.execute(
        select(PositionState.position, PositionState.status).where(PositionState.tier_session_id == tier_session_id)
    ).all()
    return {r.position: r.status for r in rows}


def _guard_session(session_id: int, **values) -> None:
    """Apply ``values`` to the session only while it is still active."""
    result = db.session.execute(
        update(GameSession)
        .where(GameSession.id == session_id, GameSession.is_completed.is_(False))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.session.rollback()
        raise SessionCompleted(f"Session {session_id} is already completed")


def _guard_position(state_id: int, **values) -> bool:
    result = db.session.execute(
        update(PositionState)
        .where(PositionState.id == state_id, PositionState.status != PositionStatus.CORRECT.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def _visit(tier_session_id: int, position: int) -> None:
    state = PositionState.query.filter_by(tier_session_id=tier_session_id, position=position).first()
    if state is not None and state.status == PositionStatus.NOT_VISITED.value:
        _guard_position(state.id, status=status_on_visit(state.status).value)


# ---- operations ----

def _catch_up_window() -> int:
    return int(current_app.config.get('CATCH_UP_DAYS', 7))


def start_or_resume(user_id: int, today: Optional[date] = None, challenge_date: Optional[date] = None) -> GameSession:
    """Return the player's session for a challenge, creating it on first play.

    ``challenge_date`` defaults to today. An earlier date within
    CATCH_UP_DAYS starts a catch-up session: played the same way, but never
    published to or ranked on the leaderboard.
    """
    today = today or today_utc()
    challenge_date = challenge_date or today
    if challenge_date > today:
        raise ChallengeNotFound(f"No challenge for {challenge_date.isoformat()}")
    is_catch_up = challenge_date < today
    if is_catch_up and (today - challenge_date).days > _catch_up_window():
        raise ChallengeTooOld(f"The challenge for {challenge_date.isoformat()} is no longer playable")

    challenge = get_today_challenge(challenge_date)
    existing = GameSession.query.filter_by(user_id=user_id, daily_challenge_id=challenge.id).first()
    if existing:
        current_app.logger.info(f"[session-resume] session={existing.id} user={user_id} completed={existing.is_completed}")
        return existing

    tier = Tier.query.filter_by(daily_challenge_id=challenge.id, tier_number=1).first()
    if tier is None:
        raise ChallengeNotFound(f"Challenge {challenge.id} has no tier")

    try:
        session = GameSession(user_id=user_id, daily_challenge_id=challenge.id, current_tier=tier.tier_number,
                              current_position=1, total_score=0, is_catch_up=is_catch_up)
        db.session.add(session)
        db.session.flush()
        tier_session = TierSession(game_session_id=session.id, tier_id=tier.id)
        db.session.add(tier_session)
        db.session.flush()
        for assignment in tier.assignments:
            db.session.add(PositionState(tier_session_id=tier_session.id, position=assignment.position,
                                         status=PositionStatus.NOT_VISITED.value, hints_used=[]))
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        winner = GameSession.query.filter_by(user_id=user_id, daily_challenge_id=challenge.id).first()
        if winner is None:
            raise
        return winner

    current_app.logger.info(
        f"[session-start] session={session.id} user={user_id} challenge={challenge.id} catch_up={is_catch_up}"
    )
    return session


def missed_challenges(user_id: int, today: Optional[date] = None) -> List[dict]:
    """Past challenges inside the catch-up window the player never started."""
    today = today or today_utc()
    played = select(GameSession.daily_challenge_id).where(GameSession.user_id == user_id)
    challenges = (
        DailyChallenge.query.filter(
            DailyChallenge.challenge_date < today,
            DailyChallenge.challenge_date >= today - timedelta(days=_catch_up_window()),
            DailyChallenge.id.not_in(played),
        )
        .order_by(DailyChallenge.challenge_date.desc())
        .all()
    )
    return [{'challenge_id': c.id, 'date': c.challenge_date.isoformat()} for c in challenges]


def submit_guess(session_id: int, position: int, game_id: Optional[int], text: Optional[str], elapsed_ms: int,
                 power_up_used: Optional[str] = None, user_id: Optional[int] = None,
                 matcher: Optional[Callable] = None, catalog=None, leaderboard=None) -> GuessOutcome:
    matcher = matcher or default_matcher
    catalog = catalog or default_catalog
    if elapsed_ms is None or int(elapsed_ms) < 0:
        raise DailyError('elapsed_ms must be a non-negative integer', code='INVALID_ELAPSED')
    elapsed_ms = int(elapsed_ms)
    if power_up_used is not None and power_up_used not in POWER_UP_TYPES:
        raise PowerUpUnavailable(f"Unknown power-up {power_up_used}")

    session = _active_session(session_id, user_id)
    tier_session = _tier_session(session)
    state = _position_state(tier_session, position)
    if state.status == PositionStatus.CORRECT.value:
        raise InvalidPosition(f"Position {position} is already identified")

    assignment = TierScreenshot.query.filter_by(tier_id=tier_session.tier_id, position=position).first()
    if assignment is None:
        raise InvalidPosition(f"Position {position} is out of range")
    screenshot = catalog.get_screenshot(assignment.screenshot_id)

    is_correct = (game_id is not None and game_id == screenshot.game_id) or \
        bool(text and text.strip() and matcher(text, screenshot))

    hints = list(state.hints_used or [])
    free_hints = list(state.free_hints or [])
    spent = None
    if power_up_used in HINT_POWER_UPS:
        if _add_hint(tier_session.id, position, HINT_POWER_UPS[power_up_used], hints, free_hints):
            spent = power_up_used

    double_timer = False
    if power_up_used == DOUBLE_TIMER:
        _consume_power_up(tier_session.id, DOUBLE_TIMER, position)
        double_timer = True
        spent = DOUBLE_TIMER

    scored = score_guess(
        is_correct,
        elapsed_ms,
        _rules(),
        tier_session.tier.time_limit_seconds,
        hints=[h for h in hints if h not in free_hints],
        double_timer=double_timer,
        bonus_multiplier=assignment.bonus_multiplier,
    )

    if is_correct:
        new_status = transition(state.status, PositionStatus.CORRECT)
        moved = _guard_position(state.id, status=new_status.value, hints_used=hints, free_hints=free_hints)
    else:
        new_status = status_after_wrong_guess(state.status)
        moved = _guard_position(state.id, status=new_status.value, hints_used=hints, free_hints=free_hints,
                                wrong_guesses=PositionState.wrong_guesses + 1)
    if not moved:
        db.session.rollback()
        raise InvalidPosition(f"Position {position} is already identified")

    _guard_session(session.id, total_score=_floored(GameSession.total_score, scored.delta))
    db.session.execute(
        update(TierSession)
        .where(TierSession.id == tier_session.id)
        .values(
            score=_floored(TierSession.score, scored.delta),
            correct_answers=TierSession.correct_answers + (1 if is_correct else 0),
            wrong_guesses=TierSession.wrong_guesses + (0 if is_correct else 1),
        )
        .execution_options(synchronize_session=False)
    )
    db.session.add(Guess(
        tier_session_id=tier_session.id,
        screenshot_id=assignment.screenshot_id,
        position=position,
        guessed_game_id=game_id,
        guessed_text=(text or '')[:255] or None,
        is_correct=is_correct,
        time_taken_ms=elapsed_ms,
        score_earned=scored.earned,
        power_up_used=spent,
    ))
    if is_correct:
        catalog.increment_correct(assignment.screenshot_id)

    statuses = _statuses(tier_session.id)
    next_position = None
    if is_correct:
        next_position = next_open_position(statuses, after=position)
        if next_position is not None:
            _guard_session(session.id, current_position=next_position)
            _visit(tier_session.id, next_position)
    db.session.commit()

    found = sum(1 for s in statuses.values() if s == PositionStatus.CORRECT.value)
    current_app.logger.info(
        f"[guess] session={session.id} position={position} correct={is_correct} earned={scored.earned} "
        f"elapsed_ms={elapsed_ms} power_up={spent} timed_out={scored.timed_out}"
    )

    summary = None
    if is_correct and next_position is None:
        summary = end_session(session.id, reason='all_found', leaderboard=leaderboard)

    total_score = summary.total_score if summary else db.session.get(GameSession, session.id).total_score
    return GuessOutcome(
        is_correct=is_correct,
        position=position,
        position_status=new_status.value,
        score_earned=scored.earned,
        total_score=total_score,
        screenshots_found=found,
        next_position=next_position,
        hint_penalty=scored.hint_penalty,
        wrong_guess_penalty=scored.wrong_guess_penalty,
        timed_out=scored.timed_out,
        power_up_used=spent,
        is_completed=summary is not None,
        summary=summary,
    )


def skip(session_id: int, position: int, user_id: Optional[int] = None) -> None:
    """Leave a position for later. No score change, no guess recorded."""
    session = _active_session(session_id, user_id)
    tier_session = _tier_session(session)
    state = _position_state(tier_session, position)
    if state.status == PositionStatus.CORRECT.value:
        return

    new_status = transition(state.status, PositionStatus.SKIPPED)
    if not _guard_position(state.id, status=new_status.value):
        db.session.rollback()
        return

    next_position = next_open_position(_statuses(tier_session.id), after=position, exclude=position)
    if next_position is not None:
        _guard_session(session.id, current_position=next_position)
        _visit(tier_session.id, next_position)
    db.session.commit()
    current_app.logger.info(f"[skip] session={session.id} position={position} next={next_position}")


def navigate_to(session_id: int, position: int, user_id: Optional[int] = None) -> None:
    session = _active_session(session_id, user_id)
    tier_session = _tier_session(session)
    state = _position_state(tier_session, position)
    if state.status == PositionStatus.CORRECT.value:
        raise InvalidPosition(f"Position {position} is already identified")

    new_status = status_on_visit(state.status)
    if new_status.value != state.status and not _guard_position(state.id, status=new_status.value):
        db.session.rollback()
        raise InvalidPosition(f"Position {position} is already identified")
    _guard_session(session.id, current_position=position)
    db.session.commit()


def use_hint(session_id: int, position: int, hint_type: str, user_id: Optional[int] = None,
             catalog=None) -> Optional[str]:
    """Reveal one fact about the position's game.

    A held ``hint_<type>`` power-up pays for the hint. Without one, the
    hint's deduction applies when the position is solved.
    """
    if hint_type not in HINT_TYPES:
        raise InvalidHint(f"Unknown hint type {hint_type}")
    catalog = catalog or default_catalog
    session = _active_session(session_id, user_id)
    tier_session = _tier_session(session)
    state = _position_state(tier_session, position)
    if state.status == PositionStatus.CORRECT.value:
        raise InvalidPosition(f"Position {position} is already identified")

    assignment = TierScreenshot.query.filter_by(tier_id=tier_session.tier_id, position=position).first()
    screenshot = catalog.get_screenshot(assignment.screenshot_id)
    value = {
        'year': screenshot.release_year,
        'publisher': screenshot.publisher,
        'developer': screenshot.developer,
    }[hint_type]

    hints = list(state.hints_used or [])
    free_hints = list(state.free_hints or [])
    if hint_type not in hints:
        _add_hint(tier_session.id, position, hint_type, hints, free_hints)
        if not _guard_position(state.id, hints_used=hints, free_hints=free_hints):
            db.session.rollback()
            raise InvalidPosition(f"Position {position} is already identified")
        # no-op write that fails once the session is closed
        _guard_session(session.id, is_completed=False)
        db.session.commit()
    current_app.logger.info(
        f"[hint] session={session.id} position={position} type={hint_type} free={hint_type in free_hints}"
    )
    return str(value) if value is not None else None


def _add_hint(tier_session_id: int, position: int, hint_type: str, hints: list, free_hints: list) -> bool:
    """Append ``hint_type`` to the position's hint lists in place.

    Returns True when a held power-up was spent on it, which makes the hint
    free. A hint already on the position costs nothing new.
    """
    if hint_type in hints:
        return False
    hints.append(hint_type)
    if _claim_power_up(tier_session_id, f"hint_{hint_type}", position):
        free_hints.append(hint_type)
        return True
    return False


def earn_power_up(session_id: int, power_up_type: str, round_index: int, user_id: Optional[int] = None) -> PowerUp:
    """Record a bonus-round award. A round awards at most one power-up."""
    if power_up_type not in POWER_UP_TYPES:
        raise PowerUpUnavailable(f"Unknown power-up {power_up_type}")
    session = _active_session(session_id, user_id)
    tier_session = _tier_session(session)
    try:
        power_up = PowerUp(tier_session_id=tier_session.id, power_up_type=power_up_type,
                           earned_at_round=round_index)
        db.session.add(power_up)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return PowerUp.query.filter_by(tier_session_id=tier_session.id, earned_at_round=round_index).first()
    current_app.logger.info(f"[power-up-earned] session={session.id} type={power_up_type} round={round_index}")
    return power_up


def _claim_power_up(tier_session_id: int, power_up_type: str, round_index: int) -> bool:
    held = (
        PowerUp.query.filter_by(tier_session_id=tier_session_id, power_up_type=power_up_type, is_used=False)
        .order_by(PowerUp.id)
        .first()
    )
    if held is None:
        return False
    result = db.session.execute(
        update(PowerUp)
        .where(PowerUp.id == held.id, PowerUp.is_used.is_(False))
        .values(is_used=True, used_at_round=round_index)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def _consume_power_up(tier_session_id: int, power_up_type: str, round_index: int) -> None:
    if not _claim_power_up(tier_session_id, power_up_type, round_index):
        db.session.rollback()
        raise PowerUpUnavailable(f"No unused {power_up_type} power-up")


def end_session(session_id: int, reason: str = 'voluntary', user_id: Optional[int] = None,
                leaderboard=None, now: Optional[datetime] = None) -> SessionSummary:
    """Close the session, charging the unfound penalty exactly once.

    Idempotent: a call that finds the session already completed (or loses
    the race to complete it) returns the stored summary untouched.
    """
    if reason not in END_REASONS:
        raise DailyError(f"Unknown end reason {reason}", code='INVALID_REASON')
    session = get_session(session_id, user_id)
    if session.is_completed:
        return summarize(session)

    completed_at = now or _utcnow()
    claim = db.session.execute(
        update(GameSession)
        .where(GameSession.id == session.id, GameSession.is_completed.is_(False))
        .values(is_completed=True, completed_at=completed_at, completion_reason=reason)
        .execution_options(synchronize_session=False)
    )
    if claim.rowcount == 0:
        db.session.rollback()
        current_app.logger.info(f"[session-end-replay] session={session.id} reason={reason}")
        return summarize(get_session(session.id))

    rules = _rules()
    unfound_total = 0
    penalty_total = 0
    for tier_session_id in db.session.execute(
        select(TierSession.id).where(TierSession.game_session_id == session.id)
    ).scalars().all():
        unfound = db.session.execute(
            select(func.count(PositionState.id)).where(
                PositionState.tier_session_id == tier_session_id,
                PositionState.status != PositionStatus.CORRECT.value,
            )
        ).scalar() or 0
        penalty = unfound_penalty(unfound, rules)
        db.session.execute(
            update(TierSession)
            .where(TierSession.id == tier_session_id)
            .values(is_completed=True, completed_at=completed_at, score=_floored(TierSession.score, -penalty))
            .execution_options(synchronize_session=False)
        )
        unfound_total += unfound
        penalty_total += penalty

    db.session.execute(
        update(GameSession)
        .where(GameSession.id == session.id)
        .values(
            total_score=_floored(GameSession.total_score, -penalty_total),
            unfound_count=unfound_total,
            penalty_applied=penalty_total,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()

    session = get_session(session.id)
    summary = summarize(session)
    summary.claimed = True
    current_app.logger.info(
        f"[session-end] session={session.id} user={session.user_id} reason={reason} score={summary.total_score} "
        f"found={summary.screenshots_found} unfound={unfound_total} penalty={penalty_total}"
    )
    summary.newly_earned = _after_completion(session, summary, leaderboard)
    return summary


def _after_completion(session: GameSession, summary: SessionSummary, leaderboard) -> List[dict]:
    """Side effects owned by the call that completed the session.

    Completion is already committed; a failure here is logged and never
    reopens or re-penalises the session.
    """
    from .achievements import evaluate_session
    from .leaderboard import default_leaderboard
    from .streaks import record_completion, update_play_streak

    leaderboard = leaderboard or default_leaderboard
    steps = [
        ('aggregates', lambda: record_completion(session.user_id, summary.total_score)),
        ('streak', lambda: update_play_streak(session.user_id, _played_on(session), evaluate=False)),
    ]
    if not summary.is_catch_up:
        steps.insert(0, ('leaderboard',
                         lambda: leaderboard.publish(session.user_id, summary.challenge_date, summary.total_score)))
    for name, step in steps:
        try:
            step()
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception(f"[session-end-{name}-failed] session={session.id} error={exc}")

    try:
        outcome = evaluate_session(session, leaderboard=leaderboard)
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception(f"[session-end-achievements-failed] session={session.id} error={exc}")
        return []
    return [a.to_dict() for a in outcome.newly_earned]


def _played_on(session: GameSession) -> date:
    started = session.started_at
    return started.date() if started else session.challenge.challenge_date


def summarize(session: GameSession) -> SessionSummary:
    found = db.session.execute(
        select(func.count(PositionState.id))
        .join(TierSession, PositionState.tier_session_id == TierSession.id)
        .where(TierSession.game_session_id == session.id, PositionState.status == PositionStatus.CORRECT.value)
    ).scalar() or 0
    return SessionSummary(
        session_id=session.id,
        user_id=session.user_id,
        challenge_id=session.daily_challenge_id,
        challenge_date=session.challenge.challenge_date,
        total_score=session.total_score,
        screenshots_found=int(found),
        unfound_count=session.unfound_count or 0,
        penalty_applied=session.penalty_applied or 0,
        completion_reason=session.completion_reason,
        completed_at=session.completed_at,
        is_catch_up=bool(session.is_catch_up),
    )


def session_state(session: GameSession) -> dict:
    tier_session = _tier_session(session)
    positions = [p.to_dict() for p in tier_session.positions]
    return {
        'session_id': session.id,
        'challenge_id': session.daily_challenge_id,
        'challenge_date': session.challenge.challenge_date.isoformat(),
        'current_position': session.current_position,
        'total_score': session.total_score,
        'is_completed': session.is_completed,
        'is_catch_up': bool(session.is_catch_up),
        'started_at': session.started_at.isoformat() if session.started_at else None,
        'time_limit_seconds': tier_session.tier.time_limit_seconds,
        'total_screenshots': len(positions),
        'screenshots_found': sum(1 for p in positions if p['status'] == PositionStatus.CORRECT.value),
        'positions': positions,
        'power_ups': [p.to_dict() for p in tier_session.power_ups],
        'summary': summarize(session).to_dict() if session.is_completed else None,
    }
