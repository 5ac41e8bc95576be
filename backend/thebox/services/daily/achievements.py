"""Achievement evaluation.

Criteria are JSON descriptors on the ``achievement`` row (``{"type": ...}``)
dispatched through CRITERIA_HANDLERS. Each criterion is evaluated on its
own: a failing one is collected as a CriteriaEvaluationFailure and the rest
still run. Awards rely on UNIQUE (user, achievement), so a concurrent
evaluation that loses the insert simply does not report the award.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from flask import current_app
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from thebox import db
from thebox.models import (
    Achievement,
    Game,
    GameSession,
    Guess,
    PositionState,
    Screenshot,
    TierSession,
    UserAchievement,
    UserStats,
)
from .errors import CriteriaEvaluationFailure
from .streaks import get_or_create_stats


DEFAULT_ACHIEVEMENTS = [
    {'key': 'speed_demon', 'name': 'Speed Demon', 'category': 'speed', 'tier': 2, 'points': 50,
     'description': 'Get 3 perfect speed guesses in a row (under 3 seconds each)',
     'criteria': {'type': 'consecutive_speed', 'count': 3, 'max_time_ms': 3000}},
    {'key': 'lightning_reflexes', 'name': 'Lightning Reflexes', 'category': 'speed', 'tier': 3, 'points': 100,
     'description': 'Answer 10 screenshots in under 3 seconds',
     'criteria': {'type': 'total_speed', 'count': 10, 'max_time_ms': 3000}},
    {'key': 'quick_draw', 'name': 'Quick Draw', 'category': 'speed', 'tier': 1, 'points': 25,
     'description': 'Answer any screenshot in under 2 seconds',
     'criteria': {'type': 'single_speed', 'max_time_ms': 2000}},
    {'key': 'no_hints_needed', 'name': 'No Hints Needed', 'category': 'accuracy', 'tier': 1, 'points': 30,
     'description': 'Complete a daily challenge without using any hints',
     'criteria': {'type': 'no_hints', 'count': 1}},
    {'key': 'hint_free_master', 'name': 'Hint-Free Master', 'category': 'accuracy', 'tier': 3, 'points': 150,
     'description': 'Complete 10 daily challenges without using hints',
     'criteria': {'type': 'no_hints', 'count': 10}},
    {'key': 'sharp_eye', 'name': 'Sharp Eye', 'category': 'accuracy', 'tier': 2, 'points': 75,
     'description': 'Get 10 correct guesses in a row with no wrong answers',
     'criteria': {'type': 'consecutive_correct', 'count': 10}},
    {'key': 'perfect_run', 'name': 'Perfect Run', 'category': 'score', 'tier': 3, 'points': 100,
     'description': 'Score the maximum on every screenshot of a challenge',
     'criteria': {'type': 'perfect_score'}},
    {'key': 'high_roller', 'name': 'High Roller', 'category': 'score', 'tier': 2, 'points': 50,
     'description': 'Score 1800 points or more in a single challenge',
     'criteria': {'type': 'min_score', 'score': 1800}},
    {'key': 'dedicated_player', 'name': 'Dedicated Player', 'category': 'streak', 'tier': 1, 'points': 25,
     'description': 'Maintain a 3-day play streak',
     'criteria': {'type': 'streak', 'days': 3}},
    {'key': 'weekly_warrior', 'name': 'Weekly Warrior', 'category': 'streak', 'tier': 2, 'points': 75,
     'description': 'Maintain a 7-day play streak',
     'criteria': {'type': 'streak', 'days': 7}},
    {'key': 'month_master', 'name': 'Month Master', 'category': 'streak', 'tier': 3, 'points': 300,
     'description': 'Maintain a 30-day play streak',
     'criteria': {'type': 'streak', 'days': 30}},
    {'key': 'daily_regular', 'name': 'Daily Regular', 'category': 'streak', 'tier': 1, 'points': 20,
     'description': 'Log in 7 days in a row',
     'criteria': {'type': 'streak', 'days': 7, 'source': 'login'}},
    {'key': 'rpg_expert', 'name': 'RPG Expert', 'category': 'genre', 'tier': 2, 'points': 50,
     'description': 'Correctly identify 10 RPG games',
     'criteria': {'type': 'genre_master', 'genre': 'RPG', 'count': 10}},
    {'key': 'action_hero', 'name': 'Action Hero', 'category': 'genre', 'tier': 2, 'points': 50,
     'description': 'Correctly identify 10 Action games',
     'criteria': {'type': 'genre_master', 'genre': 'Action', 'count': 10}},
    {'key': 'strategy_savant', 'name': 'Strategy Savant', 'category': 'genre', 'tier': 2, 'points': 50,
     'description': 'Correctly identify 10 Strategy games',
     'criteria': {'type': 'genre_master', 'genre': 'Strategy', 'count': 10}},
    {'key': 'first_win', 'name': 'First Win', 'category': 'completion', 'tier': 1, 'points': 10,
     'description': 'Complete your first daily challenge',
     'criteria': {'type': 'challenges_completed', 'count': 1}},
    {'key': 'century_club', 'name': 'Century Club', 'category': 'completion', 'tier': 3, 'points': 200,
     'description': 'Complete 100 daily challenges',
     'criteria': {'type': 'challenges_completed', 'count': 100}},
    {'key': 'top_ten', 'name': 'Top 10', 'category': 'competitive', 'tier': 2, 'points': 50,
     'description': 'Rank in the top 10 on any daily challenge',
     'criteria': {'type': 'leaderboard_rank', 'max_rank': 10}},
    {'key': 'podium_finish', 'name': 'Podium Finish', 'category': 'competitive', 'tier': 3, 'points': 100,
     'description': 'Rank in the top 3 on any daily challenge',
     'criteria': {'type': 'leaderboard_rank', 'max_rank': 3}},
    {'key': 'champion', 'name': 'Champion', 'category': 'competitive', 'tier': 3, 'points': 200,
     'description': 'Achieve 1st place on any daily challenge',
     'criteria': {'type': 'leaderboard_rank', 'max_rank': 1}},
]


@dataclass
class CriterionCheck:
    progress: int
    progress_max: Optional[int]
    earned: bool
    extra: Optional[dict] = None


@dataclass
class EvaluationContext:
    user_id: int
    stats: UserStats
    session: Optional[GameSession] = None
    guesses: List[Guess] = field(default_factory=list)
    leaderboard: object = None


@dataclass
class EvaluationResult:
    newly_earned: List[Achievement] = field(default_factory=list)
    failures: List[CriteriaEvaluationFailure] = field(default_factory=list)

    def to_dict(self):
        return {
            'newly_earned': [a.to_dict() for a in self.newly_earned],
            'failures': [{'achievement': f.achievement_key, 'error': str(f.cause)} for f in self.failures],
        }


def _utcnow():
    return datetime.now(timezone.utc)


def _user_guesses(user_id: int, *columns):
    return (
        select(*columns)
        .select_from(Guess)
        .join(TierSession, Guess.tier_session_id == TierSession.id)
        .join(GameSession, TierSession.game_session_id == GameSession.id)
        .where(GameSession.user_id == user_id)
    )


# ---- criteria ----

def _consecutive_speed(criteria: dict, ctx: EvaluationContext) -> CriterionCheck:
    count = int(criteria['count'])
    max_time_ms = int(criteria['max_time_ms'])
    run = best = 0
    for guess in ctx.guesses:
        if guess.is_correct and guess.time_taken_ms <= max_time_ms:
            run += 1
            best = max(best, run)
        else:
            run = 0
    return CriterionCheck(min(best, count), count, best >= count)


def _total_speed(criteria: dict, ctx: EvaluationContext) -> CriterionCheck:
    count = int(criteria['count'])
    total = db.session.execute(
        _user_guesses(ctx.user_id, func.count(Guess.id)).where(
            Guess.is_correct.is_(True), Guess.time_taken_ms <= int(criteria['max_time_ms'])
        )
    ).scalar() or 0
    return CriterionCheck(min(total, count), count, total >= count)


def _single_speed(criteria: dict, ctx: EvaluationContext) -> CriterionCheck:
    max_time_ms = int(criteria['max_time_ms'])
    hit = any(g.is_correct and g.time_taken_ms <= max_time_ms for g in ctx.guesses)
    return CriterionCheck(int(hit), 1, hit)


def _no_hints(criteria: dict, ctx: EvaluationContext) -> CriterionCheck:
    """Completed sessions with no hint recorded on any position."""
    count = int(criteria['count'])
    completed = set(db.session.execute(
        select(GameSession.id).where(GameSession.user_id == ctx.user_id, GameSession.is_completed.is_(True))
    ).scalars().all())
    hinted = set()
    rows = db.session.execute(
        select(TierSession.game_session_id, PositionState.hints_used)
        .join(PositionState, PositionState.tier_session_id == TierSession.id)
        .where(TierSession.game_session_id.in_(sorted(completed)))
    ).all() if completed else []
    for session_id, hints in rows:
        if hints:
            hinted.add(session_id)
    total = len(completed - hinted)
    return CriterionCheck(min(total, count), count, total >= count)


def _consecutive_correct(criteria: dict, ctx: EvaluationContext) -> CriterionCheck:
    """Most recent guesses across all sessions, newest first, until the first miss."""
    count = int(criteria['count'])
    recent = db.session.execute(
        _user_guesses(ctx.user_id, Guess.is_correct).order_by(Guess.id.desc()).limit(count)
    ).scalars().all()
    run = 0
    for is_correct in recent:
        if not is_correct:
            break
        run += 1
    return CriterionCheck(run, count, run >= count)


def _perfect_score(criteria: dict, ctx: EvaluationContext) -> CriterionCheck:
    target = criteria.get('score')
    if target is None:
        positions = db.session.execute(
            select(func.count(PositionState.id))
            .join(TierSession, PositionState.tier_session_id == TierSession.id)
            .where(TierSession.game_session_id == ctx.session.id)
        ).scalar() or 0
        target = positions * int(current_app.config.get('MAX_SCORE', 200))
    target = int(target)
    score = ctx.session.total_score
    return CriterionCheck(min(score, target), target, target > 0 and score >= target)


def _min_score(criteria: dict, ctx: EvaluationContext) -> CriterionCheck:
    target = int(criteria['score'])
    score = ctx.session.total_score
    return CriterionCheck(min(score, target), target, score >= target)


def _streak(criteria: dict, ctx: EvaluationContext) -> CriterionCheck:
    days = int(criteria['days'])
    source = criteria.get('source', 'play')
    if source == 'login':
        current = ctx.stats.login_streak
    elif source == 'play':
        current = ctx.stats.current_streak
    else:
        raise ValueError(f"unknown streak source {source!r}")
    current = int(current or 0)
    return CriterionCheck(min(current, days), days, current >= days)


def _genre_master(criteria: dict, ctx: EvaluationContext) -> CriterionCheck:
    count = int(criteria['count'])
    genre = str(criteria['genre']).lower()
    genre_lists = db.session.execute(
        _user_guesses(ctx.user_id, Game.genres)
        .join(Screenshot, Guess.screenshot_id == Screenshot.id)
        .join(Game, Screenshot.game_id == Game.id)
        .where(Guess.is_correct.is_(True))
    ).scalars().all()
    total = sum(1 for genres in genre_lists if genre in {str(g).lower() for g in (genres or [])})
    return CriterionCheck(min(total, count), count, total >= count, {'genre': criteria['genre']})


def _challenges_completed(criteria: dict, ctx: EvaluationContext) -> CriterionCheck:
    count = int(criteria['count'])
    total = db.session.execute(
        select(func.count(GameSession.id)).where(
            GameSession.user_id == ctx.user_id, GameSession.is_completed.is_(True)
        )
    ).scalar() or 0
    return CriterionCheck(min(total, count), count, total >= count)


def _leaderboard_rank(criteria: dict, ctx: EvaluationContext) -> CriterionCheck:
    max_rank = int(criteria['max_rank'])
    challenge_date = ctx.session.challenge.challenge_date
    if ctx.session.is_catch_up:
        return CriterionCheck(0, max_rank, False)
    rank = ctx.leaderboard.rank(ctx.user_id, challenge_date) if ctx.leaderboard else None
    if rank is None or rank > max_rank:
        return CriterionCheck(0, max_rank, False)
    return CriterionCheck(rank, max_rank, True, {'challenge_date': challenge_date.isoformat(), 'rank': rank})


CRITERIA_HANDLERS: Dict[str, Callable[[dict, EvaluationContext], CriterionCheck]] = {
    'consecutive_speed': _consecutive_speed,
    'total_speed': _total_speed,
    'single_speed': _single_speed,
    'no_hints': _no_hints,
    'consecutive_correct': _consecutive_correct,
    'perfect_score': _perfect_score,
    'min_score': _min_score,
    'streak': _streak,
    'genre_master': _genre_master,
    'challenges_completed': _challenges_completed,
    'leaderboard_rank': _leaderboard_rank,
}

# Need a finished session to evaluate
SESSION_CRITERIA = frozenset({'consecutive_speed', 'single_speed', 'perfect_score', 'min_score', 'leaderboard_rank'})
# Cumulative; partial progress is persisted
PROGRESS_CRITERIA = frozenset(CRITERIA_HANDLERS) - SESSION_CRITERIA


# ---- persistence ----

def _award(user_id: int, achievement: Achievement, check: CriterionCheck) -> bool:
    held = UserAchievement.query.filter_by(user_id=user_id, achievement_id=achievement.id).first()
    try:
        if held is None:
            db.session.add(UserAchievement(
                user_id=user_id,
                achievement_id=achievement.id,
                earned_at=_utcnow(),
                progress=check.progress,
                progress_max=check.progress_max,
                extra=check.extra,
            ))
        else:
            result = db.session.execute(
                update(UserAchievement)
                .where(UserAchievement.id == held.id, UserAchievement.earned_at.is_(None))
                .values(earned_at=_utcnow(), progress=check.progress, progress_max=check.progress_max,
                        extra=check.extra)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.session.rollback()
                return False
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return False
    return True


def _record_progress(user_id: int, achievement: Achievement, check: CriterionCheck) -> None:
    held = UserAchievement.query.filter_by(user_id=user_id, achievement_id=achievement.id).first()
    try:
        if held is None:
            db.session.add(UserAchievement(user_id=user_id, achievement_id=achievement.id,
                                           progress=check.progress, progress_max=check.progress_max))
        elif held.earned_at is None:
            held.progress = check.progress
            held.progress_max = check.progress_max
        db.session.commit()
    except IntegrityError:
        db.session.rollback()


def _evaluate(ctx: EvaluationContext, kinds: Optional[Iterable[str]] = None) -> EvaluationResult:
    kinds = set(kinds) if kinds is not None else None
    earned_ids = set(db.session.execute(
        select(UserAchievement.achievement_id).where(
            UserAchievement.user_id == ctx.user_id, UserAchievement.earned_at.isnot(None)
        )
    ).scalars().all())

    result = EvaluationResult()
    for achievement in Achievement.query.order_by(Achievement.id).all():
        if achievement.id in earned_ids:
            continue
        criteria = achievement.criteria or {}
        kind = criteria.get('type')
        if kinds is not None and kind not in kinds:
            continue
        try:
            handler = CRITERIA_HANDLERS.get(kind)
            if handler is None:
                raise ValueError(f"unknown criteria type {kind!r}")
            if kind in SESSION_CRITERIA and ctx.session is None:
                continue
            check = handler(criteria, ctx)
            if check.earned:
                if _award(ctx.user_id, achievement, check):
                    result.newly_earned.append(achievement)
            elif kind in PROGRESS_CRITERIA and check.progress_max:
                _record_progress(ctx.user_id, achievement, check)
        except Exception as exc:
            db.session.rollback()
            failure = CriteriaEvaluationFailure(achievement.key, exc)
            result.failures.append(failure)
            current_app.logger.warning(f"[achievement-failed] user={ctx.user_id} key={achievement.key} error={exc}")
    return result


def evaluate_session(session: GameSession, leaderboard=None) -> EvaluationResult:
    """Award achievements for a completed session."""
    if leaderboard is None:
        from .leaderboard import default_leaderboard
        leaderboard = default_leaderboard
    guesses = (
        Guess.query.join(TierSession, Guess.tier_session_id == TierSession.id)
        .filter(TierSession.game_session_id == session.id)
        .order_by(Guess.created_at, Guess.id)
        .all()
    )
    ctx = EvaluationContext(
        user_id=session.user_id,
        stats=get_or_create_stats(session.user_id),
        session=session,
        guesses=guesses,
        leaderboard=leaderboard,
    )
    result = _evaluate(ctx)
    current_app.logger.info(
        f"[achievements] user={session.user_id} session={session.id} "
        f"earned={[a.key for a in result.newly_earned]} failures={len(result.failures)}"
    )
    return result


def evaluate_streak(user_id: int) -> EvaluationResult:
    ctx = EvaluationContext(user_id=user_id, stats=get_or_create_stats(user_id))
    result = _evaluate(ctx, kinds=('streak',))
    current_app.logger.info(
        f"[achievements-streak] user={user_id} earned={[a.key for a in result.newly_earned]} "
        f"failures={len(result.failures)}"
    )
    return result


def _criteria_max(criteria: dict) -> Optional[int]:
    for key in ('count', 'days', 'score', 'max_rank'):
        if criteria.get(key) is not None:
            return int(criteria[key])
    return None


def achievement_progress(user_id: int) -> List[dict]:
    """Every achievement with the user's earned flag and progress.

    Hidden achievements are listed only once earned. Cumulative criteria
    report live progress rather than the last stored value.
    """
    held = {ua.achievement_id: ua for ua in UserAchievement.query.filter_by(user_id=user_id).all()}
    ctx = EvaluationContext(user_id=user_id, stats=get_or_create_stats(user_id))
    listing = []
    for achievement in Achievement.query.order_by(Achievement.category, Achievement.tier, Achievement.id).all():
        row = held.get(achievement.id)
        earned = bool(row and row.earned_at)
        if achievement.is_hidden and not earned:
            continue
        criteria = achievement.criteria or {}
        progress_max = _criteria_max(criteria)
        progress = row.progress if row else 0
        if earned:
            progress_max = row.progress_max or progress_max
        elif criteria.get('type') in PROGRESS_CRITERIA:
            try:
                progress = CRITERIA_HANDLERS[criteria['type']](criteria, ctx).progress
            except Exception as exc:
                db.session.rollback()
                current_app.logger.warning(f"[achievement-progress-failed] key={achievement.key} error={exc}")
        entry = achievement.to_dict()
        entry.update({
            'earned': earned,
            'earned_at': row.earned_at.isoformat() if earned else None,
            'progress': progress,
            'progress_max': progress_max,
        })
        listing.append(entry)
    return listing


def seed_achievements(definitions=None) -> int:
    """Insert missing default achievements. Existing keys are left alone."""
    added = 0
    existing = set(db.session.execute(select(Achievement.key)).scalars().all())
    for definition in definitions or DEFAULT_ACHIEVEMENTS:
        if definition['key'] in existing:
            continue
        db.session.add(Achievement(**definition))
        existing.add(definition['key'])
        added += 1
    db.session.commit()
    return added
