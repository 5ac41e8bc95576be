from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Tuple

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from thebox import db
from thebox.models import UserStats


@dataclass
class StreakUpdate:
    current: int
    longest: int
    changed: bool
    newly_earned: List[dict] = field(default_factory=list)


def next_streak(last_on: Optional[date], current: int, longest: int, today: date) -> Tuple[int, int, bool]:
    """Same day keeps the streak, the next day extends it, a gap restarts at 1."""
    if last_on is None:
        return 1, max(1, longest), True
    if today <= last_on:
        return current, longest, False
    if (today - last_on).days == 1:
        current += 1
        return current, max(current, longest), True
    return 1, max(1, longest), True


def get_or_create_stats(user_id: int) -> UserStats:
    stats = UserStats.query.filter_by(user_id=user_id).first()
    if stats:
        return stats
    try:
        stats = UserStats(user_id=user_id)
        db.session.add(stats)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        stats = UserStats.query.filter_by(user_id=user_id).first()
    return stats


def record_completion(user_id: int, total_score: int) -> None:
    """Bump lifetime aggregates in place; concurrent completions must not lose updates."""
    get_or_create_stats(user_id)
    db.session.execute(
        update(UserStats)
        .where(UserStats.user_id == user_id)
        .values(
            lifetime_score=UserStats.lifetime_score + int(total_score),
            challenges_completed=UserStats.challenges_completed + 1,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


def update_play_streak(user_id: int, played_on: date, evaluate: bool = True) -> StreakUpdate:
    stats = get_or_create_stats(user_id)
    current, longest, changed = next_streak(stats.last_played_on, stats.current_streak, stats.longest_streak, played_on)
    if changed:
        stats.current_streak = current
        stats.longest_streak = longest
        stats.last_played_on = played_on
    db.session.commit()
    current_app.logger.info(f"[streak-play] user={user_id} current={current} longest={longest} changed={changed}")
    result = StreakUpdate(current=current, longest=longest, changed=changed)
    if evaluate and changed:
        result.newly_earned = _evaluate(user_id)
    return result


def update_login_streak(user_id: int, logged_on: date, evaluate: bool = True) -> StreakUpdate:
    stats = get_or_create_stats(user_id)
    current, longest, changed = next_streak(
        stats.last_login_on, stats.login_streak, stats.longest_login_streak, logged_on
    )
    if changed:
        stats.login_streak = current
        stats.longest_login_streak = longest
        stats.last_login_on = logged_on
    db.session.commit()
    current_app.logger.info(f"[streak-login] user={user_id} current={current} longest={longest} changed={changed}")
    result = StreakUpdate(current=current, longest=longest, changed=changed)
    if evaluate and changed:
        result.newly_earned = _evaluate(user_id)
    return result


def _evaluate(user_id: int) -> List[dict]:
    from .achievements import evaluate_streak

    outcome = evaluate_streak(user_id)
    return [a.to_dict() for a in outcome.newly_earned]
