from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import List, Optional, Tuple

from flask import current_app
from sqlalchemy import or_, select

from thebox import db
from thebox.models import DailyChallenge, GameSession
from .generator import GenerationResult, create_daily_challenge, today_utc
from .sessions import end_session


@dataclass
class RotationReport:
    run_date: date
    generation: Optional[GenerationResult] = None
    generation_error: Optional[str] = None
    sessions_closed: int = 0
    already_closed: int = 0
    failures: List[Tuple[int, str]] = field(default_factory=list)

    @property
    def message(self) -> str:
        head = self.generation.message if self.generation else f"Challenge generation failed: {self.generation_error}"
        return (
            f"{head}; closed {self.sessions_closed} session(s), "
            f"{self.already_closed} already closed, {len(self.failures)} failure(s)"
        )

    def to_dict(self):
        return {
            'run_date': self.run_date.isoformat(),
            'generation': self.generation.to_dict() if self.generation else None,
            'generation_error': self.generation_error,
            'sessions_closed': self.sessions_closed,
            'already_closed': self.already_closed,
            'failures': [{'session_id': sid, 'error': err} for sid, err in self.failures],
        }


def stale_session_ids(today: date) -> List[int]:
    """Active sessions whose challenge date is before ``today``.

    A catch-up session is stale only once the day it was started has passed.
    """
    day_start = datetime.combine(today, time.min, tzinfo=timezone.utc)
    return db.session.execute(
        select(GameSession.id)
        .join(DailyChallenge, GameSession.daily_challenge_id == DailyChallenge.id)
        .where(
            GameSession.is_completed.is_(False),
            DailyChallenge.challenge_date < today,
            or_(GameSession.is_catch_up.is_(False), GameSession.started_at < day_start),
        )
        .order_by(GameSession.id)
    ).scalars().all()


def run_rotation(today: Optional[date] = None, leaderboard=None) -> RotationReport:
    """Midnight job: create today's challenge, then force-close yesterday's sessions.

    Each session is closed independently; one failure is recorded and the
    sweep moves on.
    """
    today = today or today_utc()
    report = RotationReport(run_date=today)

    try:
        report.generation = create_daily_challenge(today)
    except Exception as exc:
        db.session.rollback()
        report.generation_error = str(exc)
        current_app.logger.exception(f"[rotation-generate-failed] date={today} error={exc}")

    for session_id in stale_session_ids(today):
        try:
            summary = end_session(session_id, reason='forced', leaderboard=leaderboard)
        except Exception as exc:
            db.session.rollback()
            report.failures.append((session_id, str(exc)))
            current_app.logger.error(f"[sweep-close-failed] session={session_id} error={exc}")
            continue
        if summary.claimed:
            report.sessions_closed += 1
        else:
            report.already_closed += 1

    current_app.logger.info(
        f"[rotation] date={today} closed={report.sessions_closed} already_closed={report.already_closed} "
        f"failures={len(report.failures)}"
    )
    return report
