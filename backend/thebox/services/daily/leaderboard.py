from datetime import date
from typing import List, Optional

from flask import current_app
from sqlalchemy import func, select

from thebox import db, socketio
from thebox.models import DailyChallenge, GameSession, User


def challenge_room(challenge_date: date) -> str:
    return f"challenge:{challenge_date.isoformat()}"


class SessionLeaderboard:
    """Leaderboard backed by completed game sessions.

    ``publish`` is called once per completed session; ``rank`` answers
    leaderboard_rank achievement criteria. Catch-up sessions are never ranked.
    """

    def publish(self, user_id: int, challenge_date: date, total_score: int) -> None:
        payload = {'user_id': user_id, 'date': challenge_date.isoformat(), 'total_score': total_score}
        socketio.emit('player_finished', payload, to=challenge_room(challenge_date), namespace='/ws')
        current_app.logger.info(f"[leaderboard-publish] user={user_id} date={challenge_date} score={total_score}")

    def rank(self, user_id: int, challenge_date: date) -> Optional[int]:
        own = db.session.execute(
            select(GameSession.total_score)
            .join(DailyChallenge, GameSession.daily_challenge_id == DailyChallenge.id)
            .where(
                DailyChallenge.challenge_date == challenge_date,
                GameSession.user_id == user_id,
                GameSession.is_completed.is_(True),
                GameSession.is_catch_up.is_(False),
            )
        ).scalar()
        if own is None:
            return None
        better = db.session.execute(
            select(func.count(GameSession.id))
            .join(DailyChallenge, GameSession.daily_challenge_id == DailyChallenge.id)
            .where(
                DailyChallenge.challenge_date == challenge_date,
                GameSession.is_completed.is_(True),
                GameSession.is_catch_up.is_(False),
                GameSession.total_score > own,
            )
        ).scalar()
        return int(better or 0) + 1


def daily_leaderboard(challenge_date: date, limit: int = 100) -> List[dict]:
    rows = db.session.execute(
        select(User.id, User.username, GameSession.total_score, GameSession.completed_at)
        .join(GameSession, GameSession.user_id == User.id)
        .join(DailyChallenge, GameSession.daily_challenge_id == DailyChallenge.id)
        .where(
            DailyChallenge.challenge_date == challenge_date,
            GameSession.is_completed.is_(True),
            GameSession.is_catch_up.is_(False),
        )
        .order_by(GameSession.total_score.desc(), GameSession.completed_at.asc())
        .limit(limit)
    ).all()
    entries = []
    for row in rows:
        rank = len(entries) + 1
        if entries and entries[-1]['total_score'] == row.total_score:
            rank = entries[-1]['rank']
        entries.append({
            'rank': rank,
            'user_id': row.id,
            'username': row.username,
            'total_score': row.total_score,
        })
    return entries


default_leaderboard = SessionLeaderboard()
