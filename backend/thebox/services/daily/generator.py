import random
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from thebox import db
from thebox.models import DailyChallenge, Tier, TierScreenshot
from .catalog import catalog as default_catalog
from .errors import ChallengeNotFound, NoEligibleScreenshots


@dataclass
class GenerationResult:
    created: bool
    challenge_id: int
    challenge_date: date
    screenshots_assigned: int
    message: str

    def to_dict(self):
        return {
            'created': self.created,
            'challenge_id': self.challenge_id,
            'challenge_date': self.challenge_date.isoformat(),
            'screenshots_assigned': self.screenshots_assigned,
            'message': self.message,
        }


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def get_challenge_for_date(challenge_date: date) -> Optional[DailyChallenge]:
    return DailyChallenge.query.filter_by(challenge_date=challenge_date).first()


def get_today_challenge(today: Optional[date] = None) -> DailyChallenge:
    challenge = get_challenge_for_date(today or today_utc())
    if not challenge:
        raise ChallengeNotFound(f"No challenge for {(today or today_utc()).isoformat()}")
    return challenge


def select_screenshots(pool: List[int], count: int, rng: random.Random) -> List[int]:
    """Draw ``count`` ids uniformly from ``pool``; reuse ids when the pool is short."""
    if not pool:
        raise NoEligibleScreenshots('No eligible screenshots available')
    if len(pool) >= count:
        return rng.sample(pool, count)

    current_app.logger.warning(
        f"[challenge-degraded] available={len(pool)} needed={count} reusing screenshots"
    )
    selected: List[int] = []
    while len(selected) < count:
        shuffled = list(pool)
        rng.shuffle(shuffled)
        selected.extend(shuffled[:count - len(selected)])
    return selected


def create_daily_challenge(today: Optional[date] = None, count: Optional[int] = None,
                           rng: Optional[random.Random] = None, catalog=None) -> GenerationResult:
    """Create the challenge for ``today`` (UTC) unless it already exists.

    Safe under concurrent callers: the unique ``challenge_date`` decides the
    winner and a losing insert is reported as "already exists".
    """
    challenge_date = today or today_utc()
    catalog = catalog or default_catalog
    config = current_app.config
    count = count or int(config.get('DAILY_SCREENSHOT_COUNT', 10))
    rng = rng or random.SystemRandom()

    existing = get_challenge_for_date(challenge_date)
    if existing:
        current_app.logger.info(f"[challenge-exists] date={challenge_date} id={existing.id}")
        return _already_exists(existing)

    min_quality = config.get('MIN_SCREENSHOT_QUALITY') or None
    pool = [ref.id for ref in catalog.list_eligible_screenshots(min_quality)]
    screenshot_ids = select_screenshots(pool, count, rng)

    try:
        challenge = DailyChallenge(challenge_date=challenge_date, is_active=True)
        db.session.add(challenge)
        db.session.flush()
        tier = Tier(
            daily_challenge_id=challenge.id,
            tier_number=1,
            name='Daily Challenge',
            time_limit_seconds=int(config.get('TIER_TIME_LIMIT_SEC', 30)),
        )
        db.session.add(tier)
        db.session.flush()
        for position, screenshot_id in enumerate(screenshot_ids, 1):
            db.session.add(TierScreenshot(tier_id=tier.id, screenshot_id=screenshot_id, position=position))
            catalog.increment_usage(screenshot_id)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        winner = get_challenge_for_date(challenge_date)
        if winner is None:
            raise
        current_app.logger.info(f"[challenge-race] date={challenge_date} id={winner.id} created elsewhere")
        return _already_exists(winner)

    result = GenerationResult(
        created=True,
        challenge_id=challenge.id,
        challenge_date=challenge_date,
        screenshots_assigned=len(screenshot_ids),
        message=f"Created daily challenge for {challenge_date.isoformat()} with {len(screenshot_ids)} screenshots",
    )
    current_app.logger.info(
        f"[challenge-created] date={challenge_date} id={challenge.id} screenshots={len(screenshot_ids)}"
    )
    return result


def _already_exists(challenge: DailyChallenge) -> GenerationResult:
    return GenerationResult(
        created=False,
        challenge_id=challenge.id,
        challenge_date=challenge.challenge_date,
        screenshots_assigned=0,
        message=f"Challenge already exists for {challenge.challenge_date.isoformat()} (ID: {challenge.id})",
    )
