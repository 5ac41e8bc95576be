import random
from collections import Counter

import pytest

from thebox import db
from thebox.models import DailyChallenge, Screenshot, TierScreenshot
from thebox.services.daily.catalog import catalog
from thebox.services.daily.errors import ChallengeNotFound, NoEligibleScreenshots
from thebox.services.daily.generator import create_daily_challenge, get_today_challenge, select_screenshots


def _assigned(challenge_id):
    challenge = db.session.get(DailyChallenge, challenge_id)
    return [a.screenshot_id for a in challenge.tiers[0].assignments]


def test_creates_challenge_with_ten_positions(flask_app, make_catalog, challenge_date):
    make_catalog(12)
    result = create_daily_challenge(today=challenge_date, rng=random.Random(1))
    assert result.created
    assert result.screenshots_assigned == 10

    challenge = get_today_challenge(challenge_date)
    tier = challenge.tiers[0]
    assert tier.tier_number == 1
    assert tier.name == 'Daily Challenge'
    assert tier.time_limit_seconds == 30
    assert [a.position for a in tier.assignments] == list(range(1, 11))
    assert len(set(_assigned(result.challenge_id))) == 10


def test_second_call_is_idempotent(flask_app, make_catalog, challenge_date):
    make_catalog(12)
    first = create_daily_challenge(today=challenge_date, rng=random.Random(1))
    second = create_daily_challenge(today=challenge_date, rng=random.Random(2))

    assert not second.created
    assert second.challenge_id == first.challenge_id
    assert DailyChallenge.query.count() == 1
    assert TierScreenshot.query.count() == 10
    assert sum(s.times_used for s in Screenshot.query.all()) == 10


def test_short_pool_reuses_screenshots(flask_app, make_catalog, challenge_date):
    shots = make_catalog(4)
    result = create_daily_challenge(today=challenge_date, rng=random.Random(3))

    assigned = _assigned(result.challenge_id)
    assert len(assigned) == 10
    assert set(assigned) == {s.id for s in shots}
    assert max(Counter(assigned).values()) <= 3


def test_select_screenshots_first_pass_uses_every_id(flask_app):
    pool = [1, 2, 3, 4]
    picked = select_screenshots(pool, 10, random.Random(5))
    assert sorted(picked[:4]) == pool
    assert sorted(picked[4:8]) == pool


def test_empty_pool_raises(flask_app, challenge_date):
    with pytest.raises(NoEligibleScreenshots):
        create_daily_challenge(today=challenge_date)
    assert DailyChallenge.query.count() == 0


def test_quality_threshold_filters_pool(flask_app, make_catalog, challenge_date):
    flask_app.config['MIN_SCREENSHOT_QUALITY'] = 80
    good = make_catalog(3, quality=90, prefix='Good')
    make_catalog(10, quality=40, prefix='Poor')

    result = create_daily_challenge(today=challenge_date, count=3, rng=random.Random(4))
    assert set(_assigned(result.challenge_id)) == {s.id for s in good}


def test_inactive_screenshots_are_never_drawn(flask_app, make_catalog, challenge_date):
    shots = make_catalog(3)
    shots[0].is_active = False
    db.session.commit()

    result = create_daily_challenge(today=challenge_date, count=4, rng=random.Random(4))
    assert shots[0].id not in _assigned(result.challenge_id)


def test_usage_counters_match_assignments(flask_app, make_catalog, challenge_date):
    make_catalog(4)
    result = create_daily_challenge(today=challenge_date, rng=random.Random(9))
    usage = Counter(_assigned(result.challenge_id))
    for shot in Screenshot.query.all():
        assert shot.times_used == usage[shot.id]


def test_losing_the_insert_race_returns_existing(flask_app, make_catalog, challenge_date):
    make_catalog(12)

    class RacingCatalog:
        """Another worker commits the same date between our check and our insert."""

        def list_eligible_screenshots(self, min_quality=None):
            db.session.add(DailyChallenge(challenge_date=challenge_date))
            db.session.commit()
            return catalog.list_eligible_screenshots(min_quality)

        def increment_usage(self, screenshot_id):
            catalog.increment_usage(screenshot_id)

    result = create_daily_challenge(today=challenge_date, rng=random.Random(1), catalog=RacingCatalog())
    assert not result.created
    assert DailyChallenge.query.count() == 1
    assert result.challenge_id == DailyChallenge.query.first().id
    assert TierScreenshot.query.count() == 0


def test_missing_challenge_raises(flask_app, challenge_date):
    with pytest.raises(ChallengeNotFound):
        get_today_challenge(challenge_date)
