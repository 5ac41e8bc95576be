import os
import random
import sys
from datetime import date

import pytest

# Ensure the backend root (containing the `thebox` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from thebox import create_app, db, socketio


CHALLENGE_DATE = date(2026, 3, 14)

GENRES = (['Action', 'RPG'], ['Strategy'], ['Action'], ['RPG'], ['Puzzle'])


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    DAILY_SCREENSHOT_COUNT = 10
    MIN_SCREENSHOT_QUALITY = 0
    TIER_TIME_LIMIT_SEC = 30
    BASE_SCORE = 100
    MAX_SCORE = 200
    WRONG_GUESS_PENALTY = 30
    UNFOUND_PENALTY = 50
    HINT_PENALTIES = {'year': 20, 'publisher': 30, 'developer': 30}
    MATCH_THRESHOLD = 0.8
    ENABLE_SCHEDULER = False


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import thebox.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


@pytest.fixture()
def make_catalog(flask_app):
    """Factory: ``make_catalog(n, quality=90)`` adds n games with one screenshot each."""
    from thebox.models import Game, Screenshot

    def _make(n, quality=90, prefix='Game'):
        screenshots = []
        for i in range(n):
            game = Game(
                name=f"{prefix} {i + 1}",
                aliases=[f"{prefix[0]}{i + 1}"],
                release_year=1990 + i,
                developer=f"Studio {i + 1}",
                publisher=f"Publisher {i + 1}",
                genres=GENRES[i % len(GENRES)],
            )
            shot = Screenshot(game=game, image_url=f"/shots/{prefix.lower()}-{i + 1}.jpg", quality=quality)
            db.session.add_all([game, shot])
            screenshots.append(shot)
        db.session.commit()
        return screenshots

    return _make


@pytest.fixture()
def make_user(flask_app):
    from thebox.models import User

    def _make(username='alice', password='password'):
        user = User(username=username)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture()
def user(make_user):
    return make_user()


@pytest.fixture()
def challenge(make_catalog):
    from thebox.services.daily.generator import create_daily_challenge

    make_catalog(12)
    result = create_daily_challenge(today=CHALLENGE_DATE, rng=random.Random(7))
    return result


@pytest.fixture()
def game_session(user, challenge):
    from thebox.services.daily.sessions import start_or_resume

    return start_or_resume(user.id, today=CHALLENGE_DATE)


@pytest.fixture()
def answer_for(flask_app):
    """``answer_for(session, position)`` -> game id of the screenshot at that position."""
    from thebox.models import Screenshot, Tier, TierScreenshot

    def _answer(session, position):
        row = (
            db.session.query(Screenshot.game_id)
            .join(TierScreenshot, TierScreenshot.screenshot_id == Screenshot.id)
            .join(Tier, TierScreenshot.tier_id == Tier.id)
            .filter(Tier.daily_challenge_id == session.daily_challenge_id, TierScreenshot.position == position)
            .first()
        )
        return row.game_id

    return _answer


@pytest.fixture()
def seeded_achievements(flask_app):
    from thebox.services.daily.achievements import seed_achievements

    return seed_achievements()


@pytest.fixture()
def challenge_date():
    return CHALLENGE_DATE


@pytest.fixture()
def auth_client(client, user):
    res = client.post('/login', json={'username': 'alice', 'password': 'password'})
    assert res.status_code == 200
    return client
