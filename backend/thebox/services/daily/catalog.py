"""Read view over the game/screenshot catalog.

Counters on ``screenshot`` are shared by every player, so they are only
ever bumped with ``UPDATE ... SET col = col + 1`` inside the caller's
transaction, never read-modify-written in Python.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select, update

from thebox import db
from thebox.models import Game, Screenshot


@dataclass(frozen=True)
class ScreenshotRef:
    id: int
    game_id: int
    quality: Optional[int]


@dataclass(frozen=True)
class ScreenshotDetails:
    id: int
    game_id: int
    game_name: str
    aliases: List[str] = field(default_factory=list)
    release_year: Optional[int] = None
    publisher: Optional[str] = None
    developer: Optional[str] = None
    genres: List[str] = field(default_factory=list)


class CatalogStore:

    def list_eligible_screenshots(self, min_quality=None) -> List[ScreenshotRef]:
        stmt = select(Screenshot.id, Screenshot.game_id, Screenshot.quality).where(Screenshot.is_active.is_(True))
        if min_quality:
            stmt = stmt.where(Screenshot.quality >= min_quality)
        rows = db.session.execute(stmt.order_by(Screenshot.id)).all()
        return [ScreenshotRef(id=r.id, game_id=r.game_id, quality=r.quality) for r in rows]

    def increment_usage(self, screenshot_id: int) -> None:
        db.session.execute(
            update(Screenshot)
            .where(Screenshot.id == screenshot_id)
            .values(times_used=Screenshot.times_used + 1)
            .execution_options(synchronize_session=False)
        )

    def increment_correct(self, screenshot_id: int) -> None:
        db.session.execute(
            update(Screenshot)
            .where(Screenshot.id == screenshot_id)
            .values(correct_guesses=Screenshot.correct_guesses + 1)
            .execution_options(synchronize_session=False)
        )

    def get_screenshot(self, screenshot_id: int) -> Optional[ScreenshotDetails]:
        row = db.session.execute(
            select(Screenshot, Game).join(Game, Screenshot.game_id == Game.id).where(Screenshot.id == screenshot_id)
        ).first()
        if not row:
            return None
        screenshot, game = row
        return ScreenshotDetails(
            id=screenshot.id,
            game_id=game.id,
            game_name=game.name,
            aliases=list(game.aliases or []),
            release_year=game.release_year,
            publisher=game.publisher,
            developer=game.developer,
            genres=list(game.genres or []),
        )


catalog = CatalogStore()
