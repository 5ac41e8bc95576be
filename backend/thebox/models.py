from datetime import datetime, timezone

from flask_login import UserMixin

from thebox import db, bcrypt


def utcnow():
    return datetime.now(timezone.utc)


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
        }


class UserStats(db.Model):
    """Running per-user aggregates read by the achievement evaluator."""
    __tablename__ = 'user_stats'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False, unique=True)
    current_streak = db.Column(db.Integer, nullable=False, default=0)
    longest_streak = db.Column(db.Integer, nullable=False, default=0)
    last_played_on = db.Column(db.Date, nullable=True)
    login_streak = db.Column(db.Integer, nullable=False, default=0)
    longest_login_streak = db.Column(db.Integer, nullable=False, default=0)
    last_login_on = db.Column(db.Date, nullable=True)
    lifetime_score = db.Column(db.Integer, nullable=False, default=0)
    challenges_completed = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'current_streak': self.current_streak,
            'longest_streak': self.longest_streak,
            'login_streak': self.login_streak,
            'lifetime_score': self.lifetime_score,
            'challenges_completed': self.challenges_completed,
        }


class Game(db.Model):
    __tablename__ = 'game'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, index=True)
    aliases = db.Column(db.JSON, nullable=False, default=list)
    release_year = db.Column(db.Integer, nullable=True)
    developer = db.Column(db.String(255), nullable=True)
    publisher = db.Column(db.String(255), nullable=True)
    genres = db.Column(db.JSON, nullable=False, default=list)
    screenshots = db.relationship('Screenshot', back_populates='game', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'release_year': self.release_year,
            'developer': self.developer,
            'publisher': self.publisher,
            'genres': list(self.genres or []),
        }


class Screenshot(db.Model):
    __tablename__ = 'screenshot'
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id', ondelete='CASCADE'), nullable=False, index=True)
    image_url = db.Column(db.String(500), nullable=True)
    quality = db.Column(db.Integer, nullable=True)  # critic score of the owning game
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    times_used = db.Column(db.Integer, nullable=False, default=0)
    correct_guesses = db.Column(db.Integer, nullable=False, default=0)
    game = db.relationship('Game', back_populates='screenshots')


class DailyChallenge(db.Model):
    __tablename__ = 'daily_challenge'
    id = db.Column(db.Integer, primary_key=True)
    challenge_date = db.Column(db.Date, nullable=False, unique=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    tiers = db.relationship('Tier', back_populates='challenge', order_by='Tier.tier_number',
                            cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'date': self.challenge_date.isoformat(),
            'is_active': self.is_active,
            'total_screenshots': sum(len(t.assignments) for t in self.tiers),
        }


class Tier(db.Model):
    __tablename__ = 'tier'
    __table_args__ = (
        db.UniqueConstraint('daily_challenge_id', 'tier_number', name='uq_tier_number'),
    )
    id = db.Column(db.Integer, primary_key=True)
    daily_challenge_id = db.Column(db.Integer, db.ForeignKey('daily_challenge.id', ondelete='CASCADE'), nullable=False)
    tier_number = db.Column(db.Integer, nullable=False, default=1)
    name = db.Column(db.String(50), nullable=False, default='Daily Challenge')
    time_limit_seconds = db.Column(db.Integer, nullable=False, default=30)
    challenge = db.relationship('DailyChallenge', back_populates='tiers')
    assignments = db.relationship('TierScreenshot', back_populates='tier', order_by='TierScreenshot.position',
                                  cascade='all, delete-orphan')


class TierScreenshot(db.Model):
    __tablename__ = 'tier_screenshot'
    __table_args__ = (
        db.UniqueConstraint('tier_id', 'position', name='uq_tier_position'),
    )
    id = db.Column(db.Integer, primary_key=True)
    tier_id = db.Column(db.Integer, db.ForeignKey('tier.id', ondelete='CASCADE'), nullable=False)
    screenshot_id = db.Column(db.Integer, db.ForeignKey('screenshot.id', ondelete='CASCADE'), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    bonus_multiplier = db.Column(db.Numeric(3, 2), nullable=False, default=1)
    tier = db.relationship('Tier', back_populates='assignments')
    screenshot = db.relationship('Screenshot')


class GameSession(db.Model):
    __tablename__ = 'game_session'
    __table_args__ = (
        db.UniqueConstraint('user_id', 'daily_challenge_id', name='uq_user_challenge'),
    )
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False, index=True)
    daily_challenge_id = db.Column(db.Integer, db.ForeignKey('daily_challenge.id', ondelete='CASCADE'), nullable=False)
    current_tier = db.Column(db.Integer, nullable=False, default=1)
    current_position = db.Column(db.Integer, nullable=False, default=1)
    total_score = db.Column(db.Integer, nullable=False, default=0)
    is_completed = db.Column(db.Boolean, nullable=False, default=False, index=True)
    # Played after its challenge day; never ranked
    is_catch_up = db.Column(db.Boolean, nullable=False, default=False, index=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    # Stored end-of-session summary, written once by the completing call
    completion_reason = db.Column(db.String(16), nullable=True)
    unfound_count = db.Column(db.Integer, nullable=True)
    penalty_applied = db.Column(db.Integer, nullable=True)
    challenge = db.relationship('DailyChallenge')
    tier_sessions = db.relationship('TierSession', back_populates='game_session', cascade='all, delete-orphan',
                                    passive_deletes=True)


class TierSession(db.Model):
    __tablename__ = 'tier_session'
    __table_args__ = (
        db.UniqueConstraint('game_session_id', 'tier_id', name='uq_session_tier'),
    )
    id = db.Column(db.Integer, primary_key=True)
    game_session_id = db.Column(db.Integer, db.ForeignKey('game_session.id', ondelete='CASCADE'), nullable=False)
    tier_id = db.Column(db.Integer, db.ForeignKey('tier.id', ondelete='CASCADE'), nullable=False)
    score = db.Column(db.Integer, nullable=False, default=0)
    correct_answers = db.Column(db.Integer, nullable=False, default=0)
    wrong_guesses = db.Column(db.Integer, nullable=False, default=0)
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    game_session = db.relationship('GameSession', back_populates='tier_sessions')
    tier = db.relationship('Tier')
    positions = db.relationship('PositionState', order_by='PositionState.position', cascade='all, delete-orphan',
                                passive_deletes=True)
    guesses = db.relationship('Guess', order_by='Guess.id', cascade='all, delete-orphan', passive_deletes=True)
    power_ups = db.relationship('PowerUp', order_by='PowerUp.id', cascade='all, delete-orphan', passive_deletes=True)


class PositionState(db.Model):
    __tablename__ = 'position_state'
    __table_args__ = (
        db.UniqueConstraint('tier_session_id', 'position', name='uq_tier_session_position'),
    )
    id = db.Column(db.Integer, primary_key=True)
    tier_session_id = db.Column(db.Integer, db.ForeignKey('tier_session.id', ondelete='CASCADE'), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default='not_visited')
    wrong_guesses = db.Column(db.Integer, nullable=False, default=0)
    hints_used = db.Column(db.JSON, nullable=False, default=list)
    # Subset of hints_used paid for with a power-up
    free_hints = db.Column(db.JSON, nullable=False, default=list)

    def to_dict(self):
        return {
            'position': self.position,
            'status': self.status,
            'wrong_guesses': self.wrong_guesses,
            'hints_used': list(self.hints_used or []),
            'free_hints': list(self.free_hints or []),
        }


class Guess(db.Model):
    __tablename__ = 'guess'
    id = db.Column(db.Integer, primary_key=True)
    tier_session_id = db.Column(db.Integer, db.ForeignKey('tier_session.id', ondelete='CASCADE'), nullable=False,
                                index=True)
    screenshot_id = db.Column(db.Integer, db.ForeignKey('screenshot.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    guessed_game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=True)
    guessed_text = db.Column(db.String(255), nullable=True)
    is_correct = db.Column(db.Boolean, nullable=False)
    time_taken_ms = db.Column(db.Integer, nullable=False)
    score_earned = db.Column(db.Integer, nullable=False, default=0)
    power_up_used = db.Column(db.String(50), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class PowerUp(db.Model):
    __tablename__ = 'power_up'
    __table_args__ = (
        db.UniqueConstraint('tier_session_id', 'earned_at_round', name='uq_power_up_round'),
    )
    id = db.Column(db.Integer, primary_key=True)
    tier_session_id = db.Column(db.Integer, db.ForeignKey('tier_session.id', ondelete='CASCADE'), nullable=False)
    power_up_type = db.Column(db.String(50), nullable=False)
    is_used = db.Column(db.Boolean, nullable=False, default=False)
    earned_at_round = db.Column(db.Integer, nullable=False)
    used_at_round = db.Column(db.Integer, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.power_up_type,
            'is_used': self.is_used,
            'earned_at_round': self.earned_at_round,
            'used_at_round': self.used_at_round,
        }


class Achievement(db.Model):
    __tablename__ = 'achievement'
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(50), nullable=False)
    tier = db.Column(db.Integer, nullable=False, default=1)
    points = db.Column(db.Integer, nullable=False, default=0)
    criteria = db.Column(db.JSON, nullable=True)
    is_hidden = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self):
        return {
            'key': self.key,
            'name': self.name,
            'description': self.description,
            'category': self.category,
            'tier': self.tier,
            'points': self.points,
        }


class UserAchievement(db.Model):
    __tablename__ = 'user_achievement'
    __table_args__ = (
        db.UniqueConstraint('user_id', 'achievement_id', name='uq_user_achievement'),
    )
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False, index=True)
    achievement_id = db.Column(db.Integer, db.ForeignKey('achievement.id', ondelete='CASCADE'), nullable=False)
    earned_at = db.Column(db.DateTime(timezone=True), nullable=True)  # NULL while only progress is tracked
    progress = db.Column(db.Integer, nullable=False, default=0)
    progress_max = db.Column(db.Integer, nullable=True)
    extra = db.Column('metadata', db.JSON, nullable=True)
    achievement = db.relationship('Achievement')
