class DailyError(Exception):
    """Base error for the daily challenge engine.

    ``code`` is a stable machine-readable identifier so callers can tell
    stale client state (e.g. a guess on a finished session) apart from
    other failures; ``status_code`` is the HTTP status the API maps it to.
    """

    code = 'DAILY_ERROR'
    status_code = 400

    def __init__(self, message=None, code=None, status_code=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'error': self.code, 'message': self.message}


class NoEligibleScreenshots(DailyError):
    code = 'NO_ELIGIBLE_SCREENSHOTS'
    status_code = 409


class ChallengeNotFound(DailyError):
    code = 'CHALLENGE_NOT_FOUND'
    status_code = 404


class ChallengeTooOld(DailyError):
    code = 'CHALLENGE_TOO_OLD'
    status_code = 400


class DuplicateChallenge(DailyError):
    """Lost the race to create a date's challenge. Handled internally."""
    code = 'DUPLICATE_CHALLENGE'
    status_code = 409


class SessionNotFound(DailyError):
    code = 'SESSION_NOT_FOUND'
    status_code = 404


class SessionCompleted(DailyError):
    code = 'SESSION_COMPLETED'
    status_code = 409


class InvalidPosition(DailyError):
    code = 'INVALID_POSITION'
    status_code = 400


class InvalidTransition(InvalidPosition):
    code = 'INVALID_TRANSITION'


class PowerUpUnavailable(DailyError):
    code = 'POWER_UP_UNAVAILABLE'
    status_code = 400


class InvalidHint(DailyError):
    code = 'INVALID_HINT'
    status_code = 400


class CriteriaEvaluationFailure(DailyError):
    """One achievement's criteria could not be evaluated. Collected, not raised."""
    code = 'CRITERIA_EVALUATION_FAILURE'
    status_code = 500

    def __init__(self, achievement_key, cause):
        super().__init__(f"{achievement_key}: {cause}")
        self.achievement_key = achievement_key
        self.cause = cause
