import re
from difflib import SequenceMatcher

from flask import current_app, has_app_context

_NON_WORD = re.compile(r'[^\w\s]')
_SPACES = re.compile(r'\s+')


def normalize(text: str) -> str:
    text = _NON_WORD.sub('', (text or '').lower())
    return _SPACES.sub(' ', text).strip()


def similarity(a: str, b: str) -> float:
    a, b = normalize(a), normalize(b)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return SequenceMatcher(None, a, b).ratio()


def is_match(candidate: str, screenshot) -> bool:
    """Default text matcher: game name or any alias above MATCH_THRESHOLD.

    ``screenshot`` is a catalog ScreenshotDetails. The session engine takes
    any callable with this signature, so stricter or fuzzier policies can be
    swapped in without touching it.
    """
    if not normalize(candidate):
        return False
    threshold = 0.8
    if has_app_context():
        threshold = float(current_app.config.get('MATCH_THRESHOLD', threshold))
    names = [screenshot.game_name] + list(screenshot.aliases or [])
    return any(similarity(candidate, name) >= threshold for name in names)
