from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, Optional

DOUBLE_TIMER = 'double_timer'

# (exclusive upper bound in ms, multiplier)
SPEED_TIERS = (
    (3000, Decimal('2.00')),
    (5000, Decimal('1.75')),
    (10000, Decimal('1.50')),
    (20000, Decimal('1.25')),
)
SLOW_MULTIPLIER = Decimal('1.00')


@dataclass(frozen=True)
class ScoringRules:
    base_score: int = 100
    max_score: int = 200
    wrong_guess_penalty: int = 30
    unfound_penalty: int = 0
    hint_penalties: Dict[str, int] = field(default_factory=lambda: {'year': 20, 'publisher': 30, 'developer': 30})

    @classmethod
    def from_config(cls, config) -> 'ScoringRules':
        return cls(
            base_score=int(config.get('BASE_SCORE', 100)),
            max_score=int(config.get('MAX_SCORE', 200)),
            wrong_guess_penalty=int(config.get('WRONG_GUESS_PENALTY', 30)),
            unfound_penalty=int(config.get('UNFOUND_PENALTY', 0)),
            hint_penalties=dict(config.get('HINT_PENALTIES') or {}),
        )


@dataclass(frozen=True)
class GuessScore:
    earned: int
    delta: int
    multiplier: Optional[Decimal]
    hint_penalty: int
    wrong_guess_penalty: int
    timed_out: bool


def round_half_up(value) -> int:
    return int(Decimal(value).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def speed_multiplier(elapsed_ms: int) -> Decimal:
    """Step function of elapsed time. Boundary values fall into the lower tier."""
    for limit_ms, multiplier in SPEED_TIERS:
        if elapsed_ms < limit_ms:
            return multiplier
    return SLOW_MULTIPLIER


def time_budget_ms(time_limit_seconds: int, double_timer: bool = False) -> int:
    budget = int(time_limit_seconds) * 1000
    return budget * 2 if double_timer else budget


def correct_guess_score(elapsed_ms: int, rules: ScoringRules, bonus_multiplier=1) -> int:
    raw = Decimal(rules.base_score) * speed_multiplier(elapsed_ms) * Decimal(str(bonus_multiplier))
    return min(round_half_up(raw), rules.max_score)


def hint_deduction(hints: Iterable[str], rules: ScoringRules) -> int:
    return sum(int(rules.hint_penalties.get(h, 0)) for h in set(hints or ()))


def apply_delta(total: int, delta: int) -> int:
    """Add ``delta`` to a running score, flooring at zero."""
    return max(0, int(total) + int(delta))


def unfound_penalty(unfound_count: int, rules: ScoringRules) -> int:
    return max(0, int(unfound_count)) * rules.unfound_penalty


def score_guess(
    is_correct: bool,
    elapsed_ms: int,
    rules: ScoringRules,
    time_limit_seconds: int,
    hints: Iterable[str] = (),
    double_timer: bool = False,
    bonus_multiplier=1,
) -> GuessScore:
    """Score one attempt.

    - correct, in time: base * speed multiplier (* bonus), capped, minus hint deductions
    - correct, past the budget: position is found but earns nothing
    - wrong: earns nothing and costs the wrong-guess penalty on the running total
    """
    if not is_correct:
        return GuessScore(
            earned=0,
            delta=-rules.wrong_guess_penalty,
            multiplier=None,
            hint_penalty=0,
            wrong_guess_penalty=rules.wrong_guess_penalty,
            timed_out=False,
        )

    if elapsed_ms > time_budget_ms(time_limit_seconds, double_timer):
        return GuessScore(earned=0, delta=0, multiplier=None, hint_penalty=0, wrong_guess_penalty=0, timed_out=True)

    gross = correct_guess_score(elapsed_ms, rules, bonus_multiplier)
    penalty = min(gross, hint_deduction(hints, rules))
    earned = gross - penalty
    return GuessScore(
        earned=earned,
        delta=earned,
        multiplier=speed_multiplier(elapsed_ms),
        hint_penalty=penalty,
        wrong_guess_penalty=0,
        timed_out=False,
    )
