"""
Handicap, score validation and per-bowler statistics.
"""
import math
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from bowling.errors import ValidationError
from bowling.models import Bowler, GameScore, HandicapConfig

MAX_PINS = 300

DEFAULT_HANDICAP_CONFIG = HandicapConfig(base=220, percentage=0.9)


def round_half_up(value: float) -> int:
    """Round .5 upwards (2.5 -> 3), unlike the built-in banker's rounding."""
    return int(math.floor(value + 0.5))


# ============================================
# HANDICAP
# ============================================

def calculate_handicap(average: float, config: Optional[HandicapConfig] = None) -> int:
    """
    Handicap = floor((base - average) * percentage).

    Bowlers at or above the base get 0. The result is capped at
    config.max_handicap when one is set and never goes below 0.
    """
    config = config or DEFAULT_HANDICAP_CONFIG
    if average >= config.base:
        return 0

    handicap = math.floor(Decimal(str(config.base - average)) * Decimal(str(config.percentage)))

    if config.max_handicap is not None:
        handicap = min(handicap, config.max_handicap)

    return max(0, handicap)


def calculate_total_score(pins: int, handicap: int) -> int:
    return pins + handicap


def apply_handicap(bowler: Bowler, config: Optional[HandicapConfig] = None) -> Bowler:
    return replace(bowler, handicap=calculate_handicap(bowler.average, config))


def apply_handicap_to_all(bowlers: Iterable[Bowler], config: Optional[HandicapConfig] = None) -> List[Bowler]:
    return [apply_handicap(b, config) for b in bowlers]


# ============================================
# SCORE VALIDATION
# ============================================

def is_valid_score(pins) -> bool:
    """A raw game is an integer between 0 and 300."""
    if isinstance(pins, bool) or not isinstance(pins, int):
        return False
    return 0 <= pins <= MAX_PINS


def validate_game_score(score: GameScore) -> List[str]:
    """Return the list of broken invariants; an empty list means valid."""
    errors = []

    if not is_valid_score(score.pins):
        errors.append(f"Invalid pins knocked: {score.pins} (must be 0-{MAX_PINS})")

    if score.handicap < 0:
        errors.append(f"Invalid handicap: {score.handicap} (must be >= 0)")

    if score.game_number < 1:
        errors.append(f"Invalid game number: {score.game_number} (must be >= 1)")

    if is_valid_score(score.pins):
        expected_total = score.pins + score.handicap
        if score.total != expected_total:
            errors.append(f"Total score mismatch: got {score.total}, expected {expected_total}")

    return errors


def check_game_score(score: GameScore) -> GameScore:
    """Raise ValidationError unless the score is valid; returns it unchanged."""
    errors = validate_game_score(score)
    if errors:
        raise ValidationError('; '.join(errors), errors)
    return score


def create_game_score(bowler_id: str, event_id: str, game_number: int,
                      pins: int, handicap: int = 0) -> GameScore:
    """Build a validated GameScore; the total is always derived."""
    if not is_valid_score(pins):
        raise ValidationError(f"Invalid pins knocked: {pins} (must be 0-{MAX_PINS})")

    score = GameScore(
        bowler_id=bowler_id,
        event_id=event_id,
        game_number=game_number,
        pins=pins,
        handicap=handicap,
        total=calculate_total_score(pins, handicap),
    )
    return check_game_score(score)


# ============================================
# STATISTICS
# ============================================

@dataclass(frozen=True)
class BowlerStats:
    bowler_id: str
    games_played: int = 0
    total_pins: int = 0
    average: int = 0
    high_game: int = 0
    low_game: int = 0
    high_series: int = 0

    def to_dict(self):
        return {
            'bowler_id': self.bowler_id,
            'games_played': self.games_played,
            'total_pins': self.total_pins,
            'average': self.average,
            'high_game': self.high_game,
            'low_game': self.low_game,
            'high_series': self.high_series,
        }


def calculate_bowler_stats(bowler_id: str, scores: Iterable[GameScore]) -> BowlerStats:
    """Stats over raw pins (not handicap totals). No games gives all zeros."""
    pins = [s.pins for s in scores if s.bowler_id == bowler_id]

    if not pins:
        return BowlerStats(bowler_id=bowler_id)

    total_pins = sum(pins)
    return BowlerStats(
        bowler_id=bowler_id,
        games_played=len(pins),
        total_pins=total_pins,
        average=round_half_up(total_pins / len(pins)),
        high_game=max(pins),
        low_game=min(pins),
        high_series=total_pins,
    )


def calculate_all_bowler_stats(scores: Iterable[GameScore]) -> Dict[str, BowlerStats]:
    scores = list(scores)
    bowler_ids = list(dict.fromkeys(s.bowler_id for s in scores))
    return {bowler_id: calculate_bowler_stats(bowler_id, scores) for bowler_id in bowler_ids}


def recalculate_average(current_average: float, current_games: int, new_scores: Iterable[int]) -> int:
    """Weighted merge of an existing average with newly bowled raw games."""
    new_scores = list(new_scores)
    if not new_scores:
        return current_average

    current_total = current_average * current_games
    total_games = current_games + len(new_scores)
    return round_half_up((current_total + sum(new_scores)) / total_games)
