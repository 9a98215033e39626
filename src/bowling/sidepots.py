"""
Sidepot competitions run alongside the brackets.

High game, high series, mystery and love doubles, eliminator and sweeper
all read the same handicap totals; only aggregate_totals is shared between
them. Ties are always reported with every tied bowler, never broken here.
"""
import logging
import math
import random
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from bowling.elimination import shuffle_bowlers
from bowling.errors import StructuralError, ValidationError
from bowling.models import GameScore, SidepotEntry

logger = logging.getLogger(__name__)

DEFAULT_ELIMINATION_PERCENTAGE = 0.5


def filter_scores(scores: Iterable[GameScore], event_id: str) -> List[GameScore]:
    """Scores belonging to one competition context."""
    return [s for s in scores if s.event_id == event_id]


def aggregate_totals(scores: Iterable[GameScore]) -> Dict[str, int]:
    """Sum of handicap totals per bowler, in order of first appearance."""
    totals = {}
    for score in scores:
        totals[score.bowler_id] = totals.get(score.bowler_id, 0) + score.total
    return totals


def _leaders(totals: Dict[str, int]) -> Tuple[Tuple[str, ...], int]:
    best = max(totals.values())
    return tuple(b for b, total in totals.items() if total == best), best


# ============================================
# HIGH GAME (NASSAU)
# ============================================

@dataclass(frozen=True)
class HighGameResult:
    game_number: int
    winner_ids: Tuple[str, ...]
    winner_score: int

    @property
    def is_tie(self) -> bool:
        return len(self.winner_ids) > 1

    @property
    def winner_id(self) -> Optional[str]:
        return None if self.is_tie else self.winner_ids[0]


def calculate_high_game_winner(scores: Iterable[GameScore], game_number: int) -> HighGameResult:
    game_scores = [s for s in scores if s.game_number == game_number]
    if not game_scores:
        raise StructuralError(f"No scores found for game {game_number}")

    winner_ids, best = _leaders(aggregate_totals(game_scores))
    return HighGameResult(game_number, winner_ids, best)


def calculate_all_high_game_winners(scores: Iterable[GameScore], num_games: int) -> List[HighGameResult]:
    scores = list(scores)
    return [calculate_high_game_winner(scores, game) for game in range(1, num_games + 1)]


# ============================================
# HIGH SERIES
# ============================================

@dataclass(frozen=True)
class HighSeriesResult:
    winner_ids: Tuple[str, ...]
    total_pins: int

    @property
    def is_tie(self) -> bool:
        return len(self.winner_ids) > 1

    @property
    def winner_id(self) -> Optional[str]:
        return None if self.is_tie else self.winner_ids[0]


def calculate_high_series_winner(scores: Iterable[GameScore]) -> HighSeriesResult:
    """Highest total across all games."""
    totals = aggregate_totals(scores)
    if not totals:
        raise StructuralError("No scores found for high series")

    winner_ids, best = _leaders(totals)
    return HighSeriesResult(winner_ids, best)


# ============================================
# DOUBLES
# ============================================

@dataclass(frozen=True)
class DoublesTeam:
    bowler1_id: str
    bowler2_id: str
    combined_score: int


def generate_mystery_doubles_pairings(bowler_ids: Iterable[str],
                                      rng: Optional[random.Random] = None) -> List[Tuple[str, str]]:
    """
    Shuffle and pair consecutive bowlers. With an odd count the last
    shuffled bowler is left unpaired.
    """
    bowler_ids = list(bowler_ids)
    if len(bowler_ids) < 2:
        raise StructuralError("Need at least 2 bowlers for doubles")
    if len(set(bowler_ids)) != len(bowler_ids):
        raise StructuralError("A bowler cannot enter doubles twice")

    shuffled = shuffle_bowlers(bowler_ids, rng)
    pairings = [(shuffled[i], shuffled[i + 1]) for i in range(0, len(shuffled) - 1, 2)]

    if len(shuffled) % 2:
        logger.debug(f"Bowler {shuffled[-1]} left without a mystery doubles partner")
    return pairings


def _check_pairings(pairings: Sequence[Tuple[str, str]]):
    if not pairings:
        raise StructuralError("Need at least 2 bowlers for doubles")

    seen = set()
    for bowler1_id, bowler2_id in pairings:
        if bowler1_id == bowler2_id:
            raise StructuralError(f"Bowler {bowler1_id} cannot partner themselves")
        for bowler_id in (bowler1_id, bowler2_id):
            if bowler_id in seen:
                raise StructuralError(f"Bowler {bowler_id} is in more than one doubles team")
            seen.add(bowler_id)


def calculate_doubles_standings(pairings: Iterable[Tuple[str, str]],
                                scores: Iterable[GameScore]) -> List[DoublesTeam]:
    """Teams ranked by the sum of both partners' totals, highest first."""
    pairings = [tuple(p) for p in pairings]
    _check_pairings(pairings)

    totals = aggregate_totals(scores)
    teams = [
        DoublesTeam(bowler1_id, bowler2_id, totals.get(bowler1_id, 0) + totals.get(bowler2_id, 0))
        for bowler1_id, bowler2_id in pairings
    ]
    return sorted(teams, key=lambda t: t.combined_score, reverse=True)


def calculate_love_doubles_standings(teams: Iterable[Tuple[str, str]],
                                     scores: Iterable[GameScore]) -> List[DoublesTeam]:
    """Love doubles: partners are picked by the bowlers, not drawn."""
    return calculate_doubles_standings(teams, scores)


def apply_pairings(entries: Iterable[SidepotEntry], pairings: Iterable[Tuple[str, str]]) -> List[SidepotEntry]:
    """Set partner_id on both entries of every pair; unpaired entries get None."""
    partners = {}
    for bowler1_id, bowler2_id in pairings:
        partners[bowler1_id] = bowler2_id
        partners[bowler2_id] = bowler1_id
    return [replace(e, partner_id=partners.get(e.bowler_id)) for e in entries]


def doubles_pairings_from_entries(entries: Iterable[SidepotEntry]) -> List[Tuple[str, str]]:
    """Recover each team once from entries carrying partner ids."""
    pairings = []
    seen = set()
    for entry in entries:
        if entry.partner_id is None or entry.bowler_id in seen:
            continue
        pairings.append((entry.bowler_id, entry.partner_id))
        seen.update((entry.bowler_id, entry.partner_id))
    return pairings


# ============================================
# ELIMINATOR
# ============================================

@dataclass(frozen=True)
class EliminatorRound:
    game_number: int
    still_in: Tuple[str, ...]
    eliminated: Tuple[str, ...]
    cut_score: int


def _check_percentage(elimination_percentage: float):
    if not 0 <= elimination_percentage <= 1:
        raise ValidationError(
            f"Invalid elimination percentage: {elimination_percentage} (must be between 0 and 1)")


def calculate_eliminator_cut_score(scores: Iterable[int],
                                   elimination_percentage: float = DEFAULT_ELIMINATION_PERCENTAGE) -> int:
    """
    Score at rank floor(n * percentage) of the descending list; 0 with no scores.

    The rank is clamped to the last score, so 100% cuts at the lowest score
    and nobody goes out.
    """
    _check_percentage(elimination_percentage)
    ordered = sorted(scores, reverse=True)
    if not ordered:
        return 0

    cut_index = math.floor(Decimal(len(ordered)) * Decimal(str(elimination_percentage)))
    return ordered[min(cut_index, len(ordered) - 1)]


def process_eliminator_game(currently_in: Iterable[str], game_scores: Iterable[GameScore],
                            elimination_percentage: float = DEFAULT_ELIMINATION_PERCENTAGE,
                            game_number: int = 1) -> EliminatorRound:
    """
    One eliminator round over the bowlers still in.

    Bowlers at or above the cut survive. A bowler still in who has no
    score for the game is eliminated; when nobody has a score the round
    eliminates nobody.
    """
    currently_in = list(currently_in)
    active = set(currently_in)
    round_totals = {s.bowler_id: s.total for s in game_scores if s.bowler_id in active}

    if not round_totals:
        _check_percentage(elimination_percentage)
        return EliminatorRound(game_number, tuple(currently_in), (), 0)

    cut_score = calculate_eliminator_cut_score(round_totals.values(), elimination_percentage)
    still_in = tuple(b for b in currently_in if round_totals.get(b, -1) >= cut_score)
    eliminated = tuple(b for b in currently_in if b not in still_in)
    return EliminatorRound(game_number, still_in, eliminated, cut_score)


def run_full_eliminator(bowler_ids: Iterable[str], scores: Iterable[GameScore], num_games: int,
                        elimination_percentage: float = DEFAULT_ELIMINATION_PERCENTAGE,
                        removed: Optional[Dict[str, int]] = None) -> List[EliminatorRound]:
    """
    Run game after game, carrying the survivors forward; one round per game.

    removed maps bowlers taken out by hand to the game they leave in. They
    go out in that game before the cut is taken and do not count towards it.
    """
    scores = list(scores)
    removed = removed or {}
    currently_in = list(bowler_ids)
    rounds = []

    for game in range(1, num_games + 1):
        game_scores = [s for s in scores if s.game_number == game]
        taken_out = tuple(b for b in currently_in if removed.get(b) == game)
        contesting = [b for b in currently_in if b not in taken_out]
        result = process_eliminator_game(contesting, game_scores, elimination_percentage, game)
        if taken_out:
            result = replace(result, eliminated=taken_out + result.eliminated)
        rounds.append(result)
        currently_in = list(result.still_in)
        logger.debug(f"Eliminator game {game}: cut {result.cut_score}, "
                     f"{len(result.eliminated)} out, {len(result.still_in)} still in")

    return rounds


def apply_eliminations(entries: Iterable[SidepotEntry], rounds: Iterable[EliminatorRound]) -> List[SidepotEntry]:
    """Flag entries with the game in which they were eliminated."""
    eliminated_in = {}
    for result in rounds:
        for bowler_id in result.eliminated:
            eliminated_in.setdefault(bowler_id, result.game_number)

    updated = []
    for entry in entries:
        if not entry.is_eliminated and entry.bowler_id in eliminated_in:
            entry = replace(entry, is_eliminated=True, eliminated_in_game=eliminated_in[entry.bowler_id])
        updated.append(entry)
    return updated


def attach_scores(entries: Iterable[SidepotEntry], scores: Iterable[GameScore]) -> List[SidepotEntry]:
    """Copy each bowler's totals, in game order, onto their entry."""
    by_bowler = {}
    for score in sorted(scores, key=lambda s: s.game_number):
        by_bowler.setdefault(score.bowler_id, []).append(score.total)
    return [replace(e, scores=tuple(by_bowler.get(e.bowler_id, ()))) for e in entries]


# ============================================
# SWEEPER
# ============================================

@dataclass(frozen=True)
class SweeperStanding:
    bowler_id: str
    total_pins: int
    position: int


def calculate_sweeper_standings(scores: Iterable[GameScore]) -> List[SweeperStanding]:
    """
    Rank by total, highest first, with standard competition ranking:
    totals 700, 650, 650, 600 get positions 1, 2, 2, 4.
    """
    ordered = sorted(aggregate_totals(scores).items(), key=lambda item: item[1], reverse=True)

    standings = []
    for index, (bowler_id, total) in enumerate(ordered):
        if standings and standings[-1].total_pins == total:
            position = standings[-1].position
        else:
            position = index + 1
        standings.append(SweeperStanding(bowler_id, total, position))
    return standings
