"""
Single elimination bracket generation and management.

Matches are plain frozen records; every function here takes a match list
and returns a new one. The shuffle in generate_bracket_matches is the only
source of randomness, and it always draws from an explicit random.Random.
"""
import logging
import math
import random
from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from bowling.errors import StructuralError, TieError, ValidationError
from bowling.models import Bowler, BracketMatch, SeedingMethod, Slot

logger = logging.getLogger(__name__)

STANDARD_BRACKET_SIZES = (4, 8, 12, 16, 32, 64)


@dataclass(frozen=True)
class AdvanceResult:
    matches: List[BracketMatch]
    ladder_complete: bool


@dataclass(frozen=True)
class RematchResult:
    """Best bracket found; collisions > 0 means rematches could not be avoided."""
    matches: List[BracketMatch]
    collisions: int
    attempts: int


def get_round_name(bowlers_in_round: int) -> str:
    """Get the name of a round based on number of bowlers in it."""
    if bowlers_in_round == 2:
        return "Final"
    elif bowlers_in_round == 4:
        return "Semifinal"
    elif bowlers_in_round == 8:
        return "Quarterfinal"
    else:
        return f"Round of {bowlers_in_round}"


def calculate_bracket_size(num_bowlers: int) -> int:
    """Calculate the effective bracket size (next power of 2)."""
    if num_bowlers <= 0:
        return 0
    return 2 ** math.ceil(math.log2(num_bowlers))


def calculate_rounds(bracket_size: int) -> int:
    """Number of rounds needed to get a single winner out of bracket_size slots."""
    if bracket_size <= 1:
        return 0
    return math.ceil(math.log2(bracket_size))


def calculate_byes(num_bowlers: int, bracket_size: Optional[int] = None) -> int:
    """Calculate number of byes needed."""
    if bracket_size is None:
        bracket_size = num_bowlers
    return calculate_bracket_size(bracket_size) - num_bowlers


def shuffle_bowlers(items: Iterable, rng: Optional[random.Random] = None) -> list:
    """Fisher-Yates shuffle of a copy of items."""
    rng = rng if rng is not None else random.Random()
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def seed_bowlers(bowlers: Sequence[Bowler], method, rng: Optional[random.Random] = None) -> List[Bowler]:
    """
    Order bowlers for a bracket.

    random shuffles; by_average puts the highest average first; by_handicap
    puts the highest handicap first. Ties keep their original order.
    """
    method = SeedingMethod(method)
    if method is SeedingMethod.BY_AVERAGE:
        return sorted(bowlers, key=lambda b: b.average, reverse=True)
    if method is SeedingMethod.BY_HANDICAP:
        return sorted(bowlers, key=lambda b: b.handicap or 0, reverse=True)
    return shuffle_bowlers(bowlers, rng)


def _generate_bracket_order(bracket_size: int) -> List[int]:
    """
    Generate the standard tournament bracket order.
    This ensures that if all higher seeds win, they meet in the proper rounds.

    For 8 bowlers: [1, 8, 4, 5, 2, 7, 3, 6]
    This gives matchups: 1v8, 4v5, 2v7, 3v6
    """
    if bracket_size <= 2:
        return [1, 2]

    half_size = bracket_size // 2
    upper_half = _generate_bracket_order(half_size)

    # Each upper seed meets its complement
    lower_half = [bracket_size + 1 - seed for seed in upper_half]

    result = []
    for u, l in zip(upper_half, lower_half):
        result.extend([u, l])

    return result


def _check_entrants(bowler_ids: List[str], bracket_size: int) -> int:
    """Validate an entrant list and return the effective bracket size."""
    if len(bowler_ids) < 2:
        raise StructuralError("Need at least 2 bowlers to start bracket")

    if len(set(bowler_ids)) != len(bowler_ids):
        raise StructuralError("A bowler cannot appear twice in the same bracket")

    effective_size = calculate_bracket_size(bracket_size)
    if len(bowler_ids) > effective_size:
        raise StructuralError(
            f"{len(bowler_ids)} bowlers do not fit a bracket of size {bracket_size}")
    return effective_size


def _bye_winner(slot_a: Slot, slot_b: Slot) -> Optional[str]:
    if slot_a.is_occupied and slot_b.is_bye:
        return slot_a.bowler_id
    if slot_b.is_occupied and slot_a.is_bye:
        return slot_b.bowler_id
    return None


def _build_matches(first_round_slots: List[Slot], effective_size: int) -> List[BracketMatch]:
    """Pair consecutive slots into round 1 and add empty matches for later rounds."""
    matches = []
    match_number = 0

    for position in range(effective_size // 2):
        slot_a = first_round_slots[position * 2]
        slot_b = first_round_slots[position * 2 + 1]
        matches.append(BracketMatch(
            id=f"match-{match_number}",
            round=1,
            position=position,
            slot_a=slot_a,
            slot_b=slot_b,
            winner_id=_bye_winner(slot_a, slot_b),
        ))
        match_number += 1

    matches_in_round = effective_size // 4
    for round_num in range(2, calculate_rounds(effective_size) + 1):
        for position in range(matches_in_round):
            matches.append(BracketMatch(id=f"match-{match_number}", round=round_num, position=position))
            match_number += 1
        matches_in_round //= 2

    return matches


def generate_bracket_matches(bowler_ids: Iterable[str], bracket_size: int,
                             rng: Optional[random.Random] = None) -> List[BracketMatch]:
    """
    Generate all matches of a single elimination bracket.

    Bowlers are shuffled, padded with BYEs up to the effective size and
    paired in order. Round 1 BYE matches are decided immediately; later
    rounds are created empty.
    """
    bowler_ids = list(bowler_ids)
    effective_size = _check_entrants(bowler_ids, bracket_size)

    shuffled = shuffle_bowlers(bowler_ids, rng)
    slots = [Slot.occupied(b) for b in shuffled]
    slots.extend(Slot.bye() for _ in range(effective_size - len(shuffled)))

    matches = _build_matches(slots, effective_size)
    logger.debug(f"Generated {len(matches)} matches for {len(bowler_ids)} bowlers "
                 f"(size {bracket_size}, effective {effective_size})")
    return matches


def generate_seeded_bracket_matches(seeded_ids: Iterable[str], bracket_size: int) -> List[BracketMatch]:
    """
    Generate a bracket from an already seeded list (first = top seed).

    Uses standard bracket order (1 v N, 2 v N-1, ...) so the byes go to
    the top seeds.
    """
    seeded_ids = list(seeded_ids)
    effective_size = _check_entrants(seeded_ids, bracket_size)

    seed_to_bowler = {seed: bowler_id for seed, bowler_id in enumerate(seeded_ids, start=1)}
    slots = [
        Slot.occupied(seed_to_bowler[seed]) if seed in seed_to_bowler else Slot.bye()
        for seed in _generate_bracket_order(effective_size)
    ]
    return _build_matches(slots, effective_size)


def determine_winner(match: BracketMatch) -> Optional[str]:
    """
    Winner of a match, or None while it cannot be decided yet.

    A BYE always goes to the present bowler whatever the scores say.
    Otherwise the strictly higher score wins; equal scores raise TieError.
    """
    if match.is_bye:
        return match.bowler_a_id or match.bowler_b_id

    if not (match.slot_a.is_occupied and match.slot_b.is_occupied):
        return None

    if match.score_a is None or match.score_b is None:
        return None

    if match.score_a > match.score_b:
        return match.bowler_a_id
    if match.score_b > match.score_a:
        return match.bowler_b_id

    raise TieError(f"Match {match.id} is tied at {match.score_a}; re-enter a tie-broken score",
                   (match.bowler_a_id, match.bowler_b_id))


def _index_of(matches: List[BracketMatch], match_id: str) -> int:
    for index, match in enumerate(matches):
        if match.id == match_id:
            return index
    raise StructuralError(f"Match {match_id} not found")


def _downstream_index(matches: List[BracketMatch], match: BracketMatch) -> Optional[int]:
    for index, candidate in enumerate(matches):
        if candidate.round == match.round + 1 and candidate.position == match.downstream_position:
            return index
    return None


def _feed_downstream(matches: List[BracketMatch], match: BracketMatch, slot: Slot) -> Optional[int]:
    """Put slot into the downstream match; returns its index, None for the final."""
    down_index = _downstream_index(matches, match)
    if down_index is None:
        return None

    downstream = matches[down_index]
    slot_name = 'slot_a' if match.position % 2 == 0 else 'slot_b'
    current = getattr(downstream, slot_name)
    if current == slot:
        return down_index
    if not current.is_empty:
        raise StructuralError(
            f"Match {downstream.id} already has {current.bowler_id or 'a BYE'} in that slot")

    matches[down_index] = replace(downstream, **{slot_name: slot})
    return down_index


def advance_winner(matches: Sequence[BracketMatch], match_id: str, winner_id: str) -> AdvanceResult:
    """
    Mark a match decided and move the winner into the next round.

    The winner lands in slot A of match (round + 1, position // 2) when the
    source position is even, slot B when odd. Advancing the same winner
    twice changes nothing. A downstream match left facing a BYE is decided
    straight away. ladder_complete is True once the final has a winner.
    """
    matches = list(matches)
    index = _index_of(matches, match_id)
    match = matches[index]

    if winner_id not in match.bowler_ids:
        raise StructuralError(f"Bowler {winner_id} is not in match {match_id}")

    if not match.is_bye and not (match.slot_a.is_occupied and match.slot_b.is_occupied):
        raise StructuralError(f"Match {match_id} is not ready (missing bowlers)")

    if match.is_decided and match.winner_id != winner_id:
        raise StructuralError(f"Match {match_id} was already won by {match.winner_id}")

    matches[index] = replace(match, winner_id=winner_id)

    down_index = _feed_downstream(matches, match, Slot.occupied(winner_id))
    if down_index is None:
        logger.debug(f"Final {match_id} won by {winner_id}")
        return AdvanceResult(matches, True)

    downstream = matches[down_index]
    if downstream.is_bye and not downstream.is_decided:
        return advance_winner(matches, downstream.id, winner_id)

    return AdvanceResult(matches, False)


def resolve_byes(matches: Sequence[BracketMatch]) -> List[BracketMatch]:
    """
    Push every BYE through the bracket.

    BYE matches advance their bowler; a match with BYEs on both sides
    sends a BYE downstream, which in turn may decide a later match.
    """
    matches = list(matches)
    ordered_ids = [m.id for m in sorted(matches, key=lambda m: (m.round, m.position))]

    for match_id in ordered_ids:
        match = matches[_index_of(matches, match_id)]
        if match.is_void:
            _feed_downstream(matches, match, Slot.bye())
        elif match.is_bye:
            matches = advance_winner(matches, match_id, determine_winner(match)).matches

    return matches


def start_bracket(bowler_ids: Iterable[str], bracket_size: int,
                  rng: Optional[random.Random] = None, seeded: bool = False) -> List[BracketMatch]:
    """Generate a bracket and resolve all of its BYEs."""
    if seeded:
        matches = generate_seeded_bracket_matches(bowler_ids, bracket_size)
    else:
        matches = generate_bracket_matches(bowler_ids, bracket_size, rng)
    return resolve_byes(matches)


def record_match_result(matches: Sequence[BracketMatch], match_id: str,
                        score_a: int, score_b: int) -> AdvanceResult:
    """
    Store both scores, decide the winner and advance it.

    A tie raises TieError and nothing is recorded.
    """
    matches = list(matches)
    index = _index_of(matches, match_id)
    match = matches[index]

    if not (match.slot_a.is_occupied and match.slot_b.is_occupied):
        raise StructuralError(f"Match {match_id} is not ready (missing bowlers)")

    if match.is_decided:
        raise StructuralError(f"Match {match_id} was already won by {match.winner_id}")

    for score in (score_a, score_b):
        if isinstance(score, bool) or not isinstance(score, int) or score < 0:
            raise ValidationError(f"Invalid match score: {score} (must be a non-negative integer)")

    scored = replace(match, score_a=score_a, score_b=score_b)
    winner_id = determine_winner(scored)
    matches[index] = scored
    return advance_winner(matches, match_id, winner_id)


def still_alive(matches: Iterable[BracketMatch], bowler_ids: Iterable[str]) -> List[str]:
    """Bowlers who have not lost a decided match, in input order."""
    eliminated = {m.loser_id for m in matches if m.loser_id is not None}
    return [b for b in bowler_ids if b not in eliminated]


def _pair_history(prior_matches: Iterable[BracketMatch]) -> Set[FrozenSet[str]]:
    return {frozenset(m.bowler_ids) for m in prior_matches if len(m.bowler_ids) == 2}


def have_faced_each_other(bowler_a: str, bowler_b: str, prior_matches: Iterable[BracketMatch]) -> bool:
    return frozenset((bowler_a, bowler_b)) in _pair_history(prior_matches)


def count_rematches(matches: Iterable[BracketMatch], prior_matches: Iterable[BracketMatch]) -> int:
    """Round 1 pairings that already happened in prior_matches."""
    history = _pair_history(prior_matches)
    return sum(
        1 for m in matches
        if m.round == 1 and len(m.bowler_ids) == 2 and frozenset(m.bowler_ids) in history
    )


def generate_bracket_with_history(bowler_ids: Iterable[str], bracket_size: int,
                                  prior_matches: Iterable[BracketMatch], max_attempts: int = 100,
                                  rng: Optional[random.Random] = None) -> RematchResult:
    """
    Try up to max_attempts shuffles and keep the one with the fewest rematches.

    Best effort only: the returned collision count may be above zero when
    the pool is too small or too inbred to avoid every previous pairing.
    """
    if max_attempts < 1:
        raise StructuralError("max_attempts must be at least 1")

    bowler_ids = list(bowler_ids)
    prior_matches = list(prior_matches)
    rng = rng if rng is not None else random.Random()

    best_matches = None
    best_collisions = None
    attempts = 0

    for attempts in range(1, max_attempts + 1):
        matches = generate_bracket_matches(bowler_ids, bracket_size, rng)
        collisions = count_rematches(matches, prior_matches)

        if best_collisions is None or collisions < best_collisions:
            best_matches, best_collisions = matches, collisions

        if collisions == 0:
            break

    if best_collisions:
        logger.warning(f"Could not avoid {best_collisions} rematch(es) after {attempts} attempts")

    return RematchResult(best_matches, best_collisions, attempts)


def get_final(matches: Sequence[BracketMatch]) -> Optional[BracketMatch]:
    if not matches:
        return None
    return max(matches, key=lambda m: m.round)


def get_champion(matches: Sequence[BracketMatch]) -> Optional[str]:
    final = get_final(matches)
    return final.winner_id if final else None


def bracket_placements(matches: Sequence[BracketMatch]) -> List[Tuple[str, int]]:
    """
    Finishing places of a completed bracket as (bowler_id, place).

    Champion 1, runner-up 2, both semifinal losers 3, quarterfinal losers 5
    and so on: bowlers knocked out in the same round share a place.
    """
    champion = get_champion(matches)
    if champion is None:
        raise StructuralError("Bracket is not complete")

    placements = [(champion, 1)]
    place = 2
    total_rounds = max(m.round for m in matches)

    for round_num in range(total_rounds, 0, -1):
        round_matches = sorted((m for m in matches if m.round == round_num), key=lambda m: m.position)
        losers = [m.loser_id for m in round_matches if m.loser_id is not None]
        placements.extend((loser, place) for loser in losers)
        place += len(losers)

    return placements


def get_bracket_display(matches: Sequence[BracketMatch], bowler_names: Optional[Dict[str, str]] = None) -> Dict:
    """
    Get bracket data formatted for UI display.
    """
    bowler_names = bowler_names or {}
    if not matches:
        return {'rounds': {}, 'bracket_size': 0, 'total_rounds': 0, 'byes': 0,
                'matches_per_round': {}, 'champion': None}

    bracket_size = 2 * sum(1 for m in matches if m.round == 1)
    total_rounds = calculate_rounds(bracket_size)

    def slot_label(slot):
        if slot.is_bye:
            return 'BYE'
        if slot.is_empty:
            return None
        return bowler_names.get(slot.bowler_id, slot.bowler_id)

    rounds = {}
    matches_per_round = {}
    bowlers_in_round = bracket_size
    for round_num in range(1, total_rounds + 1):
        round_name = get_round_name(bowlers_in_round)
        round_matches = sorted((m for m in matches if m.round == round_num), key=lambda m: m.position)
        rounds[round_name] = [{
            'id': m.id,
            'round': m.round,
            'position': m.position,
            'bowlers': (slot_label(m.slot_a), slot_label(m.slot_b)),
            'scores': (m.score_a, m.score_b),
            'winner': bowler_names.get(m.winner_id, m.winner_id) if m.winner_id else None,
            'is_bye': m.is_bye,
            'is_playable': m.slot_a.is_occupied and m.slot_b.is_occupied and not m.is_decided,
        } for m in round_matches]
        matches_per_round[round_name] = sum(1 for m in round_matches if not m.is_bye and not m.is_void)
        bowlers_in_round //= 2

    champion = get_champion(matches)
    return {
        'rounds': rounds,
        'bracket_size': bracket_size,
        'total_rounds': total_rounds,
        'byes': sum(int(m.slot_a.is_bye) + int(m.slot_b.is_bye) for m in matches if m.round == 1),
        'matches_per_round': matches_per_round,
        'champion': bowler_names.get(champion, champion) if champion else None,
    }
