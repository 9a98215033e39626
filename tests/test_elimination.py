"""
Unit tests for single elimination bracket generation and advancement.
"""
import pytest
import random
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from bowling.elimination import (
    advance_winner,
    bracket_placements,
    calculate_bracket_size,
    calculate_byes,
    calculate_rounds,
    count_rematches,
    determine_winner,
    generate_bracket_matches,
    generate_bracket_with_history,
    generate_seeded_bracket_matches,
    get_bracket_display,
    get_champion,
    get_round_name,
    have_faced_each_other,
    record_match_result,
    resolve_byes,
    seed_bowlers,
    shuffle_bowlers,
    start_bracket,
    still_alive,
    _generate_bracket_order,
)
from bowling.errors import StructuralError, TieError
from bowling.models import Bowler, BracketMatch, SeedingMethod, Slot


def play_out(matches, score_a=200, score_b=150):
    """Play every ready match with slot A winning until there is a champion."""
    result = None
    while get_champion(matches) is None:
        ready = next(m for m in sorted(matches, key=lambda m: (m.round, m.position))
                     if m.slot_a.is_occupied and m.slot_b.is_occupied and not m.is_decided)
        result = record_match_result(matches, ready.id, score_a, score_b)
        matches = result.matches
    return matches, result


def ids(count):
    return [f"b{i + 1}" for i in range(count)]


class TestBracketHelpers:
    """Tests for bracket helper functions."""

    def test_get_round_name(self):
        """Named rounds for the last three, 'Round of N' before."""
        assert get_round_name(2) == "Final"
        assert get_round_name(4) == "Semifinal"
        assert get_round_name(8) == "Quarterfinal"
        assert get_round_name(16) == "Round of 16"

    def test_calculate_bracket_size(self):
        """Bracket size rounds up to the next power of 2."""
        assert calculate_bracket_size(8) == 8
        assert calculate_bracket_size(5) == 8
        assert calculate_bracket_size(12) == 16
        assert calculate_bracket_size(2) == 2
        assert calculate_bracket_size(0) == 0

    def test_calculate_rounds(self):
        """log2 of the effective size."""
        assert calculate_rounds(8) == 3
        assert calculate_rounds(64) == 6
        assert calculate_rounds(2) == 1

    def test_calculate_byes(self):
        """Byes fill the effective size."""
        assert calculate_byes(5) == 3
        assert calculate_byes(8) == 0
        assert calculate_byes(5, 16) == 11
        assert calculate_byes(9, 12) == 7


class TestBracketOrder:
    """Tests for bracket ordering (seeding)."""

    def test_bracket_order_8(self):
        """Top seeds meet only late."""
        assert _generate_bracket_order(8) == [1, 8, 4, 5, 2, 7, 3, 6]

    def test_bracket_order_complements(self):
        """Each first-round pair adds up to size + 1."""
        order = _generate_bracket_order(16)
        pairs = [order[i] + order[i + 1] for i in range(0, 16, 2)]
        assert set(pairs) == {17}


class TestShuffleAndSeed:
    """Tests for shuffling and seeding."""

    def test_shuffle_keeps_items(self, rng):
        """A shuffle is a permutation of a copy."""
        items = ids(10)
        shuffled = shuffle_bowlers(items, rng)
        assert sorted(shuffled) == sorted(items)
        assert items == ids(10)

    def test_shuffle_is_deterministic_with_seed(self):
        """The same seed gives the same order."""
        assert shuffle_bowlers(ids(10), random.Random(5)) == shuffle_bowlers(ids(10), random.Random(5))

    def test_seed_by_average(self, eight_bowlers):
        """Highest average first."""
        reversed_bowlers = list(reversed(eight_bowlers))
        seeded = seed_bowlers(reversed_bowlers, SeedingMethod.BY_AVERAGE)
        assert [b.id for b in seeded] == [b.id for b in eight_bowlers]

    def test_seed_by_handicap(self):
        """Highest handicap first; ties keep their order."""
        bowlers = [Bowler('a', 'A', 200, 18), Bowler('b', 'B', 150, 63), Bowler('c', 'C', 200, 18)]
        assert [b.id for b in seed_bowlers(bowlers, 'by_handicap')] == ['b', 'a', 'c']

    def test_seed_random_uses_rng(self, eight_bowlers):
        """Random seeding is reproducible from the generator."""
        first = seed_bowlers(eight_bowlers, SeedingMethod.RANDOM, random.Random(9))
        second = seed_bowlers(eight_bowlers, SeedingMethod.RANDOM, random.Random(9))
        assert first == second


class TestGenerate:
    """Tests for bracket generation."""

    def test_full_bracket_shape(self, rng):
        """8 bowlers make 4 + 2 + 1 matches with sequential ids."""
        matches = generate_bracket_matches(ids(8), 8, rng)
        assert [m.id for m in matches] == [f"match-{i}" for i in range(7)]
        assert [m.round for m in matches] == [1, 1, 1, 1, 2, 2, 3]
        first_round = [m for m in matches if m.round == 1]
        assert sorted(b for m in first_round for b in m.bowler_ids) == sorted(ids(8))

    def test_later_rounds_start_empty(self, rng):
        """Rounds after the first wait for winners."""
        matches = generate_bracket_matches(ids(8), 8, rng)
        for match in matches[4:]:
            assert match.slot_a.is_empty and match.slot_b.is_empty

    def test_byes_decided_immediately(self, rng):
        """First-round bye matches already have their winner."""
        matches = generate_bracket_matches(ids(5), 8, rng)
        byes = [m for m in matches if m.is_bye]
        assert byes
        assert all(m.winner_id == m.bowler_ids[0] for m in byes)

    def test_effective_size_for_odd_bracket_size(self, rng):
        """A 12 bracket plays as 16."""
        matches = generate_bracket_matches(ids(12), 12, rng)
        assert len(matches) == 15

    @pytest.mark.parametrize('size', [4, 8, 12, 16, 32, 64])
    def test_shape_for_every_entrant_count(self, size):
        """Any 2..size entrants give effective - 1 matches, effective / 2 in round 1."""
        effective = calculate_bracket_size(size)
        for count in range(2, size + 1):
            matches = generate_bracket_matches(ids(count), size, random.Random(count))
            assert len(matches) == effective - 1
            assert len([m for m in matches if m.round == 1]) == effective // 2
            placed = [b for m in matches if m.round == 1 for b in m.bowler_ids]
            assert sorted(placed) == sorted(ids(count))

    def test_deterministic_with_seed(self):
        """The same seed draws the same bracket."""
        assert generate_bracket_matches(ids(8), 8, random.Random(3)) == \
            generate_bracket_matches(ids(8), 8, random.Random(3))

    def test_too_few_bowlers(self):
        """One bowler is not a bracket."""
        with pytest.raises(StructuralError):
            generate_bracket_matches(['b1'], 8)

    def test_too_many_bowlers(self):
        """Entrants must fit the effective size."""
        with pytest.raises(StructuralError):
            generate_bracket_matches(ids(9), 8)

    def test_duplicate_bowlers(self):
        """A bowler appears once per bracket."""
        with pytest.raises(StructuralError):
            generate_bracket_matches(['b1', 'b2', 'b1'], 4)

    def test_seeded_byes_go_to_top_seeds(self):
        """Five seeds in an 8 bracket: seeds 1-3 get the byes."""
        matches = generate_seeded_bracket_matches(['s1', 's2', 's3', 's4', 's5'], 8)
        bye_winners = {m.winner_id for m in matches if m.is_bye}
        assert bye_winners == {'s1', 's2', 's3'}
        assert ('s4', 's5') in [m.bowler_ids for m in matches if m.round == 1]


class TestDetermineWinner:
    """Tests for deciding a single match."""

    def test_higher_score_wins(self):
        """Strictly higher score wins."""
        match = BracketMatch('m', 1, 0, Slot.occupied('a'), Slot.occupied('b'), 180, 210)
        assert determine_winner(match) == 'b'

    def test_bye_beats_scores(self):
        """The present bowler wins a bye whatever the scores say."""
        match = BracketMatch('m', 1, 0, Slot.bye(), Slot.occupied('b'), 300, 0)
        assert determine_winner(match) == 'b'

    def test_pending_without_scores(self):
        """No scores, no winner."""
        match = BracketMatch('m', 1, 0, Slot.occupied('a'), Slot.occupied('b'))
        assert determine_winner(match) is None

    def test_tie_raises(self):
        """Equal scores need a roll-off."""
        match = BracketMatch('m', 1, 0, Slot.occupied('a'), Slot.occupied('b'), 200, 200)
        with pytest.raises(TieError) as excinfo:
            determine_winner(match)
        assert set(excinfo.value.tied_ids) == {'a', 'b'}


class TestAdvance:
    """Tests for advancing winners."""

    def test_even_position_fills_slot_a(self, rng):
        """Winner of position 0 lands in slot A of round 2 position 0."""
        matches = generate_bracket_matches(ids(8), 8, rng)
        winner = matches[0].bowler_a_id
        result = advance_winner(matches, 'match-0', winner)
        round_two = next(m for m in result.matches if m.round == 2 and m.position == 0)
        assert round_two.slot_a == Slot.occupied(winner)
        assert round_two.slot_b.is_empty
        assert not result.ladder_complete

    def test_odd_position_fills_slot_b(self, rng):
        """Winner of position 1 lands in slot B."""
        matches = generate_bracket_matches(ids(8), 8, rng)
        winner = matches[1].bowler_b_id
        result = advance_winner(matches, 'match-1', winner)
        round_two = next(m for m in result.matches if m.round == 2 and m.position == 0)
        assert round_two.slot_b == Slot.occupied(winner)

    def test_advance_is_idempotent(self, rng):
        """Advancing the same winner twice changes nothing."""
        matches = generate_bracket_matches(ids(8), 8, rng)
        winner = matches[2].bowler_a_id
        once = advance_winner(matches, 'match-2', winner).matches
        twice = advance_winner(once, 'match-2', winner).matches
        assert once == twice

    def test_advance_does_not_mutate_input(self, rng):
        """The input list is left alone."""
        matches = generate_bracket_matches(ids(8), 8, rng)
        snapshot = list(matches)
        advance_winner(matches, 'match-0', matches[0].bowler_a_id)
        assert matches == snapshot

    def test_conflicting_winner(self, rng):
        """A decided match cannot be given to the other bowler."""
        matches = generate_bracket_matches(ids(8), 8, rng)
        matches = advance_winner(matches, 'match-0', matches[0].bowler_a_id).matches
        with pytest.raises(StructuralError):
            advance_winner(matches, 'match-0', matches[0].bowler_b_id)

    def test_unknown_match(self, rng):
        """Unknown match ids are structural errors."""
        matches = generate_bracket_matches(ids(4), 4, rng)
        with pytest.raises(StructuralError):
            advance_winner(matches, 'match-99', 'b1')

    def test_winner_not_in_match(self, rng):
        """Only a seated bowler can win."""
        matches = generate_bracket_matches(ids(4), 4, rng)
        outsider = next(b for b in ids(4) if b not in matches[0].bowler_ids)
        with pytest.raises(StructuralError):
            advance_winner(matches, 'match-0', outsider)

    def test_match_not_ready(self, rng):
        """A later round match with an empty slot cannot be won."""
        matches = generate_bracket_matches(ids(4), 4, rng)
        matches = advance_winner(matches, 'match-0', matches[0].bowler_a_id).matches
        with pytest.raises(StructuralError):
            advance_winner(matches, 'match-2', matches[0].bowler_a_id)


class TestRecordResult:
    """Tests for recording match results."""

    def test_records_scores_and_advances(self, rng):
        """The higher score advances."""
        matches = generate_bracket_matches(ids(4), 4, rng)
        result = record_match_result(matches, 'match-0', 150, 220)
        match = result.matches[0]
        assert (match.score_a, match.score_b) == (150, 220)
        assert match.winner_id == match.bowler_b_id

    def test_tie_leaves_bracket_unchanged(self, rng):
        """A tie raises and records nothing."""
        matches = generate_bracket_matches(ids(4), 4, rng)
        snapshot = list(matches)
        with pytest.raises(TieError):
            record_match_result(matches, 'match-0', 190, 190)
        assert matches == snapshot
        assert matches[0].score_a is None

    def test_cannot_rerecord(self, rng):
        """A decided match is closed."""
        matches = generate_bracket_matches(ids(4), 4, rng)
        matches = record_match_result(matches, 'match-0', 200, 100).matches
        with pytest.raises(StructuralError):
            record_match_result(matches, 'match-0', 100, 200)

    def test_full_bracket_completes(self, rng):
        """Playing every match crowns one champion and completes the ladder."""
        matches, result = play_out(generate_bracket_matches(ids(8), 8, rng))
        assert result.ladder_complete
        assert sum(1 for m in matches if m.is_decided) == 7


class TestResolveByes:
    """Tests for BYE cascades."""

    def test_five_in_eight(self, rng):
        """Bye winners move on; a double-bye sends a BYE on."""
        matches = start_bracket(ids(5), 8, rng)
        round_two = [m for m in matches if m.round == 2]
        filled = [s for m in round_two for s in (m.slot_a, m.slot_b) if not s.is_empty]
        assert len(filled) >= 2
        matches, result = play_out(matches)
        assert result.ladder_complete
        assert get_champion(matches) in ids(5)

    def test_two_bowlers_in_sixty_four(self, rng):
        """A single real match decides a mostly empty 64 bracket."""
        matches = start_bracket(['a', 'b'], 64, rng)
        first = next(m for m in matches if len(m.bowler_ids) == 2)
        result = record_match_result(matches, first.id, 210, 180)
        assert result.ladder_complete
        assert get_champion(result.matches) == first.bowler_a_id

    def test_three_bowlers_in_four(self, rng):
        """The bye winner waits in the final for the other match's winner."""
        matches = start_bracket(ids(3), 4, rng)
        final = next(m for m in matches if m.round == 2)
        assert len(final.bowler_ids) == 1
        assert not final.is_decided

    def test_resolve_is_stable(self, rng):
        """Resolving twice gives the same bracket."""
        matches = start_bracket(ids(5), 8, rng)
        assert resolve_byes(matches) == matches


class TestHistory:
    """Tests for rematch avoidance."""

    def test_have_faced_each_other(self, rng):
        """Round pairings are remembered in either order."""
        matches = generate_bracket_matches(ids(4), 4, rng)
        a, b = matches[0].bowler_ids
        assert have_faced_each_other(a, b, matches)
        assert have_faced_each_other(b, a, matches)
        assert not have_faced_each_other(a, a, matches)

    def test_avoids_previous_pairings(self):
        """With room to move, the new bracket has no rematches."""
        prior = generate_bracket_matches(ids(8), 8, random.Random(1))
        result = generate_bracket_with_history(ids(8), 8, prior, rng=random.Random(2))
        assert result.collisions == 0
        assert count_rematches(result.matches, prior) == 0

    def test_unavoidable_rematch_is_reported(self):
        """Two bowlers who met before must meet again."""
        prior = generate_bracket_matches(['a', 'b'], 2, random.Random(1))
        result = generate_bracket_with_history(['a', 'b'], 2, prior, max_attempts=5, rng=random.Random(2))
        assert result.collisions == 1
        assert result.attempts == 5

    def test_max_attempts_must_be_positive(self):
        """Zero attempts is a caller error."""
        with pytest.raises(StructuralError):
            generate_bracket_with_history(ids(4), 4, [], max_attempts=0)


class TestPlacementsAndDisplay:
    """Tests for finishing places and display data."""

    def test_placements_use_competition_ranking(self, rng):
        """1, 2, 3, 3, 5, 5, 5, 5 for an 8 bracket."""
        matches, _ = play_out(generate_bracket_matches(ids(8), 8, rng))
        places = sorted(place for _, place in bracket_placements(matches))
        assert places == [1, 2, 3, 3, 5, 5, 5, 5]
        assert bracket_placements(matches)[0] == (get_champion(matches), 1)

    def test_placements_need_a_champion(self, rng):
        """An unfinished bracket has no placements."""
        with pytest.raises(StructuralError):
            bracket_placements(generate_bracket_matches(ids(4), 4, rng))

    def test_still_alive(self, rng):
        """Losers drop out; everyone else is alive."""
        matches = generate_bracket_matches(ids(4), 4, rng)
        matches = record_match_result(matches, 'match-0', 200, 100).matches
        alive = still_alive(matches, ids(4))
        assert matches[0].bowler_b_id not in alive
        assert len(alive) == 3

    def test_display(self, rng):
        """Rounds are named and byes counted."""
        matches = start_bracket(ids(5), 8, rng)
        display = get_bracket_display(matches, {'b1': 'Alice'})
        assert list(display['rounds']) == ['Quarterfinal', 'Semifinal', 'Final']
        assert display['bracket_size'] == 8
        assert display['total_rounds'] == 3
        assert display['byes'] == 3
        assert display['champion'] is None
        labels = [label for m in display['rounds']['Quarterfinal'] for label in m['bowlers']]
        assert 'BYE' in labels

    def test_display_empty(self):
        """No matches, nothing to show."""
        assert get_bracket_display([])['rounds'] == {}
