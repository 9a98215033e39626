"""
Unit tests for handicap, score validation and bowler statistics.
"""
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from bowling.errors import ValidationError
from bowling.models import Bowler, GameScore, HandicapConfig
from bowling.scoring import (
    apply_handicap_to_all,
    calculate_all_bowler_stats,
    calculate_bowler_stats,
    calculate_handicap,
    calculate_total_score,
    check_game_score,
    create_game_score,
    is_valid_score,
    recalculate_average,
    round_half_up,
    validate_game_score,
)


class TestHandicap:
    """Tests for handicap calculation."""

    def test_default_config(self):
        """(220 - 180) * 0.9 = 36."""
        assert calculate_handicap(180) == 36

    def test_floors_fractional_handicap(self):
        """(220 - 175) * 0.9 = 40.5 floors to 40."""
        assert calculate_handicap(175) == 40

    def test_no_float_artefacts(self):
        """(220 - 210) * 0.9 is 9 exactly, not 8."""
        assert calculate_handicap(210) == 9

    def test_at_or_above_base_is_zero(self):
        """Bowlers at or above the base get nothing."""
        assert calculate_handicap(220) == 0
        assert calculate_handicap(250) == 0

    def test_max_handicap_cap(self):
        """The cap applies after the percentage."""
        config = HandicapConfig(base=230, percentage=1.0, max_handicap=50)
        assert calculate_handicap(100, config) == 50

    def test_custom_config(self):
        """Base and percentage come from the config."""
        config = HandicapConfig(base=200, percentage=0.8)
        assert calculate_handicap(150, config) == 40

    def test_never_negative(self):
        """A zero percentage still gives zero, never less."""
        assert calculate_handicap(100, HandicapConfig(percentage=0)) == 0

    def test_apply_handicap_to_all(self):
        """Every bowler gets their own handicap."""
        bowlers = [Bowler('b1', 'A', 180), Bowler('b2', 'B', 230)]
        assert [b.handicap for b in apply_handicap_to_all(bowlers)] == [36, 0]


class TestScoreValidation:
    """Tests for score validation."""

    def test_valid_scores(self):
        """0 and 300 are both legal."""
        assert is_valid_score(0)
        assert is_valid_score(300)

    def test_invalid_scores(self):
        """Out of range, fractional and boolean pins are rejected."""
        assert not is_valid_score(301)
        assert not is_valid_score(-1)
        assert not is_valid_score(150.5)
        assert not is_valid_score(True)

    def test_total_is_derived(self):
        """create_game_score computes total = pins + handicap."""
        score = create_game_score('b1', 'e1', 1, 180, 36)
        assert score.total == 216
        assert calculate_total_score(180, 36) == 216

    def test_create_rejects_bad_pins(self):
        """A 301 game never becomes a GameScore."""
        with pytest.raises(ValidationError):
            create_game_score('b1', 'e1', 1, 301)

    def test_create_rejects_missing_pins(self):
        """Non-integer pins raise ValidationError, not TypeError."""
        with pytest.raises(ValidationError):
            create_game_score('b1', 'e1', 1, None)

    def test_validate_lists_every_problem(self):
        """All broken invariants are reported together."""
        score = GameScore('b1', 'e1', 0, 180, -5, 999)
        errors = validate_game_score(score)
        assert len(errors) == 3
        assert any('handicap' in e for e in errors)
        assert any('game number' in e for e in errors)
        assert any('mismatch' in e for e in errors)

    def test_check_game_score_carries_errors(self):
        """check_game_score raises with the message list attached."""
        with pytest.raises(ValidationError) as excinfo:
            check_game_score(GameScore('b1', 'e1', 1, 180, 10, 180))
        assert len(excinfo.value.errors) == 1


class TestStats:
    """Tests for bowler statistics."""

    def test_no_games(self):
        """No games gives all zeros."""
        stats = calculate_bowler_stats('b1', [])
        assert stats.games_played == 0
        assert stats.average == 0
        assert stats.high_game == 0

    def test_uses_raw_pins(self, three_game_scores):
        """Stats are computed over pins, not handicap totals."""
        stats = calculate_bowler_stats('b1', three_game_scores)
        assert stats.games_played == 3
        assert stats.total_pins == 600
        assert stats.average == 200
        assert stats.high_game == 220
        assert stats.low_game == 180
        assert stats.high_series == 600

    def test_handicap_does_not_leak_into_stats(self):
        """A big handicap leaves the average alone."""
        scores = [create_game_score('b1', 'e1', 1, 150, 60)]
        assert calculate_bowler_stats('b1', scores).average == 150

    def test_average_rounds_half_up(self):
        """(181 + 180) / 2 = 180.5 rounds to 181."""
        scores = [create_game_score('b1', 'e1', 1, 181), create_game_score('b1', 'e1', 2, 180)]
        assert calculate_bowler_stats('b1', scores).average == 181
        assert round_half_up(2.5) == 3

    def test_all_bowler_stats(self, three_game_scores):
        """Stats for every bowler seen in the scores."""
        stats = calculate_all_bowler_stats(three_game_scores)
        assert list(stats) == ['b1', 'b2', 'b3', 'b4']
        assert stats['b3'].average == 150


class TestRecalculateAverage:
    """Tests for merging new games into an average."""

    def test_weighted_merge(self):
        """180 over 9 games plus a 200 gives 182."""
        assert recalculate_average(180, 9, [200]) == 182

    def test_no_new_scores(self):
        """No new games leaves the average unchanged."""
        assert recalculate_average(175, 30, []) == 175

    def test_no_previous_games(self):
        """Without history the new games alone decide."""
        assert recalculate_average(0, 0, [190, 210]) == 200
