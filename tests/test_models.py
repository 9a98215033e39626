"""
Unit tests for the data models.
"""
import dataclasses
import pytest
import sys
import os
from datetime import datetime

import yaml

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from bowling.models import (
    Bowler,
    BracketMatch,
    GameScore,
    SidepotEntry,
    Slot,
    SlotState,
    Transaction,
    TransactionType,
)


class TestSlot:
    """Tests for tagged bracket slots."""

    def test_bye_is_not_empty(self):
        """A BYE and an unfilled slot are different states."""
        assert Slot.bye() != Slot.empty()
        assert Slot.bye().is_bye and not Slot.bye().is_empty
        assert Slot.empty().is_empty and not Slot.empty().is_bye

    def test_occupied_slot_carries_bowler(self):
        """An occupied slot knows its bowler."""
        slot = Slot.occupied('b1')
        assert slot.is_occupied
        assert slot.bowler_id == 'b1'
        assert slot.state is SlotState.OCCUPIED

    def test_slot_dict_roundtrip(self):
        """Slots survive to_dict/from_dict."""
        for slot in (Slot.empty(), Slot.bye(), Slot.occupied('b7')):
            assert Slot.from_dict(slot.to_dict()) == slot


class TestBracketMatch:
    """Tests for derived match properties."""

    def test_bye_match(self):
        """One BYE and one bowler is a bye match."""
        match = BracketMatch('m', 1, 0, Slot.occupied('b1'), Slot.bye())
        assert match.is_bye
        assert not match.is_void
        assert match.bowler_ids == ('b1',)

    def test_void_match(self):
        """Two BYEs is void, not a bye."""
        match = BracketMatch('m', 1, 0, Slot.bye(), Slot.bye())
        assert match.is_void
        assert not match.is_bye

    def test_pending_match_is_not_bye(self):
        """A bowler waiting for an opponent is not a bye."""
        match = BracketMatch('m', 2, 0, Slot.occupied('b1'), Slot.empty())
        assert not match.is_bye
        assert not match.is_decided

    def test_loser_and_downstream(self):
        """Loser is the other bowler; downstream position halves."""
        match = BracketMatch('m', 1, 5, Slot.occupied('b1'), Slot.occupied('b2'), 200, 180, 'b1')
        assert match.is_decided
        assert match.loser_id == 'b2'
        assert match.downstream_position == 2

    def test_matches_are_frozen(self):
        """Matches cannot be mutated in place."""
        match = BracketMatch('m', 1, 0)
        with pytest.raises(dataclasses.FrozenInstanceError):
            match.winner_id = 'b1'

    def test_dict_is_yaml_safe(self):
        """to_dict output loads back through yaml.safe_load."""
        match = BracketMatch('m', 1, 0, Slot.occupied('b1'), Slot.bye(), winner_id='b1')
        loaded = yaml.safe_load(yaml.safe_dump(match.to_dict()))
        assert BracketMatch.from_dict(loaded) == match


class TestRecords:
    """Tests for the other records."""

    def test_bowler_from_dict_defaults(self):
        """Missing handicap stays None."""
        bowler = Bowler.from_dict({'id': 'b1', 'name': 'Ann', 'average': 180})
        assert bowler.handicap is None

    def test_game_score_derives_missing_total(self):
        """A stored score without a total gets pins + handicap."""
        score = GameScore.from_dict({'bowler_id': 'b1', 'game_number': 1, 'pins': 180, 'handicap': 20})
        assert score.total == 200

    def test_sidepot_entry_total_pins(self):
        """total_pins sums the recorded games."""
        entry = SidepotEntry('b1', scores=(200, 180, 190))
        assert entry.total_pins == 570
        assert entry.to_dict()['scores'] == [200, 180, 190]

    def test_transaction_dict_roundtrip(self):
        """Transactions store their type by value and time as ISO text."""
        txn = Transaction('txn-1', 'b1', TransactionType.PAYOUT, 30, '1st place',
                          datetime(2026, 1, 2, 20, 30), event_id='e1', bracket_id='k1')
        data = txn.to_dict()
        assert data['type'] == 'payout'
        assert data['created_at'] == '2026-01-02T20:30:00'
        assert Transaction.from_dict(data) == txn
