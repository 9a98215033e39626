"""
Unit tests for the YAML record store.
"""
import pytest
import sys
import os

import yaml

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from store import RecordNotFound, RecordStore


@pytest.fixture
def store(tmp_path):
    return RecordStore(str(tmp_path / "data"))


class TestRecordStore:
    """Tests for CRUD on YAML tables."""

    def test_empty_table(self, store):
        """A table that was never written is empty."""
        assert store.load('bowlers') == []

    def test_create_assigns_ids(self, store):
        """Ids are prefixed and count up per table."""
        first = store.create('bowlers', {'name': 'Ann'})
        second = store.create('bowlers', {'name': 'Bob'})
        event = store.create('events', {'name': 'League night'})
        assert (first['id'], second['id'], event['id']) == ('bowler-1', 'bowler-2', 'event-1')

    def test_ids_not_reused_after_delete(self, store):
        """Deleting an earlier record keeps the numbering moving forward."""
        store.create('bowlers', {'name': 'Ann'})
        second = store.create('bowlers', {'name': 'Bob'})
        store.delete('bowlers', 'bowler-1')
        assert store.create('bowlers', {'name': 'Cy'})['id'] == 'bowler-3'
        assert store.get('bowlers', second['id'])['name'] == 'Bob'

    def test_written_as_yaml(self, store):
        """Tables are plain YAML files keyed by table name."""
        store.create('bowlers', {'name': 'Ann', 'average': 180})
        with open(os.path.join(store.data_dir, 'bowlers.yaml'), encoding='utf-8') as f:
            data = yaml.safe_load(f)
        assert data == {'bowlers': [{'id': 'bowler-1', 'name': 'Ann', 'average': 180}]}

    def test_update_merges(self, store):
        """Update changes only the given fields."""
        store.create('bowlers', {'name': 'Ann', 'average': 180})
        updated = store.update('bowlers', 'bowler-1', average=185)
        assert updated == {'id': 'bowler-1', 'name': 'Ann', 'average': 185}
        assert store.require('bowlers', 'bowler-1') == updated

    def test_missing_records(self, store):
        """get returns None; require, update and delete raise."""
        assert store.get('bowlers', 'bowler-9') is None
        with pytest.raises(RecordNotFound):
            store.require('bowlers', 'bowler-9')
        with pytest.raises(RecordNotFound):
            store.update('bowlers', 'bowler-9', name='X')
        with pytest.raises(RecordNotFound):
            store.delete('bowlers', 'bowler-9')

    def test_query_filters(self, store):
        """Query keeps insertion order and matches every filter."""
        store.create('scores', {'event_id': 'e1', 'bowler_id': 'b1', 'game_number': 1})
        store.create('scores', {'event_id': 'e2', 'bowler_id': 'b1', 'game_number': 1})
        store.create('scores', {'event_id': 'e1', 'bowler_id': 'b2', 'game_number': 1})
        assert [s['bowler_id'] for s in store.query('scores', event_id='e1')] == ['b1', 'b2']
        assert store.find_one('scores', event_id='e2', bowler_id='b1')['id'] == 'score-2'
        assert store.find_one('scores', event_id='e3') is None

    def test_delete_where(self, store):
        """Bulk delete removes only matching records."""
        store.create('scores', {'event_id': 'e1', 'bowler_id': 'b1'})
        store.create('scores', {'event_id': 'e2', 'bowler_id': 'b1'})
        store.create('scores', {'event_id': 'e1', 'bowler_id': 'b2'})
        assert store.delete_where('scores', event_id='e1') == 2
        assert [s['event_id'] for s in store.load('scores')] == ['e2']
        assert store.delete_where('scores', event_id='e9') == 0

    def test_unknown_table(self, store):
        """Only known tables can be used."""
        with pytest.raises(ValueError):
            store.load('teams')

    def test_lock_is_reentrant(self, store):
        """Several calls can share one lock acquisition."""
        with store.lock:
            store.create('bowlers', {'name': 'Ann'})
            store.update('bowlers', 'bowler-1', name='Anne')
        assert store.require('bowlers', 'bowler-1')['name'] == 'Anne'
