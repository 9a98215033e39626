"""
YAML-file record store.

One YAML file per table inside a data directory. Every public method runs
under a single FileLock, and `with store.lock:` can wrap several calls to
make a whole read-modify-write atomic (the lock is re-entrant).
"""
import os

import yaml
from filelock import FileLock

TABLES = (
    'events',
    'bowlers',
    'event_bowlers',
    'scores',
    'brackets',
    'bracket_entries',
    'sidepots',
    'sidepot_entries',
    'payouts',
    'transactions',
)

ID_PREFIXES = {
    'events': 'event',
    'bowlers': 'bowler',
    'event_bowlers': 'eb',
    'scores': 'score',
    'brackets': 'bracket',
    'bracket_entries': 'be',
    'sidepots': 'sidepot',
    'sidepot_entries': 'se',
    'payouts': 'payout',
    'transactions': 'txn',
}


class RecordNotFound(KeyError):
    """No record with that id in that table."""

    def __init__(self, table, record_id):
        super().__init__(f'{table} record {record_id} not found')
        self.table = table
        self.record_id = record_id

    def __str__(self):
        return self.args[0]


class RecordStore:
    def __init__(self, data_dir: str, timeout: int = 10):
        self.data_dir = data_dir
        os.makedirs(data_dir, exist_ok=True)
        self.lock = FileLock(os.path.join(data_dir, '.lock'), timeout=timeout)

    def _path(self, table: str) -> str:
        if table not in TABLES:
            raise ValueError(f'Unknown table: {table}')
        return os.path.join(self.data_dir, f'{table}.yaml')

    def load(self, table: str) -> list:
        """Load all records of a table from YAML."""
        path = self._path(table)
        if not os.path.exists(path):
            return []
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
        if not data:
            return []
        return data.get(table, [])

    def save(self, table: str, records: list):
        """Save all records of a table to YAML."""
        with open(self._path(table), 'w', encoding='utf-8') as f:
            yaml.safe_dump({table: records}, f, default_flow_style=False, sort_keys=False)

    def _next_id(self, table: str, records: list) -> str:
        prefix = ID_PREFIXES[table]
        numbers = [0]
        for record in records:
            head, _, tail = str(record.get('id', '')).rpartition('-')
            if head == prefix and tail.isdigit():
                numbers.append(int(tail))
        return f'{prefix}-{max(numbers) + 1}'

    def create(self, table: str, record: dict) -> dict:
        with self.lock:
            records = self.load(table)
            new_record = {'id': self._next_id(table, records), **record}
            records.append(new_record)
            self.save(table, records)
        return new_record

    def get(self, table: str, record_id: str):
        return next((r for r in self.load(table) if r.get('id') == record_id), None)

    def require(self, table: str, record_id: str) -> dict:
        record = self.get(table, record_id)
        if record is None:
            raise RecordNotFound(table, record_id)
        return record

    def update(self, table: str, record_id: str, **changes) -> dict:
        with self.lock:
            records = self.load(table)
            for index, record in enumerate(records):
                if record.get('id') == record_id:
                    records[index] = {**record, **changes}
                    self.save(table, records)
                    return records[index]
        raise RecordNotFound(table, record_id)

    def delete(self, table: str, record_id: str):
        with self.lock:
            records = self.load(table)
            remaining = [r for r in records if r.get('id') != record_id]
            if len(remaining) == len(records):
                raise RecordNotFound(table, record_id)
            self.save(table, remaining)

    def delete_where(self, table: str, **filters) -> int:
        """Delete every record matching the filters and return how many went."""
        with self.lock:
            records = self.load(table)
            remaining = [
                r for r in records
                if not all(r.get(field) == value for field, value in filters.items())
            ]
            if len(remaining) != len(records):
                self.save(table, remaining)
        return len(records) - len(remaining)

    def query(self, table: str, **filters) -> list:
        """Records whose fields equal every given filter, in insertion order."""
        return [
            r for r in self.load(table)
            if all(r.get(field) == value for field, value in filters.items())
        ]

    def find_one(self, table: str, **filters):
        matches = self.query(table, **filters)
        return matches[0] if matches else None
