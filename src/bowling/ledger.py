"""
Append-only money ledger.

Totals are never stored; they are folded from the transactions every time
they are read, so they cannot drift from the records.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Optional, Tuple

from bowling.errors import ValidationError
from bowling.models import Transaction, TransactionType


@dataclass(frozen=True)
class MoneyLedger:
    transactions: Tuple[Transaction, ...] = ()

    @property
    def total_in(self) -> int:
        return sum(t.amount for t in self.transactions if t.type is TransactionType.ENTRY)

    @property
    def total_out(self) -> int:
        return sum(t.amount for t in self.transactions if t.type is not TransactionType.ENTRY)

    @property
    def balance(self) -> int:
        return self.total_in - self.total_out


@dataclass(frozen=True)
class BowlerBalance:
    paid: int = 0
    received: int = 0

    @property
    def net(self) -> int:
        return self.received - self.paid

    def to_dict(self):
        return {'paid': self.paid, 'received': self.received, 'net': self.net}


def create_money_ledger() -> MoneyLedger:
    return MoneyLedger()


def ledger_from_records(records: Iterable[dict]) -> MoneyLedger:
    """Rebuild a ledger from stored transaction records, in recorded order."""
    return MoneyLedger(tuple(Transaction.from_dict(r) for r in records))


def add_transaction(ledger: MoneyLedger, bowler_id: str, type, amount: int, description: str,
                    event_id: Optional[str] = None, bracket_id: Optional[str] = None,
                    sidepot_id: Optional[str] = None, created_at: Optional[datetime] = None,
                    transaction_id: Optional[str] = None) -> MoneyLedger:
    """
    Return a new ledger with one more transaction.

    Entries count as money in; payouts and refunds as money out. Amounts
    are positive; a correction is a new offsetting transaction.
    """
    type = TransactionType(type)
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"Invalid transaction amount: {amount} (must be a positive integer)")

    transaction = Transaction(
        id=transaction_id or f"txn-{len(ledger.transactions) + 1}",
        bowler_id=bowler_id,
        type=type,
        amount=amount,
        description=description,
        created_at=created_at or datetime.now(),
        event_id=event_id,
        bracket_id=bracket_id,
        sidepot_id=sidepot_id,
    )
    return MoneyLedger(ledger.transactions + (transaction,))


def get_ledger_by_bowler(ledger: MoneyLedger) -> Dict[str, BowlerBalance]:
    """Per-bowler paid / received / net."""
    balances: Dict[str, BowlerBalance] = {}
    for txn in ledger.transactions:
        current = balances.get(txn.bowler_id, BowlerBalance())
        if txn.type is TransactionType.ENTRY:
            current = BowlerBalance(current.paid + txn.amount, current.received)
        else:
            current = BowlerBalance(current.paid, current.received + txn.amount)
        balances[txn.bowler_id] = current
    return balances


def get_ledger_summary(ledger: MoneyLedger) -> dict:
    counts = {t: 0 for t in TransactionType}
    for txn in ledger.transactions:
        counts[txn.type] += 1
    return {
        'total_in': ledger.total_in,
        'total_out': ledger.total_out,
        'balance': ledger.balance,
        'entries_count': counts[TransactionType.ENTRY],
        'payouts_count': counts[TransactionType.PAYOUT],
        'refunds_count': counts[TransactionType.REFUND],
    }
