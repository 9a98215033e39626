"""
Prize pools, payout tiers and refunds.

Money is counted in whole currency units. Tier amounts are floored and the
rounding remainder goes to first place, so tiers always add up to the pool.
"""
import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from bowling.errors import ConsistencyError, StructuralError, ValidationError
from bowling.models import Payout, PayoutStructure, PayoutTier

logger = logging.getLogger(__name__)

# Standard payout ratios by number of entries
STANDARD_PAYOUT_RATIOS: Dict[int, Tuple[float, ...]] = {
    4: (1.0,),
    8: (0.75, 0.25),
    12: (0.6, 0.25, 0.15),
    16: (0.5, 0.25, 0.15, 0.1),
    32: (0.4, 0.2, 0.12, 0.08, 0.05, 0.05, 0.05, 0.05),
    64: (0.25, 0.15, 0.1, 0.08, 0.06, 0.06, 0.05, 0.05,
         0.04, 0.04, 0.03, 0.03, 0.02, 0.02, 0.01, 0.01),
}

RATIO_TOLERANCE = Decimal('0.0001')


def _check_ratios(ratios: Sequence[float]):
    if not ratios:
        raise ValidationError("Payout ratios cannot be empty")
    if any(isinstance(r, bool) or not isinstance(r, (int, float)) for r in ratios):
        raise ValidationError(f"Payout ratios must be numbers, got {list(ratios)}")
    if any(r < 0 for r in ratios):
        raise ValidationError("Payout ratios cannot be negative")
    total = sum(Decimal(str(r)) for r in ratios)
    if abs(total - 1) > RATIO_TOLERANCE:
        raise ValidationError(f"Payout ratios must sum to 1.0, got {total}")


def select_payout_ratios(num_entries: int,
                         ratio_table: Optional[Dict[int, Sequence[float]]] = None) -> Tuple[float, ...]:
    """Ratios for the largest table size not above num_entries (winner takes all below 4)."""
    ratio_table = ratio_table or STANDARD_PAYOUT_RATIOS
    eligible = [size for size in ratio_table if size <= num_entries]
    if not eligible:
        return (1.0,)
    return tuple(ratio_table[max(eligible)])


def calculate_payout_structure(prize_pool: int, num_entries: int,
                               custom_ratios: Optional[Sequence[float]] = None,
                               ratio_table: Optional[Dict[int, Sequence[float]]] = None) -> PayoutStructure:
    """
    Split prize_pool into tiers.

    Each tier gets floor(pool * percentage); whatever is left after
    flooring is added to first place.
    """
    if isinstance(prize_pool, bool) or not isinstance(prize_pool, int) or prize_pool < 0:
        raise ValidationError(f"Invalid prize pool: {prize_pool} (must be a non-negative integer)")
    if num_entries < 1:
        raise ValidationError(f"Invalid number of entries: {num_entries} (must be >= 1)")

    ratios = tuple(custom_ratios) if custom_ratios is not None else select_payout_ratios(num_entries, ratio_table)
    _check_ratios(ratios)

    amounts = [math.floor(Decimal(prize_pool) * Decimal(str(pct))) for pct in ratios]
    amounts[0] += prize_pool - sum(amounts)

    tiers = tuple(
        PayoutTier(place=index + 1, amount=amount, percentage=pct)
        for index, (amount, pct) in enumerate(zip(amounts, ratios))
    )
    return PayoutStructure(total_prize_pool=prize_pool, tiers=tiers)


def calculate_bracket_payouts(prize_pool: int, bracket_size: int) -> PayoutStructure:
    return calculate_payout_structure(prize_pool, bracket_size)


def allocate_payouts(structure: PayoutStructure, placements: Iterable[Tuple[str, int]]) -> List[Payout]:
    """
    Pay out placements given as (bowler_id, place) pairs.

    Bowlers sharing a place split the tiers their group covers (e.g. two
    bowlers tied for 3rd share tiers 3 and 4) evenly, any odd unit going to
    the first of them. Every tier must be covered by a placement.
    """
    amounts_by_place = {tier.place: tier.amount for tier in structure.tiers}

    groups: Dict[int, List[str]] = {}
    for bowler_id, place in placements:
        groups.setdefault(place, []).append(bowler_id)

    payouts = []
    covered = set()
    for place in sorted(groups):
        bowler_ids = groups[place]
        places = range(place, place + len(bowler_ids))
        pot = sum(amounts_by_place.get(p, 0) for p in places)
        covered.update(p for p in places if p in amounts_by_place)
        if pot == 0:
            continue

        share, remainder = divmod(pot, len(bowler_ids))
        for index, bowler_id in enumerate(bowler_ids):
            amount = share + (remainder if index == 0 else 0)
            if amount:
                payouts.append(Payout(bowler_id=bowler_id, place=place, amount=amount))

    unpaid = sorted(set(amounts_by_place) - covered)
    if unpaid and any(amounts_by_place[p] for p in unpaid):
        raise StructuralError(f"No placement for paid place(s) {unpaid}")

    return payouts


# ============================================
# REFUNDS
# ============================================

@dataclass(frozen=True)
class RefundResult:
    bowler_id: str
    brackets_paid: int
    brackets_entered: int
    refund_amount: int


def calculate_bracket_refunds(entries: Iterable[Tuple[str, int]], entry_fee: int,
                              target_bracket_size: int, actual_entries: int) -> List[RefundResult]:
    """
    Refund the entries that do not fit into complete brackets.

    entries are (bowler_id, brackets_paid) pairs. Only
    floor(actual / size) full brackets run; the extra entries are refunded
    walking entries in the order given. Running out of entries before the
    extra count is used up means the counts disagree and raises
    ConsistencyError.
    """
    entries = list(entries)
    if target_bracket_size < 1:
        raise ValidationError(f"Invalid bracket size: {target_bracket_size}")

    complete_brackets = actual_entries // target_bracket_size
    to_refund = actual_entries - complete_brackets * target_bracket_size

    refunds = []
    for bowler_id, brackets_paid in entries:
        refunded = min(brackets_paid, to_refund) if brackets_paid > 0 else 0
        to_refund -= refunded
        refunds.append(RefundResult(
            bowler_id=bowler_id,
            brackets_paid=brackets_paid,
            brackets_entered=brackets_paid - refunded,
            refund_amount=refunded * entry_fee,
        ))

    if to_refund > 0:
        logger.error(f"Refund allocation ran out of entries with {to_refund} bracket(s) still to refund "
                     f"({actual_entries} entries reported, size {target_bracket_size})")
        raise ConsistencyError(
            f"{to_refund} bracket entr{'y' if to_refund == 1 else 'ies'} could not be matched to a paid entry")

    return refunds


# ============================================
# LINEAGE & FEES
# ============================================

@dataclass(frozen=True)
class EventFinancials:
    total_collected: int
    lineage: int
    prize_pool: int
    expenses: int
    profit: int

    def to_dict(self):
        return {
            'total_collected': self.total_collected,
            'lineage': self.lineage,
            'prize_pool': self.prize_pool,
            'expenses': self.expenses,
            'profit': self.profit,
        }


def calculate_event_financials(num_entries: int, entry_fee: int, lineage_per_entry: int = 0,
                               other_expenses: int = 0) -> EventFinancials:
    """The house keeps lineage; the rest, less expenses, is the prize pool."""
    total_collected = num_entries * entry_fee
    lineage = num_entries * lineage_per_entry
    return EventFinancials(
        total_collected=total_collected,
        lineage=lineage,
        prize_pool=max(0, total_collected - lineage - other_expenses),
        expenses=other_expenses,
        profit=lineage,
    )


def calculate_sidepot_prize_pool(num_entries: int, entry_fee: int) -> int:
    """Sidepots pay back 100% of entries."""
    return num_entries * entry_fee


# ============================================
# PAYMENT TRACKING
# ============================================

@dataclass(frozen=True)
class PayoutSummary:
    count: int
    total_amount: int
    paid_amount: int

    @property
    def pending_amount(self) -> int:
        return self.total_amount - self.paid_amount

    def to_dict(self):
        return {
            'count': self.count,
            'total_amount': self.total_amount,
            'paid_amount': self.paid_amount,
            'pending_amount': self.pending_amount,
        }


def summarize_payouts(payouts: Iterable[Payout], bowler_id: Optional[str] = None) -> PayoutSummary:
    """Awarded versus handed over, optionally for one bowler."""
    payouts = [p for p in payouts if bowler_id is None or p.bowler_id == bowler_id]
    return PayoutSummary(
        count=len(payouts),
        total_amount=sum(p.amount for p in payouts),
        paid_amount=sum(p.amount for p in payouts if p.paid),
    )


def ordinal_suffix(n: int) -> str:
    if 10 <= n % 100 <= 20:
        return 'th'
    return {1: 'st', 2: 'nd', 3: 'rd'}.get(n % 10, 'th')
