"""
Data models for bowlers, scores, bracket matches, sidepots and money.

All records are frozen; functions in the other modules return new
instances built with dataclasses.replace.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple


class ScoringType(enum.Enum):
    SCRATCH = "scratch"
    HANDICAP = "handicap"


class SeedingMethod(enum.Enum):
    RANDOM = "random"
    BY_AVERAGE = "by_average"
    BY_HANDICAP = "by_handicap"


class SidepotType(enum.Enum):
    HIGH_GAME = "high_game"
    HIGH_SERIES = "high_series"
    MYSTERY_DOUBLES = "mystery_doubles"
    LOVE_DOUBLES = "love_doubles"
    ELIMINATOR = "eliminator"
    SWEEPER = "sweeper"


class TransactionType(enum.Enum):
    ENTRY = "entry"
    PAYOUT = "payout"
    REFUND = "refund"


class SlotState(enum.Enum):
    EMPTY = "empty"        # waiting for an upstream winner
    BYE = "bye"            # nobody will ever fill it
    OCCUPIED = "occupied"


@dataclass(frozen=True)
class Bowler:
    id: str
    name: str
    average: int
    handicap: Optional[int] = None

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'average': self.average,
                'handicap': self.handicap}

    @classmethod
    def from_dict(cls, data):
        return cls(id=data['id'], name=data.get('name', ''),
                   average=data.get('average', 0), handicap=data.get('handicap'))


@dataclass(frozen=True)
class HandicapConfig:
    base: int = 220
    percentage: float = 0.9
    max_handicap: Optional[int] = None


@dataclass(frozen=True)
class GameScore:
    bowler_id: str
    event_id: str
    game_number: int
    pins: int
    handicap: int
    total: int

    def to_dict(self):
        return {'bowler_id': self.bowler_id, 'event_id': self.event_id,
                'game_number': self.game_number, 'pins': self.pins,
                'handicap': self.handicap, 'total': self.total}

    @classmethod
    def from_dict(cls, data):
        return cls(bowler_id=data['bowler_id'], event_id=data.get('event_id', ''),
                   game_number=data['game_number'], pins=data['pins'],
                   handicap=data.get('handicap', 0),
                   total=data.get('total', data['pins'] + data.get('handicap', 0)))


@dataclass(frozen=True)
class Slot:
    """One side of a bracket match."""
    state: SlotState
    bowler_id: Optional[str] = None

    @classmethod
    def empty(cls):
        return cls(SlotState.EMPTY)

    @classmethod
    def bye(cls):
        return cls(SlotState.BYE)

    @classmethod
    def occupied(cls, bowler_id):
        return cls(SlotState.OCCUPIED, bowler_id)

    @property
    def is_occupied(self) -> bool:
        return self.state is SlotState.OCCUPIED

    @property
    def is_bye(self) -> bool:
        return self.state is SlotState.BYE

    @property
    def is_empty(self) -> bool:
        return self.state is SlotState.EMPTY

    def to_dict(self):
        return {'state': self.state.value, 'bowler_id': self.bowler_id}

    @classmethod
    def from_dict(cls, data):
        return cls(SlotState(data['state']), data.get('bowler_id'))


@dataclass(frozen=True)
class BracketMatch:
    id: str
    round: int
    position: int
    slot_a: Slot = field(default_factory=Slot.empty)
    slot_b: Slot = field(default_factory=Slot.empty)
    score_a: Optional[int] = None
    score_b: Optional[int] = None
    winner_id: Optional[str] = None

    @property
    def bowler_a_id(self) -> Optional[str]:
        return self.slot_a.bowler_id if self.slot_a.is_occupied else None

    @property
    def bowler_b_id(self) -> Optional[str]:
        return self.slot_b.bowler_id if self.slot_b.is_occupied else None

    @property
    def bowler_ids(self) -> Tuple[str, ...]:
        return tuple(b for b in (self.bowler_a_id, self.bowler_b_id) if b is not None)

    @property
    def is_bye(self) -> bool:
        """Exactly one side is a BYE and the other is a real bowler."""
        return (self.slot_a.is_bye and self.slot_b.is_occupied) or \
               (self.slot_b.is_bye and self.slot_a.is_occupied)

    @property
    def is_void(self) -> bool:
        """Both sides are BYEs; nobody comes out of this match."""
        return self.slot_a.is_bye and self.slot_b.is_bye

    @property
    def is_decided(self) -> bool:
        return self.winner_id is not None

    @property
    def loser_id(self) -> Optional[str]:
        if self.winner_id is None:
            return None
        for bowler_id in self.bowler_ids:
            if bowler_id != self.winner_id:
                return bowler_id
        return None

    @property
    def downstream_position(self) -> int:
        return self.position // 2

    def to_dict(self):
        return {
            'id': self.id,
            'round': self.round,
            'position': self.position,
            'slot_a': self.slot_a.to_dict(),
            'slot_b': self.slot_b.to_dict(),
            'score_a': self.score_a,
            'score_b': self.score_b,
            'winner_id': self.winner_id,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data['id'],
            round=data['round'],
            position=data['position'],
            slot_a=Slot.from_dict(data['slot_a']),
            slot_b=Slot.from_dict(data['slot_b']),
            score_a=data.get('score_a'),
            score_b=data.get('score_b'),
            winner_id=data.get('winner_id'),
        )


@dataclass(frozen=True)
class SidepotEntry:
    bowler_id: str
    partner_id: Optional[str] = None
    scores: Tuple[int, ...] = ()
    is_eliminated: bool = False
    eliminated_in_game: Optional[int] = None

    @property
    def total_pins(self) -> int:
        return sum(self.scores)

    def to_dict(self):
        return {'bowler_id': self.bowler_id, 'partner_id': self.partner_id,
                'scores': list(self.scores), 'is_eliminated': self.is_eliminated,
                'eliminated_in_game': self.eliminated_in_game}

    @classmethod
    def from_dict(cls, data):
        return cls(bowler_id=data['bowler_id'], partner_id=data.get('partner_id'),
                   scores=tuple(data.get('scores') or ()),
                   is_eliminated=data.get('is_eliminated', False),
                   eliminated_in_game=data.get('eliminated_in_game'))


@dataclass(frozen=True)
class PayoutTier:
    place: int
    amount: int
    percentage: float


@dataclass(frozen=True)
class PayoutStructure:
    total_prize_pool: int
    tiers: Tuple[PayoutTier, ...]

    @property
    def total_distributed(self) -> int:
        return sum(t.amount for t in self.tiers)


@dataclass(frozen=True)
class Payout:
    bowler_id: str
    place: int
    amount: int
    paid: bool = False

    @classmethod
    def from_dict(cls, data):
        return cls(bowler_id=data['bowler_id'], place=data['place'], amount=data['amount'],
                   paid=data.get('paid', False))


@dataclass(frozen=True)
class Transaction:
    id: str
    bowler_id: str
    type: TransactionType
    amount: int
    description: str
    created_at: datetime
    event_id: Optional[str] = None
    bracket_id: Optional[str] = None
    sidepot_id: Optional[str] = None

    def to_dict(self):
        return {
            'id': self.id,
            'bowler_id': self.bowler_id,
            'type': self.type.value,
            'amount': self.amount,
            'description': self.description,
            'created_at': self.created_at.isoformat(),
            'event_id': self.event_id,
            'bracket_id': self.bracket_id,
            'sidepot_id': self.sidepot_id,
        }

    @classmethod
    def from_dict(cls, data):
        created_at = data.get('created_at')
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            id=data['id'],
            bowler_id=data['bowler_id'],
            type=TransactionType(data['type']),
            amount=data['amount'],
            description=data.get('description', ''),
            created_at=created_at or datetime.now(),
            event_id=data.get('event_id'),
            bracket_id=data.get('bracket_id'),
            sidepot_id=data.get('sidepot_id'),
        )
