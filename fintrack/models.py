from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, List, Dict, Literal


TransactionType = Literal["income", "expense"]
Frequency = Literal["daily", "weekly", "monthly", "yearly"]
DecisionStatus = Literal["due", "not_due", "invalid"]

TRANSACTION_TYPES = ("income", "expense")
FREQUENCIES = ("daily", "weekly", "monthly", "yearly")


@dataclass
class RecurringTemplate:
    id: str
    title: str
    amount: float
    category: str
    t_type: TransactionType
    frequency: Frequency
    start_date: Optional[datetime]
    source: str = ""
    notes: str = ""
    is_active: bool = True
    last_generated_date: Optional[datetime] = None


@dataclass
class Transaction:
    id: str
    amount: float
    t_type: TransactionType
    category: str
    t_date: Optional[datetime]
    source: str = ""
    notes: str = ""
    trip_id: Optional[str] = None
    checklist_id: Optional[str] = None
    is_recurring: bool = False
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Budget:
    id: str
    category: str
    month: str  # YYYY-MM
    limit: float = 0.0
    current_spend: float = 0.0


@dataclass(frozen=True)
class TransactionChange:
    """One transaction write: ``before`` is absent on create, ``after`` on delete."""
    before: Optional[Transaction] = None
    after: Optional[Transaction] = None


@dataclass(frozen=True)
class BudgetAdjustment:
    user_id: str
    category: str
    month: str
    delta: float


@dataclass(frozen=True)
class RecurrenceDecision:
    status: DecisionStatus
    reason: str = ""
    next_date: Optional[date] = None

    @property
    def is_due(self) -> bool:
        return self.status == "due"

    @classmethod
    def due(cls, reason: str = "", next_date=None) -> RecurrenceDecision:
        return cls("due", reason, next_date)

    @classmethod
    def not_due(cls, reason: str, next_date=None) -> RecurrenceDecision:
        return cls("not_due", reason, next_date)

    @classmethod
    def invalid(cls, reason: str) -> RecurrenceDecision:
        return cls("invalid", reason)


def report_key(user_id: str, document_id: str) -> str:
    return f"{user_id}/{document_id}"


@dataclass
class SweepReport:
    """Outcome of one sweep. Entries are keyed ``<user id>/<document id>``."""
    generated: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
