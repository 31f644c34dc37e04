import math
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional

from dateutil.parser import isoparse
from dateutil.relativedelta import relativedelta

from fintrack.models import (
    TRANSACTION_TYPES, Budget, BudgetAdjustment, RecurrenceDecision, RecurringTemplate,
    Transaction, TransactionChange
)


# relativedelta clamps to the last day of a shorter month: Jan 31 + 1 month -> Feb 28/29.
PERIODS = {
    "daily": relativedelta(days=1),
    "weekly": relativedelta(weeks=1),
    "monthly": relativedelta(months=1),
    "yearly": relativedelta(years=1),
}

AT_RISK_PERCENT = 90.0


# ===== TIME HELPERS =====
def to_utc(value) -> Optional[datetime]:
    """Coerce a datetime, date or ISO-8601 string into an aware UTC datetime.

    Naive values are taken to be UTC. Anything unreadable gives None.
    """
    if isinstance(value, datetime):
        instant = value
    elif isinstance(value, date):
        instant = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            instant = isoparse(value)
        except (ValueError, OverflowError):
            return None
    else:
        return None

    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def calendar_day(instant) -> date:
    return to_utc(instant).date()


def month_key(instant) -> str:
    return calendar_day(instant).strftime("%Y-%m")


def _is_amount(value) -> bool:
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and math.isfinite(value) and value >= 0)


# ===== RECURRENCE =====
def next_occurrence(reference, frequency) -> Optional[date]:
    """Calendar day one period after ``reference``, or None for an unknown frequency."""
    period = PERIODS.get(frequency) if isinstance(frequency, str) else None
    if period is None:
        return None
    return calendar_day(reference) + period


def _payload_problem(template: RecurringTemplate) -> Optional[str]:
    if template.t_type not in TRANSACTION_TYPES:
        return f"unknown transaction type {template.t_type!r}"
    if not _is_amount(template.amount):
        return f"unusable amount {template.amount!r}"
    if not isinstance(template.category, str) or not template.category.strip():
        return "missing category"
    return None


def evaluate_recurrence(template: RecurringTemplate, now) -> RecurrenceDecision:
    """Decide whether ``template`` should produce a transaction at ``now``.

    Comparisons are made on UTC calendar days. A template that has never
    generated is due from its start day onwards; afterwards it is due once
    the day one period after ``last_generated_date`` is reached.
    """
    current = to_utc(now)
    if current is None:
        raise ValueError(f"now must be a date, datetime or ISO string, got {now!r}")

    if not template.is_active:
        return RecurrenceDecision.not_due("inactive")

    start = to_utc(template.start_date)
    if start is None:
        return RecurrenceDecision.invalid("missing or unreadable start date")
    if not isinstance(template.frequency, str) or template.frequency not in PERIODS:
        return RecurrenceDecision.invalid(f"unknown frequency {template.frequency!r}")
    problem = _payload_problem(template)
    if problem:
        return RecurrenceDecision.invalid(problem)

    if current < start:
        return RecurrenceDecision.not_due("before start date", calendar_day(start))

    last_generated = None
    if template.last_generated_date is not None:
        last_generated = to_utc(template.last_generated_date)
        if last_generated is None:
            return RecurrenceDecision.invalid("unreadable last generated date")

    today = current.date()
    if last_generated is None:
        start_day = start.date()
        if today >= start_day:
            return RecurrenceDecision.due("first run", start_day)
        return RecurrenceDecision.not_due("before start date", start_day)

    next_date = next_occurrence(last_generated, template.frequency)
    if today >= next_date:
        return RecurrenceDecision.due("period elapsed", next_date)
    return RecurrenceDecision.not_due(f"next occurrence {next_date.isoformat()}", next_date)


def should_generate_transaction(template: RecurringTemplate, now) -> bool:
    return evaluate_recurrence(template, now).is_due


def recurrence_key(template: RecurringTemplate, now) -> str:
    """Idempotency key for one generation: template id plus the target day."""
    return f"{template.id}:{calendar_day(now).isoformat()}"


def build_recurring_transaction(template: RecurringTemplate, user_id: str, now) -> Transaction:
    stamp = to_utc(now)
    return Transaction(
        id=f"rec-{recurrence_key(template, stamp)}",
        amount=template.amount,
        t_type=template.t_type,
        category=template.category,
        t_date=stamp,
        source=template.source,
        notes=f"Recurring: {template.title}",
        is_recurring=True,
        user_id=user_id,
        created_at=datetime.now(timezone.utc),
    )


# ===== BUDGET AGGREGATION =====
def is_budget_eligible(txn: Optional[Transaction]) -> bool:
    """Expenses with a positive amount, outside any trip or checklist, count toward budgets."""
    if txn is None:
        return False
    return (txn.t_type == "expense"
            and _is_amount(txn.amount) and txn.amount > 0
            and not txn.trip_id
            and not txn.checklist_id
            and isinstance(txn.category, str) and bool(txn.category)
            and to_utc(txn.t_date) is not None)


def budget_key(txn: Transaction) -> tuple[str, str]:
    return txn.category, month_key(txn.t_date)


def budget_adjustments(user_id: str, change: TransactionChange) -> List[BudgetAdjustment]:
    """Signed spend adjustments caused by one transaction write.

    An update that keeps the same (category, month) gives one net delta,
    and none when nothing changed. Any other write reverts the old
    contribution and applies the new one independently.
    """
    before = change.before if is_budget_eligible(change.before) else None
    after = change.after if is_budget_eligible(change.after) else None

    if before is not None and after is not None and budget_key(before) == budget_key(after):
        delta = round(after.amount - before.amount, 2)
        if delta == 0:
            return []
        category, month = budget_key(after)
        return [BudgetAdjustment(user_id, category, month, delta)]

    adjustments = []
    if before is not None:
        category, month = budget_key(before)
        adjustments.append(BudgetAdjustment(user_id, category, month, -before.amount))
    if after is not None:
        category, month = budget_key(after)
        adjustments.append(BudgetAdjustment(user_id, category, month, after.amount))
    return adjustments


def budget_spend_by_key(transactions: Iterable[Transaction], month: str) -> dict:
    """Total eligible spend per category for one month."""
    totals = {}
    for t in transactions:
        if not is_budget_eligible(t):
            continue
        category, t_month = budget_key(t)
        if t_month != month:
            continue
        totals[category] = round(totals.get(category, 0.0) + t.amount, 2)
    return totals


# ===== REPORTS =====
def monthly_spending(transactions: Iterable[Transaction], month: str) -> dict:
    total = {
        "expense": 0.0,
        "income": 0.0,
        "net": 0.0
    }
    categories = {}

    for t in transactions:
        if to_utc(t.t_date) is None or month_key(t.t_date) != month:
            continue
        if t.t_type not in TRANSACTION_TYPES:
            continue

        total[t.t_type] += t.amount
        entry = categories.setdefault(t.category or "Uncategorized", {
            "income": 0.0,
            "expense": 0.0,
            "net": 0.0
        })
        entry[t.t_type] += t.amount
        entry["net"] += t.amount if t.t_type == "income" else -t.amount

    total["net"] = total["income"] - total["expense"]

    return {
        "month": month,
        "totals": {k: round(v, 2) for k, v in total.items()},
        "categories": {
            name: {k: round(v, 2) for k, v in data.items()}
            for name, data in categories.items()
        }
    }


def budget_progress(budget: Budget) -> float:
    if budget.limit <= 0:
        return 0.0
    return budget.current_spend / budget.limit * 100


def budget_status(budgets: Iterable[Budget]) -> dict:
    """Count budgets on track, at risk (>= 90% used) and overspent (> 100%)."""
    status = {
        "on_track": 0,
        "at_risk": 0,
        "overspent": 0,
        "most_overspent": None
    }
    worst_overage = 0.0

    for budget in budgets:
        progress = budget_progress(budget)
        if progress > 100:
            status["overspent"] += 1
            overage = round(budget.current_spend - budget.limit, 2)
            if status["most_overspent"] is None or overage > worst_overage:
                worst_overage = overage
                status["most_overspent"] = (budget.category, overage)
        elif progress >= AT_RISK_PERCENT:
            status["at_risk"] += 1
        else:
            status["on_track"] += 1

    return status
