"""Side-effecting jobs run against a DocumentStore.

``generate_recurring_transactions`` is the daily sweep and
``update_budget_on_transaction_change`` is the handler fired for every
transaction write. Both take the store as an argument and keep no state.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import List, Optional

from fintrack.logic import (
    budget_adjustments, budget_spend_by_key, build_recurring_transaction, evaluate_recurrence, to_utc
)
from fintrack.models import BudgetAdjustment, RecurringTemplate, SweepReport, TransactionChange, report_key
from fintrack.storage import DocumentStore, DuplicateDocumentError


logger = logging.getLogger(__name__)

DEFAULT_SWEEP_WORKERS = 4


# ===== BUDGET AGGREGATION =====
def apply_budget_adjustment(store: DocumentStore, adjustment: BudgetAdjustment) -> Optional[float]:
    """Apply one adjustment; returns the new spend, or None when no budget exists."""
    budget = store.find_budget(adjustment.user_id, adjustment.category, adjustment.month)
    if budget is None:
        logger.info("No budget for category '%s' in month '%s'.", adjustment.category, adjustment.month)
        return None

    new_spend = store.increment_budget_spend(adjustment.user_id, budget.id, adjustment.delta)
    logger.info("Updating budget %s spend by %s. New spend: %s", budget.id, adjustment.delta, new_spend)
    return new_spend


def update_budget_on_transaction_change(store: DocumentStore, user_id: str,
                                        change: TransactionChange) -> List[BudgetAdjustment]:
    adjustments = budget_adjustments(user_id, change)
    for adjustment in adjustments:
        apply_budget_adjustment(store, adjustment)
    return adjustments


def register_budget_trigger(store: DocumentStore) -> None:
    store.subscribe(lambda user_id, change: update_budget_on_transaction_change(store, user_id, change))


def recalculate_budgets(store: DocumentStore, user_id: str, month: str) -> dict:
    """Rebuild every budget's spend for ``month`` from the stored transactions."""
    spend = budget_spend_by_key(store.list_transactions(user_id), month)
    result = {}
    for budget in store.list_budgets(user_id, month):
        result[budget.category] = store.set_budget_spend(user_id, budget.id, spend.get(budget.category, 0.0))
        if result[budget.category] != budget.current_spend:
            logger.info("Budget %s spend corrected from %s to %s",
                        budget.id, budget.current_spend, result[budget.category])
    return result


# ===== RECURRING SWEEP =====
def _generate_one(store: DocumentStore, user_id: str, template: RecurringTemplate,
                  now: datetime, report: SweepReport) -> None:
    decision = evaluate_recurrence(template, now)
    if decision.status == "invalid":
        logger.warning("Skipping recurring template %s for user %s: %s", template.id, user_id, decision.reason)
        report.skipped[report_key(user_id, template.id)] = decision.reason
        return
    if not decision.is_due:
        report.skipped[report_key(user_id, template.id)] = decision.reason
        return

    logger.info("Generating transaction for '%s' for user %s", template.title, user_id)
    txn = build_recurring_transaction(template, user_id, now)
    try:
        with store.unit_of_work() as uow:
            uow.insert_transaction(user_id, txn)
            uow.update_template(user_id, template.id, last_generated_date=now)
    except DuplicateDocumentError:
        logger.info("Transaction %s already generated, skipping", txn.id)
        report.skipped[report_key(user_id, template.id)] = "already generated"
        return
    report.generated.append(report_key(user_id, txn.id))


def generate_recurring_transactions(store: DocumentStore, now=None,
                                    max_workers: Optional[int] = None) -> SweepReport:
    """Generate transactions for every active template that is due at ``now``.

    Templates run concurrently and independently: a failure in one is logged
    and recorded in the report without affecting the others.
    """
    now = to_utc(now) if now is not None else datetime.now(timezone.utc)
    if now is None:
        raise ValueError("now must be a date, datetime or ISO string")
    logger.info("Running recurring transaction generator for %s", now.isoformat())

    report = SweepReport()
    templates = store.active_templates()
    if not templates:
        logger.info("No active recurring transactions to process.")
        return report

    with ThreadPoolExecutor(max_workers=max_workers or DEFAULT_SWEEP_WORKERS) as executor:
        futures = {
            executor.submit(_generate_one, store, user_id, template, now, report): (user_id, template)
            for user_id, template in templates
        }
        for future, (user_id, template) in futures.items():
            try:
                future.result()
            except Exception as e:
                logger.exception("Recurring template %s for user %s failed", template.id, user_id)
                report.failed[report_key(user_id, template.id)] = str(e)

    report.generated.sort()
    logger.info("Finished recurring transaction generator: %d generated, %d skipped, %d failed",
                len(report.generated), len(report.skipped), len(report.failed))
    return report
