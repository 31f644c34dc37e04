import io
import json
import os
import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from fintrack import jobs
from fintrack.cli import FinanceTrackerCLI
from fintrack.config import Settings, load_settings
from fintrack.jobs import (
    apply_budget_adjustment, generate_recurring_transactions, recalculate_budgets,
    register_budget_trigger
)
from fintrack.logic import (
    budget_adjustments, budget_status, build_recurring_transaction, evaluate_recurrence,
    is_budget_eligible, month_key, monthly_spending, next_occurrence, recurrence_key,
    should_generate_transaction, to_utc
)
from fintrack.models import Budget, BudgetAdjustment, RecurringTemplate, Transaction, TransactionChange
from fintrack.storage import (
    DocumentNotFoundError, DocumentStore, DuplicateDocumentError, UnitOfWorkError, list_save_files
)


def at(year, month, day, hour=0, minute=0):
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def make_template(**overrides):
    values = dict(
        id="rent",
        title="Rent",
        amount=1200.0,
        category="Rent",
        t_type="expense",
        frequency="monthly",
        start_date=at(2024, 1, 1),
        source="Landlord",
    )
    values.update(overrides)
    return RecurringTemplate(**values)


def make_txn(**overrides):
    values = dict(
        id="t1",
        amount=50.0,
        t_type="expense",
        category="Food",
        t_date=at(2024, 3, 10, 12),
    )
    values.update(overrides)
    return Transaction(**values)


class TestTimeHelpers(unittest.TestCase):
    def test_to_utc(self):
        """Naive values are UTC, offsets are converted, junk gives None"""
        self.assertEqual(to_utc(datetime(2024, 1, 1, 8)), at(2024, 1, 1, 8))
        eastern = timezone(timedelta(hours=-5))
        self.assertEqual(to_utc(datetime(2024, 1, 1, 23, 30, tzinfo=eastern)), at(2024, 1, 2, 4, 30))
        self.assertEqual(to_utc(date(2024, 2, 29)), at(2024, 2, 29))
        self.assertEqual(to_utc("2024-01-01T10:00:00Z"), at(2024, 1, 1, 10))
        self.assertIsNone(to_utc("not a date"))
        self.assertIsNone(to_utc(None))
        self.assertIsNone(to_utc(12345))

    def test_month_key(self):
        self.assertEqual(month_key(at(2024, 3, 31, 23, 59)), "2024-03")
        eastern = timezone(timedelta(hours=-5))
        self.assertEqual(month_key(datetime(2024, 1, 31, 23, 30, tzinfo=eastern)), "2024-02")

    def test_next_occurrence(self):
        """Periods are added to the calendar day, month ends are clamped"""
        self.assertEqual(next_occurrence(at(2024, 3, 10, 15), "daily"), date(2024, 3, 11))
        self.assertEqual(next_occurrence(at(2024, 3, 10), "weekly"), date(2024, 3, 17))
        self.assertEqual(next_occurrence(at(2024, 1, 31), "monthly"), date(2024, 2, 29))
        self.assertEqual(next_occurrence(at(2023, 1, 31), "monthly"), date(2023, 2, 28))
        self.assertEqual(next_occurrence(at(2024, 12, 15), "monthly"), date(2025, 1, 15))
        self.assertEqual(next_occurrence(at(2024, 2, 29), "yearly"), date(2025, 2, 28))
        self.assertIsNone(next_occurrence(at(2024, 1, 1), "fortnightly"))
        self.assertIsNone(next_occurrence(at(2024, 1, 1), None))


class TestRecurrenceEvaluation(unittest.TestCase):
    def test_first_run_eligibility(self):
        """A template that never ran is due from its start day onwards"""
        template = make_template(start_date=at(2024, 1, 1))
        self.assertTrue(should_generate_transaction(template, at(2024, 1, 1)))
        self.assertTrue(should_generate_transaction(template, at(2024, 1, 1, 18)))
        self.assertTrue(should_generate_transaction(template, at(2024, 6, 30)))
        self.assertFalse(should_generate_transaction(template, at(2023, 12, 31, 23, 59)))

        decision = evaluate_recurrence(template, at(2024, 1, 1))
        self.assertEqual(decision.status, "due")
        self.assertEqual(decision.next_date, date(2024, 1, 1))

    def test_first_run_with_time_of_day(self):
        template = make_template(start_date=at(2024, 1, 1, 9))
        self.assertFalse(should_generate_transaction(template, at(2024, 1, 1, 8)))
        self.assertTrue(should_generate_transaction(template, at(2024, 1, 1, 10)))

    def test_daily_period_advance(self):
        template = make_template(frequency="daily", last_generated_date=at(2024, 3, 10, 15))
        self.assertFalse(should_generate_transaction(template, at(2024, 3, 10, 23, 59)))
        self.assertTrue(should_generate_transaction(template, at(2024, 3, 11)))
        self.assertTrue(should_generate_transaction(template, at(2024, 3, 20)))

    def test_weekly_period_advance(self):
        template = make_template(frequency="weekly", last_generated_date=at(2024, 3, 1))
        self.assertFalse(should_generate_transaction(template, at(2024, 3, 7, 23)))
        self.assertTrue(should_generate_transaction(template, at(2024, 3, 8)))

    def test_monthly_month_end(self):
        """Jan 31 + 1 month lands on the last day of February"""
        template = make_template(start_date=at(2024, 1, 31), last_generated_date=at(2024, 1, 31))
        self.assertFalse(should_generate_transaction(template, at(2024, 2, 28)))
        decision = evaluate_recurrence(template, at(2024, 2, 29))
        self.assertTrue(decision.is_due)
        self.assertEqual(decision.next_date, date(2024, 2, 29))

    def test_yearly_period_advance(self):
        template = make_template(frequency="yearly", start_date=at(2020, 2, 29),
                                 last_generated_date=at(2024, 2, 29))
        self.assertFalse(should_generate_transaction(template, at(2025, 2, 27)))
        self.assertTrue(should_generate_transaction(template, at(2025, 2, 28)))

    def test_unknown_frequency_never_fires(self):
        template = make_template(frequency="fortnightly")
        for now in (at(2024, 1, 1), at(2024, 2, 1), at(2030, 1, 1)):
            self.assertFalse(should_generate_transaction(template, now))
        decision = evaluate_recurrence(template, at(2024, 2, 1))
        self.assertEqual(decision.status, "invalid")
        self.assertIn("fortnightly", decision.reason)

    def test_not_due_is_distinguished_from_invalid(self):
        decision = evaluate_recurrence(make_template(last_generated_date=at(2024, 1, 1)), at(2024, 1, 15))
        self.assertEqual(decision.status, "not_due")
        self.assertEqual(decision.next_date, date(2024, 2, 1))

        decision = evaluate_recurrence(make_template(start_date=None), at(2024, 1, 15))
        self.assertEqual(decision.status, "invalid")

    def test_inactive_template(self):
        decision = evaluate_recurrence(make_template(is_active=False), at(2024, 1, 1))
        self.assertEqual(decision.status, "not_due")
        self.assertEqual(decision.reason, "inactive")

    def test_malformed_payload(self):
        """Unusable template data is reported as invalid, never raised"""
        cases = [
            make_template(amount="1200"),
            make_template(amount=-5.0),
            make_template(amount=float("nan")),
            make_template(t_type="transfer"),
            make_template(category=""),
            make_template(category=None),
            make_template(start_date="yesterday"),
            make_template(last_generated_date="garbage"),
        ]
        for template in cases:
            decision = evaluate_recurrence(template, at(2024, 3, 1))
            self.assertEqual(decision.status, "invalid", template)
            self.assertFalse(should_generate_transaction(template, at(2024, 3, 1)))

    def test_iso_string_dates(self):
        template = make_template(start_date="2024-01-01T00:00:00Z",
                                 last_generated_date="2024-01-01T00:00:00+00:00")
        self.assertFalse(should_generate_transaction(template, "2024-01-31T23:00:00Z"))
        self.assertTrue(should_generate_transaction(template, "2024-02-01T00:00:00Z"))

    def test_now_must_be_readable(self):
        with self.assertRaises(ValueError):
            evaluate_recurrence(make_template(), None)

    def test_build_recurring_transaction(self):
        template = make_template()
        txn = build_recurring_transaction(template, "u1", at(2024, 1, 1, 6))
        self.assertEqual(txn.id, "rec-rent:2024-01-01")
        self.assertEqual(recurrence_key(template, at(2024, 1, 1, 6)), "rent:2024-01-01")
        self.assertEqual(txn.amount, 1200.0)
        self.assertEqual(txn.t_type, "expense")
        self.assertEqual(txn.category, "Rent")
        self.assertEqual(txn.source, "Landlord")
        self.assertEqual(txn.t_date, at(2024, 1, 1, 6))
        self.assertEqual(txn.notes, "Recurring: Rent")
        self.assertEqual(txn.user_id, "u1")
        self.assertTrue(txn.is_recurring)
        self.assertIsNotNone(txn.created_at)


class TestBudgetAdjustments(unittest.TestCase):
    def test_eligibility(self):
        self.assertTrue(is_budget_eligible(make_txn()))
        self.assertFalse(is_budget_eligible(None))
        self.assertFalse(is_budget_eligible(make_txn(t_type="income")))
        self.assertFalse(is_budget_eligible(make_txn(amount=0.0)))
        self.assertFalse(is_budget_eligible(make_txn(trip_id="trip-1")))
        self.assertFalse(is_budget_eligible(make_txn(checklist_id="list-1")))
        self.assertFalse(is_budget_eligible(make_txn(category="")))
        self.assertFalse(is_budget_eligible(make_txn(t_date=None)))

    def test_create(self):
        result = budget_adjustments("u1", TransactionChange(after=make_txn()))
        self.assertEqual(result, [BudgetAdjustment("u1", "Food", "2024-03", 50.0)])

    def test_create_income_is_ignored(self):
        self.assertEqual(budget_adjustments("u1", TransactionChange(after=make_txn(t_type="income"))), [])

    def test_delete(self):
        result = budget_adjustments("u1", TransactionChange(before=make_txn()))
        self.assertEqual(result, [BudgetAdjustment("u1", "Food", "2024-03", -50.0)])

    def test_update_without_changes(self):
        """Same category and amount gives no write at all"""
        change = TransactionChange(before=make_txn(), after=make_txn(t_date=at(2024, 3, 12)))
        self.assertEqual(budget_adjustments("u1", change), [])

    def test_update_amount(self):
        change = TransactionChange(before=make_txn(), after=make_txn(amount=80.0))
        self.assertEqual(budget_adjustments("u1", change), [BudgetAdjustment("u1", "Food", "2024-03", 30.0)])

        change = TransactionChange(before=make_txn(amount=80.0), after=make_txn(amount=20.0))
        self.assertEqual(budget_adjustments("u1", change), [BudgetAdjustment("u1", "Food", "2024-03", -60.0)])

    def test_category_change_split(self):
        change = TransactionChange(
            before=make_txn(category="A", amount=50.0),
            after=make_txn(category="B", amount=70.0),
        )
        self.assertEqual(budget_adjustments("u1", change), [
            BudgetAdjustment("u1", "A", "2024-03", -50.0),
            BudgetAdjustment("u1", "B", "2024-03", 70.0),
        ])

    def test_month_change(self):
        change = TransactionChange(before=make_txn(), after=make_txn(t_date=at(2024, 4, 2)))
        self.assertEqual(budget_adjustments("u1", change), [
            BudgetAdjustment("u1", "Food", "2024-03", -50.0),
            BudgetAdjustment("u1", "Food", "2024-04", 50.0),
        ])

    def test_eligibility_change(self):
        """Linking to a trip reverts the old contribution, unlinking restores it"""
        linked = make_txn(trip_id="trip-1")
        self.assertEqual(
            budget_adjustments("u1", TransactionChange(before=make_txn(), after=linked)),
            [BudgetAdjustment("u1", "Food", "2024-03", -50.0)]
        )
        self.assertEqual(
            budget_adjustments("u1", TransactionChange(before=linked, after=make_txn(amount=60.0))),
            [BudgetAdjustment("u1", "Food", "2024-03", 60.0)]
        )
        self.assertEqual(
            budget_adjustments("u1", TransactionChange(before=make_txn(), after=make_txn(t_type="income"))),
            [BudgetAdjustment("u1", "Food", "2024-03", -50.0)]
        )

    def test_trip_and_checklist_never_count(self):
        for link in ({"trip_id": "trip-1"}, {"checklist_id": "list-1"}):
            before = make_txn(**link)
            after = make_txn(amount=90.0, category="Travel", **link)
            self.assertEqual(budget_adjustments("u1", TransactionChange(after=before)), [])
            self.assertEqual(budget_adjustments("u1", TransactionChange(before=before, after=after)), [])
            self.assertEqual(budget_adjustments("u1", TransactionChange(before=after)), [])


class TestReports(unittest.TestCase):
    def test_monthly_spending(self):
        transactions = [
            make_txn(id="1", amount=100.0, t_type="income", category="Salary", t_date=at(2024, 3, 1)),
            make_txn(id="2", amount=50.0, category="Food", t_date=at(2024, 3, 15)),
            make_txn(id="3", amount=30.0, category="Food", t_date=at(2024, 4, 1)),
            make_txn(id="4", amount=20.0, category="Travel", trip_id="trip-1", t_date=at(2024, 3, 20)),
        ]
        result = monthly_spending(transactions, "2024-03")

        self.assertEqual(result["month"], "2024-03")
        self.assertEqual(result["totals"]["income"], 100.0)
        self.assertEqual(result["totals"]["expense"], 70.0)
        self.assertEqual(result["totals"]["net"], 30.0)
        self.assertEqual(result["categories"]["Salary"]["income"], 100.0)
        self.assertEqual(result["categories"]["Food"]["expense"], 50.0)
        self.assertEqual(result["categories"]["Food"]["net"], -50.0)

    def test_budget_status(self):
        budgets = [
            Budget("1", "Food", "2024-03", limit=100.0, current_spend=50.0),
            Budget("2", "Fuel", "2024-03", limit=100.0, current_spend=95.0),
            Budget("3", "Fun", "2024-03", limit=100.0, current_spend=130.0),
            Budget("4", "Rent", "2024-03", limit=1000.0, current_spend=1200.0),
            Budget("5", "Misc", "2024-03", limit=0.0, current_spend=10.0),
        ]
        status = budget_status(budgets)
        self.assertEqual(status["on_track"], 2)
        self.assertEqual(status["at_risk"], 1)
        self.assertEqual(status["overspent"], 2)
        self.assertEqual(status["most_overspent"], ("Rent", 200.0))

    def test_budget_status_empty(self):
        status = budget_status([])
        self.assertEqual(status["on_track"], 0)
        self.assertIsNone(status["most_overspent"])


class TestDocumentStore(unittest.TestCase):
    def setUp(self):
        self.store = DocumentStore()
        self.changes = []
        self.store.subscribe(lambda user_id, change: self.changes.append((user_id, change)))

    def test_transaction_writes_notify_once(self):
        self.store.put_transaction("u1", make_txn())
        self.store.put_transaction("u1", make_txn(amount=75.0))
        self.store.delete_transaction("u1", "t1")

        self.assertEqual(len(self.changes), 3)
        created, updated, deleted = [change for _, change in self.changes]
        self.assertIsNone(created.before)
        self.assertEqual(created.after.user_id, "u1")
        self.assertEqual(updated.before.amount, 50.0)
        self.assertEqual(updated.after.amount, 75.0)
        self.assertEqual(deleted.before.amount, 75.0)
        self.assertIsNone(deleted.after)

    def test_delete_missing_transaction(self):
        with self.assertRaises(DocumentNotFoundError):
            self.store.delete_transaction("u1", "nope")
        self.assertEqual(self.changes, [])

    def test_documents_are_snapshots(self):
        self.store.add_budget("u1", Budget("b1", "Food", "2024-03", limit=100.0))
        budget = self.store.find_budget("u1", "Food", "2024-03")
        budget.current_spend = 500.0
        self.assertEqual(self.store.find_budget("u1", "Food", "2024-03").current_spend, 0.0)

    def test_budget_key_is_unique(self):
        self.store.add_budget("u1", Budget("b1", "Food", "2024-03"))
        with self.assertRaises(DuplicateDocumentError):
            self.store.add_budget("u1", Budget("b2", "Food", "2024-03"))
        with self.assertRaises(DuplicateDocumentError):
            self.store.add_budget("u1", Budget("b1", "Fuel", "2024-03"))
        self.store.add_budget("u2", Budget("b2", "Food", "2024-03"))
        self.store.add_budget("u1", Budget("b3", "Food", "2024-04"))

    def test_increment_is_clamped(self):
        self.store.add_budget("u1", Budget("b1", "Food", "2024-03", limit=100.0, current_spend=40.0))
        self.assertEqual(self.store.increment_budget_spend("u1", "b1", -100.0), 0.0)
        self.assertEqual(self.store.increment_budget_spend("u1", "b1", 12.5), 12.5)
        with self.assertRaises(DocumentNotFoundError):
            self.store.increment_budget_spend("u1", "missing", 1.0)

    def test_list_transactions_by_month(self):
        self.store.put_transaction("u1", make_txn(id="a", t_date=at(2024, 3, 20)))
        self.store.put_transaction("u1", make_txn(id="b", t_date=at(2024, 3, 2)))
        self.store.put_transaction("u1", make_txn(id="c", t_date=at(2024, 4, 1)))
        self.assertEqual([t.id for t in self.store.list_transactions("u1", "2024-03")], ["b", "a"])
        self.assertEqual(len(self.store.list_transactions("u1")), 3)
        self.assertEqual(self.store.list_transactions("u2"), [])

    def test_unit_of_work_commit(self):
        self.store.add_template("u1", make_template())
        with self.store.unit_of_work() as uow:
            uow.insert_transaction("u1", make_txn(id="g1"))
            uow.update_template("u1", "rent", last_generated_date=at(2024, 1, 1))
            self.assertIsNone(self.store.get_transaction("u1", "g1"))

        self.assertEqual(uow.state, "committed")
        self.assertIsNotNone(self.store.get_transaction("u1", "g1"))
        self.assertEqual(self.store.get_template("u1", "rent").last_generated_date, at(2024, 1, 1))
        self.assertEqual(len(self.changes), 1)

    def test_unit_of_work_rollback_on_exception(self):
        self.store.add_template("u1", make_template())
        with self.assertRaises(RuntimeError):
            with self.store.unit_of_work() as uow:
                uow.insert_transaction("u1", make_txn(id="g1"))
                uow.update_template("u1", "rent", last_generated_date=at(2024, 1, 1))
                raise RuntimeError("boom")

        self.assertEqual(uow.state, "rolled_back")
        self.assertIsNone(self.store.get_transaction("u1", "g1"))
        self.assertIsNone(self.store.get_template("u1", "rent").last_generated_date)
        self.assertEqual(self.changes, [])

    def test_unit_of_work_is_all_or_nothing(self):
        """A failing insert leaves the template marker untouched"""
        self.store.add_template("u1", make_template())
        self.store.put_transaction("u1", make_txn(id="g1"))

        uow = self.store.unit_of_work().begin()
        uow.update_template("u1", "rent", last_generated_date=at(2024, 1, 1))
        uow.insert_transaction("u1", make_txn(id="g1", amount=999.0))
        with self.assertRaises(DuplicateDocumentError):
            uow.commit()

        self.assertIsNone(self.store.get_template("u1", "rent").last_generated_date)
        self.assertEqual(self.store.get_transaction("u1", "g1").amount, 50.0)
        with self.assertRaises(UnitOfWorkError):
            uow.commit()

    def test_unit_of_work_missing_template(self):
        uow = self.store.unit_of_work().begin()
        uow.insert_transaction("u1", make_txn(id="g1"))
        uow.update_template("u1", "nope", is_active=False)
        with self.assertRaises(DocumentNotFoundError):
            uow.commit()
        self.assertIsNone(self.store.get_transaction("u1", "g1"))

    def test_unit_of_work_state_checks(self):
        uow = self.store.unit_of_work()
        with self.assertRaises(UnitOfWorkError):
            uow.insert_transaction("u1", make_txn())
        uow.begin()
        with self.assertRaises(UnitOfWorkError):
            uow.begin()
        with self.assertRaises(ValueError):
            uow.update_template("u1", "rent", colour="blue")
        uow.rollback()
        with self.assertRaises(UnitOfWorkError):
            uow.rollback()

    def test_failing_listener_is_isolated(self):
        def broken(user_id, change):
            raise RuntimeError("listener down")

        store = DocumentStore()
        seen = []
        store.subscribe(broken)
        store.subscribe(lambda user_id, change: seen.append(change))
        with self.assertLogs("fintrack.storage", level="ERROR"):
            store.put_transaction("u1", make_txn())
        self.assertEqual(len(seen), 1)
        self.assertIsNotNone(store.get_transaction("u1", "t1"))

    def test_active_templates(self):
        self.store.add_template("u1", make_template())
        self.store.add_template("u2", make_template(id="gym", title="Gym"))
        self.store.add_template("u2", make_template(id="old", is_active=False))
        active = sorted((user_id, t.id) for user_id, t in self.store.active_templates())
        self.assertEqual(active, [("u1", "rent"), ("u2", "gym")])

        self.store.set_template_active("u2", "gym", False)
        self.assertEqual([t.id for _, t in self.store.active_templates()], ["rent"])
        with self.assertRaises(DocumentNotFoundError):
            self.store.set_template_active("u2", "missing", True)

    def test_delete_template(self):
        """Deleting a template keeps the transactions it generated"""
        self.store.add_template("u1", make_template())
        self.store.put_transaction("u1", make_txn(id="rec-rent:2024-01-01", is_recurring=True))

        removed = self.store.delete_template("u1", "rent")
        self.assertEqual(removed.id, "rent")
        self.assertIsNone(self.store.get_template("u1", "rent"))
        self.assertEqual(self.store.active_templates(), [])
        self.assertIsNotNone(self.store.get_transaction("u1", "rec-rent:2024-01-01"))
        with self.assertRaises(DocumentNotFoundError):
            self.store.delete_template("u1", "rent")


class TestBudgetTrigger(unittest.TestCase):
    def setUp(self):
        self.store = DocumentStore()
        register_budget_trigger(self.store)

    def spend(self, category, month="2024-03", user_id="u1"):
        return self.store.find_budget(user_id, category, month).current_spend

    def test_create_update_delete(self):
        self.store.add_budget("u1", Budget("b1", "Food", "2024-03", limit=300.0))
        self.store.put_transaction("u1", make_txn())
        self.assertEqual(self.spend("Food"), 50.0)

        self.store.put_transaction("u1", make_txn(amount=80.0))
        self.assertEqual(self.spend("Food"), 80.0)

        self.store.delete_transaction("u1", "t1")
        self.assertEqual(self.spend("Food"), 0.0)

    def test_no_budget_is_a_noop(self):
        with self.assertLogs("fintrack.jobs", level="INFO") as logs:
            self.store.put_transaction("u1", make_txn())
        self.assertTrue(any("No budget for category 'Food'" in line for line in logs.output))
        self.assertIsNone(self.store.find_budget("u1", "Food", "2024-03"))

    def test_category_change_split(self):
        self.store.add_budget("u1", Budget("a", "A", "2024-03", limit=300.0))
        self.store.add_budget("u1", Budget("b", "B", "2024-03", limit=300.0))
        self.store.put_transaction("u1", make_txn(category="A", amount=50.0))
        self.store.put_transaction("u1", make_txn(category="B", amount=70.0))
        self.assertEqual(self.spend("A"), 0.0)
        self.assertEqual(self.spend("B"), 70.0)

    def test_category_change_with_missing_budget(self):
        self.store.add_budget("u1", Budget("a", "A", "2024-03", limit=300.0))
        self.store.put_transaction("u1", make_txn(category="A", amount=50.0))
        self.store.put_transaction("u1", make_txn(category="B", amount=70.0))
        self.assertEqual(self.spend("A"), 0.0)
        self.assertIsNone(self.store.find_budget("u1", "B", "2024-03"))

    def test_delete_clamps_at_zero(self):
        self.store.put_transaction("u1", make_txn(amount=100.0))
        self.store.add_budget("u1", Budget("b1", "Food", "2024-03", limit=300.0, current_spend=40.0))
        self.store.delete_transaction("u1", "t1")
        self.assertEqual(self.spend("Food"), 0.0)

    def test_trip_transactions_never_count(self):
        self.store.add_budget("u1", Budget("b1", "Food", "2024-03", limit=300.0, current_spend=10.0))
        self.store.put_transaction("u1", make_txn(trip_id="trip-1"))
        self.store.put_transaction("u1", make_txn(trip_id="trip-1", amount=500.0))
        self.store.delete_transaction("u1", "t1")
        self.assertEqual(self.spend("Food"), 10.0)

    def test_budgets_are_per_user(self):
        self.store.add_budget("u1", Budget("b1", "Food", "2024-03", limit=300.0))
        self.store.add_budget("u2", Budget("b2", "Food", "2024-03", limit=300.0))
        self.store.put_transaction("u2", make_txn())
        self.assertEqual(self.spend("Food", user_id="u1"), 0.0)
        self.assertEqual(self.spend("Food", user_id="u2"), 50.0)

    def test_apply_adjustment_returns_new_spend(self):
        self.store.add_budget("u1", Budget("b1", "Food", "2024-03", limit=300.0, current_spend=40.0))
        self.assertEqual(apply_budget_adjustment(self.store, BudgetAdjustment("u1", "Food", "2024-03", -100.0)), 0.0)
        self.assertIsNone(apply_budget_adjustment(self.store, BudgetAdjustment("u1", "Fuel", "2024-03", 5.0)))

    def test_recalculate_budgets(self):
        self.store.add_budget("u1", Budget("b1", "Food", "2024-03", limit=300.0))
        self.store.add_budget("u1", Budget("b2", "Fuel", "2024-03", limit=300.0))
        self.store.put_transaction("u1", make_txn(id="1", amount=20.0))
        self.store.put_transaction("u1", make_txn(id="2", amount=30.5))
        self.store.put_transaction("u1", make_txn(id="3", amount=99.0, trip_id="trip-1"))
        self.store.set_budget_spend("u1", "b1", 999.0)
        self.store.set_budget_spend("u1", "b2", 12.0)

        result = recalculate_budgets(self.store, "u1", "2024-03")
        self.assertEqual(result, {"Food": 50.5, "Fuel": 0.0})
        self.assertEqual(self.spend("Food"), 50.5)
        self.assertEqual(self.spend("Fuel"), 0.0)

    def test_concurrent_writes_do_not_lose_updates(self):
        """Parallel transaction writes all land in the budget spend"""
        self.store.add_budget("u1", Budget("b1", "Food", "2024-03", limit=300.0))
        with ThreadPoolExecutor(max_workers=8) as executor:
            for i in range(50):
                executor.submit(self.store.put_transaction, "u1", make_txn(id=f"t{i}", amount=2.5))
        self.assertEqual(len(self.store.list_transactions("u1")), 50)
        self.assertEqual(self.spend("Food"), 125.0)


class TestRecurringSweep(unittest.TestCase):
    def setUp(self):
        self.store = DocumentStore()
        register_budget_trigger(self.store)

    def test_end_to_end_monthly_rent(self):
        self.store.add_template("u1", make_template())
        self.store.add_budget("u1", Budget("b1", "Rent", "2024-01", limit=1500.0))

        report = generate_recurring_transactions(self.store, at(2024, 1, 1))
        self.assertEqual(report.generated, ["u1/rec-rent:2024-01-01"])
        txns = self.store.list_transactions("u1")
        self.assertEqual(len(txns), 1)
        self.assertEqual(txns[0].t_date, at(2024, 1, 1))
        self.assertTrue(txns[0].is_recurring)
        self.assertEqual(self.store.get_template("u1", "rent").last_generated_date, at(2024, 1, 1))
        self.assertEqual(self.store.find_budget("u1", "Rent", "2024-01").current_spend, 1200.0)

        report = generate_recurring_transactions(self.store, at(2024, 1, 15))
        self.assertEqual(report.generated, [])
        self.assertIn("u1/rent", report.skipped)
        self.assertEqual(len(self.store.list_transactions("u1")), 1)

        report = generate_recurring_transactions(self.store, at(2024, 2, 2))
        self.assertEqual(report.generated, ["u1/rec-rent:2024-02-02"])
        self.assertEqual(len(self.store.list_transactions("u1")), 2)
        self.assertEqual(self.store.get_template("u1", "rent").last_generated_date, at(2024, 2, 2))

    def test_same_day_rerun_does_not_duplicate(self):
        """A retried tick on the same day hits the idempotency key"""
        self.store.add_template("u1", make_template())
        generate_recurring_transactions(self.store, at(2024, 1, 1, 1))

        with self.store.unit_of_work() as uow:
            uow.update_template("u1", "rent", last_generated_date=None)

        report = generate_recurring_transactions(self.store, at(2024, 1, 1, 23))
        self.assertEqual(report.generated, [])
        self.assertEqual(report.skipped, {"u1/rent": "already generated"})
        self.assertEqual(len(self.store.list_transactions("u1")), 1)
        self.assertIsNone(self.store.get_template("u1", "rent").last_generated_date)

    def test_invalid_template_is_skipped(self):
        self.store.add_template("u1", make_template())
        self.store.add_template("u1", make_template(id="odd", frequency="fortnightly"))
        with self.assertLogs("fintrack.jobs", level="WARNING"):
            report = generate_recurring_transactions(self.store, at(2024, 1, 1))
        self.assertEqual(report.generated, ["u1/rec-rent:2024-01-01"])
        self.assertIn("fortnightly", report.skipped["u1/odd"])

    def test_failures_are_isolated(self):
        real_build = jobs.build_recurring_transaction

        def flaky_build(template, user_id, now):
            if template.id == "bad":
                raise RuntimeError("malformed payload")
            return real_build(template, user_id, now)

        self.store.add_template("u1", make_template())
        self.store.add_template("u1", make_template(id="bad"))
        self.store.add_template("u2", make_template(id="gym", amount=30.0, category="Fitness"))

        with patch("fintrack.jobs.build_recurring_transaction", side_effect=flaky_build):
            report = generate_recurring_transactions(self.store, at(2024, 1, 1), max_workers=2)

        self.assertEqual(report.generated, ["u1/rec-rent:2024-01-01", "u2/rec-gym:2024-01-01"])
        self.assertEqual(report.failed, {"u1/bad": "malformed payload"})
        self.assertIsNone(self.store.get_template("u1", "bad").last_generated_date)
        self.assertEqual(len(self.store.list_transactions("u2")), 1)

    def test_inactive_templates_are_not_processed(self):
        self.store.add_template("u1", make_template(is_active=False))
        report = generate_recurring_transactions(self.store, at(2024, 1, 1))
        self.assertEqual(report.generated, [])
        self.assertEqual(report.skipped, {})
        self.assertEqual(self.store.list_transactions("u1"), [])

    def test_no_templates(self):
        with self.assertLogs("fintrack.jobs", level="INFO") as logs:
            report = generate_recurring_transactions(self.store, at(2024, 1, 1))
        self.assertEqual(report.generated, [])
        self.assertTrue(any("No active recurring transactions" in line for line in logs.output))

    def test_daily_template_over_several_days(self):
        self.store.add_template("u1", make_template(id="coffee", frequency="daily", amount=4.5,
                                                    category="Food", start_date=at(2024, 3, 1, 7)))
        for day in (1, 1, 2, 3, 3):
            generate_recurring_transactions(self.store, at(2024, 3, day, 12))
        self.assertEqual(
            [t.id for t in self.store.list_transactions("u1")],
            ["rec-coffee:2024-03-01", "rec-coffee:2024-03-02", "rec-coffee:2024-03-03"]
        )

    def test_unreadable_now(self):
        with self.assertRaises(ValueError):
            generate_recurring_transactions(self.store, "not a date")

    def test_same_template_id_for_two_users(self):
        """Report entries from different users never overwrite each other"""
        self.store.add_template("u1", make_template())
        self.store.add_template("u2", make_template(frequency="fortnightly"))
        with self.assertLogs("fintrack.jobs", level="WARNING"):
            report = generate_recurring_transactions(self.store, at(2024, 1, 1))
        self.assertEqual(report.generated, ["u1/rec-rent:2024-01-01"])
        self.assertIn("fortnightly", report.skipped["u2/rent"])
        self.assertNotIn("u1/rent", report.skipped)


class TestSaveLoad(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.saves_dir = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_save_and_load(self):
        store = DocumentStore()
        store.add_template("u1", make_template(last_generated_date=at(2024, 1, 1)))
        store.add_budget("u1", Budget("b1", "Food", "2024-03", limit=300.0, current_spend=50.0))
        store.put_transaction("u1", make_txn(trip_id="trip-1"))

        path = store.save("test_save", self.saves_dir)
        self.assertTrue(path.exists())
        self.assertEqual(list_save_files(self.saves_dir), ["test_save"])

        restored = DocumentStore()
        notified = []
        restored.subscribe(lambda user_id, change: notified.append(change))
        self.assertTrue(restored.load("test_save", self.saves_dir))
        self.assertEqual(notified, [])

        template = restored.get_template("u1", "rent")
        self.assertEqual(template.start_date, at(2024, 1, 1))
        self.assertEqual(template.last_generated_date, at(2024, 1, 1))
        self.assertEqual(restored.find_budget("u1", "Food", "2024-03").current_spend, 50.0)
        txn = restored.get_transaction("u1", "t1")
        self.assertEqual(txn.t_date, at(2024, 3, 10, 12))
        self.assertEqual(txn.trip_id, "trip-1")
        self.assertEqual(txn.user_id, "u1")

    def test_load_missing_file(self):
        store = DocumentStore()
        store.put_transaction("u1", make_txn())
        with self.assertLogs("fintrack.storage", level="ERROR"):
            self.assertFalse(store.load("missing", self.saves_dir))
        self.assertIsNotNone(store.get_transaction("u1", "t1"))

    def test_load_skips_invalid_records(self):
        (self.saves_dir / "broken.json").write_text(
            '{"users": {"u1": {"transactions": [{"id": "x"}], "budgets": '
            '[{"id": "b1", "category": "Food", "month": "2024-03"}]}}}'
        )
        store = DocumentStore()
        with self.assertLogs("fintrack.storage", level="WARNING"):
            self.assertTrue(store.load("broken", self.saves_dir))
        self.assertEqual(store.list_transactions("u1"), [])
        self.assertIsNotNone(store.find_budget("u1", "Food", "2024-03"))

    def test_load_checks_budget_spend(self):
        """Negative spend is clamped on load, non-numeric spend is skipped"""
        (self.saves_dir / "budgets.json").write_text(json.dumps({"users": {"u1": {"budgets": [
            {"id": "b1", "category": "Food", "month": "2024-03", "limit": 300.0, "current_spend": -20.0},
            {"id": "b2", "category": "Fuel", "month": "2024-03", "limit": 100.0, "current_spend": "lots"},
        ]}}}))
        store = DocumentStore()
        with self.assertLogs("fintrack.storage", level="WARNING") as logs:
            self.assertTrue(store.load("budgets", self.saves_dir))
        self.assertTrue(any("b2" in line for line in logs.output))
        self.assertEqual(store.find_budget("u1", "Food", "2024-03").current_spend, 0.0)
        self.assertIsNone(store.find_budget("u1", "Fuel", "2024-03"))

        register_budget_trigger(store)
        store.put_transaction("u1", make_txn())
        self.assertEqual(store.find_budget("u1", "Food", "2024-03").current_spend, 50.0)


class TestConfig(unittest.TestCase):
    def test_load_settings(self):
        env = {
            "FINTRACK_SAVES_DIR": "/tmp/fintrack-saves",
            "FINTRACK_LOG_LEVEL": "debug",
            "FINTRACK_SWEEP_WORKERS": "8",
            "FINTRACK_USER": "alex",
        }
        with patch.dict(os.environ, env):
            settings = load_settings(env_file=os.devnull)
        self.assertEqual(settings.saves_dir, Path("/tmp/fintrack-saves"))
        self.assertEqual(settings.log_level, "DEBUG")
        self.assertEqual(settings.sweep_workers, 8)
        self.assertEqual(settings.user_id, "alex")

    def test_bad_worker_count(self):
        with patch.dict(os.environ, {"FINTRACK_SWEEP_WORKERS": "many"}):
            with self.assertRaises(ValueError):
                load_settings(env_file=os.devnull)
        with patch.dict(os.environ, {"FINTRACK_SWEEP_WORKERS": "0"}):
            with self.assertRaises(ValueError):
                load_settings(env_file=os.devnull)


class TestCli(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = DocumentStore()
        self.cli = FinanceTrackerCLI(store=self.store, settings=Settings(saves_dir=Path(self.tmp.name)))

    def tearDown(self):
        self.tmp.cleanup()

    def run_cmd(self, line):
        with patch("sys.stdout", new_callable=io.StringIO) as out:
            self.cli.onecmd(line)
        return out.getvalue()

    def test_add_transaction_updates_budget(self):
        self.assertIn("✓ Added budget", self.run_cmd("budget add Food 300 2024-03"))
        self.assertIn("✓ Added expense of $50.00", self.run_cmd("add 50 expense Food 2024-03-10"))
        self.run_cmd("add 20 expense Food 2024-03-11 --trip paris")
        self.assertEqual(self.store.find_budget("local", "Food", "2024-03").current_spend, 50.0)

        output = self.run_cmd("budget list 2024-03")
        self.assertIn("Food: $50.00 of $300.00 (17%)", output)

    def test_edit_and_delete(self):
        self.run_cmd("budget add A 300 2024-03")
        self.run_cmd("budget add B 300 2024-03")
        self.run_cmd("add 50 expense A 2024-03-10")
        txn_id = self.store.list_transactions("local")[0].id

        self.assertIn("✓ Updated", self.run_cmd(f"edit {txn_id} category=B amount=70"))
        self.assertEqual(self.store.find_budget("local", "A", "2024-03").current_spend, 0.0)
        self.assertEqual(self.store.find_budget("local", "B", "2024-03").current_spend, 70.0)

        self.assertIn("✓ Deleted", self.run_cmd(f"delete {txn_id}"))
        self.assertEqual(self.store.find_budget("local", "B", "2024-03").current_spend, 0.0)
        self.assertIn("Transaction not found", self.run_cmd(f"delete {txn_id}"))

    def test_invalid_input(self):
        self.assertIn("Invalid input", self.run_cmd("add 50 transfer"))
        self.assertIn("Invalid input", self.run_cmd("add -5 expense"))
        self.assertIn("Error", self.run_cmd("budget add Food lots"))
        self.assertIn("Error", self.run_cmd("recurring add 10 expense Gym hourly"))
        self.assertEqual(self.store.list_transactions("local"), [])

    def test_recurring_and_sweep(self):
        output = self.run_cmd('recurring add 1200 expense Rent monthly 2024-01-01 --title "Monthly rent"')
        self.assertIn("✓ Added monthly template 'Monthly rent'", output)
        self.assertIn("✓ Generated 1 transactions", self.run_cmd("sweep 2024-01-01"))
        self.assertIn("✓ Generated 0 transactions", self.run_cmd("sweep 2024-01-15"))

        txns = self.store.list_transactions("local")
        self.assertEqual(len(txns), 1)
        self.assertEqual(txns[0].notes, "Recurring: Monthly rent")
        self.assertIn("last 2024-01-01", self.run_cmd("recurring list"))

        template_id = self.store.list_templates("local")[0].id
        self.assertIn("paused", self.run_cmd(f"recurring pause {template_id}"))
        self.assertIn("✓ Generated 0 transactions", self.run_cmd("sweep 2024-03-01"))

    def test_report_and_status(self):
        self.run_cmd("budget add Food 100 2024-03")
        self.run_cmd("add 1000 income Salary 2024-03-01")
        self.run_cmd("add 120 expense Food 2024-03-05")

        output = self.run_cmd("report 2024-03")
        self.assertIn("Income:   $1000.00", output)
        self.assertIn("Expenses: $120.00", output)
        self.assertIn("Net:      $880.00", output)

        output = self.run_cmd("budget status 2024-03")
        self.assertIn("Overspent: 1", output)
        self.assertIn("$20.00 over budget on Food", output)

    def test_save_and_load(self):
        self.run_cmd("add 50 expense Food 2024-03-10")
        self.assertIn("✓ Saved as 'test_cli'", self.run_cmd("save test_cli"))

        other = FinanceTrackerCLI(store=DocumentStore(), settings=Settings(saves_dir=Path(self.tmp.name)))
        with patch("sys.stdout", new_callable=io.StringIO) as out:
            other.onecmd("load test_cli")
        self.assertIn("✓ Loaded 'test_cli'", out.getvalue())
        self.assertEqual(len(other.store.list_transactions("local")), 1)

    def test_recurring_delete(self):
        self.run_cmd("recurring add 30 expense Gym monthly 2024-01-01")
        template_id = self.store.list_templates("local")[0].id
        self.assertIn("✓ Generated 1 transactions", self.run_cmd("sweep 2024-01-01"))

        self.assertIn(f"✓ Deleted template {template_id}", self.run_cmd(f"recurring delete {template_id}"))
        self.assertEqual(self.store.list_templates("local"), [])
        self.assertEqual(len(self.store.list_transactions("local")), 1)
        self.assertIn("Error", self.run_cmd(f"recurring delete {template_id}"))
        self.assertIn("Error", self.run_cmd("recurring delete"))

    def test_list_after_loading_unreadable_dates(self):
        """Records with missing dates still list after a load"""
        (Path(self.tmp.name) / "legacy.json").write_text(json.dumps({"users": {"local": {
            "templates": [{"id": "rent", "title": "Rent", "amount": 1200.0, "category": "Rent",
                           "t_type": "expense", "frequency": "monthly", "start_date": None}],
            "transactions": [
                {"id": "t1", "amount": 50.0, "t_type": "expense", "category": "Food", "t_date": None},
                {"id": "t2", "amount": "fifty", "t_type": "expense", "category": "Food",
                 "t_date": "yesterday"},
            ],
        }}}))
        self.assertIn("✓ Loaded 'legacy'", self.run_cmd("load legacy"))

        output = self.run_cmd("list")
        self.assertIn("[t1] ? expense", output)
        self.assertIn("[t2] ? expense", output)
        self.assertIn("$         ?", output)
        self.assertIn("from ? (active, last never)", self.run_cmd("recurring list"))

    def test_exit(self):
        with patch("sys.stdout", new_callable=io.StringIO):
            self.assertTrue(self.cli.onecmd("exit"))


if __name__ == "__main__":
    unittest.main()
