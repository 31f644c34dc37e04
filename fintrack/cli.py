import cmd
import uuid
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Optional

from fintrack.config import Settings, configure_logging, load_settings
from fintrack.jobs import generate_recurring_transactions, recalculate_budgets, register_budget_trigger
from fintrack.logic import budget_progress, budget_status, month_key, monthly_spending, to_utc
from fintrack.models import FREQUENCIES, TRANSACTION_TYPES, Budget, RecurringTemplate, Transaction
from fintrack.storage import DocumentStore, StoreError, list_save_files


def _new_id() -> str:
    return uuid.uuid4().hex[:8]


def _parse_day(value: str) -> datetime:
    try:
        return to_utc(date.fromisoformat(value))
    except ValueError:
        raise ValueError("Date must be in YYYY-MM-DD format")


def _parse_month(value: Optional[str]) -> str:
    if not value:
        return month_key(datetime.now(timezone.utc))
    try:
        datetime.strptime(value, "%Y-%m")
    except ValueError:
        raise ValueError("Month must be in YYYY-MM format")
    return value


def _parse_amount(value: str) -> float:
    amount = float(value)
    if amount < 0:
        raise ValueError("Amount must not be negative")
    return amount


def _show_day(value, missing: str = "?") -> str:
    instant = to_utc(value)
    return instant.date().isoformat() if instant else missing


def _show_amount(value) -> str:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return "?"
    return f"{value:,.2f}"


class FinanceTrackerCLI(cmd.Cmd):
    prompt = "(fintrack) "

    def __init__(self, store: Optional[DocumentStore] = None, settings: Optional[Settings] = None):
        super().__init__()
        self.intro = "Welcome to fintrack. Type 'help' for commands."
        self.settings = settings or Settings()
        self.user_id = self.settings.user_id
        self.store = store or DocumentStore()
        register_budget_trigger(self.store)

    # ===== TRANSACTIONS =====
    def do_add(self, arg):
        """Add a transaction: add <amount> <income|expense> [category] [YYYY-MM-DD] [--trip ID] [--checklist ID] [--source NAME] [--desc "description"]"""
        try:
            args = self._parse_add_args(arg)
            txn = self.store.put_transaction(self.user_id, Transaction(
                id=_new_id(),
                amount=args['amount'],
                t_type=args['type'],
                category=args['category'],
                t_date=args['date'],
                source=args['source'],
                notes=args['desc'],
                trip_id=args['trip'],
                checklist_id=args['checklist'],
                created_at=datetime.now(timezone.utc),
            ))
            print(f"✓ Added {txn.t_type} of ${txn.amount:.2f} [{txn.id}]")
        except (ValueError, StoreError) as e:
            print(f"Invalid input: {e}")

    def do_edit(self, arg):
        """Edit a transaction: edit <ID> [amount=X] [type=income|expense] [category=NAME] [date=YYYY-MM-DD] [trip=ID|none] [checklist=ID|none]"""
        args = arg.split()
        if not args:
            print("Usage: edit <ID> [field=value ...]")
            return
        try:
            txn = self.store.get_transaction(self.user_id, args[0])
            if txn is None:
                print("Transaction not found")
                return
            changes = {}
            for item in args[1:]:
                key, sep, value = item.partition("=")
                if not sep:
                    raise ValueError(f"Expected field=value, got {item!r}")
                if key == "amount":
                    changes['amount'] = _parse_amount(value)
                elif key == "type":
                    if value not in TRANSACTION_TYPES:
                        raise ValueError("Type must be 'income' or 'expense'")
                    changes['t_type'] = value
                elif key == "category":
                    changes['category'] = value
                elif key == "date":
                    changes['t_date'] = _parse_day(value)
                elif key in ("trip", "checklist"):
                    changes[f"{key}_id"] = None if value.lower() == "none" else value
                else:
                    raise ValueError(f"Unknown field: {key}")
            self.store.put_transaction(self.user_id, replace(txn, **changes))
            print(f"✓ Updated transaction {txn.id}")
        except (ValueError, StoreError) as e:
            print(f"Error: {e}")

    def do_delete(self, arg):
        """Delete a transaction: delete <ID>"""
        txn_id = arg.strip()
        if not txn_id:
            print("Usage: delete <ID>")
            return
        try:
            self.store.delete_transaction(self.user_id, txn_id)
            print(f"✓ Deleted transaction {txn_id}")
        except StoreError:
            print("Transaction not found")

    def do_list(self, arg):
        """List transactions: list [YYYY-MM]"""
        try:
            month = _parse_month(arg.strip()) if arg.strip() else None
        except ValueError as e:
            print(f"Error: {e}")
            return
        txns = self.store.list_transactions(self.user_id, month)
        if not txns:
            print("No transactions")
            return
        for t in txns:
            flags = []
            if t.is_recurring:
                flags.append("recurring")
            if t.trip_id:
                flags.append(f"trip {t.trip_id}")
            if t.checklist_id:
                flags.append(f"checklist {t.checklist_id}")
            suffix = f" ({', '.join(flags)})" if flags else ""
            print(f"  [{t.id}] {_show_day(t.t_date)} {t.t_type!s:<7} ${_show_amount(t.amount):>10}  {t.category}{suffix}")

    # ===== RECURRING TEMPLATES =====
    def do_recurring(self, arg):
        """Manage recurring templates:
        recurring add <amount> <income|expense> <category> <daily|weekly|monthly|yearly> [YYYY-MM-DD] [--title "title"]
        recurring list
        recurring pause <ID>
        recurring resume <ID>
        recurring delete <ID>
        """
        args = arg.split()
        if not args:
            print(self.do_recurring.__doc__)
            return
        try:
            if args[0] == "add":
                template = self._parse_recurring_args(args[1:])
                self.store.add_template(self.user_id, template)
                print(f"✓ Added {template.frequency} template '{template.title}' [{template.id}]")
            elif args[0] == "list":
                templates = self.store.list_templates(self.user_id)
                if not templates:
                    print("No recurring templates")
                    return
                for t in templates:
                    status = "active" if t.is_active else "paused"
                    print(f"  [{t.id}] {t.title}: ${_show_amount(t.amount)} {t.t_type} {t.frequency} "
                          f"from {_show_day(t.start_date)} ({status}, last {_show_day(t.last_generated_date, 'never')})")
            elif args[0] in ("pause", "resume"):
                if len(args) < 2:
                    raise ValueError("Missing template ID")
                self.store.set_template_active(self.user_id, args[1], args[0] == "resume")
                print(f"✓ Template {args[1]} {'resumed' if args[0] == 'resume' else 'paused'}")
            elif args[0] == "delete":
                if len(args) < 2:
                    raise ValueError("Missing template ID")
                self.store.delete_template(self.user_id, args[1])
                print(f"✓ Deleted template {args[1]}")
            else:
                print(self.do_recurring.__doc__)
        except (ValueError, StoreError) as e:
            print(f"Error: {e}")

    def do_sweep(self, arg):
        """Generate due recurring transactions: sweep [YYYY-MM-DD]"""
        try:
            now = _parse_day(arg.strip()) if arg.strip() else datetime.now(timezone.utc)
        except ValueError as e:
            print(f"Error: {e}")
            return
        report = generate_recurring_transactions(self.store, now, self.settings.sweep_workers)
        print(f"✓ Generated {len(report.generated)} transactions")
        for key, error in report.failed.items():
            print(f"  Failed {key}: {error}")

    # ===== BUDGETS =====
    def do_budget(self, arg):
        """Manage budgets:
        budget add <category> <limit> [YYYY-MM]
        budget list [YYYY-MM]
        budget status [YYYY-MM]
        budget recalc [YYYY-MM]
        """
        args = arg.split()
        if not args:
            print(self.do_budget.__doc__)
            return
        try:
            if args[0] == "add":
                if len(args) < 3:
                    raise ValueError("Missing category or limit")
                budget = Budget(
                    id=_new_id(),
                    category=args[1],
                    month=_parse_month(args[3] if len(args) > 3 else None),
                    limit=_parse_amount(args[2]),
                )
                self.store.add_budget(self.user_id, budget)
                print(f"✓ Added budget for {budget.category} in {budget.month}: ${budget.limit:.2f}")
            elif args[0] == "list":
                month = _parse_month(args[1] if len(args) > 1 else None)
                budgets = self.store.list_budgets(self.user_id, month)
                if not budgets:
                    print(f"No budgets for {month}")
                    return
                for b in budgets:
                    print(f"  {b.category}: ${b.current_spend:,.2f} of ${b.limit:,.2f} ({budget_progress(b):.0f}%)")
            elif args[0] == "status":
                month = _parse_month(args[1] if len(args) > 1 else None)
                status = budget_status(self.store.list_budgets(self.user_id, month))
                print(f"On track: {status['on_track']}  At risk: {status['at_risk']}  Overspent: {status['overspent']}")
                if status['most_overspent']:
                    category, overage = status['most_overspent']
                    print(f"You're currently ${overage:,.2f} over budget on {category}.")
            elif args[0] == "recalc":
                month = _parse_month(args[1] if len(args) > 1 else None)
                result = recalculate_budgets(self.store, self.user_id, month)
                print(f"✓ Recalculated {len(result)} budgets for {month}")
            else:
                print(self.do_budget.__doc__)
        except (ValueError, StoreError) as e:
            print(f"Error: {e}")

    def do_report(self, arg):
        """Monthly spending report: report [YYYY-MM]"""
        try:
            month = _parse_month(arg.strip())
        except ValueError as e:
            print(f"Error: {e}")
            return
        result = monthly_spending(self.store.list_transactions(self.user_id), month)

        print(f"\n{' Report for ' + month + ' ':-^50}")
        print(f"\nTotals:")
        print(f"  Income:   ${result['totals']['income']:.2f}")
        print(f"  Expenses: ${result['totals']['expense']:.2f}")
        print(f"  Net:      ${result['totals']['net']:.2f}")
        if result['categories']:
            print("\nBy Category:")
            for cat, data in result['categories'].items():
                print(f"  {cat}: ${data['net']:.2f} (Income: ${data['income']:.2f}, Expense: ${data['expense']:.2f})")

    # ===== DATA MANAGEMENT =====
    def do_save(self, arg):
        """Save current data: save [name=default]"""
        name = arg.strip() or "default"
        try:
            self.store.save(name, self.settings.saves_dir)
        except OSError as e:
            print(f"Error saving data: {e}")
            return
        print(f"✓ Saved as '{name}'")

    def do_load(self, arg):
        """Load saved data: load [name]"""
        saves = list_save_files(self.settings.saves_dir)
        if not saves:
            print("No save files available")
            return

        if not arg:
            print("Available saves:")
            for i, name in enumerate(saves, 1):
                print(f"{i}. {name}")
            try:
                choice = int(input("Select save: ")) - 1
                name = saves[choice]
            except (ValueError, IndexError):
                print("Invalid selection")
                return
        else:
            name = arg.strip()

        if self.store.load(name, self.settings.saves_dir):
            print(f"✓ Loaded '{name}'")
        else:
            print(f"Could not load '{name}'")

    # ===== UTILITIES =====
    def do_exit(self, arg):
        """Exit the program"""
        print("Goodbye!")
        return True

    # ===== HELPERS =====
    def _parse_add_args(self, arg):
        """Parse add command arguments"""
        args = arg.split()
        if len(args) < 2:
            raise ValueError("Missing required arguments (amount and type)")

        result = {
            'amount': _parse_amount(args[0]),
            'type': args[1].lower(),
            'category': "Uncategorized",
            'date': datetime.now(timezone.utc),
            'trip': None,
            'checklist': None,
            'source': "",
            'desc': ""
        }
        category_set = False

        if result['type'] not in TRANSACTION_TYPES:
            raise ValueError("Type must be 'income' or 'expense'")

        i = 2
        while i < len(args):
            if args[i] in ('--trip', '--checklist', '--source'):
                if i + 1 >= len(args):
                    raise ValueError(f"Missing value after {args[i]}")
                result[args[i][2:]] = args[i + 1]
                i += 2
            elif args[i] == '--desc':
                result['desc'] = ' '.join(args[i + 1:]).strip('"')
                break
            elif args[i].startswith('--'):
                raise ValueError(f"Unknown flag: {args[i]}")
            else:
                try:
                    result['date'] = to_utc(date.fromisoformat(args[i]))
                    i += 1
                    continue
                except ValueError:
                    pass

                if not category_set:
                    result['category'] = args[i]
                    category_set = True
                    i += 1
                else:
                    raise ValueError(f"Unexpected argument: {args[i]}")

        return result

    @staticmethod
    def _parse_recurring_args(args) -> RecurringTemplate:
        if len(args) < 4:
            raise ValueError("Missing required arguments (amount, type, category and frequency)")
        t_type = args[1].lower()
        if t_type not in TRANSACTION_TYPES:
            raise ValueError("Type must be 'income' or 'expense'")
        if args[3] not in FREQUENCIES:
            raise ValueError("Invalid interval, use: daily/weekly/monthly/yearly")

        start = datetime.now(timezone.utc)
        title = args[2]
        i = 4
        while i < len(args):
            if args[i] == '--title':
                title = ' '.join(args[i + 1:]).strip('"') or title
                break
            start = _parse_day(args[i])
            i += 1

        return RecurringTemplate(
            id=_new_id(),
            title=title,
            amount=_parse_amount(args[0]),
            category=args[2],
            t_type=t_type,
            frequency=args[3],
            start_date=start,
        )


def main():
    settings = load_settings()
    configure_logging(settings)
    FinanceTrackerCLI(settings=settings).cmdloop()


if __name__ == "__main__":
    main()
