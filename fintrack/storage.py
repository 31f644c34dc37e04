import json
import logging
import math
import threading
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from fintrack.logic import month_key, to_utc
from fintrack.models import Budget, RecurringTemplate, Transaction, TransactionChange


logger = logging.getLogger(__name__)

DEFAULT_SAVES_DIR = Path("saves")

ChangeListener = Callable[[str, TransactionChange], None]


class StoreError(Exception):
    pass


class DuplicateDocumentError(StoreError):
    pass


class DocumentNotFoundError(StoreError):
    pass


class UnitOfWorkError(StoreError):
    pass


class EnhancedJSONEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        return super().default(obj)


@dataclass
class _UserDocuments:
    templates: Dict[str, RecurringTemplate] = field(default_factory=dict)
    transactions: Dict[str, Transaction] = field(default_factory=dict)
    budgets: Dict[str, Budget] = field(default_factory=dict)


class DocumentStore:
    """In-process document store shared by the sweep, the budget trigger and the CLI.

    Documents are copied on the way in and on the way out, so callers only
    ever hold snapshots. Every transaction write notifies subscribers once,
    after the lock is released.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._users: Dict[str, _UserDocuments] = {}
        self._listeners: List[ChangeListener] = []

    def _user(self, user_id: str) -> _UserDocuments:
        return self._users.setdefault(user_id, _UserDocuments())

    # ===== CHANGE NOTIFICATION =====
    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _notify(self, user_id: str, change: TransactionChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(user_id, change)
            except Exception:
                logger.exception("Change listener %r failed for user %s", listener, user_id)

    # ===== RECURRING TEMPLATES =====
    def add_template(self, user_id: str, template: RecurringTemplate) -> RecurringTemplate:
        with self._lock:
            templates = self._user(user_id).templates
            if template.id in templates:
                raise DuplicateDocumentError(f"Recurring template '{template.id}' already exists")
            templates[template.id] = replace(template)
        return replace(template)

    def get_template(self, user_id: str, template_id: str) -> Optional[RecurringTemplate]:
        with self._lock:
            template = self._user(user_id).templates.get(template_id)
            return replace(template) if template else None

    def list_templates(self, user_id: str) -> List[RecurringTemplate]:
        with self._lock:
            return [replace(t) for t in self._user(user_id).templates.values()]

    def active_templates(self) -> List[Tuple[str, RecurringTemplate]]:
        with self._lock:
            return [
                (user_id, replace(t))
                for user_id, docs in self._users.items()
                for t in docs.templates.values()
                if t.is_active is True
            ]

    def set_template_active(self, user_id: str, template_id: str, active: bool) -> None:
        with self._lock:
            template = self._user(user_id).templates.get(template_id)
            if template is None:
                raise DocumentNotFoundError(f"Recurring template '{template_id}' not found")
            template.is_active = active

    def delete_template(self, user_id: str, template_id: str) -> RecurringTemplate:
        """Remove a template. Transactions it already generated are kept."""
        with self._lock:
            template = self._user(user_id).templates.pop(template_id, None)
        if template is None:
            raise DocumentNotFoundError(f"Recurring template '{template_id}' not found")
        return template

    # ===== TRANSACTIONS =====
    def put_transaction(self, user_id: str, txn: Transaction) -> Transaction:
        """Create or replace a transaction and fire one change notification."""
        with self._lock:
            transactions = self._user(user_id).transactions
            before = transactions.get(txn.id)
            stored = replace(txn, user_id=user_id)
            transactions[txn.id] = stored
        self._notify(user_id, TransactionChange(before=before, after=replace(stored)))
        return replace(stored)

    def delete_transaction(self, user_id: str, txn_id: str) -> Transaction:
        with self._lock:
            before = self._user(user_id).transactions.pop(txn_id, None)
        if before is None:
            raise DocumentNotFoundError(f"Transaction '{txn_id}' not found")
        self._notify(user_id, TransactionChange(before=before, after=None))
        return before

    def get_transaction(self, user_id: str, txn_id: str) -> Optional[Transaction]:
        with self._lock:
            txn = self._user(user_id).transactions.get(txn_id)
            return replace(txn) if txn else None

    def list_transactions(self, user_id: str, month: Optional[str] = None) -> List[Transaction]:
        with self._lock:
            result = [replace(t) for t in self._user(user_id).transactions.values()]
        if month is not None:
            result = [t for t in result if to_utc(t.t_date) is not None and month_key(t.t_date) == month]
        far_past = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(result, key=lambda t: to_utc(t.t_date) or far_past)

    # ===== BUDGETS =====
    def _find_budget(self, user_id: str, category: str, month: str) -> Optional[Budget]:
        for budget in self._user(user_id).budgets.values():
            if budget.category == category and budget.month == month:
                return budget
        return None

    def add_budget(self, user_id: str, budget: Budget) -> Budget:
        with self._lock:
            budgets = self._user(user_id).budgets
            if budget.id in budgets:
                raise DuplicateDocumentError(f"Budget '{budget.id}' already exists")
            if self._find_budget(user_id, budget.category, budget.month) is not None:
                raise DuplicateDocumentError(
                    f"A budget for '{budget.category}' in {budget.month} already exists"
                )
            budgets[budget.id] = replace(budget, current_spend=max(0.0, budget.current_spend))
            return replace(budgets[budget.id])

    def find_budget(self, user_id: str, category: str, month: str) -> Optional[Budget]:
        with self._lock:
            budget = self._find_budget(user_id, category, month)
            return replace(budget) if budget else None

    def list_budgets(self, user_id: str, month: Optional[str] = None) -> List[Budget]:
        with self._lock:
            budgets = [replace(b) for b in self._user(user_id).budgets.values()
                       if month is None or b.month == month]
        return sorted(budgets, key=lambda b: (b.month, b.category))

    def increment_budget_spend(self, user_id: str, budget_id: str, delta: float) -> float:
        """Atomically add ``delta`` to a budget's spend, never going below zero."""
        with self._lock:
            budget = self._user(user_id).budgets.get(budget_id)
            if budget is None:
                raise DocumentNotFoundError(f"Budget '{budget_id}' not found")
            budget.current_spend = max(0.0, round(budget.current_spend + delta, 2))
            return budget.current_spend

    def set_budget_spend(self, user_id: str, budget_id: str, value: float) -> float:
        with self._lock:
            budget = self._user(user_id).budgets.get(budget_id)
            if budget is None:
                raise DocumentNotFoundError(f"Budget '{budget_id}' not found")
            budget.current_spend = max(0.0, round(value, 2))
            return budget.current_spend

    # ===== UNIT OF WORK =====
    def unit_of_work(self) -> "UnitOfWork":
        return UnitOfWork(self)

    def _apply(self, operations: list) -> List[Tuple[str, TransactionChange]]:
        """Validate every staged operation, then apply them all under one lock."""
        changes = []
        with self._lock:
            pending_ids = set()
            for op in operations:
                if op[0] == "insert_transaction":
                    _, user_id, txn = op
                    key = (user_id, txn.id)
                    if txn.id in self._user(user_id).transactions or key in pending_ids:
                        raise DuplicateDocumentError(f"Transaction '{txn.id}' already exists")
                    pending_ids.add(key)
                elif op[0] == "update_template":
                    _, user_id, template_id, _values = op
                    if template_id not in self._user(user_id).templates:
                        raise DocumentNotFoundError(f"Recurring template '{template_id}' not found")

            for op in operations:
                if op[0] == "insert_transaction":
                    _, user_id, txn = op
                    self._user(user_id).transactions[txn.id] = txn
                    changes.append((user_id, TransactionChange(before=None, after=replace(txn))))
                elif op[0] == "update_template":
                    _, user_id, template_id, values = op
                    template = self._user(user_id).templates[template_id]
                    for name, value in values.items():
                        setattr(template, name, value)
        return changes

    # ===== SAVE / LOAD =====
    def save(self, save_name: str = "default", saves_dir: Path = DEFAULT_SAVES_DIR) -> Path:
        with self._lock:
            data = {
                "metadata": {
                    "version": "1.0",
                    "created": date.today().isoformat(),
                    "transaction_counter": sum(len(d.transactions) for d in self._users.values())
                },
                "users": {
                    user_id: {
                        "templates": [asdict(t) for t in docs.templates.values()],
                        "transactions": [asdict(t) for t in docs.transactions.values()],
                        "budgets": [asdict(b) for b in docs.budgets.values()],
                    } for user_id, docs in self._users.items()
                }
            }

        saves_dir = Path(saves_dir)
        saves_dir.mkdir(parents=True, exist_ok=True)
        save_path = saves_dir / f"{save_name}.json"
        save_path.write_text(json.dumps(data, cls=EnhancedJSONEncoder, indent=2))
        logger.info("Saved %d transactions to %s", data["metadata"]["transaction_counter"], save_path)
        return save_path

    def load(self, save_name: str = "default", saves_dir: Path = DEFAULT_SAVES_DIR) -> bool:
        """Replace the store's documents with a saved snapshot. No notifications fire."""
        filepath = Path(saves_dir) / f"{save_name}.json"
        if not filepath.exists():
            logger.error("Save file '%s' not found", save_name)
            return False

        try:
            data = json.loads(filepath.read_text())
        except (OSError, ValueError) as e:
            logger.error("Error loading %s: %s", filepath, e)
            return False

        users = {}
        for user_id, docs_data in data.get("users", {}).items():
            docs = _UserDocuments()
            for t_data in docs_data.get("templates", []):
                try:
                    template = _from_record(RecurringTemplate, t_data, ("start_date", "last_generated_date"))
                    docs.templates[template.id] = template
                except (KeyError, TypeError) as e:
                    logger.warning("Skipping invalid recurring template %s: %s", t_data.get("id"), e)
            for t_data in docs_data.get("transactions", []):
                try:
                    txn = _from_record(Transaction, t_data, ("t_date", "created_at"))
                    docs.transactions[txn.id] = txn
                except (KeyError, TypeError) as e:
                    logger.warning("Skipping invalid transaction %s: %s", t_data.get("id"), e)
            for b_data in docs_data.get("budgets", []):
                try:
                    budget = _read_budget(b_data)
                    docs.budgets[budget.id] = budget
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping invalid budget %s: %s", b_data.get("id"), e)
            users[user_id] = docs

        with self._lock:
            self._users = users
        logger.info("Loaded %d users from %s", len(users), filepath)
        return True


def _from_record(cls, record: dict, instant_fields: tuple):
    known = {f.name for f in fields(cls)}
    values = {k: v for k, v in record.items() if k in known}
    for name in instant_fields:
        if values.get(name) is not None:
            values[name] = to_utc(values[name])
    return cls(**values)


def _read_budget(record: dict) -> Budget:
    budget = _from_record(Budget, record, ())
    for name in ("limit", "current_spend"):
        value = getattr(budget, name)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
            raise ValueError(f"{name} must be a number, got {value!r}")
    budget.current_spend = max(0.0, float(budget.current_spend))
    return budget


def list_save_files(saves_dir: Path = DEFAULT_SAVES_DIR) -> List[str]:
    return sorted(f.stem for f in Path(saves_dir).glob("*.json"))


class UnitOfWork:
    """Groups staged writes so they are applied together or not at all.

    Use ``begin``/``commit``/``rollback`` directly, or as a context manager
    that commits on a clean exit and rolls back on an exception.
    """

    def __init__(self, store: DocumentStore):
        self._store = store
        self._operations = []
        self._state = "new"

    @property
    def state(self) -> str:
        return self._state

    def _require_open(self):
        if self._state != "open":
            raise UnitOfWorkError(f"Unit of work is {self._state}, not open")

    def begin(self) -> "UnitOfWork":
        if self._state != "new":
            raise UnitOfWorkError("Unit of work already started")
        self._state = "open"
        return self

    def insert_transaction(self, user_id: str, txn: Transaction) -> None:
        self._require_open()
        self._operations.append(("insert_transaction", user_id, replace(txn, user_id=user_id)))

    def update_template(self, user_id: str, template_id: str, **values) -> None:
        self._require_open()
        known = {f.name for f in fields(RecurringTemplate)} - {"id"}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown template fields: {', '.join(sorted(unknown))}")
        self._operations.append(("update_template", user_id, template_id, dict(values)))

    def commit(self) -> None:
        self._require_open()
        operations, self._operations = self._operations, []
        try:
            changes = self._store._apply(operations)
        except Exception:
            self._state = "rolled_back"
            raise
        self._state = "committed"
        for user_id, change in changes:
            self._store._notify(user_id, change)

    def rollback(self) -> None:
        self._require_open()
        self._operations = []
        self._state = "rolled_back"

    def __enter__(self) -> "UnitOfWork":
        return self.begin()

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.commit()
        elif self._state == "open":
            self.rollback()
        return False
