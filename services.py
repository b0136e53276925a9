from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from functools import partial
from typing import Callable, Iterable, Optional, TypeVar

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, make_transient

import ledger
from config import get_settings
from models import (
    BUDGET_FIELD_BY_CATEGORY_TYPE,
    AccountTransfer,
    BankAccount,
    BudgetCategory,
    CategoryType,
    MonthlyBudget,
    Transaction,
    TransactionType,
)
from periods import Period, month_name, parse_month, today_local
from schemas import (
    BankAccountIn,
    BankAccountUpdate,
    BudgetCategoryIn,
    BudgetCategoryUpdate,
    MonthlyBudgetIn,
    TransactionIn,
    TransactionPatch,
    TransferIn,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ValidationError(ValueError):
    pass


class NotFoundError(ValueError):
    pass


class AuthError(PermissionError):
    pass


class PartialMutationError(RuntimeError):
    """A multi-step mutation failed after at least one write had succeeded.

    ``rolled_back`` tells whether the store is back in its prior state. When it
    is False the transaction row is authoritative and a reconciliation pass
    over the listed accounts/categories repairs the cached aggregates.
    """

    def __init__(
        self,
        operation: str,
        failed_step: str,
        completed_steps: list[str],
        record_id: Optional[int],
        rolled_back: bool,
    ) -> None:
        self.operation = operation
        self.failed_step = failed_step
        self.completed_steps = completed_steps
        self.record_id = record_id
        self.rolled_back = rolled_back
        outcome = "changes rolled back" if rolled_back else "reconciliation required"
        super().__init__(
            f"{operation} failed at step '{failed_step}' after "
            f"{', '.join(completed_steps)}; {outcome}"
        )


def get_current_user_id() -> int:
    user_id = get_settings().user_id
    if user_id is None:
        raise AuthError("No authenticated user")
    return user_id


def _get_owned(session: Session, model: type[T], object_id: int, user_id: int, label: str) -> T:
    obj = session.get(model, object_id)
    if not obj or obj.user_id != user_id:
        raise NotFoundError(f"{label} not found")
    return obj


def _assign(obj: object, values: dict[str, object]) -> None:
    for key, value in values.items():
        setattr(obj, key, value)


def _delete_rows(session: Session, rows: Iterable[object]) -> None:
    for row in rows:
        session.delete(row)


def _restore_rows(session: Session, rows: Iterable[object]) -> None:
    for row in rows:
        make_transient(row)
        session.add(row)


# Aggregate writes are increments evaluated by the database so that two
# requests touching the same account or category cannot overwrite each other.


def increment_account_balance(
    session: Session, user_id: int, account_id: int, delta: int
) -> None:
    result = session.execute(
        update(BankAccount)
        .where(BankAccount.id == account_id, BankAccount.user_id == user_id)
        .values(balance_cents=BankAccount.balance_cents + delta)
    )
    if result.rowcount == 0:
        raise NotFoundError("Account not found")


def increment_category(
    session: Session, user_id: int, category_id: int, delta: ledger.CategoryDelta
) -> None:
    result = session.execute(
        update(BudgetCategory)
        .where(BudgetCategory.id == category_id, BudgetCategory.user_id == user_id)
        .values(
            spent_cents=BudgetCategory.spent_cents + delta.spent_cents,
            budget_amount_cents=BudgetCategory.budget_amount_cents
            + delta.budget_cents,
        )
    )
    if result.rowcount == 0:
        raise NotFoundError("Category not found")


def increment_monthly_budget(
    session: Session,
    user_id: int,
    budget_id: int,
    category_type: CategoryType,
    delta: int,
) -> None:
    field_name = BUDGET_FIELD_BY_CATEGORY_TYPE[category_type]
    result = session.execute(
        update(MonthlyBudget)
        .where(MonthlyBudget.id == budget_id, MonthlyBudget.user_id == user_id)
        .values(
            {
                field_name: getattr(MonthlyBudget, field_name) + delta,
                "total_budget_cents": MonthlyBudget.total_budget_cents + delta,
            }
        )
    )
    if result.rowcount == 0:
        raise NotFoundError("Monthly budget not found")


@dataclass
class _Step:
    name: str
    apply: Callable[[], None]
    compensate: Optional[Callable[[], None]] = None


class MutationPlan:
    """Ordered writes of one mutation.

    Steps run in the order they were added: the record row first, then
    accounts, categories and monthly budgets. In atomic mode the whole plan
    is one database transaction. Otherwise every step commits on its own and
    a failure compensates the committed steps in reverse order.
    """

    def __init__(
        self,
        session: Session,
        operation: str,
        *,
        atomic: bool,
        record: Optional[object] = None,
    ) -> None:
        self.session = session
        self.operation = operation
        self.atomic = atomic
        self.record = record
        self.record_id: Optional[int] = None
        self.steps: list[_Step] = []

    def add(
        self,
        name: str,
        apply: Callable[[], None],
        compensate: Optional[Callable[[], None]] = None,
    ) -> None:
        self.steps.append(_Step(name, apply, compensate))

    def run(self) -> None:
        done: list[_Step] = []
        for step in self.steps:
            try:
                step.apply()
                self.session.flush()
                if self.record is not None and self.record_id is None:
                    self.record_id = getattr(self.record, "id", None)
                if not self.atomic:
                    self.session.commit()
            except (SQLAlchemyError, NotFoundError) as exc:
                self.session.rollback()
                if not done:
                    raise
                self._fail(step.name, done, exc)
            done.append(step)
        if self.atomic:
            try:
                self.session.commit()
            except SQLAlchemyError as exc:
                self.session.rollback()
                self._fail("commit", done, exc)

    def _fail(self, failed_step: str, done: list[_Step], exc: Exception) -> None:
        rolled_back = True if self.atomic else self._compensate(done)
        error = PartialMutationError(
            self.operation,
            failed_step,
            [s.name for s in done],
            self.record_id,
            rolled_back,
        )
        logger.error("partial_mutation: %s", error)
        raise error from exc

    def _compensate(self, done: list[_Step]) -> bool:
        restored = True
        for step in reversed(done):
            if step.compensate is None:
                continue
            try:
                step.compensate()
                self.session.commit()
            except SQLAlchemyError:
                self.session.rollback()
                restored = False
                logger.exception(
                    "compensation_failed: operation=%s step=%s",
                    self.operation,
                    step.name,
                )
        return restored


def plan_ledger_effects(
    plan: MutationPlan,
    session: Session,
    user_id: int,
    effects: ledger.LedgerEffects,
    *,
    categories: bool = True,
    budgets: bool = True,
) -> None:
    effects = effects.non_zero()
    for account_id, delta in sorted(effects.accounts.items()):
        plan.add(
            f"account:{account_id}",
            partial(increment_account_balance, session, user_id, account_id, delta),
            partial(increment_account_balance, session, user_id, account_id, -delta),
        )

    budget_deltas: dict[tuple[int, CategoryType], int] = defaultdict(int)
    for category_id, delta in sorted(effects.categories.items()):
        if categories:
            plan.add(
                f"category:{category_id}",
                partial(increment_category, session, user_id, category_id, delta),
                partial(increment_category, session, user_id, category_id, -delta),
            )
        if budgets and delta.budget_cents:
            category = _get_owned(
                session, BudgetCategory, category_id, user_id, "Category"
            )
            key = (category.monthly_budget_id, category.type)
            budget_deltas[key] += delta.budget_cents

    for (budget_id, category_type), delta in budget_deltas.items():
        if not delta:
            continue
        plan.add(
            f"budget:{budget_id}:{category_type.value}",
            partial(
                increment_monthly_budget,
                session,
                user_id,
                budget_id,
                category_type,
                delta,
            ),
            partial(
                increment_monthly_budget,
                session,
                user_id,
                budget_id,
                category_type,
                -delta,
            ),
        )


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_inactive: bool = False) -> list[BankAccount]:
        stmt = (
            select(BankAccount)
            .where(BankAccount.user_id == self.user_id)
            .order_by(BankAccount.name, BankAccount.id)
        )
        if not include_inactive:
            stmt = stmt.where(BankAccount.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> BankAccount:
        return _get_owned(self.session, BankAccount, account_id, self.user_id, "Account")

    def create(self, data: BankAccountIn) -> BankAccount:
        account = BankAccount(
            user_id=self.user_id,
            name=data.name.strip(),
            account_type=data.account_type,
            balance_cents=data.balance_cents,
            opening_balance_cents=data.balance_cents,
            currency=data.currency,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        logger.info(
            "account_created: id=%s opening_balance_cents=%s",
            account.id,
            account.opening_balance_cents,
        )
        return account

    def update(self, account_id: int, data: BankAccountUpdate) -> BankAccount:
        account = self.get(account_id)
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if "name" in changes:
            changes["name"] = changes["name"].strip()
        _assign(account, changes)
        self.session.commit()
        self.session.refresh(account)
        return account

    def deactivate(self, account_id: int) -> None:
        account = self.get(account_id)
        account.is_active = False
        self.session.commit()

    def restore(self, account_id: int) -> None:
        account = self.get(account_id)
        account.is_active = True
        self.session.commit()

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        txn_refs = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                or_(
                    Transaction.account_id == account_id,
                    Transaction.receiving_account_id == account_id,
                ),
            )
        ).scalar_one()
        transfer_refs = self.session.execute(
            select(func.count(AccountTransfer.id)).where(
                AccountTransfer.user_id == self.user_id,
                or_(
                    AccountTransfer.from_account_id == account_id,
                    AccountTransfer.to_account_id == account_id,
                ),
            )
        ).scalar_one()
        if txn_refs or transfer_refs:
            raise ValidationError(
                "Account has transactions or transfers; deactivate it instead"
            )
        self.session.delete(account)
        self.session.commit()

    def total_balance(self) -> int:
        return ledger.total_account_balance(a.balance_cents for a in self.list_all())


class MonthlyBudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.atomic = get_settings().atomic_mutations

    def list_all(self) -> list[MonthlyBudget]:
        stmt = (
            select(MonthlyBudget)
            .where(MonthlyBudget.user_id == self.user_id)
            .order_by(MonthlyBudget.year.desc(), MonthlyBudget.month.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> MonthlyBudget:
        return _get_owned(
            self.session, MonthlyBudget, budget_id, self.user_id, "Monthly budget"
        )

    def get_for_month(self, year: int, month: int | str) -> Optional[MonthlyBudget]:
        return self.session.scalar(
            select(MonthlyBudget).where(
                MonthlyBudget.user_id == self.user_id,
                MonthlyBudget.year == year,
                MonthlyBudget.month == parse_month(month),
            )
        )

    def get_or_create(self, year: int, month: int | str) -> MonthlyBudget:
        month_num = parse_month(month)
        budget = self.get_for_month(year, month_num)
        if budget:
            return budget
        budget = MonthlyBudget(
            user_id=self.user_id,
            year=year,
            month=month_num,
            total_budget_cents=0,
            fixed_budget_cents=0,
            variable_budget_cents=0,
            savings_budget_cents=0,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        logger.info("monthly_budget_created: id=%s %s-%02d", budget.id, year, month_num)
        return budget

    def update(self, budget_id: int, data: MonthlyBudgetIn) -> MonthlyBudget:
        budget = self.get(budget_id)
        _assign(budget, data.model_dump(exclude_unset=True, exclude_none=True))
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def copy_categories(
        self, source_budget_id: int, target_budget_id: int, *, replace: bool = False
    ) -> list[BudgetCategory]:
        """Copy name, type, ceiling and color; the copies start with nothing spent."""
        if source_budget_id == target_budget_id:
            raise ValidationError("Source and target month must differ")
        source = self.get(source_budget_id)
        target = self.get(target_budget_id)
        categories = CategoryService(self.session, self.user_id)
        source_categories = categories.list_for_budget(source.id, include_archived=True)
        if not source_categories:
            raise ValidationError("The selected month has no categories to copy")

        existing = categories.list_for_budget(target.id, include_archived=True)
        if existing and not replace:
            raise ValidationError("Target month already has categories")
        for category in existing:
            categories.delete(category.id)

        copies = [
            BudgetCategory(
                user_id=self.user_id,
                monthly_budget_id=target.id,
                name=category.name,
                type=category.type,
                budget_amount_cents=category.budget_amount_cents,
                spent_cents=0,
                color=category.color,
            )
            for category in source_categories
        ]
        self.session.add_all(copies)
        self.session.commit()
        logger.info(
            "categories_copied: source=%s target=%s count=%s",
            source.id,
            target.id,
            len(copies),
        )
        return copies

    def delete_month(self, year: int, month: int | str) -> int:
        """Remove a month with its categories and transactions.

        Account balances get the month's transactions reverted first. Returns
        the number of transactions removed.
        """
        budget = self.get_for_month(year, month)
        if not budget:
            raise NotFoundError("No data found for this month")
        categories = self.session.scalars(
            select(BudgetCategory).where(
                BudgetCategory.user_id == self.user_id,
                BudgetCategory.monthly_budget_id == budget.id,
            )
        ).all()
        category_ids = [c.id for c in categories]
        transactions = (
            self.session.scalars(
                select(Transaction).where(
                    Transaction.user_id == self.user_id,
                    Transaction.category_id.in_(category_ids),
                )
            ).all()
            if category_ids
            else []
        )

        effects = ledger.LedgerEffects()
        for txn in transactions:
            effects = effects + ledger.transaction_effects(txn, is_adding=False)

        plan = MutationPlan(
            self.session, "delete_month", atomic=self.atomic, record=budget
        )
        plan.add(
            "transactions",
            partial(_delete_rows, self.session, transactions),
            partial(_restore_rows, self.session, transactions),
        )
        plan_ledger_effects(
            plan,
            self.session,
            self.user_id,
            effects,
            categories=False,
            budgets=False,
        )
        plan.add(
            "categories",
            partial(_delete_rows, self.session, categories),
            partial(_restore_rows, self.session, categories),
        )
        plan.add(
            "budget",
            partial(self.session.delete, budget),
            partial(_restore_rows, self.session, [budget]),
        )
        plan.run()
        logger.info(
            "month_deleted: %s %s transactions=%s categories=%s",
            month_name(budget.month),
            budget.year,
            len(transactions),
            len(categories),
        )
        return len(transactions)


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.atomic = get_settings().atomic_mutations

    def list_for_budget(
        self, budget_id: int, include_archived: bool = False
    ) -> list[BudgetCategory]:
        stmt = (
            select(BudgetCategory)
            .where(
                BudgetCategory.user_id == self.user_id,
                BudgetCategory.monthly_budget_id == budget_id,
            )
            .order_by(BudgetCategory.type, BudgetCategory.name)
        )
        if not include_archived:
            stmt = stmt.where(BudgetCategory.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> BudgetCategory:
        return _get_owned(
            self.session, BudgetCategory, category_id, self.user_id, "Category"
        )

    def _ensure_unique_name(
        self, budget_id: int, name: str, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(BudgetCategory.id).where(
            BudgetCategory.user_id == self.user_id,
            BudgetCategory.monthly_budget_id == budget_id,
            func.lower(BudgetCategory.name) == name.strip().lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(BudgetCategory.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ValidationError("Category with this name already exists")

    def create(self, budget_id: int, data: BudgetCategoryIn) -> BudgetCategory:
        budget = MonthlyBudgetService(self.session, self.user_id).get(budget_id)
        self._ensure_unique_name(budget.id, data.name)
        category = BudgetCategory(
            user_id=self.user_id,
            monthly_budget_id=budget.id,
            name=data.name.strip(),
            type=data.type,
            budget_amount_cents=data.budget_amount_cents,
            spent_cents=0,
            color=data.color,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: BudgetCategoryUpdate) -> BudgetCategory:
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if "name" in changes:
            self._ensure_unique_name(
                category.monthly_budget_id, changes["name"], exclude_id=category.id
            )
            changes["name"] = changes["name"].strip()
        _assign(category, changes)
        self.session.commit()
        self.session.refresh(category)
        return category

    def archive(self, category_id: int) -> None:
        category = self.get(category_id)
        category.is_active = False
        self.session.commit()

    def restore(self, category_id: int) -> None:
        category = self.get(category_id)
        category.is_active = True
        self.session.commit()

    def delete(self, category_id: int) -> None:
        """Hard delete; the category's transactions are reverted and removed first."""
        category = self.get(category_id)
        transactions = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.category_id == category.id,
            )
        ).all()
        effects = ledger.LedgerEffects()
        for txn in transactions:
            effects = effects + ledger.transaction_effects(txn, is_adding=False)

        plan = MutationPlan(
            self.session, "delete_category", atomic=self.atomic, record=category
        )
        plan.add(
            "transactions",
            partial(_delete_rows, self.session, transactions),
            partial(_restore_rows, self.session, transactions),
        )
        plan_ledger_effects(
            plan, self.session, self.user_id, effects, categories=False
        )
        plan.add(
            "category",
            partial(self.session.delete, category),
            partial(_restore_rows, self.session, [category]),
        )
        plan.run()
        logger.info(
            "category_deleted: id=%s transactions=%s", category_id, len(transactions)
        )


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    period: Optional[Period] = None
    query: Optional[str] = None


_LEDGER_FIELDS = (
    "type",
    "amount_cents",
    "category_id",
    "account_id",
    "receiving_account_id",
)
_REQUIRED_FIELDS = ("type", "amount_cents", "category_id", "description", "date")


class TransactionService:
    """Records transactions and keeps the cached aggregates in step."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.atomic = get_settings().atomic_mutations

    def _validate(
        self,
        snapshot: ledger.TransactionSnapshot,
        previous: Optional[ledger.TransactionSnapshot] = None,
    ) -> None:
        if snapshot.amount_cents <= 0:
            raise ValidationError("Amount must be greater than zero")
        if (
            snapshot.receiving_account_id is not None
            and snapshot.type != TransactionType.savings
        ):
            raise ValidationError(
                "Only savings transactions can have a receiving account"
            )
        if (
            snapshot.account_id is not None
            and snapshot.account_id == snapshot.receiving_account_id
        ):
            raise ValidationError("Source and receiving account must differ")

        category = _get_owned(
            self.session, BudgetCategory, snapshot.category_id, self.user_id, "Category"
        )
        if not category.is_active and (
            previous is None or previous.category_id != category.id
        ):
            raise ValidationError("Category is archived")

        known_accounts = (
            {previous.account_id, previous.receiving_account_id} if previous else set()
        )
        for account_id in (snapshot.account_id, snapshot.receiving_account_id):
            if account_id is None:
                continue
            account = _get_owned(
                self.session, BankAccount, account_id, self.user_id, "Account"
            )
            if not account.is_active and account_id not in known_accounts:
                raise ValidationError(f"Account '{account.name}' is inactive")

    def create(self, data: TransactionIn) -> Transaction:
        snapshot = ledger.TransactionSnapshot(
            type=data.type,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            account_id=data.account_id,
            receiving_account_id=data.receiving_account_id,
        )
        self._validate(snapshot)
        txn = Transaction(
            user_id=self.user_id,
            type=data.type,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            account_id=data.account_id,
            receiving_account_id=data.receiving_account_id,
            description=data.description.strip(),
            date=data.date,
        )
        plan = MutationPlan(
            self.session, "add_transaction", atomic=self.atomic, record=txn
        )
        plan.add(
            "transaction",
            partial(self.session.add, txn),
            partial(self.session.delete, txn),
        )
        plan_ledger_effects(
            plan, self.session, self.user_id, ledger.transaction_effects(snapshot)
        )
        plan.run()
        logger.info(
            "transaction_added: id=%s type=%s amount_cents=%s category_id=%s",
            txn.id,
            txn.type.value,
            txn.amount_cents,
            txn.category_id,
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionPatch) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        for key in _REQUIRED_FIELDS:
            if key in changes and changes[key] is None:
                raise ValidationError(f"{key} cannot be cleared")
        if "description" in changes:
            changes["description"] = changes["description"].strip()

        old = ledger.TransactionSnapshot.of(txn)
        new = ledger.TransactionSnapshot(
            **{key: changes.get(key, getattr(txn, key)) for key in _LEDGER_FIELDS}
        )
        self._validate(new, previous=old)

        effects = ledger.transaction_effects(
            old, is_adding=False
        ) + ledger.transaction_effects(new, is_adding=True)
        previous_values = {key: getattr(txn, key) for key in changes}

        plan = MutationPlan(
            self.session, "update_transaction", atomic=self.atomic, record=txn
        )
        plan.add(
            "transaction",
            partial(_assign, txn, changes),
            partial(_assign, txn, previous_values),
        )
        plan_ledger_effects(plan, self.session, self.user_id, effects)
        plan.run()
        logger.info(
            "transaction_updated: id=%s fields=%s", txn.id, ",".join(sorted(changes))
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        snapshot = ledger.TransactionSnapshot.of(txn)
        plan = MutationPlan(
            self.session, "delete_transaction", atomic=self.atomic, record=txn
        )
        plan.add(
            "transaction",
            partial(self.session.delete, txn),
            partial(_restore_rows, self.session, [txn]),
        )
        plan_ledger_effects(
            plan,
            self.session,
            self.user_id,
            ledger.transaction_effects(snapshot, is_adding=False),
        )
        plan.run()
        logger.info(
            "transaction_deleted: id=%s type=%s amount_cents=%s",
            transaction_id,
            snapshot.type.value,
            snapshot.amount_cents,
        )

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.account_id:
            stmt = stmt.where(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.receiving_account_id == filters.account_id,
                )
            )
        if filters.period:
            stmt = stmt.where(
                Transaction.date.between(filters.period.start, filters.period.end)
            )
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(func.lower(Transaction.description).like(like))
        return self.session.scalars(stmt).all()


class TransferService:
    """Balance-neutral moves between two accounts; never categorised."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.atomic = get_settings().atomic_mutations

    def _plan_balances(
        self, plan: MutationPlan, transfer: AccountTransfer, *, is_adding: bool
    ) -> None:
        for account_id, is_source in (
            (transfer.from_account_id, True),
            (transfer.to_account_id, False),
        ):
            delta = ledger.transfer_balance_change(
                transfer.amount_cents, is_source_account=is_source, is_adding=is_adding
            )
            plan.add(
                f"account:{account_id}",
                partial(
                    increment_account_balance,
                    self.session,
                    self.user_id,
                    account_id,
                    delta,
                ),
                partial(
                    increment_account_balance,
                    self.session,
                    self.user_id,
                    account_id,
                    -delta,
                ),
            )

    def transfer(self, data: TransferIn) -> AccountTransfer:
        if data.from_account_id == data.to_account_id:
            raise ValidationError("Cannot transfer to the same account")
        if data.amount_cents <= 0:
            raise ValidationError("Amount must be greater than zero")
        accounts = AccountService(self.session, self.user_id)
        source = accounts.get(data.from_account_id)
        destination = accounts.get(data.to_account_id)
        for account in (source, destination):
            if not account.is_active:
                raise ValidationError(f"Account '{account.name}' is inactive")

        transfer = AccountTransfer(
            user_id=self.user_id,
            from_account_id=source.id,
            to_account_id=destination.id,
            amount_cents=data.amount_cents,
            description=(data.description or "").strip() or None,
            transfer_date=data.transfer_date or today_local(),
        )
        plan = MutationPlan(self.session, "transfer", atomic=self.atomic, record=transfer)
        plan.add(
            "transfer",
            partial(self.session.add, transfer),
            partial(self.session.delete, transfer),
        )
        self._plan_balances(plan, transfer, is_adding=True)
        plan.run()
        logger.info(
            "transfer_completed: id=%s from=%s to=%s amount_cents=%s",
            transfer.id,
            source.id,
            destination.id,
            transfer.amount_cents,
        )
        return transfer

    def get(self, transfer_id: int) -> AccountTransfer:
        return _get_owned(
            self.session, AccountTransfer, transfer_id, self.user_id, "Transfer"
        )

    def list_all(self, account_id: Optional[int] = None) -> list[AccountTransfer]:
        stmt = (
            select(AccountTransfer)
            .where(AccountTransfer.user_id == self.user_id)
            .order_by(AccountTransfer.transfer_date.desc(), AccountTransfer.id.desc())
        )
        if account_id is not None:
            stmt = stmt.where(
                or_(
                    AccountTransfer.from_account_id == account_id,
                    AccountTransfer.to_account_id == account_id,
                )
            )
        return self.session.scalars(stmt).all()

    def delete(self, transfer_id: int) -> None:
        transfer = self.get(transfer_id)
        plan = MutationPlan(
            self.session, "delete_transfer", atomic=self.atomic, record=transfer
        )
        plan.add(
            "transfer",
            partial(self.session.delete, transfer),
            partial(_restore_rows, self.session, [transfer]),
        )
        self._plan_balances(plan, transfer, is_adding=False)
        plan.run()
        logger.info("transfer_deleted: id=%s", transfer_id)


@dataclass(frozen=True)
class Drift:
    kind: str
    record_id: int
    name: str
    cached_cents: int
    actual_cents: int
    corrected: bool

    @property
    def drift_cents(self) -> int:
        return self.cached_cents - self.actual_cents


class ReconciliationService:
    """Recomputes cached aggregates from the stored history."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.tolerance_cents = get_settings().tolerance_cents

    def reconcile_category(self, category_id: int) -> int:
        category = _get_owned(
            self.session, BudgetCategory, category_id, self.user_id, "Category"
        )
        rows = self.session.execute(
            select(Transaction.type, Transaction.amount_cents).where(
                Transaction.user_id == self.user_id,
                Transaction.category_id == category.id,
            )
        ).all()
        return sum(ledger.category_spent_change(row) for row in rows)

    def reconcile_account_balance(
        self, account_id: int, initial_balance_cents: Optional[int] = None
    ) -> int:
        account = _get_owned(
            self.session, BankAccount, account_id, self.user_id, "Account"
        )
        balance = (
            account.opening_balance_cents
            if initial_balance_cents is None
            else initial_balance_cents
        )

        entries: list[tuple] = []
        transactions = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                or_(
                    Transaction.account_id == account.id,
                    Transaction.receiving_account_id == account.id,
                ),
            )
        ).all()
        for txn in transactions:
            delta = 0
            if txn.account_id == account.id:
                delta += ledger.account_balance_change(txn, True)
            if (
                txn.type == TransactionType.savings
                and txn.receiving_account_id == account.id
            ):
                delta += ledger.account_balance_change(txn, False)
            entries.append((txn.date, 0, txn.id, delta))

        transfers = self.session.scalars(
            select(AccountTransfer).where(
                AccountTransfer.user_id == self.user_id,
                or_(
                    AccountTransfer.from_account_id == account.id,
                    AccountTransfer.to_account_id == account.id,
                ),
            )
        ).all()
        for transfer in transfers:
            delta = ledger.transfer_balance_change(
                transfer.amount_cents,
                is_source_account=transfer.from_account_id == account.id,
            )
            entries.append((transfer.transfer_date, 1, transfer.id, delta))

        for _, _, _, delta in sorted(entries):
            balance += delta
        return balance

    def validate_budget_consistency(self, budget_id: int) -> ledger.ConsistencyReport:
        budget = _get_owned(
            self.session, MonthlyBudget, budget_id, self.user_id, "Monthly budget"
        )
        categories = self.session.scalars(
            select(BudgetCategory).where(
                BudgetCategory.user_id == self.user_id,
                BudgetCategory.monthly_budget_id == budget.id,
            )
        ).all()
        return ledger.validate_budget_consistency(
            budget, categories, self.tolerance_cents
        )

    def _repair_category(self, category: BudgetCategory) -> Drift:
        cached = category.spent_cents
        actual = self.reconcile_category(category.id)
        corrected = abs(actual - cached) > self.tolerance_cents
        if corrected:
            self.session.execute(
                update(BudgetCategory)
                .where(BudgetCategory.id == category.id)
                .values(spent_cents=actual)
            )
            logger.warning(
                "category_drift_corrected: id=%s cached_cents=%s actual_cents=%s",
                category.id,
                cached,
                actual,
            )
        return Drift("category", category.id, category.name, cached, actual, corrected)

    def _repair_account(self, account: BankAccount) -> Drift:
        cached = account.balance_cents
        actual = self.reconcile_account_balance(account.id)
        corrected = abs(actual - cached) > self.tolerance_cents
        if corrected:
            self.session.execute(
                update(BankAccount)
                .where(BankAccount.id == account.id)
                .values(balance_cents=actual)
            )
            logger.warning(
                "account_drift_corrected: id=%s cached_cents=%s actual_cents=%s",
                account.id,
                cached,
                actual,
            )
        return Drift("account", account.id, account.name, cached, actual, corrected)

    def repair_category(self, category_id: int) -> Drift:
        category = _get_owned(
            self.session, BudgetCategory, category_id, self.user_id, "Category"
        )
        drift = self._repair_category(category)
        self.session.commit()
        return drift

    def repair_account(self, account_id: int) -> Drift:
        account = _get_owned(
            self.session, BankAccount, account_id, self.user_id, "Account"
        )
        drift = self._repair_account(account)
        self.session.commit()
        return drift

    def reconcile_budget(self, budget_id: int) -> list[Drift]:
        budget = _get_owned(
            self.session, MonthlyBudget, budget_id, self.user_id, "Monthly budget"
        )
        categories = self.session.scalars(
            select(BudgetCategory)
            .where(
                BudgetCategory.user_id == self.user_id,
                BudgetCategory.monthly_budget_id == budget.id,
            )
            .order_by(BudgetCategory.id)
        ).all()
        drifts = [self._repair_category(category) for category in categories]
        self.session.commit()
        logger.info(
            "budget_reconciled: id=%s categories=%s corrected=%s",
            budget.id,
            len(drifts),
            sum(1 for d in drifts if d.corrected),
        )
        return drifts

    def reconcile_accounts(self) -> list[Drift]:
        accounts = self.session.scalars(
            select(BankAccount)
            .where(BankAccount.user_id == self.user_id)
            .order_by(BankAccount.id)
        ).all()
        drifts = [self._repair_account(account) for account in accounts]
        self.session.commit()
        logger.info(
            "accounts_reconciled: accounts=%s corrected=%s",
            len(drifts),
            sum(1 for d in drifts if d.corrected),
        )
        return drifts


class SummaryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def budget_summary(self, budget_id: int) -> dict[str, object]:
        budget = MonthlyBudgetService(self.session, self.user_id).get(budget_id)
        categories = CategoryService(self.session, self.user_id).list_for_budget(
            budget.id, include_archived=True
        )
        accounts_total = AccountService(self.session, self.user_id).total_balance()
        report = ReconciliationService(
            self.session, self.user_id
        ).validate_budget_consistency(budget.id)

        return {
            "budget_id": budget.id,
            "label": f"{month_name(budget.month)} {budget.year}",
            "year": budget.year,
            "month": budget.month,
            "total_budget_cents": budget.total_budget_cents,
            "total_spent_cents": ledger.total_spent(categories),
            "remaining_cents": ledger.remaining_budget(
                budget.total_budget_cents, categories
            ),
            "spending_by_type": {
                t.value: v for t, v in ledger.spending_by_type(categories).items()
            },
            "budget_by_type": {
                t.value: v for t, v in ledger.budget_by_type(categories).items()
            },
            "categories": [
                {
                    "id": c.id,
                    "name": c.name,
                    "type": c.type.value,
                    "is_active": c.is_active,
                    "budget_amount_cents": c.budget_amount_cents,
                    "spent_cents": c.spent_cents,
                    "remaining_cents": c.budget_amount_cents - c.spent_cents,
                    "progress_pct": ledger.category_progress(c),
                    "over_budget": c.spent_cents > c.budget_amount_cents,
                }
                for c in categories
            ],
            "accounts_total_cents": accounts_total,
            "consistency": {"is_valid": report.is_valid, "errors": report.errors},
        }
