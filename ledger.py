"""Pure ledger arithmetic.

Every function here works on integer cents and has no I/O. The services
compute deltas with these helpers and then persist them; reconciliation
folds the same helpers over stored history, so the cached aggregates and
the recomputed values can only disagree through failed or racing writes.

A revert is always the apply result with its sign flipped.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

from models import CategoryType, TransactionType


class Movement(Protocol):
    type: TransactionType
    amount_cents: int


class PostedMovement(Movement, Protocol):
    category_id: int
    account_id: Optional[int]
    receiving_account_id: Optional[int]


@dataclass(frozen=True)
class TransactionSnapshot:
    type: TransactionType
    amount_cents: int
    category_id: int
    account_id: Optional[int] = None
    receiving_account_id: Optional[int] = None

    @classmethod
    def of(cls, txn: PostedMovement) -> TransactionSnapshot:
        return cls(
            type=txn.type,
            amount_cents=txn.amount_cents,
            category_id=txn.category_id,
            account_id=txn.account_id,
            receiving_account_id=txn.receiving_account_id,
        )


def _sign(is_adding: bool) -> int:
    return 1 if is_adding else -1


def account_balance_change(txn: Movement, is_source_account: bool = True) -> int:
    if txn.type == TransactionType.savings:
        return -txn.amount_cents if is_source_account else txn.amount_cents
    if txn.type == TransactionType.income:
        return txn.amount_cents
    return -txn.amount_cents


def category_spent_change(txn: Movement, is_adding: bool = True) -> int:
    # savings counts as spent: it is money committed away from the free budget
    if txn.type in (TransactionType.expense, TransactionType.savings):
        return txn.amount_cents * _sign(is_adding)
    return 0


def budget_amount_change(txn: Movement, is_adding: bool = True) -> int:
    # income raises the category ceiling (envelope top-up)
    if txn.type == TransactionType.income:
        return txn.amount_cents * _sign(is_adding)
    return 0


@dataclass(frozen=True)
class CategoryDelta:
    spent_cents: int = 0
    budget_cents: int = 0

    def __add__(self, other: CategoryDelta) -> CategoryDelta:
        return CategoryDelta(
            self.spent_cents + other.spent_cents,
            self.budget_cents + other.budget_cents,
        )

    def __neg__(self) -> CategoryDelta:
        return CategoryDelta(-self.spent_cents, -self.budget_cents)

    def __bool__(self) -> bool:
        return bool(self.spent_cents or self.budget_cents)


@dataclass
class LedgerEffects:
    """Deltas keyed by account id and by category id."""

    accounts: dict[int, int] = field(default_factory=dict)
    categories: dict[int, CategoryDelta] = field(default_factory=dict)

    def __add__(self, other: LedgerEffects) -> LedgerEffects:
        accounts: dict[int, int] = defaultdict(int)
        for source in (self.accounts, other.accounts):
            for account_id, delta in source.items():
                accounts[account_id] += delta
        categories: dict[int, CategoryDelta] = defaultdict(CategoryDelta)
        for source in (self.categories, other.categories):
            for category_id, delta in source.items():
                categories[category_id] = categories[category_id] + delta
        return LedgerEffects(dict(accounts), dict(categories))

    def non_zero(self) -> LedgerEffects:
        return LedgerEffects(
            {k: v for k, v in self.accounts.items() if v},
            {k: v for k, v in self.categories.items() if v},
        )


def transaction_effects(txn: PostedMovement, is_adding: bool = True) -> LedgerEffects:
    sign = _sign(is_adding)
    effects = LedgerEffects()
    if txn.account_id is not None:
        effects = effects + LedgerEffects(
            accounts={txn.account_id: account_balance_change(txn, True) * sign}
        )
    if txn.type == TransactionType.savings and txn.receiving_account_id is not None:
        effects = effects + LedgerEffects(
            accounts={
                txn.receiving_account_id: account_balance_change(txn, False) * sign
            }
        )
    effects = effects + LedgerEffects(
        categories={
            txn.category_id: CategoryDelta(
                category_spent_change(txn, is_adding),
                budget_amount_change(txn, is_adding),
            )
        }
    )
    return effects


def transfer_balance_change(
    amount_cents: int, *, is_source_account: bool, is_adding: bool = True
) -> int:
    delta = -amount_cents if is_source_account else amount_cents
    return delta * _sign(is_adding)


# Aggregates over cached values


class CategoryLike(Protocol):
    type: CategoryType
    budget_amount_cents: int
    spent_cents: int


class BudgetLike(Protocol):
    total_budget_cents: int
    fixed_budget_cents: int
    variable_budget_cents: int
    savings_budget_cents: int


def total_spent(categories: Iterable[CategoryLike]) -> int:
    return sum(c.spent_cents for c in categories)


def remaining_budget(total_budget_cents: int, categories: Iterable[CategoryLike]) -> int:
    return total_budget_cents - total_spent(categories)


def spending_by_type(categories: Iterable[CategoryLike]) -> dict[CategoryType, int]:
    totals = {t: 0 for t in CategoryType}
    for category in categories:
        totals[category.type] += category.spent_cents
    return totals


def budget_by_type(categories: Iterable[CategoryLike]) -> dict[CategoryType, int]:
    totals = {t: 0 for t in CategoryType}
    for category in categories:
        totals[category.type] += category.budget_amount_cents
    return totals


def category_progress(category: CategoryLike) -> float:
    if category.budget_amount_cents <= 0:
        return 0.0
    pct = category.spent_cents / category.budget_amount_cents * 100
    return round(min(pct, 100.0), 2)


def total_account_balance(balances: Iterable[int]) -> int:
    return sum(balances)


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}{whole}.{frac:02d}"


@dataclass(frozen=True)
class ConsistencyReport:
    is_valid: bool
    errors: list[str]


def validate_budget_consistency(
    budget: BudgetLike,
    categories: Iterable[CategoryLike],
    tolerance_cents: int = 1,
) -> ConsistencyReport:
    categories = list(categories)
    errors: list[str] = []

    type_total = (
        budget.fixed_budget_cents
        + budget.variable_budget_cents
        + budget.savings_budget_cents
    )
    if abs(budget.total_budget_cents - type_total) > tolerance_cents:
        errors.append(
            f"Total budget ({format_cents(budget.total_budget_cents)}) doesn't match "
            f"sum of type budgets ({format_cents(type_total)})"
        )

    planned = budget_by_type(categories)
    for category_type, field_value in (
        (CategoryType.fixed, budget.fixed_budget_cents),
        (CategoryType.variable, budget.variable_budget_cents),
        (CategoryType.savings, budget.savings_budget_cents),
    ):
        if abs(field_value - planned[category_type]) > tolerance_cents:
            errors.append(
                f"{category_type.value.capitalize()} budget total "
                f"({format_cents(field_value)}) doesn't match category sum "
                f"({format_cents(planned[category_type])})"
            )

    return ConsistencyReport(is_valid=not errors, errors=errors)
