from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    savings = "savings"


class CategoryType(str, Enum):
    fixed = "fixed"
    variable = "variable"
    savings = "savings"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit = "credit"
    investment = "investment"
    cash = "cash"


# MonthlyBudget column holding the plan total for each category type.
BUDGET_FIELD_BY_CATEGORY_TYPE = {
    CategoryType.fixed: "fixed_budget_cents",
    CategoryType.variable: "variable_budget_cents",
    CategoryType.savings: "savings_budget_cents",
}


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class MonthlyBudget(Base, TimestampMixin):
    __tablename__ = "monthly_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    total_budget_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fixed_budget_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    variable_budget_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    savings_budget_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    categories: Mapped[list["BudgetCategory"]] = relationship(
        "BudgetCategory",
        back_populates="monthly_budget",
        order_by="BudgetCategory.id",
        passive_deletes="all",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "year", "month", name="uq_budget_user_month"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
    )


class BudgetCategory(Base, TimestampMixin):
    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    monthly_budget_id: Mapped[int] = mapped_column(
        ForeignKey("monthly_budgets.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    budget_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    color: Mapped[Optional[str]] = mapped_column(String(9))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    monthly_budget: Mapped["MonthlyBudget"] = relationship(
        "MonthlyBudget", back_populates="categories"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category", passive_deletes="all"
    )

    __table_args__ = (
        Index("ix_budget_categories_budget", "monthly_budget_id"),
        Index("ix_budget_categories_user", "user_id"),
    )


class BankAccount(Base, TimestampMixin):
    __tablename__ = "bank_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.checking
    )
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    opening_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_bank_accounts_user_active", "user_id", "is_active"),)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("budget_categories.id"), nullable=False
    )
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("bank_accounts.id"))
    receiving_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bank_accounts.id")
    )
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    date: Mapped[date] = mapped_column(Date, nullable=False)

    category: Mapped["BudgetCategory"] = relationship(
        "BudgetCategory", back_populates="transactions"
    )
    account: Mapped[Optional["BankAccount"]] = relationship(
        "BankAccount", foreign_keys=[account_id]
    )
    receiving_account: Mapped[Optional["BankAccount"]] = relationship(
        "BankAccount", foreign_keys=[receiving_account_id]
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_category", "category_id"),
        Index("ix_transactions_account", "account_id"),
        Index("ix_transactions_receiving_account", "receiving_account_id"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "receiving_account_id IS NULL OR type = 'savings'",
            name="ck_transactions_receiving_savings_only",
        ),
    )


class AccountTransfer(Base):
    __tablename__ = "account_transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    from_account_id: Mapped[int] = mapped_column(
        ForeignKey("bank_accounts.id"), nullable=False
    )
    to_account_id: Mapped[int] = mapped_column(
        ForeignKey("bank_accounts.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    transfer_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    from_account: Mapped["BankAccount"] = relationship(
        "BankAccount", foreign_keys=[from_account_id]
    )
    to_account: Mapped["BankAccount"] = relationship(
        "BankAccount", foreign_keys=[to_account_id]
    )

    __table_args__ = (
        Index("ix_account_transfers_from", "from_account_id"),
        Index("ix_account_transfers_to", "to_account_id"),
        CheckConstraint("amount_cents > 0", name="ck_transfers_amount_positive"),
        CheckConstraint(
            "from_account_id <> to_account_id", name="ck_transfers_distinct_accounts"
        ),
    )
