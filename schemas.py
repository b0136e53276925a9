import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import AccountType, CategoryType, TransactionType


class BankAccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    account_type: AccountType = AccountType.checking
    balance_cents: int = 0
    currency: str = Field(default="USD", min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class BankAccountUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    account_type: Optional[AccountType] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value


class MonthlyBudgetIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_budget_cents: Optional[int] = Field(default=None, ge=0)
    fixed_budget_cents: Optional[int] = Field(default=None, ge=0)
    variable_budget_cents: Optional[int] = Field(default=None, ge=0)
    savings_budget_cents: Optional[int] = Field(default=None, ge=0)


class BudgetCategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    budget_amount_cents: int = Field(default=0, ge=0)
    color: Optional[str] = Field(default=None, max_length=9)


class BudgetCategoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[CategoryType] = None
    budget_amount_cents: Optional[int] = Field(default=None, ge=0)
    color: Optional[str] = Field(default=None, max_length=9)


class TransactionIn(BaseModel):
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    category_id: int
    account_id: Optional[int] = None
    receiving_account_id: Optional[int] = None
    description: str = Field(default="", max_length=200)
    date: dt.date

    @model_validator(mode="after")
    def _receiving_account_only_for_savings(self) -> "TransactionIn":
        if (
            self.receiving_account_id is not None
            and self.type != TransactionType.savings
        ):
            raise ValueError("receiving_account_id is only allowed on savings")
        return self


class TransactionPatch(BaseModel):
    """Partial update; only fields present in the payload are applied."""

    model_config = ConfigDict(extra="forbid")

    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    receiving_account_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=200)
    date: Optional[dt.date] = None


class TransferIn(BaseModel):
    from_account_id: int
    to_account_id: int
    amount_cents: int = Field(..., ge=0)
    description: Optional[str] = Field(default=None, max_length=200)
    transfer_date: Optional[dt.date] = None


class CopyCategoriesIn(BaseModel):
    source_budget_id: int
    replace: bool = False
