from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import services
from config import get_settings
from database import Base
from models import (
    AccountTransfer,
    BankAccount,
    BudgetCategory,
    CategoryType,
    Transaction,
    TransactionType,
)
from schemas import BankAccountIn, BudgetCategoryIn, TransactionIn, TransactionPatch, TransferIn
from services import (
    AccountService,
    CategoryService,
    MonthlyBudgetService,
    PartialMutationError,
    ReconciliationService,
    TransactionService,
    TransferService,
)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine, expire_on_commit=False)


def seed(session: Session):
    budget = MonthlyBudgetService(session).get_or_create(2025, 2)
    category = CategoryService(session).create(
        budget.id, BudgetCategoryIn(name="Fuel", type=CategoryType.variable)
    )
    account = AccountService(session).create(BankAccountIn(name="Card", balance_cents=100_00))
    return category, account


def fuel(category_id: int, account_id: int, amount: int = 40_00) -> TransactionIn:
    return TransactionIn(
        type=TransactionType.expense,
        amount_cents=amount,
        category_id=category_id,
        account_id=account_id,
        date=date(2025, 2, 14),
    )


def state(session: Session, category_id: int, account_id: int):
    return (
        session.scalar(select(BankAccount.balance_cents).where(BankAccount.id == account_id)),
        session.scalar(
            select(BudgetCategory.spent_cents).where(BudgetCategory.id == category_id)
        ),
        session.scalars(select(Transaction.id)).all(),
    )


def failing_category_update(*_args, **_kwargs):
    raise SQLAlchemyError("database is locked")


def test_atomic_mode_rolls_back_everything(monkeypatch) -> None:
    monkeypatch.setattr(services, "increment_category", failing_category_update)
    with make_session() as session:
        category, account = seed(session)

        with pytest.raises(PartialMutationError) as excinfo:
            TransactionService(session).create(fuel(category.id, account.id))

        error = excinfo.value
        assert error.operation == "add_transaction"
        assert error.failed_step == f"category:{category.id}"
        assert error.completed_steps == ["transaction", f"account:{account.id}"]
        assert error.record_id is not None
        assert error.rolled_back
        assert isinstance(error.__cause__, SQLAlchemyError)
        assert state(session, category.id, account.id) == (100_00, 0, [])


def test_step_mode_compensates_committed_steps(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "atomic_mutations", False)
    monkeypatch.setattr(services, "increment_category", failing_category_update)
    with make_session() as session:
        category, account = seed(session)

        with pytest.raises(PartialMutationError) as excinfo:
            TransactionService(session).create(fuel(category.id, account.id))

        assert excinfo.value.rolled_back
        assert state(session, category.id, account.id) == (100_00, 0, [])


def test_step_mode_reports_unrecoverable_state(monkeypatch, caplog) -> None:
    monkeypatch.setattr(get_settings(), "atomic_mutations", False)
    real_increment = services.increment_account_balance
    calls = []

    def flaky_account_update(session, user_id, account_id, delta):
        calls.append(delta)
        if len(calls) > 1:
            raise SQLAlchemyError("disk I/O error")
        real_increment(session, user_id, account_id, delta)

    monkeypatch.setattr(services, "increment_account_balance", flaky_account_update)
    monkeypatch.setattr(services, "increment_category", failing_category_update)
    with make_session() as session:
        category, account = seed(session)

        with caplog.at_level("ERROR", logger="services"):
            with pytest.raises(PartialMutationError) as excinfo:
                TransactionService(session).create(fuel(category.id, account.id))

        error = excinfo.value
        assert not error.rolled_back
        assert "compensation_failed" in caplog.text
        # the row was removed but the account debit could not be undone
        assert state(session, category.id, account.id) == (60_00, 0, [])

        monkeypatch.undo()
        drift = ReconciliationService(session).repair_account(account.id)

        assert drift.corrected
        assert drift.actual_cents == 100_00


def test_failed_update_leaves_previous_values(monkeypatch) -> None:
    with make_session() as session:
        category, account = seed(session)
        service = TransactionService(session)
        txn = service.create(fuel(category.id, account.id))
        monkeypatch.setattr(services, "increment_category", failing_category_update)

        with pytest.raises(PartialMutationError) as excinfo:
            service.update(txn.id, TransactionPatch(amount_cents=55_00))

        assert excinfo.value.record_id == txn.id
        assert excinfo.value.operation == "update_transaction"
        amount = session.scalar(select(Transaction.amount_cents).where(Transaction.id == txn.id))
        assert amount == 40_00
        assert state(session, category.id, account.id)[:2] == (60_00, 40_00)


def test_first_step_failure_raises_original_error() -> None:
    with make_session() as session:
        plan = services.MutationPlan(session, "noop", atomic=True)
        plan.add("first", failing_category_update)
        plan.add("second", lambda: None)

        with pytest.raises(SQLAlchemyError):
            plan.run()


def test_step_mode_delete_restores_the_transaction(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "atomic_mutations", False)
    with make_session() as session:
        category, account = seed(session)
        txn = TransactionService(session).create(fuel(category.id, account.id))
        monkeypatch.setattr(services, "increment_category", failing_category_update)

        with pytest.raises(PartialMutationError) as excinfo:
            TransactionService(session).delete(txn.id)

        error = excinfo.value
        assert error.operation == "delete_transaction"
        assert error.failed_step == f"category:{category.id}"
        assert error.rolled_back
        assert state(session, category.id, account.id) == (60_00, 40_00, [txn.id])


def test_step_mode_transfer_delete_restores_the_transfer(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "atomic_mutations", False)
    with make_session() as session:
        accounts = AccountService(session)
        source = accounts.create(BankAccountIn(name="Card", balance_cents=500_00))
        target = accounts.create(BankAccountIn(name="Savings"))
        transfer = TransferService(session).transfer(
            TransferIn(from_account_id=source.id, to_account_id=target.id, amount_cents=75_00)
        )
        real_increment = services.increment_account_balance

        def locked_target(session, user_id, account_id, delta):
            if account_id == target.id:
                raise SQLAlchemyError("database is locked")
            real_increment(session, user_id, account_id, delta)

        monkeypatch.setattr(services, "increment_account_balance", locked_target)

        with pytest.raises(PartialMutationError) as excinfo:
            TransferService(session).delete(transfer.id)

        error = excinfo.value
        assert error.operation == "delete_transfer"
        assert error.completed_steps == ["transfer", f"account:{source.id}"]
        assert error.failed_step == f"account:{target.id}"
        assert error.rolled_back
        balances = session.execute(
            select(BankAccount.id, BankAccount.balance_cents).order_by(BankAccount.id)
        ).all()
        assert [tuple(row) for row in balances] == [(source.id, 425_00), (target.id, 75_00)]
        assert session.scalars(select(AccountTransfer.id)).all() == [transfer.id]
