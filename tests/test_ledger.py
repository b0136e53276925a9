from types import SimpleNamespace

import ledger
from ledger import CategoryDelta, LedgerEffects, TransactionSnapshot
from models import CategoryType, TransactionType


def _txn(type_, amount, category_id=1, account_id=None, receiving_account_id=None):
    return TransactionSnapshot(
        type=type_,
        amount_cents=amount,
        category_id=category_id,
        account_id=account_id,
        receiving_account_id=receiving_account_id,
    )


def _category(type_, budget, spent):
    return SimpleNamespace(type=type_, budget_amount_cents=budget, spent_cents=spent)


def test_account_balance_change_by_type() -> None:
    assert ledger.account_balance_change(_txn(TransactionType.income, 500)) == 500
    assert ledger.account_balance_change(_txn(TransactionType.expense, 500)) == -500
    savings = _txn(TransactionType.savings, 200)
    assert ledger.account_balance_change(savings, is_source_account=True) == -200
    assert ledger.account_balance_change(savings, is_source_account=False) == 200


def test_category_deltas_flip_sign_on_revert() -> None:
    for type_ in TransactionType:
        txn = _txn(type_, 750)
        assert ledger.category_spent_change(txn, False) == -ledger.category_spent_change(
            txn, True
        )
        assert ledger.budget_amount_change(txn, False) == -ledger.budget_amount_change(
            txn, True
        )


def test_income_tops_up_budget_without_spending() -> None:
    txn = _txn(TransactionType.income, 500)
    assert ledger.category_spent_change(txn) == 0
    assert ledger.budget_amount_change(txn) == 500


def test_savings_counts_as_spent() -> None:
    txn = _txn(TransactionType.savings, 300)
    assert ledger.category_spent_change(txn) == 300
    assert ledger.budget_amount_change(txn) == 0


def test_transaction_effects_cover_both_savings_accounts() -> None:
    txn = _txn(TransactionType.savings, 200, category_id=7, account_id=1, receiving_account_id=2)

    effects = ledger.transaction_effects(txn)

    assert effects.accounts == {1: -200, 2: 200}
    assert effects.categories == {7: CategoryDelta(spent_cents=200, budget_cents=0)}


def test_apply_then_revert_nets_to_zero() -> None:
    txn = _txn(TransactionType.expense, 1299, category_id=3, account_id=4)

    net = ledger.transaction_effects(txn) + ledger.transaction_effects(txn, is_adding=False)

    assert net.non_zero() == LedgerEffects()


def test_amount_only_update_nets_to_difference() -> None:
    old = _txn(TransactionType.expense, 1000, category_id=3, account_id=4)
    new = _txn(TransactionType.expense, 1500, category_id=3, account_id=4)

    net = ledger.transaction_effects(old, is_adding=False) + ledger.transaction_effects(new)

    assert net.accounts == {4: -500}
    assert net.categories == {3: CategoryDelta(spent_cents=500)}


def test_transfer_balance_change() -> None:
    assert ledger.transfer_balance_change(100, is_source_account=True) == -100
    assert ledger.transfer_balance_change(100, is_source_account=False) == 100
    assert (
        ledger.transfer_balance_change(100, is_source_account=True, is_adding=False)
        == 100
    )


def test_aggregates_over_categories() -> None:
    categories = [
        _category(CategoryType.fixed, 100_00, 100_00),
        _category(CategoryType.variable, 200_00, 50_00),
        _category(CategoryType.variable, 50_00, 75_00),
        _category(CategoryType.savings, 0, 0),
    ]

    assert ledger.total_spent(categories) == 225_00
    assert ledger.remaining_budget(400_00, categories) == 175_00
    assert ledger.spending_by_type(categories) == {
        CategoryType.fixed: 100_00,
        CategoryType.variable: 125_00,
        CategoryType.savings: 0,
    }
    assert ledger.budget_by_type(categories)[CategoryType.variable] == 250_00


def test_category_progress_is_capped_and_safe_for_zero_budget() -> None:
    assert ledger.category_progress(_category(CategoryType.variable, 300, 100)) == 33.33
    assert ledger.category_progress(_category(CategoryType.variable, 100, 250)) == 100.0
    assert ledger.category_progress(_category(CategoryType.variable, 0, 50)) == 0.0


def test_format_cents() -> None:
    assert ledger.format_cents(123456) == "1234.56"
    assert ledger.format_cents(-5) == "-0.05"


def test_validate_budget_consistency_reports_each_mismatch() -> None:
    budget = SimpleNamespace(
        total_budget_cents=1000,
        fixed_budget_cents=400,
        variable_budget_cents=300,
        savings_budget_cents=200,
    )
    categories = [
        _category(CategoryType.fixed, 400, 0),
        _category(CategoryType.variable, 250, 0),
        _category(CategoryType.savings, 200, 0),
    ]

    report = ledger.validate_budget_consistency(budget, categories)

    assert not report.is_valid
    assert report.errors == [
        "Total budget (10.00) doesn't match sum of type budgets (9.00)",
        "Variable budget total (3.00) doesn't match category sum (2.50)",
    ]


def test_validate_budget_consistency_honours_tolerance() -> None:
    budget = SimpleNamespace(
        total_budget_cents=901,
        fixed_budget_cents=400,
        variable_budget_cents=300,
        savings_budget_cents=200,
    )
    categories = [
        _category(CategoryType.fixed, 400, 0),
        _category(CategoryType.variable, 300, 0),
        _category(CategoryType.savings, 201, 0),
    ]

    assert ledger.validate_budget_consistency(budget, categories).is_valid
    assert not ledger.validate_budget_consistency(budget, categories, tolerance_cents=0).is_valid
