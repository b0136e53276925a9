import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from config import get_settings
from csrf import CSRF_HEADER, generate_csrf_token, validate_csrf_token
from database import SessionLocal
from models import (
    AccountTransfer,
    BankAccount,
    BudgetCategory,
    MonthlyBudget,
    Transaction,
    TransactionType,
)
from periods import month_period, parse_month
from schemas import (
    BankAccountIn,
    BankAccountUpdate,
    BudgetCategoryIn,
    BudgetCategoryUpdate,
    CopyCategoriesIn,
    MonthlyBudgetIn,
    TransactionIn,
    TransactionPatch,
    TransferIn,
)
from services import (
    AccountService,
    AuthError,
    CategoryService,
    Drift,
    MonthlyBudgetService,
    NotFoundError,
    PartialMutationError,
    ReconciliationService,
    SummaryService,
    TransactionFilters,
    TransactionService,
    TransferService,
    ValidationError,
    get_current_user_id,
)

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_csrf(request: Request) -> None:
    token = request.headers.get(CSRF_HEADER)
    if not validate_csrf_token(token, get_current_user_id()):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


def _month(value: str) -> int:
    try:
        return parse_month(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.exception_handler(ValidationError)
async def _validation_error(_request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def _not_found(_request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(AuthError)
async def _unauthorized(_request: Request, exc: AuthError):
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(PartialMutationError)
async def _partial_mutation(_request: Request, exc: PartialMutationError):
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "operation": exc.operation,
            "failed_step": exc.failed_step,
            "completed_steps": exc.completed_steps,
            "record_id": exc.record_id,
            "rolled_back": exc.rolled_back,
            "hint": None if exc.rolled_back else "run reconciliation",
        },
    )


def account_json(account: BankAccount) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "account_type": account.account_type.value,
        "balance_cents": account.balance_cents,
        "opening_balance_cents": account.opening_balance_cents,
        "currency": account.currency,
        "is_active": account.is_active,
    }


def budget_json(budget: MonthlyBudget) -> dict:
    return {
        "id": budget.id,
        "year": budget.year,
        "month": budget.month,
        "total_budget_cents": budget.total_budget_cents,
        "fixed_budget_cents": budget.fixed_budget_cents,
        "variable_budget_cents": budget.variable_budget_cents,
        "savings_budget_cents": budget.savings_budget_cents,
    }


def category_json(category: BudgetCategory) -> dict:
    return {
        "id": category.id,
        "monthly_budget_id": category.monthly_budget_id,
        "name": category.name,
        "type": category.type.value,
        "budget_amount_cents": category.budget_amount_cents,
        "spent_cents": category.spent_cents,
        "color": category.color,
        "is_active": category.is_active,
    }


def transaction_json(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "category_id": txn.category_id,
        "account_id": txn.account_id,
        "receiving_account_id": txn.receiving_account_id,
        "description": txn.description,
    }


def transfer_json(transfer: AccountTransfer) -> dict:
    return {
        "id": transfer.id,
        "from_account_id": transfer.from_account_id,
        "to_account_id": transfer.to_account_id,
        "amount_cents": transfer.amount_cents,
        "description": transfer.description,
        "transfer_date": transfer.transfer_date.isoformat(),
    }


def drift_json(drift: Drift) -> dict:
    return {
        "kind": drift.kind,
        "id": drift.record_id,
        "name": drift.name,
        "cached_cents": drift.cached_cents,
        "actual_cents": drift.actual_cents,
        "drift_cents": drift.drift_cents,
        "corrected": drift.corrected,
    }


@app.get("/api/csrf-token")
def api_csrf_token():
    return {"token": generate_csrf_token(get_current_user_id())}


# Accounts


@app.get("/api/accounts")
def api_accounts(include_inactive: bool = False, db: Session = Depends(get_db)):
    service = AccountService(db)
    accounts = service.list_all(include_inactive=include_inactive)
    return {
        "items": [account_json(a) for a in accounts],
        "total_balance_cents": service.total_balance(),
    }


@app.post("/api/accounts", status_code=201, dependencies=[Depends(require_csrf)])
def api_create_account(data: BankAccountIn, db: Session = Depends(get_db)):
    return account_json(AccountService(db).create(data))


@app.post("/api/accounts/reconcile", dependencies=[Depends(require_csrf)])
def api_reconcile_accounts(db: Session = Depends(get_db)):
    drifts = ReconciliationService(db).reconcile_accounts()
    return {"items": [drift_json(d) for d in drifts]}


@app.get("/api/accounts/{account_id}")
def api_account(account_id: int, db: Session = Depends(get_db)):
    return account_json(AccountService(db).get(account_id))


@app.patch("/api/accounts/{account_id}", dependencies=[Depends(require_csrf)])
def api_update_account(
    account_id: int, data: BankAccountUpdate, db: Session = Depends(get_db)
):
    return account_json(AccountService(db).update(account_id, data))


@app.post("/api/accounts/{account_id}/deactivate", dependencies=[Depends(require_csrf)])
def api_deactivate_account(account_id: int, db: Session = Depends(get_db)):
    AccountService(db).deactivate(account_id)
    return Response(status_code=204)


@app.post("/api/accounts/{account_id}/restore", dependencies=[Depends(require_csrf)])
def api_restore_account(account_id: int, db: Session = Depends(get_db)):
    AccountService(db).restore(account_id)
    return Response(status_code=204)


@app.delete("/api/accounts/{account_id}", dependencies=[Depends(require_csrf)])
def api_delete_account(account_id: int, db: Session = Depends(get_db)):
    AccountService(db).delete(account_id)
    return Response(status_code=204)


@app.post("/api/accounts/{account_id}/reconcile", dependencies=[Depends(require_csrf)])
def api_reconcile_account(account_id: int, db: Session = Depends(get_db)):
    return drift_json(ReconciliationService(db).repair_account(account_id))


# Monthly budgets


@app.get("/api/budgets")
def api_budgets(db: Session = Depends(get_db)):
    return {"items": [budget_json(b) for b in MonthlyBudgetService(db).list_all()]}


@app.get("/api/budgets/month/{year}/{month}")
def api_budget_for_month(year: int, month: str, db: Session = Depends(get_db)):
    budget = MonthlyBudgetService(db).get_for_month(year, _month(month))
    if not budget:
        raise HTTPException(status_code=404, detail="Monthly budget not found")
    return budget_json(budget)


@app.post("/api/budgets/month/{year}/{month}", dependencies=[Depends(require_csrf)])
def api_get_or_create_budget(year: int, month: str, db: Session = Depends(get_db)):
    return budget_json(MonthlyBudgetService(db).get_or_create(year, _month(month)))


@app.delete("/api/budgets/month/{year}/{month}", dependencies=[Depends(require_csrf)])
def api_delete_month(year: int, month: str, db: Session = Depends(get_db)):
    removed = MonthlyBudgetService(db).delete_month(year, _month(month))
    return {"deleted_transactions": removed}


@app.patch("/api/budgets/{budget_id}", dependencies=[Depends(require_csrf)])
def api_update_budget(
    budget_id: int, data: MonthlyBudgetIn, db: Session = Depends(get_db)
):
    return budget_json(MonthlyBudgetService(db).update(budget_id, data))


@app.post(
    "/api/budgets/{budget_id}/copy-categories", dependencies=[Depends(require_csrf)]
)
def api_copy_categories(
    budget_id: int, data: CopyCategoriesIn, db: Session = Depends(get_db)
):
    copies = MonthlyBudgetService(db).copy_categories(
        data.source_budget_id, budget_id, replace=data.replace
    )
    return {"items": [category_json(c) for c in copies]}


@app.get("/api/budgets/{budget_id}/summary")
def api_budget_summary(budget_id: int, db: Session = Depends(get_db)):
    return SummaryService(db).budget_summary(budget_id)


@app.get("/api/budgets/{budget_id}/consistency")
def api_budget_consistency(budget_id: int, db: Session = Depends(get_db)):
    report = ReconciliationService(db).validate_budget_consistency(budget_id)
    return {"is_valid": report.is_valid, "errors": report.errors}


@app.post("/api/budgets/{budget_id}/reconcile", dependencies=[Depends(require_csrf)])
def api_reconcile_budget(budget_id: int, db: Session = Depends(get_db)):
    drifts = ReconciliationService(db).reconcile_budget(budget_id)
    return {"items": [drift_json(d) for d in drifts]}


@app.get("/api/budgets/{budget_id}/categories")
def api_budget_categories(
    budget_id: int, include_archived: bool = False, db: Session = Depends(get_db)
):
    MonthlyBudgetService(db).get(budget_id)
    categories = CategoryService(db).list_for_budget(
        budget_id, include_archived=include_archived
    )
    return {"items": [category_json(c) for c in categories]}


@app.post(
    "/api/budgets/{budget_id}/categories",
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def api_create_category(
    budget_id: int, data: BudgetCategoryIn, db: Session = Depends(get_db)
):
    return category_json(CategoryService(db).create(budget_id, data))


# Categories


@app.get("/api/categories/{category_id}")
def api_category(category_id: int, db: Session = Depends(get_db)):
    return category_json(CategoryService(db).get(category_id))


@app.patch("/api/categories/{category_id}", dependencies=[Depends(require_csrf)])
def api_update_category(
    category_id: int, data: BudgetCategoryUpdate, db: Session = Depends(get_db)
):
    return category_json(CategoryService(db).update(category_id, data))


@app.post("/api/categories/{category_id}/archive", dependencies=[Depends(require_csrf)])
def api_archive_category(category_id: int, db: Session = Depends(get_db)):
    CategoryService(db).archive(category_id)
    return Response(status_code=204)


@app.post("/api/categories/{category_id}/restore", dependencies=[Depends(require_csrf)])
def api_restore_category(category_id: int, db: Session = Depends(get_db)):
    CategoryService(db).restore(category_id)
    return Response(status_code=204)


@app.delete("/api/categories/{category_id}", dependencies=[Depends(require_csrf)])
def api_delete_category(category_id: int, db: Session = Depends(get_db)):
    CategoryService(db).delete(category_id)
    return Response(status_code=204)


@app.post(
    "/api/categories/{category_id}/reconcile", dependencies=[Depends(require_csrf)]
)
def api_reconcile_category(category_id: int, db: Session = Depends(get_db)):
    return drift_json(ReconciliationService(db).repair_category(category_id))


# Transactions


@app.get("/api/transactions")
def api_transactions(
    type: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    account_id: Optional[int] = None,
    year: Optional[int] = None,
    month: Optional[str] = None,
    q: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    period = None
    if year is not None and month is not None:
        period = month_period(year, _month(month))
    filters = TransactionFilters(
        type=type,
        category_id=category_id,
        account_id=account_id,
        period=period,
        query=q,
    )
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    offset = (page - 1) * limit
    items = TransactionService(db).list(filters, limit=limit + 1, offset=offset)
    has_more = len(items) > limit
    items = items[:limit]
    return {
        "items": [transaction_json(txn) for txn in items],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions", status_code=201, dependencies=[Depends(require_csrf)])
def api_create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    return transaction_json(TransactionService(db).create(data))


@app.get("/api/transactions/{transaction_id}")
def api_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return transaction_json(TransactionService(db).get(transaction_id))


@app.patch("/api/transactions/{transaction_id}", dependencies=[Depends(require_csrf)])
def api_update_transaction(
    transaction_id: int, data: TransactionPatch, db: Session = Depends(get_db)
):
    return transaction_json(TransactionService(db).update(transaction_id, data))


@app.delete("/api/transactions/{transaction_id}", dependencies=[Depends(require_csrf)])
def api_delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    TransactionService(db).delete(transaction_id)
    return Response(status_code=204)


# Transfers


@app.get("/api/transfers")
def api_transfers(account_id: Optional[int] = None, db: Session = Depends(get_db)):
    transfers = TransferService(db).list_all(account_id=account_id)
    return {"items": [transfer_json(t) for t in transfers]}


@app.post("/api/transfers", status_code=201, dependencies=[Depends(require_csrf)])
def api_create_transfer(data: TransferIn, db: Session = Depends(get_db)):
    return transfer_json(TransferService(db).transfer(data))


@app.delete("/api/transfers/{transfer_id}", dependencies=[Depends(require_csrf)])
def api_delete_transfer(transfer_id: int, db: Session = Depends(get_db)):
    TransferService(db).delete(transfer_id)
    return Response(status_code=204)
