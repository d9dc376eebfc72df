import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from sqlalchemy.orm import Session

from auth import bearer_token, issue_token, read_token
from config import get_settings
from database import SessionLocal
from errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PersistenceFailure,
    ValidationError,
)
from models import TransactionType
from money import from_cents
from periods import Period, resolve_period, today
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdateIn,
    BudgetIn,
    BudgetOut,
    CategoryIn,
    CategoryOut,
    DashboardSummaryOut,
    ImportResultOut,
    LoginIn,
    ReconcileOut,
    TokenOut,
    TransactionIn,
    TransactionOut,
    TransactionPageOut,
    UserRegisterIn,
    YearlySummaryOut,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    CSVService,
    DashboardService,
    TransactionFilters,
    TransactionService,
    UserService,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def _error(status_code: int, exc: Exception, code: str, **kwargs) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"detail": str(exc), "code": code}, **kwargs
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, exc, "not_found")


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return _error(409, exc, exc.code)


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return _error(400, exc, exc.code)


@app.exception_handler(AuthenticationError)
async def authentication_handler(request: Request, exc: AuthenticationError):
    return _error(401, exc, "unauthorized", headers={"WWW-Authenticate": "Bearer"})


@app.exception_handler(PersistenceFailure)
async def persistence_handler(request: Request, exc: PersistenceFailure):
    logger.error(f"persistence_failure: path={request.url.path}")
    return _error(503, exc, "persistence_failure")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> int:
    user_id = read_token(bearer_token(authorization))
    UserService(db).get_active(user_id)
    return user_id


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    def _int_param(name: str) -> Optional[int]:
        raw = request.query_params.get(name)
        if not raw:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    type_param = request.query_params.get("type")
    txn_type = None
    if type_param:
        try:
            txn_type = TransactionType(type_param.lower())
        except ValueError:
            txn_type = None
    return TransactionFilters(
        type=txn_type,
        category_id=_int_param("category"),
        account_id=_int_param("account"),
        query=request.query_params.get("q"),
    )


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


# auth


@app.post("/api/auth/register", response_model=TokenOut, status_code=201)
def register(data: UserRegisterIn, db: Session = Depends(get_db)):
    user = UserService(db).register(data)
    return TokenOut(
        token=issue_token(user.id, user.email),
        user_id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
    )


@app.post("/api/auth/login", response_model=TokenOut)
def login(data: LoginIn, db: Session = Depends(get_db)):
    user = UserService(db).authenticate(data.email, data.password)
    logger.info(f"login: user_id={user.id}")
    return TokenOut(
        token=issue_token(user.id, user.email),
        user_id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
    )


@app.get("/api/auth/validate", response_model=TokenOut)
def validate_token(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    token = bearer_token(authorization)
    user = UserService(db).get_active(read_token(token))
    return TokenOut(
        token=token,
        user_id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
    )


# accounts


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(
    include_inactive: bool = False,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return AccountService(db, user_id).list_all(include_inactive=include_inactive)


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(
    data: AccountIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return AccountService(db, user_id).create(data)


@app.get("/api/accounts/{account_id}", response_model=AccountOut)
def get_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return AccountService(db, user_id).get(account_id)


@app.get("/api/accounts/{account_id}/reconcile", response_model=ReconcileOut)
def reconcile_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    stored, computed = AccountService(db, user_id).reconcile(account_id)
    return ReconcileOut(
        account_id=account_id,
        balance=from_cents(stored),
        computed_balance=from_cents(computed),
        drift=from_cents(stored - computed),
    )


@app.put("/api/accounts/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int,
    data: AccountUpdateIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return AccountService(db, user_id).update(account_id, data)


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    AccountService(db, user_id).deactivate(account_id)
    return Response(status_code=204)


# categories


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(
    type: Optional[TransactionType] = None,
    include_inactive: bool = False,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).list_all(
        type=type, include_inactive=include_inactive
    )


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).create(data)


@app.get("/api/categories/{category_id}", response_model=CategoryOut)
def get_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).get(category_id)


@app.put("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).update(category_id, data)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    CategoryService(db, user_id).deactivate(category_id)
    return Response(status_code=204)


# transactions


@app.get("/api/transactions", response_model=TransactionPageOut)
def list_transactions(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    filters = filters_from_request(request)
    offset = (page - 1) * limit
    items = TransactionService(db, user_id).list(
        period, filters, limit=limit + 1, offset=offset
    )
    has_more = len(items) > limit
    return TransactionPageOut(
        items=[TransactionOut.from_model(txn) for txn in items[:limit]],
        page=page,
        limit=limit,
        has_more=has_more,
    )


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user_id).create(data)
    return TransactionOut.from_model(txn)


@app.get("/api/transactions/export.csv")
def export_transactions_endpoint(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    filters = filters_from_request(request)
    transactions = TransactionService(db, user_id).all_for_period(period, filters)
    csv_text = CSVService(db, user_id).export(transactions)
    filename = f"transactions-{today().isoformat()}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/transactions/import", response_model=ImportResultOut, status_code=201)
async def import_transactions(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    raw = await request.body()
    try:
        content = raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationError("CSV must be UTF-8 encoded") from exc
    imported = CSVService(db, user_id).commit(content)
    logger.info(f"csv_import: user_id={user_id} imported={imported}")
    return ImportResultOut(imported=imported)


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionOut.from_model(TransactionService(db, user_id).get(transaction_id))


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    data: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user_id).update(transaction_id, data)
    return TransactionOut.from_model(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    TransactionService(db, user_id).delete(transaction_id)
    return Response(status_code=204)


# budgets


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    rendered = BudgetService(db, user_id).list_active()
    return [BudgetOut.from_model(budget, progress) for budget, progress in rendered]


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(
    data: BudgetIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    budget, progress = BudgetService(db, user_id).create(data)
    return BudgetOut.from_model(budget, progress)


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    budget, progress = BudgetService(db, user_id).get(budget_id)
    return BudgetOut.from_model(budget, progress)


@app.put("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    data: BudgetIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    budget, progress = BudgetService(db, user_id).update(budget_id, data)
    return BudgetOut.from_model(budget, progress)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    BudgetService(db, user_id).deactivate(budget_id)
    return Response(status_code=204)


# dashboard


@app.get("/api/dashboard/summary", response_model=DashboardSummaryOut)
def dashboard_summary(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    return DashboardSummaryOut(**DashboardService(db, user_id).summary(period))


@app.get(
    "/api/dashboard/recent-transactions", response_model=list[TransactionOut]
)
def dashboard_recent(
    limit: int = Query(default=5, ge=1, le=50),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    txns = TransactionService(db, user_id).recent(limit)
    return [TransactionOut.from_model(txn) for txn in txns]


@app.get("/api/dashboard/yearly-summary", response_model=YearlySummaryOut)
def dashboard_yearly(
    year: Optional[int] = Query(default=None, ge=1970, le=3000),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    year = year or today().year
    return YearlySummaryOut(**DashboardService(db, user_id).yearly(year))


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
