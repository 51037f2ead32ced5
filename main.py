import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from database import get_db, init_db
from models import (
    AccountType,
    Category,
    Goal,
    GoalContribution,
    MonthlyReview,
    Transaction,
    TransactionType,
    User,
)
from periods import Period, TrendGranularity, resolve_range
from scheduler import SchedulerManager
from schemas import (
    CategoryIn,
    CategoryRenameIn,
    ContributionIn,
    GoalIn,
    GoalUpdateIn,
    LoginIn,
    PasswordChangeIn,
    ProfileUpdateIn,
    TransactionIn,
    TransactionUpdateIn,
    UserRegisterIn,
)
from security import FixedWindowRateLimiter, issue_access_token, verify_access_token
from services import (
    AuthenticationError,
    CategoryService,
    GoalService,
    MonthlyReviewService,
    NotFoundError,
    StatisticsService,
    TextGenerator,
    TransactionFilters,
    TransactionService,
    UserService,
    goal_status,
    local_today,
)
from text_generation import GeminiTextGenerator, GenerationServiceError

logger = logging.getLogger(__name__)

ACCESS_COOKIE = "access_token"


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


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    generator = GeminiTextGenerator()
    app.state.text_generator = generator
    scheduler_manager = SchedulerManager(generator)
    scheduler_manager.start()
    try:
        yield
    finally:
        scheduler_manager.stop()


app = FastAPI(title="Finance Tracker", version=APP_VERSION, lifespan=lifespan)

_settings = get_settings()
app.state.account_limiter = FixedWindowRateLimiter(
    _settings.account_rate_limit, _settings.account_rate_window_secs
)


def _error(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message},
        headers=headers,
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail), getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return _error(400, message)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, str(exc))


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError):
    return _error(401, str(exc))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(400, str(exc))


@app.exception_handler(GenerationServiceError)
async def generation_error_handler(request: Request, exc: GenerationServiceError):
    logger.error(f"text_generation_failed: path={request.url.path} error={exc}")
    return _error(500, "Monthly review could not be generated, please try again later")


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"unhandled_error: path={request.url.path}", exc_info=exc)
    return _error(500, "Internal server error")


def ok(data=None) -> dict[str, object]:
    return {"success": True, "data": data}


def get_text_generator(request: Request) -> TextGenerator:
    return request.app.state.text_generator


def get_account_limiter(request: Request) -> FixedWindowRateLimiter:
    return request.app.state.account_limiter


def current_user_id(request: Request, db: Session = Depends(get_db)) -> int:
    token = None
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
    if not token:
        token = request.cookies.get(ACCESS_COOKIE)
    user_id = verify_access_token(token) if token else None
    if user_id is None or db.get(User, user_id) is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id


def enforce_account_limit(
    request: Request, limiter: FixedWindowRateLimiter, account: str
) -> None:
    client = request.client.host if request.client else "unknown"
    identity = f"{client}:{account.lower()}"
    if not limiter.hit(identity):
        retry_after = int(limiter.retry_after(identity)) + 1
        logger.warning(f"rate_limited: path={request.url.path} identity={identity}")
        raise HTTPException(
            status_code=429,
            detail="Too many attempts, please try again later",
            headers={"Retry-After": str(retry_after)},
        )


def period_from_query(start: Optional[str], end: Optional[str]) -> Period:
    return resolve_range(start, end, today=local_today())


def type_from_query(value: Optional[str]) -> Optional[TransactionType]:
    if not value or value == "all":
        return None
    try:
        return TransactionType(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid transaction type") from exc


def serialize_user(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "email": user.email,
        "birth_date": user.birth_date.isoformat() if user.birth_date else None,
        "role": user.role.value,
    }


def serialize_category(category: Category) -> dict[str, object]:
    return {"id": category.id, "name": category.name, "type": category.type.value}


def serialize_transaction(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "category_id": txn.category_id,
        "category": txn.category.name if txn.category else None,
        "account_type": txn.account_type.value,
        "description": txn.description,
        "date": txn.date.isoformat(),
        "attachments": txn.attachments or [],
    }


def serialize_contribution(contribution: GoalContribution) -> dict[str, object]:
    return {
        "id": contribution.id,
        "amount_cents": contribution.amount_cents,
        "date": contribution.date.isoformat(),
        "note": contribution.note,
    }


def serialize_goal(goal: Goal, today: date) -> dict[str, object]:
    return {
        "id": goal.id,
        "title": goal.title,
        "target_amount_cents": goal.target_amount_cents,
        "current_amount_cents": goal.current_amount_cents,
        "deadline": goal.deadline.isoformat(),
        "status": goal_status(goal, today),
        "contributions": [serialize_contribution(c) for c in goal.contributions],
    }


def serialize_review(review: MonthlyReview) -> dict[str, object]:
    return {
        "id": review.id,
        "month": review.month.isoformat(),
        "current_month": review.current_month_data,
        "previous_month": review.previous_month_data,
        "analysis_text": review.analysis_text,
        "created_at": review.created_at.isoformat(),
    }


@app.get("/api/health")
def health():
    return ok({"status": "ok", "version": APP_VERSION})


@app.post("/api/auth/register", status_code=201)
def register(
    payload: UserRegisterIn,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    limiter: FixedWindowRateLimiter = Depends(get_account_limiter),
):
    enforce_account_limit(request, limiter, payload.email)
    user = UserService(db).register(payload)
    token = issue_access_token(user.id)
    response.set_cookie(ACCESS_COOKIE, token, httponly=True, samesite="lax")
    return ok({"user": serialize_user(user), "token": token})


@app.post("/api/auth/login")
def login(
    payload: LoginIn,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    limiter: FixedWindowRateLimiter = Depends(get_account_limiter),
):
    enforce_account_limit(request, limiter, payload.email)
    user = UserService(db).authenticate(payload.email, payload.password)
    token = issue_access_token(user.id)
    response.set_cookie(ACCESS_COOKIE, token, httponly=True, samesite="lax")
    logger.info(f"user_login: user_id={user.id}")
    return ok({"user": serialize_user(user), "token": token})


@app.post("/api/auth/logout")
def logout(response: Response, user_id: int = Depends(current_user_id)):
    response.delete_cookie(ACCESS_COOKIE)
    return ok({"message": "Logged out"})


@app.get("/api/auth/profile")
@app.get("/api/users/profile")
def get_profile(db: Session = Depends(get_db), user_id: int = Depends(current_user_id)):
    return ok(serialize_user(UserService(db).get(user_id)))


@app.put("/api/users/profile")
def update_profile(
    payload: ProfileUpdateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(serialize_user(UserService(db).update_profile(user_id, payload)))


@app.put("/api/users/password")
def change_password(
    payload: PasswordChangeIn,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    limiter: FixedWindowRateLimiter = Depends(get_account_limiter),
):
    enforce_account_limit(request, limiter, f"user-{user_id}")
    UserService(db).change_password(user_id, payload)
    return ok({"message": "Password updated"})


@app.get("/api/categories")
def list_categories(
    type: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    categories = CategoryService(db, user_id).list_all(type_from_query(type))
    return ok([serialize_category(c) for c in categories])


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(serialize_category(CategoryService(db, user_id).create(payload)))


@app.put("/api/categories/{category_id}")
def rename_category(
    category_id: int,
    payload: CategoryRenameIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    category = CategoryService(db, user_id).rename(category_id, payload.name)
    return ok(serialize_category(category))


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    CategoryService(db, user_id).delete(category_id)
    return ok({"message": "Category deleted"})


@app.get("/api/transactions")
def list_transactions(
    type: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    category_id: Optional[int] = None,
    account_type: Optional[str] = None,
    sort: str = "-date",
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    period = period_from_query(start, end) if (start or end) else None
    try:
        account = AccountType(account_type) if account_type else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid account type") from exc
    filters = TransactionFilters(
        type=type_from_query(type),
        start=period.start if period else None,
        end=period.end if period else None,
        category_id=category_id,
        account_type=account,
        sort=sort,
    )
    items = TransactionService(db, user_id).list(filters)
    return ok([serialize_transaction(t) for t in items])


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = TransactionService(db, user_id)
    txn = service.create(payload)
    return ok(serialize_transaction(service.get(txn.id)))


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(serialize_transaction(TransactionService(db, user_id).get(transaction_id)))


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    txn = TransactionService(db, user_id).update(transaction_id, payload)
    return ok(serialize_transaction(txn))


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    TransactionService(db, user_id).delete(transaction_id)
    return ok({"message": "Transaction deleted"})


@app.get("/api/goals")
def list_goals(db: Session = Depends(get_db), user_id: int = Depends(current_user_id)):
    today = local_today()
    return ok([serialize_goal(g, today) for g in GoalService(db, user_id).list_all()])


@app.post("/api/goals", status_code=201)
def create_goal(
    payload: GoalIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    goal = GoalService(db, user_id).create(payload)
    return ok(serialize_goal(goal, local_today()))


@app.get("/api/goals/statistics")
def goal_statistics(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return ok(GoalService(db, user_id).statistics(local_today()))


@app.get("/api/goals/{goal_id}")
def get_goal(
    goal_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(serialize_goal(GoalService(db, user_id).get(goal_id), local_today()))


@app.put("/api/goals/{goal_id}")
def update_goal(
    goal_id: int,
    payload: GoalUpdateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    goal = GoalService(db, user_id).update(goal_id, payload)
    return ok(serialize_goal(goal, local_today()))


@app.delete("/api/goals/{goal_id}")
def delete_goal(
    goal_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    GoalService(db, user_id).delete(goal_id)
    return ok({"message": "Goal deleted"})


@app.post("/api/goals/{goal_id}/contributions", status_code=201)
def add_contribution(
    goal_id: int,
    payload: ContributionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = GoalService(db, user_id)
    service.add_contribution(goal_id, payload)
    return ok(serialize_goal(service.get(goal_id), local_today()))


@app.put("/api/goals/{goal_id}/contributions/{contribution_id}")
def update_contribution(
    goal_id: int,
    contribution_id: int,
    payload: ContributionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = GoalService(db, user_id)
    service.update_contribution(goal_id, contribution_id, payload)
    return ok(serialize_goal(service.get(goal_id), local_today()))


@app.delete("/api/goals/{goal_id}/contributions/{contribution_id}")
def delete_contribution(
    goal_id: int,
    contribution_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    goal = GoalService(db, user_id).delete_contribution(goal_id, contribution_id)
    return ok(serialize_goal(goal, local_today()))


@app.get("/api/statistics")
def statistics_overview(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return ok(StatisticsService(db, user_id).overview(local_today()))


@app.get("/api/statistics/period")
def period_statistics(
    start: Optional[str] = None,
    end: Optional[str] = None,
    type: Optional[str] = None,
    compare_with_previous: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    period = period_from_query(start, end)
    data = StatisticsService(db, user_id).period_statistics(
        period, type_from_query(type), compare_with_previous=compare_with_previous
    )
    return ok(data)


@app.get("/api/statistics/monthly")
def monthly_statistics(
    year: Optional[int] = None,
    month: Optional[int] = None,
    type: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    today = local_today()
    data = StatisticsService(db, user_id).monthly_statistics(
        year or today.year, month or today.month, type_from_query(type)
    )
    return ok(data)


@app.get("/api/statistics/categories")
def category_statistics(
    start: Optional[str] = None,
    end: Optional[str] = None,
    type: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    period = period_from_query(start, end)
    data = StatisticsService(db, user_id).category_statistics(period, type_from_query(type))
    return ok(data)


@app.get("/api/statistics/trends")
def trend_statistics(
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    type: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    granularity = TrendGranularity.parse(period)
    data = StatisticsService(db, user_id).trend_statistics(
        granularity, period_from_query(start, end), type_from_query(type)
    )
    return ok({"granularity": granularity.value, "trends": data})


@app.get("/api/statistics/custom")
def custom_statistics(
    metrics: str = "",
    start: Optional[str] = None,
    end: Optional[str] = None,
    type: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    requested = [m.strip() for m in metrics.split(",") if m.strip()]
    data = StatisticsService(db, user_id).custom_statistics(
        requested, period_from_query(start, end), type_from_query(type)
    )
    return ok(data)


@app.get("/api/monthly-review")
def monthly_review(
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    generator: TextGenerator = Depends(get_text_generator),
):
    data = MonthlyReviewService(db, generator).get_or_create(user_id, local_today())
    return ok(data)


@app.get("/api/monthly-review/all")
def all_monthly_reviews(
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    generator: TextGenerator = Depends(get_text_generator),
):
    reviews = MonthlyReviewService(db, generator).list_reviews(user_id)
    return ok([serialize_review(r) for r in reviews])
