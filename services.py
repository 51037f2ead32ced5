from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional, Protocol
from zoneinfo import ZoneInfo

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from config import get_settings
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
from periods import (
    Period,
    TrendGranularity,
    month_period,
    month_period_for,
    month_start,
    preceding_period,
    previous_month_period,
)
from schemas import (
    CategoryIn,
    ContributionIn,
    GoalIn,
    GoalUpdateIn,
    PasswordChangeIn,
    ProfileUpdateIn,
    TransactionIn,
    TransactionUpdateIn,
    UserRegisterIn,
)
from security import hash_password, verify_password
from text_generation import GenerationServiceError, build_review_prompt

logger = logging.getLogger(__name__)

OTHER_CATEGORY = "Other"


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class AuthenticationError(ValueError):
    pass


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def local_midnight_as_utc(day: date) -> datetime:
    local = datetime.combine(day, time.min, tzinfo=ZoneInfo(get_settings().timezone))
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def percentage(part: float, total: float) -> float:
    return (part * 100 / total) if total else 0.0


def percentage_change(current: float, previous: float) -> float:
    # Left unbounded for tiny non-zero baselines.
    return ((current - previous) * 100 / previous) if previous else 0.0


def recompute_current_amount(contributions: Iterable[GoalContribution]) -> int:
    return sum(int(c.amount_cents) for c in contributions)


def goal_status(goal: Goal, today: date) -> str:
    if goal.current_amount_cents >= goal.target_amount_cents:
        return "completed"
    if goal.deadline > today:
        return "active"
    return "expired"


def active_goals_average_progress(goals: Iterable[Goal], today: date) -> float:
    active = [g for g in goals if goal_status(g, today) == "active"]
    if not active:
        return 0.0
    return sum(g.current_amount_cents / g.target_amount_cents for g in active) / len(
        active
    )


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, data: UserRegisterIn) -> User:
        email = data.email.lower()
        if self.session.scalar(select(User.id).where(User.email == email)):
            raise ConflictError("This email address is already in use")
        user = User(
            first_name=data.first_name.strip(),
            last_name=data.last_name.strip(),
            email=email,
            password_hash=hash_password(data.password),
            birth_date=data.birth_date,
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("This email address is already in use") from exc
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def authenticate(self, email: str, password: str) -> User:
        user = self.session.scalar(select(User).where(User.email == email.lower()))
        if not user or not verify_password(password, user.password_hash):
            raise AuthenticationError("Invalid email or password")
        return user

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def list_ids(self) -> list[int]:
        return list(self.session.scalars(select(User.id).order_by(User.id)).all())

    def update_profile(self, user_id: int, data: ProfileUpdateIn) -> User:
        user = self.get(user_id)
        if data.first_name:
            user.first_name = data.first_name.strip()
        if data.last_name:
            user.last_name = data.last_name.strip()
        if data.birth_date:
            user.birth_date = data.birth_date
        self.session.commit()
        self.session.refresh(user)
        return user

    def change_password(self, user_id: int, data: PasswordChangeIn) -> None:
        user = self.get(user_id)
        if not verify_password(data.current_password, user.password_hash):
            raise ValueError("Current password is incorrect")
        if data.new_password != data.confirm_new_password:
            raise ValueError("New passwords do not match")
        user.password_hash = hash_password(data.new_password)
        self.session.commit()
        logger.info(f"password_changed: user_id={user_id}")


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, txn_type: Optional[TransactionType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        if txn_type:
            stmt = stmt.where(Category.type == txn_type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def _name_taken(
        self, name: str, txn_type: TransactionType, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.type == txn_type,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if self._name_taken(name, data.type):
            raise ConflictError("Category with this name already exists")
        category = Category(user_id=self.user_id, name=name, type=data.type)
        self.session.add(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Category with this name already exists") from exc
        self.session.refresh(category)
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self.get(category_id)
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Category name is required")
        if self._name_taken(clean_name, category.type, exclude_id=category.id):
            raise ConflictError("Category with this name already exists")
        category.name = clean_name
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Category with this name already exists") from exc
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        # Transactions survive and are reported under OTHER_CATEGORY.
        self.session.execute(
            update(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.category_id == category.id,
            )
            .values(category_id=None)
        )
        self.session.delete(category)
        self.session.commit()


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    start: Optional[date] = None
    end: Optional[date] = None
    category_id: Optional[int] = None
    account_type: Optional[AccountType] = None
    sort: str = "-date"


_TRANSACTION_SORTS = {
    "-date": (Transaction.date.desc(), Transaction.id.desc()),
    "date": (Transaction.date.asc(), Transaction.id.asc()),
    "-amount": (Transaction.amount_cents.desc(), Transaction.id.desc()),
    "amount": (Transaction.amount_cents.asc(), Transaction.id.asc()),
}


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _owned_category(self, category_id: int, txn_type: TransactionType) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        if category.type != txn_type:
            raise ValueError("Category type mismatch")
        return category

    def create(self, data: TransactionIn) -> Transaction:
        self._owned_category(data.category_id, data.type)
        txn = Transaction(
            user_id=self.user_id,
            type=data.type,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            account_type=data.account_type,
            description=(data.description or "").strip() or None,
            date=data.date or local_today(),
            attachments=[a.model_dump() for a in data.attachments],
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
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

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        ordering = _TRANSACTION_SORTS.get(filters.sort, _TRANSACTION_SORTS["-date"])
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(*ordering)
        )
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.start and filters.end:
            stmt = stmt.where(Transaction.date.between(filters.start, filters.end))
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.account_type:
            stmt = stmt.where(Transaction.account_type == filters.account_type)
        return self.session.scalars(stmt).all()

    def update(self, transaction_id: int, data: TransactionUpdateIn) -> Transaction:
        txn = self.get(transaction_id)
        new_type = data.type or txn.type
        new_category_id = data.category_id or txn.category_id
        if data.type or data.category_id:
            if new_category_id is None:
                raise ValueError("Category is required")
            self._owned_category(new_category_id, new_type)

        txn.type = new_type
        txn.category_id = new_category_id
        if data.amount_cents is not None:
            txn.amount_cents = data.amount_cents
        if data.account_type is not None:
            txn.account_type = data.account_type
        if data.description is not None:
            txn.description = data.description.strip() or None
        if data.date is not None:
            txn.date = data.date
        if data.attachments is not None:
            txn.attachments = [a.model_dump() for a in data.attachments]
        self.session.commit()
        return self.get(transaction_id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Goal]:
        stmt = (
            select(Goal)
            .options(selectinload(Goal.contributions))
            .where(Goal.user_id == self.user_id)
            .order_by(Goal.deadline, Goal.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int, *, for_update: bool = False) -> Goal:
        stmt = (
            select(Goal)
            .options(selectinload(Goal.contributions))
            .where(Goal.user_id == self.user_id, Goal.id == goal_id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        goal = self.session.scalar(stmt)
        if not goal:
            raise NotFoundError("Goal not found")
        return goal

    def _commit_goal(self, goal: Goal) -> Goal:
        # Every contribution mutation funnels through here.
        goal.current_amount_cents = recompute_current_amount(goal.contributions)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(goal)
        return goal

    @staticmethod
    def _build_contributions(items: list[ContributionIn], today: date) -> list[GoalContribution]:
        return [
            GoalContribution(
                position=index,
                amount_cents=item.amount_cents,
                date=item.date or today,
                note=(item.note or "").strip() or None,
            )
            for index, item in enumerate(items)
        ]

    def create(self, data: GoalIn) -> Goal:
        goal = Goal(
            user_id=self.user_id,
            title=data.title.strip(),
            target_amount_cents=data.target_amount_cents,
            deadline=data.deadline,
        )
        goal.contributions = self._build_contributions(data.contributions, local_today())
        self.session.add(goal)
        return self._commit_goal(goal)

    def update(self, goal_id: int, data: GoalUpdateIn) -> Goal:
        goal = self.get(goal_id, for_update=True)
        if data.title is not None:
            goal.title = data.title.strip()
        if data.target_amount_cents is not None:
            goal.target_amount_cents = data.target_amount_cents
        if data.deadline is not None:
            goal.deadline = data.deadline
        if data.contributions is not None:
            goal.contributions = self._build_contributions(
                data.contributions, local_today()
            )
        return self._commit_goal(goal)

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.delete(goal)
        self.session.commit()

    def add_contribution(self, goal_id: int, data: ContributionIn) -> GoalContribution:
        goal = self.get(goal_id, for_update=True)
        next_position = max((c.position for c in goal.contributions), default=-1) + 1
        contribution = GoalContribution(
            position=next_position,
            amount_cents=data.amount_cents,
            date=data.date or local_today(),
            note=(data.note or "").strip() or None,
        )
        goal.contributions.append(contribution)
        self._commit_goal(goal)
        return contribution

    def _contribution(self, goal: Goal, contribution_id: int) -> GoalContribution:
        for contribution in goal.contributions:
            if contribution.id == contribution_id:
                return contribution
        raise NotFoundError("Contribution not found")

    def update_contribution(
        self, goal_id: int, contribution_id: int, data: ContributionIn
    ) -> GoalContribution:
        goal = self.get(goal_id, for_update=True)
        contribution = self._contribution(goal, contribution_id)
        contribution.amount_cents = data.amount_cents
        if data.date is not None:
            contribution.date = data.date
        if data.note is not None:
            contribution.note = data.note.strip() or None
        self._commit_goal(goal)
        return contribution

    def delete_contribution(self, goal_id: int, contribution_id: int) -> Goal:
        goal = self.get(goal_id, for_update=True)
        contribution = self._contribution(goal, contribution_id)
        goal.contributions.remove(contribution)
        return self._commit_goal(goal)

    def statistics(self, today: Optional[date] = None) -> dict[str, object]:
        today = today or local_today()
        goals = self.list_all()
        statuses = [goal_status(g, today) for g in goals]

        by_month: dict[str, dict[str, object]] = {}
        for goal in goals:
            key = goal.deadline.strftime("%Y-%m")
            bucket = by_month.setdefault(
                key, {"month": key, "target_amount_cents": 0, "current_amount_cents": 0}
            )
            bucket["target_amount_cents"] += goal.target_amount_cents
            bucket["current_amount_cents"] += goal.current_amount_cents

        return {
            "total_goals": len(goals),
            "active_goals": statuses.count("active"),
            "completed_goals": statuses.count("completed"),
            "total_target_amount_cents": sum(g.target_amount_cents for g in goals),
            "total_current_amount_cents": sum(g.current_amount_cents for g in goals),
            "active_goals_average_progress": active_goals_average_progress(goals, today),
            "goals_by_month": [by_month[k] for k in sorted(by_month)],
        }


CUSTOM_METRICS = ("averageTransaction", "largestTransaction", "mostFrequentCategory")


class StatisticsService:
    """Read-only aggregation over one user's transactions.

    Nothing here writes to the session, so instances can be created freely per
    request.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _scope(self, period: Period, txn_type: Optional[TransactionType]) -> list:
        clauses = [
            Transaction.user_id == self.user_id,
            Transaction.date.between(period.start, period.end),
        ]
        if txn_type:
            clauses.append(Transaction.type == txn_type)
        return clauses

    def _totals(
        self, period: Period, txn_type: Optional[TransactionType]
    ) -> dict[TransactionType, tuple[int, int]]:
        stmt = (
            select(
                Transaction.type.label("type"),
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(*self._scope(period, txn_type))
            .group_by(Transaction.type)
        )
        totals = {t: (0, 0) for t in TransactionType}
        for row in self.session.execute(stmt):
            totals[TransactionType(row.type)] = (int(row.total or 0), int(row.count or 0))
        return totals

    def _category_breakdown(
        self,
        period: Period,
        txn_type: Optional[TransactionType],
        totals: dict[TransactionType, tuple[int, int]],
    ) -> dict[str, list[dict[str, object]]]:
        amount = func.sum(Transaction.amount_cents)
        stmt = (
            select(
                Transaction.type.label("type"),
                Transaction.category_id.label("category_id"),
                Category.name.label("name"),
                amount.label("amount"),
                func.count(Transaction.id).label("count"),
            )
            .outerjoin(Category, Category.id == Transaction.category_id)
            .where(*self._scope(period, txn_type))
            .group_by(Transaction.type, Transaction.category_id, Category.name)
            .order_by(amount.desc())
        )
        breakdown: dict[str, list[dict[str, object]]] = {t.value: [] for t in TransactionType}
        for row in self.session.execute(stmt):
            row_type = TransactionType(row.type)
            type_total = totals[row_type][0]
            value = int(row.amount or 0)
            breakdown[row_type.value].append(
                {
                    "category_id": row.category_id if row.name is not None else None,
                    "category_name": row.name if row.name is not None else OTHER_CATEGORY,
                    "amount_cents": value,
                    "count": int(row.count or 0),
                    "percentage": percentage(value, type_total),
                }
            )
        return breakdown

    def _series(
        self,
        period: Period,
        txn_type: Optional[TransactionType],
        granularity: TrendGranularity,
    ) -> list[dict[str, object]]:
        bucket = func.strftime(granularity.bucket_format, Transaction.date).label("bucket")
        income = func.coalesce(
            func.sum(
                case(
                    (Transaction.type == TransactionType.income, Transaction.amount_cents),
                    else_=0,
                )
            ),
            0,
        ).label("income")
        expense = func.coalesce(
            func.sum(
                case(
                    (Transaction.type == TransactionType.expense, Transaction.amount_cents),
                    else_=0,
                )
            ),
            0,
        ).label("expense")
        stmt = (
            select(bucket, income, expense)
            .where(*self._scope(period, txn_type))
            .group_by(bucket)
            .order_by(bucket)
        )
        series = []
        for row in self.session.execute(stmt):
            income_cents = int(row.income or 0)
            expense_cents = int(row.expense or 0)
            series.append(
                {
                    "period": row.bucket,
                    "income_cents": income_cents,
                    "expense_cents": expense_cents,
                    "net_amount_cents": income_cents - expense_cents,
                }
            )
        return series

    def _comparison(
        self,
        current: dict[TransactionType, tuple[int, int]],
        previous_period: Period,
        txn_type: Optional[TransactionType],
    ) -> dict[str, float]:
        previous = self._totals(previous_period, txn_type)
        return {
            "income_change": percentage_change(
                current[TransactionType.income][0], previous[TransactionType.income][0]
            ),
            "expense_change": percentage_change(
                current[TransactionType.expense][0], previous[TransactionType.expense][0]
            ),
        }

    def _period_result(
        self, period: Period, txn_type: Optional[TransactionType]
    ) -> tuple[dict[str, object], dict[TransactionType, tuple[int, int]]]:
        totals = self._totals(period, txn_type)
        income, income_count = totals[TransactionType.income]
        expense, expense_count = totals[TransactionType.expense]
        daily = [
            {
                "date": item["period"],
                "income_cents": item["income_cents"],
                "expense_cents": item["expense_cents"],
                "net_amount_cents": item["net_amount_cents"],
            }
            for item in self._series(period, txn_type, TrendGranularity.daily)
        ]
        result: dict[str, object] = {
            "period": {"from_date": period.start.isoformat(), "to_date": period.end.isoformat()},
            "total_income_cents": income,
            "total_expense_cents": expense,
            "net_amount_cents": income - expense,
            "transaction_count": income_count + expense_count,
            "transaction_counts": {"income": income_count, "expense": expense_count},
            "category_breakdown": self._category_breakdown(period, txn_type, totals),
            "daily_breakdown": daily,
        }
        return result, totals

    def period_statistics(
        self,
        period: Period,
        txn_type: Optional[TransactionType] = None,
        *,
        compare_with_previous: bool = False,
    ) -> dict[str, object]:
        result, totals = self._period_result(period, txn_type)
        if compare_with_previous:
            result["previous_period_comparison"] = self._comparison(
                totals, preceding_period(period), txn_type
            )
        return result

    def monthly_statistics(
        self, year: int, month: int, txn_type: Optional[TransactionType] = None
    ) -> dict[str, object]:
        period = month_period(year, month)
        result, totals = self._period_result(period, txn_type)
        result["previous_month_comparison"] = self._comparison(
            totals, previous_month_period(period), txn_type
        )
        return result

    def overview(self, today: Optional[date] = None) -> dict[str, object]:
        today = today or local_today()
        return self.monthly_statistics(today.year, today.month)

    def category_statistics(
        self, period: Period, txn_type: Optional[TransactionType] = None
    ) -> list[dict[str, object]]:
        totals = self._totals(period, txn_type)
        breakdown = self._category_breakdown(period, txn_type, totals)
        categories = []
        for type_value, items in breakdown.items():
            for item in items:
                count = int(item["count"])
                categories.append(
                    {
                        "category_id": item["category_id"],
                        "category_name": item["category_name"],
                        "type": type_value,
                        "total_amount_cents": item["amount_cents"],
                        "transaction_count": count,
                        "average_amount_cents": item["amount_cents"] / count if count else 0,
                        "percentage": item["percentage"],
                    }
                )
        categories.sort(key=lambda c: c["total_amount_cents"], reverse=True)
        return categories

    def trend_statistics(
        self,
        granularity: TrendGranularity,
        period: Period,
        txn_type: Optional[TransactionType] = None,
    ) -> list[dict[str, object]]:
        return self._series(period, txn_type, granularity)

    def custom_statistics(
        self,
        metrics: list[str],
        period: Period,
        txn_type: Optional[TransactionType] = None,
    ) -> dict[str, object]:
        requested = [m for m in metrics if m in CUSTOM_METRICS]
        if not requested:
            raise ValueError(
                f"At least one metric is required: {', '.join(CUSTOM_METRICS)}"
            )
        scope = self._scope(period, txn_type)
        result: dict[str, object] = {}

        if "averageTransaction" in requested:
            avg = self.session.execute(
                select(func.avg(Transaction.amount_cents)).where(*scope)
            ).scalar_one()
            result["average_transaction_amount_cents"] = float(avg or 0)

        if "largestTransaction" in requested:
            row = self.session.execute(
                select(
                    Transaction.amount_cents,
                    Transaction.description,
                    Transaction.date,
                    Category.name.label("category_name"),
                )
                .outerjoin(Category, Category.id == Transaction.category_id)
                .where(*scope)
                .order_by(Transaction.amount_cents.desc(), Transaction.id.asc())
                .limit(1)
            ).first()
            result["largest_transaction"] = (
                {
                    "amount_cents": row.amount_cents,
                    "description": row.description,
                    "date": row.date.isoformat(),
                    "category_name": row.category_name or OTHER_CATEGORY,
                }
                if row
                else None
            )

        if "mostFrequentCategory" in requested:
            count = func.count(Transaction.id)
            row = self.session.execute(
                select(
                    Category.name.label("category_name"),
                    count.label("transaction_count"),
                    func.sum(Transaction.amount_cents).label("total_amount"),
                )
                .outerjoin(Category, Category.id == Transaction.category_id)
                .where(*scope)
                .group_by(Transaction.category_id, Category.name)
                .order_by(count.desc(), func.sum(Transaction.amount_cents).desc())
                .limit(1)
            ).first()
            result["most_frequent_category"] = (
                {
                    "category_name": row.category_name or OTHER_CATEGORY,
                    "transaction_count": int(row.transaction_count),
                    "total_amount_cents": int(row.total_amount or 0),
                }
                if row
                else None
            )
        return result


class TextGenerator(Protocol):
    def check_available(self) -> None: ...

    def generate(self, prompt: str) -> str: ...


@dataclass
class ReviewOutcome:
    status: str  # "existing", "skipped" or "generated"
    review: Optional[MonthlyReview] = None
    current_month: Optional[dict[str, object]] = None


NO_TRANSACTIONS_MESSAGE = "No transactions found for this month."


class MonthlyReviewService:
    """Cache-aside monthly reviews: at most one per user and calendar month.

    A month with no transactions is skipped without writing anything. The
    first request (or the scheduled batch) for a month with activity asks the
    text generator for an analysis and stores it; every later request is
    served from the stored row. Concurrent creators are arbitrated by the
    ``(user_id, month)`` unique constraint and the loser reads the winner's
    row back.
    """

    def __init__(self, session: Session, generator: TextGenerator) -> None:
        self.session = session
        self.generator = generator

    def _find(self, user_id: int, month: date) -> Optional[MonthlyReview]:
        return self.session.scalar(
            select(MonthlyReview).where(
                MonthlyReview.user_id == user_id, MonthlyReview.month == month
            )
        )

    def list_reviews(self, user_id: int) -> list[MonthlyReview]:
        stmt = (
            select(MonthlyReview)
            .where(MonthlyReview.user_id == user_id)
            .order_by(MonthlyReview.month.desc())
        )
        return self.session.scalars(stmt).all()

    def month_snapshot(
        self, user_id: int, period: Period, today: date
    ) -> dict[str, object]:
        stats = StatisticsService(self.session, user_id).period_statistics(period)
        breakdown = stats["category_breakdown"]

        def by_name(items: list[dict[str, object]]) -> dict[str, int]:
            out: dict[str, int] = {}
            for item in items:
                name = str(item["category_name"])
                out[name] = out.get(name, 0) + int(item["amount_cents"])
            return out

        # created_at is naive UTC; cut off at local midnight after the month ends.
        cutoff = local_midnight_as_utc(period.end + timedelta(days=1))
        goals = self.session.scalars(
            select(Goal)
            .options(selectinload(Goal.contributions))
            .where(Goal.user_id == user_id, Goal.created_at < cutoff)
        ).all()
        as_of = min(today, period.end)
        statuses = [goal_status(g, as_of) for g in goals]
        contributed = sum(
            c.amount_cents
            for g in goals
            for c in g.contributions
            if period.start <= c.date <= period.end
        )

        income = int(stats["total_income_cents"])
        expense = int(stats["total_expense_cents"])
        count = int(stats["transaction_count"])
        return {
            "period": {
                "start": period.start.isoformat(),
                "end": period.end.isoformat(),
                "month": period.start.strftime("%B %Y"),
            },
            "transaction_count": count,
            "average_transactions_per_day": count / period.days,
            "total_income_cents": income,
            "total_expense_cents": expense,
            "net_balance_cents": income - expense,
            "saving_rate": (1 - expense / income) if income > 0 else 0.0,
            "expenses_by_category": by_name(breakdown["expense"]),
            "income_by_source": by_name(breakdown["income"]),
            "active_goal_count": statuses.count("active"),
            "completed_goal_count": statuses.count("completed"),
            "active_goals_average_progress": active_goals_average_progress(goals, as_of),
            "goals_contribution_cents": contributed,
        }

    def _store(
        self,
        user_id: int,
        month: date,
        current: dict[str, object],
        previous: dict[str, object],
        analysis_text: str,
    ) -> tuple[MonthlyReview, bool]:
        review = MonthlyReview(
            user_id=user_id,
            month=month,
            current_month_data=current,
            previous_month_data=previous,
            analysis_text=analysis_text,
        )
        self.session.add(review)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self._find(user_id, month)
            if existing is None:
                raise
            logger.info(
                f"monthly_review_conflict: user_id={user_id} month={month.isoformat()}"
            )
            return existing, False
        self.session.refresh(review)
        return review, True

    def _ensure(self, user_id: int, today: date, *, preflight: bool) -> ReviewOutcome:
        current_period = month_period_for(today)
        month = month_start(today)

        existing = self._find(user_id, month)
        if existing:
            return ReviewOutcome("existing", existing)

        current = self.month_snapshot(user_id, current_period, today)
        if current["transaction_count"] == 0:
            return ReviewOutcome("skipped", current_month=current)

        if preflight:
            self.generator.check_available()

        user = UserService(self.session).get(user_id)
        previous = self.month_snapshot(
            user_id, previous_month_period(current_period), today
        )
        prompt = build_review_prompt(current, previous, user.full_name)
        analysis_text = self.generator.generate(prompt)

        review, created = self._store(user_id, month, current, previous, analysis_text)
        return ReviewOutcome("generated" if created else "existing", review)

    def get_or_create(
        self, user_id: int, today: Optional[date] = None
    ) -> dict[str, object]:
        today = today or local_today()
        outcome = self._ensure(user_id, today, preflight=True)
        if outcome.status == "skipped":
            return {
                "month": month_start(today).isoformat(),
                "current_month": outcome.current_month,
                "previous_month": None,
                "analysis_text": None,
                "is_active": False,
                "is_cached": False,
                "message": NO_TRANSACTIONS_MESSAGE,
            }
        review = outcome.review
        return {
            "month": review.month.isoformat(),
            "current_month": review.current_month_data,
            "previous_month": review.previous_month_data,
            "analysis_text": review.analysis_text,
            "is_active": True,
            "is_cached": outcome.status == "existing",
        }

    def generate_for_all_users(self, today: Optional[date] = None) -> dict[str, int]:
        today = today or local_today()
        month_label = month_start(today).isoformat()
        summary = {"generated": 0, "existing": 0, "skipped": 0, "failed": 0}
        logger.info(f"monthly_review_batch: started month={month_label}")

        try:
            self.generator.check_available()
        except GenerationServiceError as exc:
            logger.error(
                f"monthly_review_batch: aborted month={month_label} "
                f"reason=generation_service_unavailable error={exc}"
            )
            summary["aborted"] = 1
            return summary

        for user_id in UserService(self.session).list_ids():
            try:
                outcome = self._ensure(user_id, today, preflight=False)
            except Exception:
                self.session.rollback()
                summary["failed"] += 1
                logger.exception(
                    f"monthly_review_batch: user_id={user_id} status=failed"
                )
                continue
            summary[outcome.status] += 1
            logger.info(
                f"monthly_review_batch: user_id={user_id} status={outcome.status}"
            )

        logger.info(
            f"monthly_review_batch: finished month={month_label} "
            + " ".join(f"{k}={v}" for k, v in summary.items())
        )
        return summary
