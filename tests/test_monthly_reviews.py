from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import AccountType, MonthlyReview, TransactionType, User
from periods import month_period
from schemas import CategoryIn, ContributionIn, GoalIn, TransactionIn
from services import (
    CategoryService,
    GoalService,
    MonthlyReviewService,
    TransactionService,
    local_midnight_as_utc,
)
from text_generation import GenerationServiceError

TODAY = date(2024, 5, 25)


class FakeGenerator:
    def __init__(self, text: str = "Nice work this month.", available: bool = True) -> None:
        self.text = text
        self.available = available
        self.checks = 0
        self.prompts: list[str] = []
        self.fail_for: set[str] = set()

    def check_available(self) -> None:
        self.checks += 1
        if not self.available:
            raise GenerationServiceError("Text generation service is unreachable")

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if any(name in prompt for name in self.fail_for):
            raise GenerationServiceError("Text generation request failed")
        return self.text


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def make_user(session: Session, first_name: str = "Ada", email: str = "ada@example.com") -> User:
    user = User(first_name=first_name, last_name="User", email=email, password_hash="x")
    session.add(user)
    session.commit()
    return user


def add_activity(session: Session, user: User, day: date, income: int, expense: int) -> None:
    categories = CategoryService(session, user.id)
    existing = {(c.name, c.type) for c in categories.list_all()}
    if ("Salary", TransactionType.income) not in existing:
        categories.create(CategoryIn(name="Salary", type=TransactionType.income))
        categories.create(CategoryIn(name="Food", type=TransactionType.expense))
    by_name = {c.name: c for c in categories.list_all()}
    txns = TransactionService(session, user.id)
    txns.create(
        TransactionIn(
            type=TransactionType.income,
            amount_cents=income,
            category_id=by_name["Salary"].id,
            account_type=AccountType.bank,
            date=day,
        )
    )
    txns.create(
        TransactionIn(
            type=TransactionType.expense,
            amount_cents=expense,
            category_id=by_name["Food"].id,
            account_type=AccountType.cash,
            date=day,
        )
    )


def review_count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(MonthlyReview))


def test_month_without_transactions_is_skipped_without_generation() -> None:
    with make_session() as session:
        user = make_user(session)
        generator = FakeGenerator()

        payload = MonthlyReviewService(session, generator).get_or_create(user.id, TODAY)

        assert payload["is_active"] is False
        assert payload["analysis_text"] is None
        assert payload["message"]
        assert generator.checks == 0
        assert generator.prompts == []
        assert review_count(session) == 0


def test_first_review_is_generated_then_served_from_cache() -> None:
    with make_session() as session:
        user = make_user(session)
        add_activity(session, user, date(2024, 5, 3), income=500000, expense=200000)
        generator = FakeGenerator()
        service = MonthlyReviewService(session, generator)

        first = service.get_or_create(user.id, TODAY)
        assert first["is_active"] is True
        assert first["is_cached"] is False
        assert first["analysis_text"] == "Nice work this month."
        assert first["month"] == "2024-05-01"
        assert "first month" in generator.prompts[0]

        second = service.get_or_create(user.id, date(2024, 5, 31))
        assert second["is_cached"] is True
        assert second["analysis_text"] == first["analysis_text"]
        assert len(generator.prompts) == 1
        assert review_count(session) == 1


def test_previous_month_activity_switches_to_comparison_prompt() -> None:
    with make_session() as session:
        user = make_user(session)
        add_activity(session, user, date(2024, 4, 10), income=400000, expense=100000)
        add_activity(session, user, date(2024, 5, 3), income=500000, expense=200000)
        generator = FakeGenerator()

        payload = MonthlyReviewService(session, generator).get_or_create(user.id, TODAY)

        assert '"previous_month"' in generator.prompts[0]
        assert "first month" not in generator.prompts[0]
        assert payload["previous_month"]["total_income_cents"] == 400000
        assert payload["current_month"]["total_expense_cents"] == 200000


def test_generation_failures_persist_nothing() -> None:
    with make_session() as session:
        user = make_user(session)
        add_activity(session, user, date(2024, 5, 3), income=500000, expense=200000)

        unavailable = FakeGenerator(available=False)
        with pytest.raises(GenerationServiceError):
            MonthlyReviewService(session, unavailable).get_or_create(user.id, TODAY)
        assert unavailable.prompts == []

        failing = FakeGenerator()
        failing.fail_for.add("Ada User")
        with pytest.raises(GenerationServiceError):
            MonthlyReviewService(session, failing).get_or_create(user.id, TODAY)

        assert review_count(session) == 0


def test_month_snapshot_fields() -> None:
    with make_session() as session:
        user = make_user(session)
        add_activity(session, user, date(2024, 5, 3), income=500000, expense=200000)
        goals = GoalService(session, user.id)
        goal = goals.create(
            GoalIn(
                title="Emergency fund",
                target_amount_cents=100000,
                deadline=date(2024, 12, 31),
                contributions=[
                    ContributionIn(amount_cents=3000, date=date(2024, 4, 10)),
                    ContributionIn(amount_cents=5000, date=date(2024, 5, 10)),
                ],
            )
        )
        later = goals.create(
            GoalIn(title="Next year", target_amount_cents=1000, deadline=date(2025, 6, 1))
        )
        goal.created_at = datetime(2024, 5, 1, 9, 0)
        later.created_at = datetime(2024, 6, 2, 9, 0)
        session.commit()

        snapshot = MonthlyReviewService(session, FakeGenerator()).month_snapshot(
            user.id, month_period(2024, 5), TODAY
        )

        assert snapshot["period"] == {"start": "2024-05-01", "end": "2024-05-31", "month": "May 2024"}
        assert snapshot["transaction_count"] == 2
        assert snapshot["average_transactions_per_day"] == pytest.approx(2 / 31)
        assert snapshot["net_balance_cents"] == 300000
        assert snapshot["saving_rate"] == pytest.approx(0.6)
        assert snapshot["expenses_by_category"] == {"Food": 200000}
        assert snapshot["income_by_source"] == {"Salary": 500000}
        assert snapshot["active_goal_count"] == 1
        assert snapshot["completed_goal_count"] == 0
        assert snapshot["active_goals_average_progress"] == pytest.approx(0.08)
        assert snapshot["goals_contribution_cents"] == 5000


def test_saving_rate_is_zero_without_income() -> None:
    with make_session() as session:
        user = make_user(session)
        snapshot = MonthlyReviewService(session, FakeGenerator()).month_snapshot(
            user.id, month_period(2024, 5), TODAY
        )
        assert snapshot["saving_rate"] == 0.0
        assert snapshot["transaction_count"] == 0


def test_past_month_snapshot_reports_goals_as_of_month_end() -> None:
    with make_session() as session:
        user = make_user(session)
        goal = GoalService(session, user.id).create(
            GoalIn(
                title="Spring trip",
                target_amount_cents=10000,
                deadline=date(2024, 5, 15),
                contributions=[ContributionIn(amount_cents=2500, date=date(2024, 4, 5))],
            )
        )
        goal.created_at = datetime(2024, 4, 1, 9, 0)
        session.commit()

        snapshot = MonthlyReviewService(session, FakeGenerator()).month_snapshot(
            user.id, month_period(2024, 4), date(2024, 7, 1)
        )

        assert snapshot["active_goal_count"] == 1
        assert snapshot["completed_goal_count"] == 0
        assert snapshot["active_goals_average_progress"] == pytest.approx(0.25)


def test_goal_cutoff_uses_local_midnight() -> None:
    # Europe/Istanbul is UTC+3, so June 1 starts at 21:00 UTC on May 31.
    assert local_midnight_as_utc(date(2024, 6, 1)) == datetime(2024, 5, 31, 21, 0)

    with make_session() as session:
        user = make_user(session)
        goals = GoalService(session, user.id)
        late_may = goals.create(
            GoalIn(title="Late May", target_amount_cents=1000, deadline=date(2024, 12, 31))
        )
        early_june = goals.create(
            GoalIn(title="Early June", target_amount_cents=1000, deadline=date(2024, 12, 31))
        )
        late_may.created_at = datetime(2024, 5, 31, 20, 30)
        early_june.created_at = datetime(2024, 5, 31, 21, 30)
        session.commit()

        snapshot = MonthlyReviewService(session, FakeGenerator()).month_snapshot(
            user.id, month_period(2024, 5), TODAY
        )

        assert snapshot["active_goal_count"] == 1


def test_losing_an_insert_race_returns_the_stored_review(tmp_path) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'reviews.db'}")
    Base.metadata.create_all(engine)

    class RacingGenerator(FakeGenerator):
        def generate(self, prompt: str) -> str:
            with Session(engine) as other:
                other.add(
                    MonthlyReview(
                        user_id=user_id,
                        month=date(2024, 5, 1),
                        current_month_data={},
                        previous_month_data={},
                        analysis_text="Written by the other request.",
                    )
                )
                other.commit()
            return super().generate(prompt)

    with Session(engine) as session:
        user = make_user(session)
        user_id = user.id
        add_activity(session, user, date(2024, 5, 3), income=500000, expense=200000)

        payload = MonthlyReviewService(session, RacingGenerator()).get_or_create(user_id, TODAY)

        assert payload["is_cached"] is True
        assert payload["analysis_text"] == "Written by the other request."
        assert review_count(session) == 1


def test_batch_counts_each_outcome_and_isolates_failures() -> None:
    with make_session() as session:
        cached = make_user(session, "Cached", "cached@example.com")
        idle = make_user(session, "Idle", "idle@example.com")
        fresh = make_user(session, "Fresh", "fresh@example.com")
        broken = make_user(session, "Broken", "broken@example.com")
        for user in (cached, fresh, broken):
            add_activity(session, user, date(2024, 5, 3), income=1000, expense=500)

        generator = FakeGenerator()
        MonthlyReviewService(session, generator).get_or_create(cached.id, TODAY)
        generator.fail_for.add("Broken User")

        summary = MonthlyReviewService(session, generator).generate_for_all_users(TODAY)

        assert summary == {"generated": 1, "existing": 1, "skipped": 1, "failed": 1}
        months = session.scalars(
            select(MonthlyReview.user_id).where(MonthlyReview.month == date(2024, 5, 1))
        ).all()
        assert sorted(months) == sorted([cached.id, fresh.id])
        assert idle.id not in months


def test_batch_aborts_when_generation_service_is_down() -> None:
    with make_session() as session:
        user = make_user(session)
        add_activity(session, user, date(2024, 5, 3), income=1000, expense=500)

        summary = MonthlyReviewService(
            session, FakeGenerator(available=False)
        ).generate_for_all_users(TODAY)

        assert summary["aborted"] == 1
        assert summary["generated"] == 0
        assert review_count(session) == 0


def test_list_reviews_newest_first() -> None:
    with make_session() as session:
        user = make_user(session)
        add_activity(session, user, date(2024, 4, 3), income=1000, expense=500)
        add_activity(session, user, date(2024, 5, 3), income=1000, expense=500)
        service = MonthlyReviewService(session, FakeGenerator())
        service.get_or_create(user.id, date(2024, 4, 30))
        service.get_or_create(user.id, TODAY)

        months = [r.month for r in service.list_reviews(user.id)]
        assert months == [date(2024, 5, 1), date(2024, 4, 1)]
