from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import AccountType, TransactionType, User
from schemas import AttachmentIn, CategoryIn, TransactionIn, TransactionUpdateIn
from services import (
    CategoryService,
    ConflictError,
    NotFoundError,
    TransactionFilters,
    TransactionService,
)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def make_user(session: Session, email: str = "ada@example.com") -> User:
    user = User(first_name="Ada", last_name="Lovelace", email=email, password_hash="x")
    session.add(user)
    session.commit()
    return user


def expense(category_id: int, cents: int, day: date, **extra) -> TransactionIn:
    return TransactionIn(
        type=TransactionType.expense,
        amount_cents=cents,
        category_id=category_id,
        account_type=extra.pop("account_type", AccountType.cash),
        date=day,
        **extra,
    )


def test_category_names_are_unique_per_user_and_type() -> None:
    with make_session() as session:
        user = make_user(session)
        other = make_user(session, "other@example.com")
        service = CategoryService(session, user.id)
        service.create(CategoryIn(name="Gifts", type=TransactionType.expense))

        with pytest.raises(ConflictError):
            service.create(CategoryIn(name="  gifts ", type=TransactionType.expense))

        income_gifts = service.create(CategoryIn(name="Gifts", type=TransactionType.income))
        assert income_gifts.type == TransactionType.income
        CategoryService(session, other.id).create(
            CategoryIn(name="Gifts", type=TransactionType.expense)
        )


def test_rename_rejects_duplicates_and_foreign_categories() -> None:
    with make_session() as session:
        user = make_user(session)
        other = make_user(session, "other@example.com")
        service = CategoryService(session, user.id)
        food = service.create(CategoryIn(name="Food", type=TransactionType.expense))
        service.create(CategoryIn(name="Fuel", type=TransactionType.expense))

        assert service.rename(food.id, " Groceries ").name == "Groceries"
        with pytest.raises(ConflictError):
            service.rename(food.id, "FUEL")
        with pytest.raises(NotFoundError):
            CategoryService(session, other.id).rename(food.id, "Mine")


def test_transaction_category_must_be_owned_and_match_type() -> None:
    with make_session() as session:
        user = make_user(session)
        other = make_user(session, "other@example.com")
        salary = CategoryService(session, user.id).create(
            CategoryIn(name="Salary", type=TransactionType.income)
        )
        foreign = CategoryService(session, other.id).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        service = TransactionService(session, user.id)

        with pytest.raises(ValueError, match="type mismatch"):
            service.create(expense(salary.id, 1000, date(2024, 5, 1)))
        with pytest.raises(NotFoundError):
            service.create(expense(foreign.id, 1000, date(2024, 5, 1)))


def test_list_filters_and_sorting() -> None:
    with make_session() as session:
        user = make_user(session)
        categories = CategoryService(session, user.id)
        food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
        fuel = categories.create(CategoryIn(name="Fuel", type=TransactionType.expense))
        service = TransactionService(session, user.id)
        service.create(expense(food.id, 1200, date(2024, 5, 1)))
        service.create(expense(fuel.id, 5000, date(2024, 5, 3), account_type=AccountType.credit_card))
        service.create(expense(food.id, 800, date(2024, 6, 2)))

        newest_first = service.list()
        assert [t.date for t in newest_first] == [
            date(2024, 6, 2),
            date(2024, 5, 3),
            date(2024, 5, 1),
        ]

        may = service.list(
            TransactionFilters(start=date(2024, 5, 1), end=date(2024, 5, 31), sort="amount")
        )
        assert [t.amount_cents for t in may] == [1200, 5000]

        assert len(service.list(TransactionFilters(category_id=food.id))) == 2
        cards = service.list(TransactionFilters(account_type=AccountType.credit_card))
        assert [t.category.name for t in cards] == ["Fuel"]
        assert service.list(TransactionFilters(type=TransactionType.income)) == []


def test_update_is_partial_and_delete_removes_the_row() -> None:
    with make_session() as session:
        user = make_user(session)
        food = CategoryService(session, user.id).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        service = TransactionService(session, user.id)
        txn = service.create(
            expense(
                food.id,
                1500,
                date(2024, 5, 1),
                description="Lunch",
                attachments=[AttachmentIn(url="https://files.example.com/r.png", content_type="image/png")],
            )
        )
        assert txn.attachments == [
            {"url": "https://files.example.com/r.png", "content_type": "image/png"}
        ]

        updated = service.update(txn.id, TransactionUpdateIn(amount_cents=1750))
        assert updated.amount_cents == 1750
        assert updated.description == "Lunch"
        assert updated.date == date(2024, 5, 1)

        with pytest.raises(ValueError, match="type mismatch"):
            service.update(txn.id, TransactionUpdateIn(type=TransactionType.income))

        service.delete(txn.id)
        with pytest.raises(NotFoundError):
            service.get(txn.id)


def test_attachment_content_type_is_validated() -> None:
    with pytest.raises(ValueError):
        AttachmentIn(url="https://files.example.com/r.pdf", content_type="application/pdf")


def test_deleting_category_keeps_its_transactions() -> None:
    with make_session() as session:
        user = make_user(session)
        food = CategoryService(session, user.id).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        service = TransactionService(session, user.id)
        txn = service.create(expense(food.id, 999, date(2024, 5, 1)))

        CategoryService(session, user.id).delete(food.id)

        kept = service.get(txn.id)
        assert kept.category_id is None
        assert kept.category is None
