from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import ConflictError, NotFoundError, ValidationError
from models import BudgetPeriod, TransactionType, User
from schemas import BudgetIn, CategoryIn, TransactionIn
from services import BudgetService, CategoryService, TransactionService

MARCH_END = date(2025, 3, 31)


def _user(session: Session, email: str = "owner@example.com") -> User:
    user = User(email=email, password_hash="x", first_name="Owner", last_name="Person")
    session.add(user)
    session.commit()
    return user


def _category(session: Session, user_id: int, name: str, kind=TransactionType.expense):
    return CategoryService(session, user_id).create(CategoryIn(name=name, type=kind))


def _spend(session, user_id, category_id, amount, day=date(2025, 3, 10), kind=TransactionType.expense):
    TransactionService(session, user_id).create(
        TransactionIn(
            description="Spend",
            amount=Decimal(amount),
            type=kind,
            category_id=category_id,
            date=day,
        )
    )


def _budget(category_id: int, amount: str = "200.00", **kwargs) -> BudgetIn:
    return BudgetIn(
        category_id=category_id,
        amount=Decimal(amount),
        start_date=kwargs.pop("start_date", date(2025, 3, 1)),
        **kwargs,
    )


def test_budget_progress_with_alert() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = _category(session, user.id, "Food")
        _spend(session, user.id, food.id, "150.00")

        budget, progress = BudgetService(session, user.id, clock=lambda: MARCH_END).create(
            _budget(food.id, alert_threshold=70)
        )

        assert budget.is_active
        assert progress.spent == Decimal("150.00")
        assert progress.remaining == Decimal("50.00")
        assert progress.percent_spent == Decimal("75.00")
        assert progress.should_alert is True
        assert progress.is_over_budget is False


def test_budget_without_spend_and_overspend() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = _category(session, user.id, "Food")
        service = BudgetService(session, user.id, clock=lambda: MARCH_END)

        budget, progress = service.create(_budget(food.id))
        assert progress.spent == Decimal("0.00")
        assert progress.percent_spent == Decimal("0.00")
        assert progress.should_alert is False

        _spend(session, user.id, food.id, "250.00")
        _, progress = service.get(budget.id)
        assert progress.remaining == Decimal("-50.00")
        assert progress.is_over_budget is True
        assert progress.percent_spent == Decimal("125.00")


def test_zero_amount_budget_reports_zero_percent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = _category(session, user.id, "Food")
        _spend(session, user.id, food.id, "20.00")

        _, progress = BudgetService(session, user.id, clock=lambda: MARCH_END).create(
            _budget(food.id, amount="0")
        )

        assert progress.percent_spent == Decimal("0.00")
        assert progress.is_over_budget is True


def test_spend_window_excludes_income_other_categories_and_dates() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = _category(session, user.id, "Food")
        travel = _category(session, user.id, "Travel")
        _spend(session, user.id, food.id, "10.00", day=date(2025, 2, 28))
        _spend(session, user.id, food.id, "20.00", day=date(2025, 3, 1))
        _spend(session, user.id, food.id, "30.00", day=date(2025, 3, 15))
        _spend(session, user.id, food.id, "40.00", day=date(2025, 3, 16))
        _spend(session, user.id, food.id, "99.00", kind=TransactionType.income)
        _spend(session, user.id, travel.id, "77.00")

        _, progress = BudgetService(session, user.id, clock=lambda: MARCH_END).create(
            _budget(food.id, end_date=date(2025, 3, 15))
        )

        assert progress.spent == Decimal("50.00")


def test_open_ended_budget_runs_to_clock_date() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = _category(session, user.id, "Food")
        _spend(session, user.id, food.id, "15.00", day=date(2025, 3, 5))
        _spend(session, user.id, food.id, "25.00", day=date(2025, 3, 20))

        early = BudgetService(session, user.id, clock=lambda: date(2025, 3, 10))
        budget, progress = early.create(_budget(food.id))
        assert progress.spent == Decimal("15.00")

        _, progress = BudgetService(session, user.id, clock=lambda: MARCH_END).get(
            budget.id
        )
        assert progress.spent == Decimal("40.00")


def test_other_users_spend_is_not_counted() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        owner = _user(session)
        other = _user(session, "other@example.com")
        food = _category(session, owner.id, "Food")
        their_food = _category(session, other.id, "Food")
        _spend(session, other.id, their_food.id, "60.00")

        _, progress = BudgetService(session, owner.id, clock=lambda: MARCH_END).create(
            _budget(food.id)
        )

        assert progress.spent == Decimal("0.00")


def test_second_active_budget_for_category_conflicts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = _category(session, user.id, "Food")
        service = BudgetService(session, user.id, clock=lambda: MARCH_END)
        budget, _ = service.create(_budget(food.id))

        with pytest.raises(ConflictError) as excinfo:
            service.create(_budget(food.id, amount="300.00"))
        assert excinfo.value.code == "duplicate_budget"
        assert len(service.list_active()) == 1

        service.deactivate(budget.id)
        replacement, _ = service.create(_budget(food.id, amount="300.00"))
        assert [b.id for b, _ in service.list_active()] == [replacement.id]


def test_update_keeps_own_category_and_detects_moves_into_taken_category() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = _category(session, user.id, "Food")
        travel = _category(session, user.id, "Travel")
        service = BudgetService(session, user.id, clock=lambda: MARCH_END)
        food_budget, _ = service.create(_budget(food.id))
        travel_budget, _ = service.create(_budget(travel.id))

        updated, _ = service.update(food_budget.id, _budget(food.id, amount="250.00"))
        assert updated.amount == Decimal("250.00")

        with pytest.raises(ConflictError):
            service.update(travel_budget.id, _budget(food.id))

        service.deactivate(travel_budget.id)
        moved, _ = service.update(travel_budget.id, _budget(food.id, is_active=False))
        assert moved.category_id == food.id
        with pytest.raises(ConflictError):
            service.update(travel_budget.id, _budget(food.id, is_active=True))

        reactivated, _ = service.update(
            travel_budget.id, _budget(travel.id, is_active=True)
        )
        assert reactivated.is_active


def test_budget_category_must_belong_to_owner() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        owner = _user(session)
        other = _user(session, "other@example.com")
        their_food = _category(session, other.id, "Food")
        service = BudgetService(session, owner.id, clock=lambda: MARCH_END)

        with pytest.raises(ValidationError) as excinfo:
            service.create(_budget(their_food.id))
        assert excinfo.value.code == "invalid_category"

        with pytest.raises(NotFoundError):
            service.get(9999)


def test_budget_window_must_be_ordered() -> None:
    with pytest.raises(ValueError):
        _budget(1, start_date=date(2025, 3, 10), end_date=date(2025, 3, 1))


def test_daily_budget_period_is_accepted() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = _category(session, user.id, "Food")
        payload = BudgetIn.model_validate(
            {
                "category_id": food.id,
                "amount": "15.00",
                "period": "daily",
                "start_date": "2025-03-10",
                "end_date": "2025-03-10",
            }
        )

        budget, _ = BudgetService(session, user.id, clock=lambda: MARCH_END).create(
            payload
        )

        assert budget.period == BudgetPeriod.daily
