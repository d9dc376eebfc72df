from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from pydantic import ValidationError as SchemaError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from auth import hash_password, verify_password
from config import get_settings
from csv_utils import export_transactions, parse_csv
from database import atomic
from errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from ledger import BalanceAdjuster, PostedEffect, computed_balance
from models import (
    Account,
    Budget,
    Category,
    Transaction,
    TransactionType,
    User,
)
from money import from_cents, percent_of, to_cents
from periods import ALL_TIME, Clock, Period, today, year_period
from repository import OwnedRepository
from schemas import (
    AccountIn,
    AccountUpdateIn,
    BudgetIn,
    CategoryIn,
    TransactionIn,
    UserRegisterIn,
)

logger = logging.getLogger(__name__)


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    query: Optional[str] = None


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )

    def register(self, data: UserRegisterIn) -> User:
        with atomic(self.session):
            if self._by_email(data.email):
                raise ValidationError("Email is already registered", "duplicate_email")
            user = User(
                email=data.email.strip().lower(),
                password_hash=hash_password(data.password),
                first_name=data.first_name.strip(),
                last_name=data.last_name.strip(),
                default_currency=get_settings().default_currency,
            )
            self.session.add(user)
            self.session.flush()
        self.session.refresh(user)
        logger.info(f"user_registered: id={user.id}")
        return user

    def authenticate(self, email: str, password: str) -> User:
        user = self._by_email(email)
        if not user or not user.is_active:
            raise AuthenticationError("Invalid email or password")
        if not verify_password(password, user.password_hash):
            raise AuthenticationError("Invalid email or password")
        return user

    def get_active(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user or not user.is_active:
            raise AuthenticationError("Unknown or inactive user")
        return user


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.repository = OwnedRepository(session, user_id)

    def list_all(self, include_inactive: bool = False) -> list[Account]:
        if not include_inactive:
            return self.repository.find_active(Account, Account.name)
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        return self.repository.get(Account, account_id)

    def create(self, data: AccountIn) -> Account:
        opening = to_cents(data.balance)
        with atomic(self.session):
            if self.repository.exists_by_name(Account, data.name):
                raise ValidationError(
                    "Account with this name already exists", "duplicate_name"
                )
            account = Account(
                user_id=self.user_id,
                name=data.name.strip(),
                type=data.type,
                opening_balance_cents=opening,
                balance_cents=opening,
                currency=(data.currency or get_settings().default_currency).upper(),
                description=data.description,
                bank_name=data.bank_name,
                color=data.color,
                is_active=True if data.is_active is None else data.is_active,
            )
            self.repository.save(account)
        self.session.refresh(account)
        logger.info(f"account_created: id={account.id} balance_cents={opening}")
        return account

    def update(self, account_id: int, data: AccountUpdateIn) -> Account:
        with atomic(self.session):
            account = self.repository.get(Account, account_id)
            if self.repository.exists_by_name(Account, data.name, exclude_id=account.id):
                raise ValidationError(
                    "Account with this name already exists", "duplicate_name"
                )
            account.name = data.name.strip()
            account.type = data.type
            if data.currency:
                account.currency = data.currency.upper()
            account.description = data.description
            account.bank_name = data.bank_name
            account.color = data.color
            reactivated = data.is_active is True and not account.is_active
            if data.is_active is not None:
                account.is_active = data.is_active
            if reactivated:
                # postings were skipped while inactive
                self.session.flush()
                account.balance_cents = computed_balance(self.session, account)
                logger.info(
                    f"account_reactivated: id={account.id} "
                    f"balance_cents={account.balance_cents}"
                )
        self.session.refresh(account)
        return account

    def deactivate(self, account_id: int) -> None:
        with atomic(self.session):
            account = self.repository.get(Account, account_id)
            account.is_active = False
        logger.info(
            f"account_deactivated: id={account_id} balance_cents={account.balance_cents}"
        )

    def reconcile(self, account_id: int) -> tuple[int, int]:
        """Stored balance next to the balance recomputed from linked transactions."""
        account = self.repository.get(Account, account_id)
        return account.balance_cents, computed_balance(self.session, account)


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.repository = OwnedRepository(session, user_id)

    def list_all(
        self,
        type: Optional[TransactionType] = None,
        include_inactive: bool = False,
    ) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        if type:
            stmt = stmt.where(Category.type == type)
        if not include_inactive:
            stmt = stmt.where(Category.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        return self.repository.get(Category, category_id)

    def create(self, data: CategoryIn) -> Category:
        with atomic(self.session):
            if self.repository.exists_by_name(Category, data.name):
                raise ValidationError(
                    "Category with this name already exists", "duplicate_name"
                )
            category = Category(
                user_id=self.user_id,
                name=data.name.strip(),
                type=data.type,
                icon=data.icon,
                color=data.color,
                description=data.description,
                is_active=True if data.is_active is None else data.is_active,
            )
            self.repository.save(category)
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        with atomic(self.session):
            category = self.repository.get(Category, category_id)
            if self.repository.exists_by_name(
                Category, data.name, exclude_id=category.id
            ):
                raise ValidationError(
                    "Category with this name already exists", "duplicate_name"
                )
            category.name = data.name.strip()
            category.type = data.type
            category.icon = data.icon
            category.color = data.color
            category.description = data.description
            if data.is_active is not None:
                category.is_active = data.is_active
        self.session.refresh(category)
        return category

    def deactivate(self, category_id: int) -> None:
        with atomic(self.session):
            category = self.repository.get(Category, category_id)
            category.is_active = False


class TransactionService:
    """Creates, edits and removes transactions while keeping account balances in step.

    Each mutation is one atomic unit: the row write and every balance write
    commit together or not at all.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.repository = OwnedRepository(session, user_id)
        self.adjuster = BalanceAdjuster(session)

    def _resolve_category(self, category_id: int) -> Category:
        try:
            return self.repository.get(Category, category_id)
        except NotFoundError as exc:
            raise ValidationError("Invalid category", "invalid_category") from exc

    def _resolve_account(
        self, account_id: Optional[int], current_id: Optional[int] = None
    ) -> Optional[Account]:
        if account_id is None:
            return None
        try:
            account = self.repository.get(Account, account_id)
        except NotFoundError as exc:
            raise ValidationError("Invalid account", "invalid_account") from exc
        # a deactivated account stays valid for the rows already linked to it
        if not account.is_active and account.id != current_id:
            raise ValidationError("Invalid account", "invalid_account")
        return account

    def _create(self, data: TransactionIn) -> Transaction:
        category = self._resolve_category(data.category_id)
        account = self._resolve_account(data.account_id)
        txn = Transaction(
            user_id=self.user_id,
            description=data.description.strip(),
            amount_cents=to_cents(data.amount),
            type=data.type,
            date=data.date,
            notes=data.notes,
            category=category,
            account=account,
        )
        self.repository.save(txn)
        self.adjuster.post(txn)
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        with atomic(self.session):
            txn = self._create(data)
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} account_id={txn.account_id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        return txn

    def create_many(self, rows: list[TransactionIn]) -> list[Transaction]:
        with atomic(self.session):
            created = [self._create(data) for data in rows]
        logger.info(f"transactions_created: count={len(created)}")
        return created

    def get(self, transaction_id: int) -> Transaction:
        return self.repository.get(Transaction, transaction_id)

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        with atomic(self.session):
            txn = self.repository.get(Transaction, transaction_id)
            category = self._resolve_category(data.category_id)
            account = self._resolve_account(data.account_id, current_id=txn.account_id)

            previous = PostedEffect.of(txn)
            self.adjuster.reverse(previous)

            txn.description = data.description.strip()
            txn.amount_cents = to_cents(data.amount)
            txn.type = data.type
            txn.date = data.date
            txn.notes = data.notes
            txn.category = category
            txn.account = account
            self.session.flush()

            self.adjuster.post(txn)
        self.session.refresh(txn)
        logger.info(
            f"transaction_updated: id={txn.id} "
            f"old_account_id={previous.account.id if previous.account else None} "
            f"account_id={txn.account_id} amount_cents={txn.amount_cents}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        with atomic(self.session):
            txn = self.repository.get(Transaction, transaction_id)
            effect = PostedEffect.of(txn)
            self.adjuster.reverse(effect)
            self.repository.delete(txn)
        logger.info(
            f"transaction_deleted: id={transaction_id} "
            f"account_id={effect.account.id if effect.account else None}"
        )

    def _filtered(self, period: Period, filters: TransactionFilters):
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.account))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
        )
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(func.lower(Transaction.description).like(like))
        return stmt

    def list(
        self,
        period: Period = ALL_TIME,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            self._filtered(period, filters or TransactionFilters())
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def all_for_period(
        self, period: Period, filters: Optional[TransactionFilters] = None
    ) -> list[Transaction]:
        stmt = self._filtered(period, filters or TransactionFilters()).order_by(
            Transaction.date.asc(), Transaction.id.asc()
        )
        return self.session.scalars(stmt).all()

    def recent(self, limit: int = 5) -> list[Transaction]:
        return self.list(ALL_TIME, limit=limit)

    def count(self, period: Period = ALL_TIME) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.user_id == self.user_id,
            Transaction.date.between(period.start, period.end),
        )
        return int(self.session.execute(stmt).scalar_one() or 0)


@dataclass(frozen=True)
class BudgetProgress:
    spent: Decimal
    remaining: Decimal
    percent_spent: Decimal
    is_over_budget: bool
    should_alert: bool


class BudgetSpendCalculator:
    """Derives spend for a budget from the owner's expense transactions.

    The window is ``[start_date, end_date]``; an open-ended budget runs up to
    the date returned by ``clock``.
    """

    def __init__(self, session: Session, clock: Clock = today) -> None:
        self.session = session
        self.clock = clock

    def spent_cents(self, budget: Budget) -> int:
        if budget.category_id is None:
            return 0
        end = budget.end_date or self.clock()
        return OwnedRepository(self.session, budget.user_id).sum_amount(
            TransactionType.expense,
            budget.start_date,
            end,
            category_id=budget.category_id,
        )

    def progress(self, budget: Budget) -> BudgetProgress:
        spent = self.spent_cents(budget)
        percent = percent_of(spent, budget.amount_cents)
        return BudgetProgress(
            spent=from_cents(spent),
            remaining=from_cents(budget.amount_cents - spent),
            percent_spent=percent,
            is_over_budget=spent > budget.amount_cents,
            should_alert=percent >= Decimal(budget.alert_threshold),
        )


class BudgetService:
    def __init__(self, session: Session, user_id: int, clock: Clock = today) -> None:
        self.session = session
        self.user_id = user_id
        self.repository = OwnedRepository(session, user_id)
        self.calculator = BudgetSpendCalculator(session, clock)

    def _resolve_category(self, category_id: int) -> Category:
        try:
            return self.repository.get(Category, category_id)
        except NotFoundError as exc:
            raise ValidationError("Invalid category", "invalid_category") from exc

    def _ensure_no_active_budget(
        self, category_id: int, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(func.count(Budget.id)).where(
            Budget.user_id == self.user_id,
            Budget.category_id == category_id,
            Budget.is_active.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        if (self.session.execute(stmt).scalar_one() or 0) > 0:
            logger.info(
                f"budget_conflict: user_id={self.user_id} category_id={category_id}"
            )
            raise ConflictError("An active budget already exists for this category")

    def _save(self, budget: Budget) -> None:
        try:
            self.repository.save(budget)
        except IntegrityError as exc:
            # lost a race against a concurrent writer on the same category
            raise ConflictError(
                "An active budget already exists for this category"
            ) from exc

    def list_active(self) -> list[tuple[Budget, BudgetProgress]]:
        budgets = self.repository.find_active(
            Budget, Budget.start_date.desc(), Budget.id.desc()
        )
        return [(budget, self.calculator.progress(budget)) for budget in budgets]

    def get(self, budget_id: int) -> tuple[Budget, BudgetProgress]:
        budget = self.repository.get(Budget, budget_id)
        return budget, self.calculator.progress(budget)

    def create(self, data: BudgetIn) -> tuple[Budget, BudgetProgress]:
        with atomic(self.session):
            category = self._resolve_category(data.category_id)
            self._ensure_no_active_budget(category.id)
            budget = Budget(
                user_id=self.user_id,
                category=category,
                amount_cents=to_cents(data.amount),
                period=data.period,
                start_date=data.start_date,
                end_date=data.end_date,
                alert_threshold=data.alert_threshold,
                is_active=True if data.is_active is None else data.is_active,
                notes=data.notes,
            )
            self._save(budget)
        self.session.refresh(budget)
        logger.info(f"budget_created: id={budget.id} category_id={budget.category_id}")
        return budget, self.calculator.progress(budget)

    def update(self, budget_id: int, data: BudgetIn) -> tuple[Budget, BudgetProgress]:
        with atomic(self.session):
            budget = self.repository.get(Budget, budget_id)
            will_be_active = budget.is_active if data.is_active is None else data.is_active
            if data.category_id != budget.category_id:
                category = self._resolve_category(data.category_id)
                if will_be_active:
                    self._ensure_no_active_budget(category.id, exclude_id=budget.id)
                budget.category = category
            elif will_be_active and not budget.is_active:
                self._ensure_no_active_budget(budget.category_id, exclude_id=budget.id)

            budget.amount_cents = to_cents(data.amount)
            budget.period = data.period
            budget.start_date = data.start_date
            budget.end_date = data.end_date
            budget.alert_threshold = data.alert_threshold
            budget.is_active = will_be_active
            budget.notes = data.notes
            self._save(budget)
        self.session.refresh(budget)
        return budget, self.calculator.progress(budget)

    def deactivate(self, budget_id: int) -> None:
        with atomic(self.session):
            budget = self.repository.get(Budget, budget_id)
            budget.is_active = False


class DashboardService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.repository = OwnedRepository(session, user_id)

    def totals(self, period: Period = ALL_TIME) -> tuple[int, int]:
        income = self.repository.sum_amount(
            TransactionType.income, period.start, period.end
        )
        expenses = self.repository.sum_amount(
            TransactionType.expense, period.start, period.end
        )
        return income, expenses

    def summary(self, period: Period = ALL_TIME) -> dict[str, object]:
        income, expenses = self.totals(period)
        count = TransactionService(self.session, self.user_id).count(period)
        return {
            "total_income": from_cents(income),
            "total_expenses": from_cents(expenses),
            "net_balance": from_cents(income - expenses),
            "total_transactions": count,
        }

    def yearly(self, year: int) -> dict[str, object]:
        income, expenses = self.totals(year_period(year))
        return {
            "year": year,
            "income": from_cents(income),
            "expenses": from_cents(expenses),
        }


class CSVService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _name_lookup(self, model: type) -> dict[str, int]:
        stmt = select(model).where(model.user_id == self.user_id)
        if model is Account:
            stmt = stmt.where(Account.is_active.is_(True))
        return {row.name.lower(): row.id for row in self.session.scalars(stmt)}

    def preview(self, content: str) -> tuple[list[TransactionIn], list[str]]:
        rows, errors = parse_csv(content)
        categories = self._name_lookup(Category)
        accounts = self._name_lookup(Account)
        payloads: list[TransactionIn] = []
        for row in rows:
            idx = row.row
            category_id = categories.get(row.category.lower())
            if category_id is None:
                errors.append(f"Row {idx}: Unknown category '{row.category}'")
                continue
            account_id = None
            if row.account:
                account_id = accounts.get(row.account.lower())
                if account_id is None:
                    errors.append(f"Row {idx}: Unknown account '{row.account}'")
                    continue
            try:
                payloads.append(
                    TransactionIn(
                        description=row.description,
                        amount=from_cents(row.amount_cents),
                        type=row.type,
                        category_id=category_id,
                        account_id=account_id,
                        date=row.date,
                    )
                )
            except SchemaError as exc:
                errors.append(f"Row {idx}: {exc.errors()[0]['msg']}")
        return payloads, errors

    def commit(self, content: str) -> int:
        payloads, errors = self.preview(content)
        if errors:
            raise ValidationError("; ".join(errors))
        created = TransactionService(self.session, self.user_id).create_many(payloads)
        return len(created)

    def export(self, transactions: list[Transaction]) -> str:
        return export_transactions(transactions)
