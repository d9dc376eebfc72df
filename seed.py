import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from models import AccountType, Category, TransactionType, User
from schemas import AccountIn, CategoryIn, UserRegisterIn
from services import AccountService, CategoryService, UserService

logger = logging.getLogger(__name__)

DEMO_EMAIL = "demo@example.com"
DEMO_PASSWORD = "password123"

DEFAULT_CATEGORIES = [
    ("Food & Dining", "🍽️", "#FF6B6B", TransactionType.expense),
    ("Transportation", "🚗", "#4ECDC4", TransactionType.expense),
    ("Shopping", "🛍️", "#45B7D1", TransactionType.expense),
    ("Entertainment", "🎬", "#96CEB4", TransactionType.expense),
    ("Bills & Utilities", "⚡", "#FFEAA7", TransactionType.expense),
    ("Healthcare", "🏥", "#DDA0DD", TransactionType.expense),
    ("Education", "📚", "#98D8C8", TransactionType.expense),
    ("Salary", "💼", "#6C5CE7", TransactionType.income),
    ("Freelance", "💻", "#A29BFE", TransactionType.income),
    ("Investment", "📈", "#FD79A8", TransactionType.income),
]

DEFAULT_ACCOUNTS = [
    ("Checking Account", AccountType.checking, Decimal("5000.00")),
    ("Savings Account", AccountType.savings, Decimal("15000.00")),
    ("Credit Card", AccountType.credit, Decimal("0.00")),
]


def seed_demo_data(session: Session) -> Optional[User]:
    """Create the demo user with default categories and accounts.

    Does nothing when any category already exists.
    """
    if session.execute(select(func.count(Category.id))).scalar_one():
        logger.info("seed_skipped: data already present")
        return None

    user = UserService(session).register(
        UserRegisterIn(
            first_name="Demo",
            last_name="User",
            email=DEMO_EMAIL,
            password=DEMO_PASSWORD,
        )
    )
    categories = CategoryService(session, user.id)
    for name, icon, color, kind in DEFAULT_CATEGORIES:
        categories.create(CategoryIn(name=name, type=kind, icon=icon, color=color))

    accounts = AccountService(session, user.id)
    for name, account_type, balance in DEFAULT_ACCOUNTS:
        accounts.create(
            AccountIn(
                name=name,
                type=account_type,
                balance=balance,
                currency=get_settings().default_currency,
            )
        )
    logger.info(
        f"seed_done: user_id={user.id} categories={len(DEFAULT_CATEGORIES)} "
        f"accounts={len(DEFAULT_ACCOUNTS)}"
    )
    return user


def main():
    logging.basicConfig(level=get_settings().log_level)
    with session_scope() as session:
        user = seed_demo_data(session)
    if user is not None:
        logger.info(f"demo_user: email={DEMO_EMAIL} password={DEMO_PASSWORD}")


if __name__ == "__main__":
    main()
