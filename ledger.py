"""Account balance bookkeeping for posted transactions.

An account's ``balance_cents`` is a cache of
``opening_balance_cents + sum(signed_delta(t) for t linked to the account)``.
``BalanceAdjuster`` is the only writer of that column; it is driven by the
transaction service on create, update and delete.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from models import Account, Transaction, TransactionType

logger = logging.getLogger(__name__)


def signed_delta(type: Union[TransactionType, str], amount_cents: int) -> int:
    """Balance effect of a transaction: income adds, everything else subtracts."""
    kind = type.value if isinstance(type, TransactionType) else str(type)
    if kind.strip().lower() == TransactionType.income.value:
        return amount_cents
    return -amount_cents


@dataclass(frozen=True)
class PostedEffect:
    """What a transaction did to its account at the moment it was captured."""

    account: Optional[Account]
    delta_cents: int

    @classmethod
    def of(cls, txn: Transaction) -> "PostedEffect":
        return cls(account=txn.account, delta_cents=signed_delta(txn.type, txn.amount_cents))


class BalanceAdjuster:
    def __init__(self, session: Session) -> None:
        self.session = session

    def apply(self, account: Optional[Account], delta_cents: int) -> None:
        if account is None:
            return
        if not account.is_active:
            # deactivated accounts keep their last balance
            logger.info(
                f"balance_frozen: account_id={account.id} delta_cents={delta_cents}"
            )
            return
        # relative update so concurrent writers on the same row cannot lose each other's delta
        self.session.execute(
            update(Account)
            .where(Account.id == account.id)
            .values(balance_cents=Account.balance_cents + delta_cents)
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(account, attribute_names=["balance_cents"])
        logger.info(
            f"balance_applied: account_id={account.id} delta_cents={delta_cents} "
            f"balance_cents={account.balance_cents}"
        )

    def post(self, txn: Transaction) -> None:
        effect = PostedEffect.of(txn)
        self.apply(effect.account, effect.delta_cents)

    def reverse(self, effect: PostedEffect) -> None:
        self.apply(effect.account, -effect.delta_cents)


def computed_balance(session: Session, account: Account) -> int:
    """Recompute an account balance from its opening balance and linked rows."""
    stmt = select(
        func.coalesce(
            func.sum(
                case(
                    (
                        Transaction.type == TransactionType.income,
                        Transaction.amount_cents,
                    ),
                    else_=-Transaction.amount_cents,
                )
            ),
            0,
        )
    ).where(Transaction.account_id == account.id)
    linked = int(session.execute(stmt).scalar_one() or 0)
    return account.opening_balance_cents + linked
