from datetime import date
from typing import Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from errors import NotFoundError
from models import Transaction, TransactionType

T = TypeVar("T")


class OwnedRepository:
    """Persistence access scoped to one user.

    Every lookup by id goes through ``get``: a row owned by somebody else is
    reported exactly like a missing row.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, model: type[T], entity_id: Optional[int]) -> T:
        entity = self.session.get(model, entity_id) if entity_id is not None else None
        if entity is None or entity.user_id != self.user_id:
            raise NotFoundError(f"{model.__name__} not found")
        return entity

    def save(self, entity: T) -> T:
        self.session.add(entity)
        self.session.flush()
        return entity

    def delete(self, entity: object) -> None:
        self.session.delete(entity)
        self.session.flush()

    def exists_by_name(
        self, model: type, name: str, *, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(func.count(model.id)).where(
            model.user_id == self.user_id,
            func.lower(model.name) == name.strip().lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(model.id != exclude_id)
        return (self.session.execute(stmt).scalar_one() or 0) > 0

    def find_active(self, model: type[T], *order_by) -> list[T]:
        stmt = select(model).where(
            model.user_id == self.user_id, model.is_active.is_(True)
        )
        if order_by:
            stmt = stmt.order_by(*order_by)
        else:
            stmt = stmt.order_by(model.id)
        return self.session.scalars(stmt).all()

    def sum_amount(
        self,
        type: TransactionType,
        start: date,
        end: date,
        *,
        category_id: Optional[int] = None,
    ) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.type == type,
            Transaction.date.between(start, end),
        )
        if category_id is not None:
            stmt = stmt.where(Transaction.category_id == category_id)
        return int(self.session.execute(stmt).scalar_one() or 0)
