from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from core.db import utcnow
from models.order import OrderSequence

ORDER_NUMBER_PREFIX = "ORD"


def period_key(now: datetime) -> str:
    return f"{now.year}{now.month:02d}"


def format_order_number(period: str, value: int) -> str:
    return f"{ORDER_NUMBER_PREFIX}-{period}-{value:05d}"


def _bump(db: Session, period: str) -> None:
    table = OrderSequence.__table__
    dialect = db.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(table).values(period=period, last_value=1)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.period],
            set_={"last_value": table.c.last_value + 1},
        )
        db.execute(stmt)
        return

    result = db.execute(
        update(table).where(table.c.period == period).values(last_value=table.c.last_value + 1)
    )
    if result.rowcount == 0:
        db.execute(table.insert().values(period=period, last_value=1))


def next_order_number(db: Session, now: datetime | None = None) -> str:
    """
    Allocate the next order number for the current month.

    The counter row is bumped with a single upsert, so two checkouts in the
    same period can never read the same value; the row stays locked until the
    surrounding transaction ends, and a rolled-back checkout releases its number.
    """
    period = period_key(now or utcnow())
    _bump(db, period)
    value = db.execute(
        select(OrderSequence.__table__.c.last_value).where(OrderSequence.__table__.c.period == period)
    ).scalar_one()
    return format_order_number(period, value)
