from contextlib import contextmanager
from datetime import timedelta

import pytest

from core.db import utcnow
from models.cart import Cart
from models.order import Order
from services import cart as cart_service
from services import checkout, inventory
from services.cart import CartOwner
from tasks import order_tasks


@pytest.fixture()
def task_db(db, monkeypatch):
    """Point the tasks' session factory at the test session."""

    @contextmanager
    def _session():
        yield db
        db.commit()

    monkeypatch.setattr(order_tasks, "db_session", _session)
    return db


def test_expire_pending_orders_task(task_db, customer, ready_cart, address, widget, fake_stripe):
    order = checkout.create_order(task_db, ready_cart.id, customer, address, "credit_card")
    order.created_at = utcnow() - timedelta(hours=3)
    task_db.commit()

    result = order_tasks.expire_pending_orders_task()

    assert result == {"expired": 1}
    assert task_db.get(Order, order.id).status == "cancelled"
    assert inventory.current_stock(task_db, widget.id) == 5


def test_expire_task_with_nothing_to_do(task_db):
    assert order_tasks.expire_pending_orders_task() == {"expired": 0}


def test_purge_expired_carts_task(task_db):
    cart = cart_service.get_or_create_cart(task_db, CartOwner(session_id="abandoned"))
    cart.expires_at = utcnow() - timedelta(days=1)
    task_db.commit()

    assert order_tasks.purge_expired_carts_task() == {"purged": 1}
    assert task_db.query(Cart).count() == 0
