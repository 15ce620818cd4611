import pytest

from core.errors import InsufficientStock
from services import inventory


class TestInventoryLedger:
    """Test cases for the stock counter"""

    def test_check_available(self, db, widget):
        assert inventory.check_available(db, widget.id, None, 5) is True
        assert inventory.check_available(db, widget.id, None, 6) is False

    def test_decrement_reduces_stock(self, db, widget):
        inventory.decrement(db, widget.id, None, 3)
        db.commit()

        assert inventory.current_stock(db, widget.id) == 2

    def test_decrement_beyond_stock_is_refused(self, db, widget):
        """Test the conditional update never drives stock negative"""
        with pytest.raises(InsufficientStock) as exc_info:
            inventory.decrement(db, widget.id, None, 6, product_name="Widget")

        assert exc_info.value.available == 5
        assert exc_info.value.requested == 6
        assert "Widget" in exc_info.value.message
        assert inventory.current_stock(db, widget.id) == 5

    def test_successive_decrements_never_oversell(self, db, widget):
        """Test two reservations of 3 against stock 5: one wins, one is refused"""
        inventory.decrement(db, widget.id, None, 3)
        with pytest.raises(InsufficientStock):
            inventory.decrement(db, widget.id, None, 3)
        db.commit()

        assert inventory.current_stock(db, widget.id) == 2

    def test_variant_stock_is_independent(self, db, shirt):
        variant = shirt.variants[0]
        inventory.decrement(db, shirt.id, variant.id, 2)
        db.commit()

        assert inventory.current_stock(db, shirt.id, variant.id) == 1
        assert inventory.current_stock(db, shirt.id) == 0

    def test_increment_restores_stock(self, db, widget):
        inventory.decrement(db, widget.id, None, 4)
        inventory.increment(db, widget.id, None, 4)
        db.commit()

        assert inventory.current_stock(db, widget.id) == 5

    def test_increment_missing_product_is_logged_not_raised(self, db):
        inventory.increment(db, 9999, None, 2)

    def test_non_positive_quantities_rejected(self, db, widget):
        with pytest.raises(ValueError):
            inventory.decrement(db, widget.id, None, 0)
        with pytest.raises(ValueError):
            inventory.increment(db, widget.id, None, -1)
