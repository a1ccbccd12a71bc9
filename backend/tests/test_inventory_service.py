import pytest

from storefront.errors import InsufficientStock, ProductUnavailable, StockUnderflow, ValidationError
from storefront.extensions import db
from storefront.services import inventory_service

from conftest import make_product


def test_check_available_reads_without_reserving(product):
    checked = inventory_service.check_available(product.id, 5)

    assert checked.id == product.id
    assert inventory_service.get_stock(product.id) == 5


def test_check_available_rejects_quantity_above_stock(product):
    with pytest.raises(InsufficientStock) as exc_info:
        inventory_service.check_available(product.id, 6)

    assert exc_info.value.details["stock_quantity"] == 5
    assert exc_info.value.details["requested_quantity"] == 6


def test_check_available_rejects_inactive_and_missing_products(db_session):
    inactive = make_product("OLD-1", stock=10, is_active=False)

    with pytest.raises(ProductUnavailable):
        inventory_service.check_available(inactive.id, 1)
    with pytest.raises(ProductUnavailable):
        inventory_service.check_available(999999, 1)


def test_debit_decrements_in_the_database(product):
    inventory_service.debit_stock(product.id, 2)
    db.session.commit()

    assert inventory_service.get_stock(product.id) == 3
    assert product.stock_quantity == 3


def test_debit_past_zero_is_refused_and_stock_is_unchanged(product):
    with pytest.raises(StockUnderflow) as exc_info:
        inventory_service.debit_stock(product.id, 6)
    db.session.commit()

    assert exc_info.value.details["stock_quantity"] == 5
    assert inventory_service.get_stock(product.id) == 5


def test_debit_exact_remaining_stock_reaches_zero(product):
    inventory_service.debit_stock(product.id, 5)
    db.session.commit()

    assert inventory_service.get_stock(product.id) == 0
    with pytest.raises(StockUnderflow):
        inventory_service.debit_stock(product.id, 1)


def test_credit_increments(product):
    inventory_service.credit_stock(product.id, 4)
    db.session.commit()

    assert inventory_service.get_stock(product.id) == 9


def test_non_positive_quantities_are_rejected(product):
    with pytest.raises(ValidationError):
        inventory_service.debit_stock(product.id, 0)
    with pytest.raises(ValidationError):
        inventory_service.credit_stock(product.id, -1)


def test_credit_unknown_product(db_session):
    with pytest.raises(ProductUnavailable):
        inventory_service.credit_stock(424242, 1)


def test_set_stock_is_absolute_and_never_negative(product):
    inventory_service.set_stock(product.id, 12)
    assert inventory_service.get_stock(product.id) == 12

    with pytest.raises(ValidationError):
        inventory_service.set_stock(product.id, -1)
    assert inventory_service.get_stock(product.id) == 12
