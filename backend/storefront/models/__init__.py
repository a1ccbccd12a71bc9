from .auth import User, SessionToken
from .catalog import Product
from .cart import CartItem
from .orders import Order, OrderItem, PaymentTransaction
from .operations import OperationalAnomaly

__all__ = [
    'User', 'SessionToken',
    'Product',
    'CartItem',
    'Order', 'OrderItem', 'PaymentTransaction',
    'OperationalAnomaly',
]
