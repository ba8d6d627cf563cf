from .catalog import Category, Product
from .auth import User, SessionToken
from .orders import Order, OrderLine, OrderStatusEvent, OrderSequence
from .coupons import Coupon, CouponUsage

__all__ = [
    'Category', 'Product',
    'User', 'SessionToken',
    'Order', 'OrderLine', 'OrderStatusEvent', 'OrderSequence',
    'Coupon', 'CouponUsage',
]
