# Import models so that SQLAlchemy metadata includes them on app startup
from .user import User  # noqa: F401
from .product import Product, ProductVariant  # noqa: F401
from .discount import DiscountCode  # noqa: F401
from .shipping import ShippingMethod  # noqa: F401
from .cart import Cart  # noqa: F401
from .cart_item import CartItem  # noqa: F401
from .order import Order, OrderStatus, OrderStatusHistory, OrderSequence  # noqa: F401
from .order_item import OrderItem  # noqa: F401
from .payment import Payment, PaymentStatus, PaymentMethod, OrderRefund, WebhookEvent  # noqa: F401
