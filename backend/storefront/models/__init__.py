from .auth import User, Role, UserRole, SessionToken
from .catalog import Product, ProductVariant, ProductImage
from .inventory import InventoryItem, InventoryMovement
from .orders import Order, OrderItem, OrderStatusHistory
from .payments import Payment

__all__ = [
    'User', 'Role', 'UserRole', 'SessionToken',
    'Product', 'ProductVariant', 'ProductImage',
    'InventoryItem', 'InventoryMovement',
    'Order', 'OrderItem', 'OrderStatusHistory',
    'Payment',
]
