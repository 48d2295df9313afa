from .catalog import Store, ProductVariant
from .inventory import InventoryRecord, InventoryTransaction, SequenceCounter
from .purchasing import Purchase, PurchaseItem
from .orders import Order, OrderItem, OrderStatusHistory
from .refunds import Refund, RefundItem
from .transfers import InventoryTransfer, InventoryTransferLine

__all__ = [
    'Store', 'ProductVariant',
    'InventoryRecord', 'InventoryTransaction', 'SequenceCounter',
    'Purchase', 'PurchaseItem',
    'Order', 'OrderItem', 'OrderStatusHistory',
    'Refund', 'RefundItem',
    'InventoryTransfer', 'InventoryTransferLine',
]
