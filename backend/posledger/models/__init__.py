from .tenancy import Shop, User, ShopOwner
from .catalog import Product, PriceCategory, PriceRule, Customer, PaymentMethod, Supplier
from .inventory import StockRecord, StockMovement, StockReference, ReferenceKind
from .sales import Transaction, TransactionItem, TransactionPayment
from .purchasing import PurchaseOrder, PurchaseOrderItem
from .opname import StockOpname, StockOpnameItem
from .documents import DocumentSequence, SystemSetting

__all__ = [
    'Shop', 'User', 'ShopOwner',
    'Product', 'PriceCategory', 'PriceRule', 'Customer', 'PaymentMethod', 'Supplier',
    'StockRecord', 'StockMovement', 'StockReference', 'ReferenceKind',
    'Transaction', 'TransactionItem', 'TransactionPayment',
    'PurchaseOrder', 'PurchaseOrderItem',
    'StockOpname', 'StockOpnameItem',
    'DocumentSequence', 'SystemSetting',
]
