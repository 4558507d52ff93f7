from .tenancy import Business, Employee, Reservation
from .catalog import CatalogItem, TaxRule
from .discounts import Discount, DiscountEligibility
from .orders import Order, OrderLine
from .inventory import StockItem, StockMovement
from .payments import Payment, GiftCard

__all__ = [
    'Business', 'Employee', 'Reservation',
    'CatalogItem', 'TaxRule',
    'Discount', 'DiscountEligibility',
    'Order', 'OrderLine',
    'StockItem', 'StockMovement',
    'Payment', 'GiftCard',
]
