from .catalog import Product
from .sales import Sale, SaleItem, SaleStatus

__all__ = [
    'Product',
    'Sale', 'SaleItem', 'SaleStatus',
]
