from .master import Product, Company, Warehouse
from .trades import TradeMaster, TradeLine
from .inventory import Lot, Match, AggregateStock, LotAdjustment
from .ledger import TransactionLogEntry
from .production import ProductionRecord, ProductionInput

__all__ = [
    'Product', 'Company', 'Warehouse',
    'TradeMaster', 'TradeLine',
    'Lot', 'Match', 'AggregateStock', 'LotAdjustment',
    'TransactionLogEntry',
    'ProductionRecord', 'ProductionInput',
]
