from .tenancy import Business, Branch, Vendor
from .settings import BusinessSettings
from .ledger import CashLedgerEntry, VendorTransaction, AuditTrailEntry
from .sales import Receipt, SoldProduct, ReturnReceipt, ReturnedProduct
from .postings import PostingEvent, PostingStep

__all__ = [
    'Business', 'Branch', 'Vendor',
    'BusinessSettings',
    'CashLedgerEntry', 'VendorTransaction', 'AuditTrailEntry',
    'Receipt', 'SoldProduct', 'ReturnReceipt', 'ReturnedProduct',
    'PostingEvent', 'PostingStep',
]
