from .tenancy import Storefront, Product, Customer
from .barcodes import BarcodeBatch, WarrantyBarcode
from .claims import ClaimSequence, WarrantyClaim, ClaimTimelineEvent, ClaimAttachment, RepairTicket
from .outbox import OutboxEvent

__all__ = [
    'Storefront', 'Product', 'Customer',
    'BarcodeBatch', 'WarrantyBarcode',
    'ClaimSequence', 'WarrantyClaim', 'ClaimTimelineEvent', 'ClaimAttachment', 'RepairTicket',
    'OutboxEvent',
]
