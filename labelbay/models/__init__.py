from labelbay.models.address import Address, AddressType
from labelbay.models.payment_method import PaymentMethod
from labelbay.models.account import AccountBalance, Transaction, TransactionType, TransactionStatus
from labelbay.models.shipment import Shipment, ShipmentStatus

__all__ = [
    "Address",
    "AddressType",
    "PaymentMethod",
    "AccountBalance",
    "Transaction",
    "TransactionType",
    "TransactionStatus",
    "Shipment",
    "ShipmentStatus",
]
