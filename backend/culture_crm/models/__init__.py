from .people import User, Client
from .classes import Group, Schedule, SubscriptionType, Subscription, Attendance
from .billing import Invoice, InvoiceItem, InvoiceAuditLog, Payment

__all__ = [
    'User', 'Client',
    'Group', 'Schedule', 'SubscriptionType', 'Subscription', 'Attendance',
    'Invoice', 'InvoiceItem', 'InvoiceAuditLog', 'Payment',
]
