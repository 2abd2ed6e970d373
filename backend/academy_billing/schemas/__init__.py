from academy_billing.schemas import billing, common, contact, payment, tenant

__all__ = [
    "billing",
    "common",
    "contact",
    "payment",
    "tenant",
]
