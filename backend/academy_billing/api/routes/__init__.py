from . import academies, charges, contacts, freezes, health, jobs, payment_methods, subscriptions, webhooks

__all__ = [
    "academies",
    "charges",
    "contacts",
    "freezes",
    "health",
    "jobs",
    "payment_methods",
    "subscriptions",
    "webhooks",
]
