"""
Order Service — pricing rules

Pure functions, no I/O. The numbers come from the store settings document:

    shipping = 0 if items_price >= free_shipping_threshold else shipping_charge
    tax      = round(items_price * tax_percentage / 100, 2)
    total    = items_price + shipping + tax - discount      (never below 0)
"""

from typing import NamedTuple

PAYMENT_METHODS = ("COD", "Card", "UPI", "NetBanking", "Wallet")

_PAYMENT_METHOD_KEYWORDS = {
    "cod": "COD",
    "cashondelivery": "COD",
    "card": "Card",
    "credit": "Card",
    "debit": "Card",
    "upi": "UPI",
    "netbanking": "NetBanking",
    "net_banking": "NetBanking",
    "wallet": "Wallet",
}


class Totals(NamedTuple):
    items_price: float
    shipping_price: float
    tax_price: float
    discount: float
    total_price: float


def normalize_payment_method(value) -> str:
    """Map client spellings onto PAYMENT_METHODS; unknown values come back unchanged."""
    key = str(value).strip().lower()
    return _PAYMENT_METHOD_KEYWORDS.get(key, str(value))


def shipping_price(items_price: float, free_shipping_threshold: float, shipping_charge: float) -> float:
    return 0.0 if items_price >= free_shipping_threshold else float(shipping_charge)


def tax_price(items_price: float, tax_percentage: float) -> float:
    return round(items_price * (tax_percentage / 100), 2)


def compute_totals(
    items_price: float,
    discount: float,
    free_shipping_threshold: float,
    shipping_charge: float,
    tax_percentage: float,
) -> Totals:
    items_price = round(items_price, 2)
    shipping = shipping_price(items_price, free_shipping_threshold, shipping_charge)
    tax = tax_price(items_price, tax_percentage)
    discount = round(min(max(discount, 0.0), items_price), 2)
    total = round(max(items_price + shipping + tax - discount, 0.0), 2)
    return Totals(items_price, shipping, tax, discount, total)
