"""Pricing — месячная цена остатка по площади и слоту."""

from .engine import PriceQuote, PricingEngine

__all__ = [
    "PricingEngine",
    "PriceQuote",
]
