"""
Decision-engine errors. Both are recoverable at the item/market boundary
where they occur and carry enough context to attribute the failure.
"""

from __future__ import annotations


class DataUnavailable(Exception):
    """A quote, sale stats or commission schedule needed for a decision is missing."""

    def __init__(self, message: str, item: str = "", market: object | None = None) -> None:
        super().__init__(message)
        self.item = item
        self.market = market


class CalculationError(ValueError):
    """Inputs would produce a division by zero or a meaningless price."""

    def __init__(self, message: str, item: str = "", market: object | None = None) -> None:
        super().__init__(message)
        self.item = item
        self.market = market
