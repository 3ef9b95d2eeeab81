"""Domain exceptions.

Raised by the stock, pricing and order services when a business rule is
violated. main.py registers handlers that turn them into JSON responses.
"""
from typing import Dict, List, Optional


class ValidationFailed(Exception):
    """Input is malformed or references something that does not exist."""

    def __init__(self, errors: Dict[str, List[str]], message: str = "Validation failed"):
        super().__init__(message)
        self.message = message
        self.errors = errors


class InsufficientStock(Exception):
    """Requested quantity exceeds what is left for a (product, size)."""

    def __init__(self, size: Optional[str], available: int):
        self.size = size
        self.available = available
        if size is None:
            super().__init__(f"Insufficient stock. Only {available} available.")
        else:
            super().__init__(f"Insufficient stock for size {size}. Only {available} available.")

    @property
    def message(self) -> str:
        return str(self)


class NotFound(Exception):
    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(f"{resource} not found")

    @property
    def message(self) -> str:
        return str(self)
