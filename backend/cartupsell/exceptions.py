"""Domain exceptions raised by the service layer.

Routers translate these into HTTP responses; services never import FastAPI.
"""

from typing import Dict


class ValidationError(Exception):
    """Input failed validation.

    Attributes:
        errors: Field name -> human readable message.
    """

    def __init__(self, errors: Dict[str, str]):
        super().__init__("; ".join(f"{k}: {v}" for k, v in errors.items()))
        self.errors = errors


class RuleValidationError(ValidationError):
    """Rule create/update rejected. The key "plan" marks a plan limit."""


class EventValidationError(ValidationError):
    """Storefront tracking payload rejected."""


class NotFoundError(Exception):
    """Referenced record does not exist for this shop."""
