"""
Error taxonomy for the pricing core.

- ValidationError: input rejected before any mutation (caller can fix and retry)
- NotFoundError: unknown quote/group/item id, nothing written
- ConsistencyFailure: totals could not be derived from child records; prior
  totals are preserved
"""


class PricingError(Exception):
    """Base exception for pricing core errors."""

    @property
    def user_message(self) -> str:
        """Message safe to show to staff."""
        return str(self)


class ValidationError(PricingError):
    """Raised when a request is malformed or violates a business rule."""

    pass


class LimitExceededError(ValidationError):
    """Raised when a staff role's offset limit would be exceeded."""

    def __init__(self, role: str, limit, amount):
        self.role = role
        self.limit = limit
        self.amount = amount
        super().__init__(
            f"Amount {amount} exceeds the {role} offset limit of {limit}. Contact a manager."
        )


class NotFoundError(PricingError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class ConsistencyFailure(PricingError):
    """Raised when quote totals cannot be derived from the current records."""

    GENERIC_MESSAGE = "could not update pricing — totals unchanged"

    @property
    def user_message(self) -> str:
        return self.GENERIC_MESSAGE
