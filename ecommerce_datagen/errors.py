"""Errors raised by the generators and the in-process store."""


class DataGenerationError(Exception):
    """Base class for every failure raised by this package."""


class InvalidArgument(DataGenerationError):
    """A factory was asked for a non-positive number of rows."""


class PrecursorMissing(DataGenerationError):
    """A dependent factory ran before the rows it references exist."""


class UniquenessViolation(DataGenerationError):
    """A generated value collides with a unique column."""


class ReferentialViolation(DataGenerationError):
    """A foreign reference does not resolve to a live row."""


class OrphanOrder(DataGenerationError):
    """An order has no line items at reconciliation time."""

    def __init__(self, order_ids) -> None:
        self.order_ids = list(order_ids)
        preview = ", ".join(str(i) for i in self.order_ids[:10])
        more = "" if len(self.order_ids) <= 10 else f" (+{len(self.order_ids) - 10} more)"
        super().__init__(f"{len(self.order_ids)} order(s) without line items: {preview}{more}")


class CheckViolation(DataGenerationError):
    """A row breaks a CHECK constraint (non-negative price, quantity >= 1, ...)."""
