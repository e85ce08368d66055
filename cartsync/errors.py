"""
Cart error taxonomy and user-facing notice texts.

Notice strings are centralized to keep the three cart surfaces wording-consistent.
"""

# User-facing notices
ERROR_LOGIN_REQUIRED = "Please login to manage your cart"
ERROR_CART_LOADING = "Your cart is still loading. Please try again in a moment."
ERROR_LOAD_FAILED = "Failed to load cart. Please try again later."
ERROR_UPDATE_FAILED = "Failed to update cart. Please try again."
ERROR_REMOVE_FAILED = "Failed to remove item. Please try again."
ERROR_EMPTY_SELECTION = "Please select at least one item to proceed."
ERROR_INVALID_DISCOUNT = "Discount percent must be between 0 and 100"


class CartError(Exception):
    """Base class for every recoverable cart failure."""

    notice = ERROR_UPDATE_FAILED

    def __init__(self, message: str | None = None):
        super().__init__(message or self.notice)


class GatewayUnavailable(CartError):
    """Remote query or subscription failed; the local cache is left as it was."""

    notice = ERROR_LOAD_FAILED


class WriteRejected(CartError):
    """Remote upsert/delete failed; the optimistic local change gets rolled back."""

    notice = ERROR_UPDATE_FAILED

    def __init__(self, message: str | None = None, doc_id: str | None = None):
        super().__init__(message)
        self.doc_id = doc_id


class EmptySelection(CartError):
    """Checkout requested with no line selected."""

    notice = ERROR_EMPTY_SELECTION


class InvalidDiscount(CartError, ValueError):
    """Discount percent outside [0, 100]."""

    notice = ERROR_INVALID_DISCOUNT


class CartNotReady(CartError):
    """Mutation attempted while no identity is synced."""

    notice = ERROR_LOGIN_REQUIRED
