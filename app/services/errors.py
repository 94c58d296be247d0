"""
Billing error taxonomy.

Every error raised out of the billing services derives from ``BillingError``.
The HTTP layer renders them with a generic message; the class name and the
internal message are only ever logged.
"""

GENERIC_PAYMENT_MESSAGE = "Payment could not be completed. Please retry."


class BillingError(Exception):
    """Base exception for billing and entitlement errors."""
    status_code = 500
    retryable = False
    public_message = GENERIC_PAYMENT_MESSAGE


class ConflictError(Exception):
    """
    A write violated a unique constraint in the ledger store.

    Raised by the store only; services translate it into recovery or into one
    of the BillingError kinds below.
    """
    pass


class GatewayUnavailable(BillingError):
    """The gateway could not create an order (network, timeout, bad response)."""
    status_code = 502
    retryable = True


class DuplicateIntent(BillingError):
    """A payment for the same gateway order already exists. Recovered internally."""
    status_code = 409


class OrphanedRecordConflict(BillingError):
    """Insert still conflicts after the orphan sweep and one retry."""
    status_code = 503
    retryable = True


class InvalidOrderRequest(BillingError):
    """An order request the billing rules cannot price or scope."""
    status_code = 400


class PaymentNotFound(BillingError):
    status_code = 404


class SignatureMismatch(BillingError):
    """Callback signature did not match. Terminal for this payment attempt."""
    status_code = 400


class AlreadyFailed(BillingError):
    """Attempt to verify a payment that has already been marked failed."""
    status_code = 409


class CrossTrackConflict(BillingError):
    """An update would have mutated another track's entitlement. Always a bug."""
    status_code = 500


class PersistenceRace(BillingError):
    """A concurrent writer won and the fallback lookups found nothing to update."""
    status_code = 503
    retryable = True


class SubscriptionNotFound(BillingError):
    status_code = 404
    public_message = "No active subscription found."
