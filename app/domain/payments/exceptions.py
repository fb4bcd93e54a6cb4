"""Payment errors. Routers map these to HTTP responses; services never raise HTTPException."""

from typing import Optional


class PaymentError(Exception):
    """Base class for payment domain errors"""

    code = "payment_error"
    retryable = False

    def __init__(self, message: str, invoice_id: Optional[str] = None, operation_id: Optional[str] = None):
        self.message = message
        self.invoice_id = invoice_id
        self.operation_id = operation_id
        super().__init__(message)


class SignatureVerificationError(PaymentError):
    """Callback signature did not match; never retried"""

    code = "signature_invalid"


class PaymentIntegrityError(PaymentError):
    """Amount mismatch or conflicting operation id; needs an operator"""

    code = "integrity_violation"


class InvoiceNotFoundError(PaymentError):
    code = "invoice_not_found"


class InvalidTransitionError(PaymentError):
    """Event does not apply to the invoice's current status"""

    code = "invalid_transition"

    def __init__(self, message: str, invoice_id: Optional[str] = None, operation_id: Optional[str] = None,
                 current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message, invoice_id, operation_id)


class ConcurrentTransitionError(InvalidTransitionError):
    """Another writer changed the invoice between read and conditional update"""

    code = "concurrent_transition"


class RefundNotAllowedError(PaymentError):
    """Terminal business rejection; reason is safe to show to the user"""

    code = "refund_not_allowed"

    def __init__(self, reason: str, invoice_id: Optional[str] = None):
        self.reason = reason
        super().__init__(reason, invoice_id)


class GatewayError(PaymentError):
    """Gateway answered but refused or returned an unexpected result"""

    code = "gateway_error"


class GatewayUnavailableError(GatewayError):
    """Timeout, connection failure, 5xx or unreadable response"""

    code = "gateway_unavailable"
    retryable = True
