from .payment import (
    CheckoutOut,
    EnrollmentOut,
    InitializePaymentRequest,
    Pagination,
    TransactionOut,
    VerificationOut,
)

__all__ = [
    "CheckoutOut",
    "EnrollmentOut",
    "InitializePaymentRequest",
    "Pagination",
    "TransactionOut",
    "VerificationOut",
]
