from .audit import AuditLog
from .course import Course
from .enrollment import Enrollment, EnrollmentStatus
from .error_log import ErrorLog
from .security_log import SecurityLog
from .transaction import TERMINAL_STATUSES, PaymentTransaction, TransactionStatus
from .user import User

__all__ = [
    "AuditLog",
    "Course",
    "Enrollment",
    "EnrollmentStatus",
    "ErrorLog",
    "PaymentTransaction",
    "SecurityLog",
    "TERMINAL_STATUSES",
    "TransactionStatus",
    "User",
]
