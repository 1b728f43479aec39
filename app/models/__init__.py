from app.models.user import User
from app.models.wallet import Wallet
from app.models.reservation import Reservation, ReservationStatus
from app.models.ledger_transaction import LedgerTransaction, TransactionType
from app.models.system_config import SystemConfig
from app.models.audit_log import AuditLog
from app.models.failed_job import FailedJob

__all__ = [
    "User",
    "Wallet",
    "Reservation",
    "ReservationStatus",
    "LedgerTransaction",
    "TransactionType",
    "SystemConfig",
    "AuditLog",
    "FailedJob",
]
