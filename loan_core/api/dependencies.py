"""
System wiring and FastAPI dependencies
"""

import threading
from typing import Optional

from ..accounts import BankAccountManager
from ..audit import AuditTrail
from ..concurrency import LockManager
from ..config import LoanCoreConfig, get_config
from ..directory import InMemoryOfficerDirectory, OfficerDirectory
from ..events import EventDispatcher
from ..ledger import LedgerStore
from ..loans import LoanManager
from ..payments import PaymentRecorder
from ..reporting import LoanReportingEngine
from ..storage import StorageInterface, create_storage
from ..workflows import ApprovalWorkflow


class LoanSystem:
    """Loan core with all components initialized over one storage backend"""

    def __init__(
        self,
        config: Optional[LoanCoreConfig] = None,
        storage: Optional[StorageInterface] = None,
        directory: Optional[OfficerDirectory] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        precision = self.config.amount_precision

        self.locks = LockManager()
        self.event_dispatcher = EventDispatcher()
        self.directory = directory or InMemoryOfficerDirectory()
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)

        self.account_manager = BankAccountManager(
            self.storage, self.audit_trail, self.locks, self.event_dispatcher, precision
        )
        self.ledger = LedgerStore(
            self.storage, self.audit_trail, self.locks, self.event_dispatcher, precision
        )
        self.loan_manager = LoanManager(
            self.storage, self.ledger, self.account_manager, self.audit_trail, self.locks,
            event_dispatcher=self.event_dispatcher,
            directory=self.directory,
            config=self.config
        )
        self.approval_workflow = ApprovalWorkflow(self.loan_manager, self.account_manager)
        self.payment_recorder = PaymentRecorder(self.loan_manager, self.account_manager)
        self.reporting_engine = LoanReportingEngine(self.loan_manager.loans, self.ledger, precision)

    @property
    def precision(self) -> int:
        return self.config.amount_precision


_system: Optional[LoanSystem] = None
_system_lock = threading.Lock()


def get_loan_system() -> LoanSystem:
    """Process-wide system, built on first use from the global configuration"""
    global _system
    with _system_lock:
        if _system is None:
            _system = LoanSystem()
        return _system
