"""
Loan Module

Loan entity for both directions of lending, its store with optimistic
versioning, the status state machine, and LoanManager which owns creation,
lookup, listing, profile edits, generic status updates, deletion and the
overdue sweep.

A "giving" loan is money the organization lends out; it is disbursed at
creation and starts Active. A "receiving" loan is money the organization
borrows; it starts Pending until the approval workflow takes the funds in.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import math
import secrets
import uuid

from .amounts import ZERO, require_positive, format_amount
from .audit import AuditTrail, AuditEventType
from .accounts import BankAccountManager
from .concurrency import LockManager, loan_key, account_key
from .config import LoanCoreConfig, get_config
from .directory import OfficerDirectory
from .events import EventDispatcher, DomainEvent, create_loan_event
from .exceptions import (
    ConcurrencyConflict, HasTransactions, ImmutableFieldViolation,
    InvalidTransition, LoanNotFound, ValidationError
)
from .ledger import LedgerStore, TransactionKind, TransactionCategory, TransactionSummary
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_core.loans")


class LoanDirection(Enum):
    """Which way the principal moves"""
    GIVING = "giving"          # organization lends money out
    RECEIVING = "receiving"    # organization borrows money in

    @classmethod
    def normalize(cls, value: Any) -> 'LoanDirection':
        """Accept any casing of a direction name"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            for direction in cls:
                if direction.value == value.strip().lower():
                    return direction
        raise ValidationError(f"Unknown loan direction: {value!r}")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "Pending"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    OVERDUE = "Overdue"
    REJECTED = "Rejected"

    @classmethod
    def normalize(cls, value: Any) -> 'LoanStatus':
        """'active', 'ACTIVE' and 'Active' all map to ACTIVE"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            wanted = value.strip().lower()
            for status in cls:
                if status.value.lower() == wanted:
                    return status
        raise ValidationError(f"Unknown loan status: {value!r}")

    @property
    def is_terminal(self) -> bool:
        return self in (LoanStatus.COMPLETED, LoanStatus.REJECTED)


class LoanEvent(Enum):
    """Inputs to the loan state machine"""
    CREATE_GIVING = "create_giving"
    CREATE_RECEIVING = "create_receiving"
    APPROVE = "approve"
    REJECT = "reject"
    PAYMENT = "payment"
    MARK_OVERDUE = "mark_overdue"
    REVERSAL = "reversal"


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid date: {value!r}")


def parse_duration(value: Any) -> Optional[int]:
    """Loan term in whole months, zero or more"""
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError(f"Duration must be a whole number of months: {value!r}")
    try:
        months = int(value)
    except ValueError:
        raise ValidationError(f"Duration must be a whole number of months: {value!r}")
    if months < 0:
        raise ValidationError("Duration cannot be negative")
    return months


def _iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class BorrowerProfile:
    """
    Borrower (giving) or lender (receiving) details

    Carried verbatim; only full_name is required. Image fields hold URLs of
    files kept by the external asset host.
    """
    full_name: str
    father_name: Optional[str] = None
    mother_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    marital_status: Optional[str] = None
    nid_number: Optional[str] = None
    nid_front_image: Optional[str] = None
    nid_back_image: Optional[str] = None
    profile_photo: Optional[str] = None
    present_address: Optional[str] = None
    permanent_address: Optional[str] = None
    district: Optional[str] = None
    upazila: Optional[str] = None
    post_code: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    emergency_contact: Optional[str] = None
    emergency_phone: Optional[str] = None
    business_name: Optional[str] = None
    business_type: Optional[str] = None
    business_address: Optional[str] = None

    def __post_init__(self):
        if not self.full_name or not str(self.full_name).strip():
            raise ValidationError("Borrower or lender full name is required")
        self.full_name = str(self.full_name).strip()

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BorrowerProfile':
        unknown = set(data) - set(PROFILE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        return cls(**data)


PROFILE_FIELDS: Tuple[str, ...] = tuple(f.name for f in fields(BorrowerProfile))

# Loan-level fields UpdateLoan may change besides the profile
EDITABLE_LOAN_FIELDS = (
    'loan_type', 'purpose', 'source', 'duration_months', 'commitment_date',
    'completion_date', 'reservation_officer_id', 'notes'
)

# Fields fixed at creation or owned by workflows
IMMUTABLE_FIELDS = (
    'id', 'loan_number', 'direction', 'total_amount', 'paid_amount', 'due_amount',
    'status', 'branch_id', 'created_by', 'created_at', 'updated_at', 'version',
    'approved_by', 'approved_by_name', 'approved_at', 'rejected_by', 'rejected_by_name',
    'rejected_at', 'rejection_reason', 'reservation_officer_name'
)


@dataclass
class Loan(StorageRecord):
    """Loan with derived due amount"""
    loan_number: str
    direction: LoanDirection
    status: LoanStatus
    total_amount: Decimal
    paid_amount: Decimal
    branch_id: str
    profile: BorrowerProfile
    loan_type: Optional[str] = None
    purpose: Optional[str] = None
    source: Optional[str] = None
    duration_months: Optional[int] = None
    commitment_date: Optional[date] = None
    completion_date: Optional[date] = None
    reservation_officer_id: Optional[str] = None
    reservation_officer_name: Optional[str] = None
    created_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_by_name: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_by_name: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None
    version: int = 0

    @property
    def due_amount(self) -> Decimal:
        """Principal still outstanding, never negative"""
        return max(ZERO, self.total_amount - self.paid_amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_number': self.loan_number,
            'direction': self.direction.value,
            'status': self.status.value,
            'total_amount': str(self.total_amount),
            'paid_amount': str(self.paid_amount),
            'branch_id': self.branch_id,
            'profile': self.profile.to_dict(),
            'loan_type': self.loan_type,
            'purpose': self.purpose,
            'source': self.source,
            'duration_months': self.duration_months,
            'commitment_date': _iso(self.commitment_date),
            'completion_date': _iso(self.completion_date),
            'reservation_officer_id': self.reservation_officer_id,
            'reservation_officer_name': self.reservation_officer_name,
            'created_by': self.created_by,
            'approved_by': self.approved_by,
            'approved_by_name': self.approved_by_name,
            'approved_at': _iso(self.approved_at),
            'rejected_by': self.rejected_by,
            'rejected_by_name': self.rejected_by_name,
            'rejected_at': _iso(self.rejected_at),
            'rejection_reason': self.rejection_reason,
            'notes': self.notes,
            'version': self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        def get_datetime(key: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            direction=LoanDirection(data['direction']),
            status=LoanStatus(data['status']),
            total_amount=Decimal(data['total_amount']),
            paid_amount=Decimal(data['paid_amount']),
            branch_id=data['branch_id'],
            profile=BorrowerProfile.from_dict(data['profile']),
            loan_type=data.get('loan_type'),
            purpose=data.get('purpose'),
            source=data.get('source'),
            duration_months=data.get('duration_months'),
            commitment_date=parse_date(data.get('commitment_date')),
            completion_date=parse_date(data.get('completion_date')),
            reservation_officer_id=data.get('reservation_officer_id'),
            reservation_officer_name=data.get('reservation_officer_name'),
            created_by=data.get('created_by'),
            approved_by=data.get('approved_by'),
            approved_by_name=data.get('approved_by_name'),
            approved_at=get_datetime('approved_at'),
            rejected_by=data.get('rejected_by'),
            rejected_by_name=data.get('rejected_by_name'),
            rejected_at=get_datetime('rejected_at'),
            rejection_reason=data.get('rejection_reason'),
            notes=data.get('notes'),
            version=data.get('version', 0)
        )

    def to_response(self, precision: int = 2) -> Dict[str, Any]:
        """Serialized form returned by the API, with the derived due amount"""
        result = self.to_dict()
        result['total_amount'] = format_amount(self.total_amount, precision)
        result['paid_amount'] = format_amount(self.paid_amount, precision)
        result['due_amount'] = format_amount(self.due_amount, precision)
        return result


class LoanStore:
    """
    Durable loan records with optimistic version checks

    Every save compares the loan's version with the stored one and bumps
    it, so a write computed from a stale read fails with
    ConcurrencyConflict instead of overwriting newer state.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "loans"):
        self.storage = storage
        self.table_name = table_name

    def get(self, loan_id: str) -> Loan:
        data = self.storage.load(self.table_name, loan_id) if loan_id else None
        if not data:
            raise LoanNotFound(loan_id)
        return Loan.from_dict(data)

    def exists(self, loan_id: str) -> bool:
        return self.storage.exists(self.table_name, loan_id)

    def all(self) -> List[Loan]:
        return [Loan.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def insert(self, loan: Loan) -> None:
        loan.version = 1
        self.storage.save(self.table_name, loan.id, loan.to_dict())

    def save(self, loan: Loan) -> None:
        """
        Raises:
            LoanNotFound: If the loan was deleted meanwhile
            ConcurrencyConflict: If the stored version moved on
        """
        stored = self.storage.load(self.table_name, loan.id)
        if not stored:
            raise LoanNotFound(loan.id)
        if stored.get('version', 0) != loan.version:
            raise ConcurrencyConflict(
                f"Loan {loan.id} was modified concurrently "
                f"(expected version {loan.version}, found {stored.get('version', 0)})"
            )
        loan.version += 1
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, loan.id, loan.to_dict())

    def delete(self, loan_id: str) -> bool:
        return self.storage.delete(self.table_name, loan_id)


class LoanStateMachine:
    """
    Legal loan status transitions

    Event-driven edges carry side effects (ledger entries) that the calling
    workflow performs; explicit status updates may only take edges that need
    no side effect.
    """

    TRANSITIONS: Dict[Tuple[Optional[LoanStatus], LoanEvent], Tuple[LoanStatus, ...]] = {
        (None, LoanEvent.CREATE_GIVING): (LoanStatus.ACTIVE,),
        (None, LoanEvent.CREATE_RECEIVING): (LoanStatus.PENDING,),
        (LoanStatus.PENDING, LoanEvent.APPROVE): (LoanStatus.ACTIVE,),
        (LoanStatus.PENDING, LoanEvent.REJECT): (LoanStatus.REJECTED,),
        (LoanStatus.ACTIVE, LoanEvent.PAYMENT): (LoanStatus.ACTIVE, LoanStatus.COMPLETED),
        (LoanStatus.OVERDUE, LoanEvent.PAYMENT): (LoanStatus.ACTIVE, LoanStatus.COMPLETED),
        (LoanStatus.ACTIVE, LoanEvent.MARK_OVERDUE): (LoanStatus.OVERDUE,),
        (LoanStatus.ACTIVE, LoanEvent.REVERSAL): (LoanStatus.ACTIVE,),
        (LoanStatus.OVERDUE, LoanEvent.REVERSAL): (LoanStatus.OVERDUE,),
        (LoanStatus.COMPLETED, LoanEvent.REVERSAL): (LoanStatus.ACTIVE, LoanStatus.COMPLETED),
    }

    STATUS_UPDATES = {
        LoanStatus.PENDING: (LoanStatus.REJECTED,),
        LoanStatus.ACTIVE: (LoanStatus.OVERDUE, LoanStatus.COMPLETED),
        LoanStatus.OVERDUE: (LoanStatus.COMPLETED,),
    }

    @classmethod
    def initial_status(cls, direction: LoanDirection) -> LoanStatus:
        event = LoanEvent.CREATE_GIVING if direction == LoanDirection.GIVING else LoanEvent.CREATE_RECEIVING
        return cls.TRANSITIONS[(None, event)][0]

    @classmethod
    def allowed_targets(cls, current: LoanStatus, event: LoanEvent) -> Tuple[LoanStatus, ...]:
        targets = cls.TRANSITIONS.get((current, event))
        if not targets:
            raise InvalidTransition(f"Event {event.value} is not allowed for a loan in status {current.value}")
        return targets

    @classmethod
    def transition(cls, current: LoanStatus, event: LoanEvent) -> LoanStatus:
        """Target of a single-outcome event"""
        return cls.allowed_targets(current, event)[0]

    @classmethod
    def after_payment(cls, loan: Loan) -> LoanStatus:
        """Status once a payment has been applied to loan.paid_amount"""
        targets = cls.allowed_targets(loan.status, LoanEvent.PAYMENT)
        if loan.due_amount == ZERO:
            return LoanStatus.COMPLETED
        return targets[0]

    @classmethod
    def after_reversal(cls, loan: Loan) -> LoanStatus:
        """Status once a reversed payment has been taken off loan.paid_amount"""
        targets = cls.allowed_targets(loan.status, LoanEvent.REVERSAL)
        if loan.status == LoanStatus.COMPLETED and loan.due_amount == ZERO:
            return LoanStatus.COMPLETED
        return targets[0]

    @classmethod
    def validate_status_update(cls, loan: Loan, target: LoanStatus) -> None:
        """
        Raises:
            InvalidTransition: If target is not reachable without a side effect
        """
        if target not in cls.STATUS_UPDATES.get(loan.status, ()):
            raise InvalidTransition(f"Cannot change loan status from {loan.status.value} to {target.value}")
        if target == LoanStatus.COMPLETED and loan.due_amount != ZERO:
            raise InvalidTransition(
                f"Cannot complete loan {loan.loan_number} with {loan.due_amount} still due"
            )


@dataclass
class LoanDetail:
    """GetLoan result"""
    loan: Loan
    transaction_summary: TransactionSummary

    def to_dict(self, precision: int = 2) -> Dict[str, Any]:
        return {
            'loan': self.loan.to_response(precision),
            'transactionSummary': self.transaction_summary.to_dict(precision)
        }


@dataclass
class LoanPage:
    """ListLoans result"""
    loans: List[Loan]
    total_count: int
    current_page: int
    total_pages: int

    @property
    def count(self) -> int:
        return len(self.loans)

    def to_dict(self, precision: int = 2) -> Dict[str, Any]:
        return {
            'loans': [loan.to_response(precision) for loan in self.loans],
            'count': self.count,
            'totalCount': self.total_count,
            'currentPage': self.current_page,
            'totalPages': self.total_pages
        }


def generate_loan_number(today: Optional[date] = None) -> str:
    """LN-YYYYMMDD-XXXXXX"""
    today = today or datetime.now(timezone.utc).date()
    return f"LN-{today.strftime('%Y%m%d')}-{secrets.token_hex(3).upper()}"


class LoanManager:
    """
    Manages the loan lifecycle outside the approval and payment workflows

    Every write holds the per-loan lock and runs inside one storage
    transaction. Audit records, events and action logs are attached with
    storage.on_commit so they only appear for writes that committed.
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: LedgerStore,
        accounts: BankAccountManager,
        audit_trail: AuditTrail,
        locks: LockManager,
        event_dispatcher: Optional[EventDispatcher] = None,
        directory: Optional[OfficerDirectory] = None,
        config: Optional[LoanCoreConfig] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.accounts = accounts
        self.audit_trail = audit_trail
        self.locks = locks
        self._event_dispatcher = event_dispatcher
        self.directory = directory
        self.config = config or get_config()
        self.loans = LoanStore(storage)
        self.state_machine = LoanStateMachine

    @property
    def precision(self) -> int:
        return self.config.amount_precision

    def display_name(self, officer_id: Optional[str]) -> Optional[str]:
        if not officer_id or not self.directory:
            return None
        return self.directory.get_display_name(officer_id)

    def after_commit(
        self,
        loan: Loan,
        audit_event: AuditEventType,
        domain_event: DomainEvent,
        action: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Queue the audit record, domain event and action log for a loan write"""
        snapshot = Loan.from_dict(loan.to_dict())
        metadata = dict(metadata or {})

        def notify():
            audit_metadata = {
                "loan_number": snapshot.loan_number,
                "status": snapshot.status,
                "paid_amount": snapshot.paid_amount,
                "due_amount": snapshot.due_amount
            }
            audit_metadata.update(metadata)
            self.audit_trail.log_event(
                event_type=audit_event,
                entity_type="loan",
                entity_id=snapshot.id,
                metadata=audit_metadata,
                user_id=user_id
            )
            if self._event_dispatcher:
                self._event_dispatcher.publish(create_loan_event(domain_event, snapshot, **metadata))
            log_action(logger, "info", f"Loan {snapshot.loan_number} {action.replace('_', ' ')}",
                       user_id=user_id, action=action, resource=f"loan:{snapshot.id}",
                       extra={"status": snapshot.status.value})

        self.storage.on_commit(notify)

    def create_loan(
        self,
        direction: Any,
        total_amount: Any,
        profile: Any,
        branch_id: Optional[str] = None,
        created_by: Optional[str] = None,
        loan_type: Optional[str] = None,
        purpose: Optional[str] = None,
        source: Optional[str] = None,
        duration_months: Optional[int] = None,
        commitment_date: Any = None,
        completion_date: Any = None,
        reservation_officer_id: Optional[str] = None,
        notes: Optional[str] = None,
        source_account_id: Optional[str] = None
    ) -> Loan:
        """
        Create a loan in its initial status

        A giving loan is disbursed immediately: a debit for the full amount is
        appended and, when source_account_id is given, that account pays it.

        Raises:
            ValidationError: Missing full name, unknown direction, or a source
                account on a receiving loan
            InvalidAmount: If total_amount is not positive
            AccountNotFound: If source_account_id does not resolve
        """
        direction = LoanDirection.normalize(direction)
        amount = require_positive(total_amount, self.precision)
        if not isinstance(profile, BorrowerProfile):
            profile = BorrowerProfile.from_dict(dict(profile or {}))
        if source_account_id and direction != LoanDirection.GIVING:
            raise ValidationError("A source account can only fund a giving loan")
        duration_months = parse_duration(duration_months)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_number=generate_loan_number(now.date()),
            direction=direction,
            status=self.state_machine.initial_status(direction),
            total_amount=amount,
            paid_amount=ZERO,
            branch_id=branch_id or self.config.default_branch_id,
            profile=profile,
            loan_type=loan_type,
            purpose=purpose,
            source=source,
            duration_months=duration_months,
            commitment_date=parse_date(commitment_date),
            completion_date=parse_date(completion_date),
            reservation_officer_id=reservation_officer_id,
            reservation_officer_name=self.display_name(reservation_officer_id),
            created_by=created_by,
            notes=notes
        )

        keys = [loan_key(loan.id)]
        if source_account_id:
            keys.append(account_key(source_account_id))

        with self.locks.lock_many(keys):
            with self.storage.atomic():
                self.loans.insert(loan)
                if direction == LoanDirection.GIVING:
                    self.ledger.record(
                        loan_id=loan.id,
                        kind=TransactionKind.DEBIT,
                        category=TransactionCategory.DISBURSEMENT,
                        amount=amount,
                        bank_account_id=source_account_id,
                        description=f"Disbursement of loan {loan.loan_number}",
                        performed_by=created_by,
                        branch_id=loan.branch_id
                    )
                    if source_account_id:
                        self.accounts.apply_balance_delta(
                            source_account_id, -amount, f"Disbursement of loan {loan.loan_number}",
                            performed_by=created_by, loan_id=loan.id
                        )
                self.after_commit(
                    loan, AuditEventType.LOAN_CREATED, DomainEvent.LOAN_CREATED, "create_loan",
                    user_id=created_by,
                    metadata={"direction": direction.value, "total_amount": amount,
                              "branch_id": loan.branch_id}
                )

        return loan

    def get_loan(self, loan_id: str) -> Loan:
        """
        Raises:
            LoanNotFound: If no such loan exists
        """
        return self.loans.get(loan_id)

    def get_loan_detail(self, loan_id: str) -> LoanDetail:
        loan = self.loans.get(loan_id)
        return LoanDetail(loan=loan, transaction_summary=self.ledger.summary(loan_id))

    def list_loans(
        self,
        direction: Any = None,
        status: Any = None,
        branch_id: Optional[str] = None,
        date_from: Any = None,
        date_to: Any = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None
    ) -> LoanPage:
        """
        Filter, search and page loans, newest first

        Dates filter on the creation date and are inclusive. search matches
        loan number, name, phone, NID and business name case-insensitively.

        Raises:
            ValidationError: Bad page, limit, direction or status
        """
        if limit is None:
            limit = self.config.default_page_limit
        if page < 1:
            raise ValidationError("page must be at least 1")
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        limit = min(limit, self.config.max_page_limit)

        direction = LoanDirection.normalize(direction) if direction else None
        status = LoanStatus.normalize(status) if status else None
        date_from = parse_date(date_from)
        date_to = parse_date(date_to)
        needle = search.strip().lower() if search and search.strip() else None

        def matches(loan: Loan) -> bool:
            if direction and loan.direction != direction:
                return False
            if status and loan.status != status:
                return False
            if branch_id and loan.branch_id != branch_id:
                return False
            created = loan.created_at.date()
            if date_from and created < date_from:
                return False
            if date_to and created > date_to:
                return False
            if needle:
                haystack = (
                    loan.loan_number, loan.profile.full_name, loan.profile.contact_phone,
                    loan.profile.nid_number, loan.profile.business_name
                )
                if not any(needle in value.lower() for value in haystack if value):
                    return False
            return True

        selected = [loan for loan in self.loans.all() if matches(loan)]
        selected.sort(key=lambda loan: (loan.created_at, loan.loan_number), reverse=True)

        total_count = len(selected)
        start = (page - 1) * limit
        return LoanPage(
            loans=selected[start:start + limit],
            total_count=total_count,
            current_page=page,
            total_pages=math.ceil(total_count / limit)
        )

    def update_loan(self, loan_id: str, changes: Dict[str, Any], updated_by: Optional[str] = None) -> Loan:
        """
        Edit profile and descriptive fields

        Raises:
            ImmutableFieldViolation: If changes name a field fixed at creation
                or owned by a workflow
            ValidationError: Unknown field or blank full name
        """
        changes = dict(changes)
        if isinstance(changes.get('profile'), dict):
            changes.update(changes.pop('profile'))

        immutable = sorted(key for key in changes if key in IMMUTABLE_FIELDS)
        if immutable:
            raise ImmutableFieldViolation(f"Fields cannot be changed: {', '.join(immutable)}")
        unknown = sorted(key for key in changes if key not in PROFILE_FIELDS and key not in EDITABLE_LOAN_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown loan fields: {', '.join(unknown)}")
        if not changes:
            raise ValidationError("No fields to update")
        if 'duration_months' in changes:
            changes['duration_months'] = parse_duration(changes['duration_months'])

        with self.locks.lock(loan_key(loan_id)):
            with self.storage.atomic():
                loan = self.loans.get(loan_id)

                profile_data = loan.profile.to_dict()
                profile_data.update({k: v for k, v in changes.items() if k in PROFILE_FIELDS})
                loan.profile = BorrowerProfile.from_dict(profile_data)

                for key in EDITABLE_LOAN_FIELDS:
                    if key not in changes:
                        continue
                    value = changes[key]
                    if key in ('commitment_date', 'completion_date'):
                        value = parse_date(value)
                    setattr(loan, key, value)
                if 'reservation_officer_id' in changes:
                    loan.reservation_officer_name = self.display_name(loan.reservation_officer_id)

                self.loans.save(loan)
                self.after_commit(
                    loan, AuditEventType.LOAN_UPDATED, DomainEvent.LOAN_UPDATED, "update_loan",
                    user_id=updated_by, metadata={"fields": ",".join(sorted(changes))}
                )

        return loan

    def update_loan_status(self, loan_id: str, status: Any, updated_by: Optional[str] = None) -> Loan:
        """
        Generic status change limited to edges without side effects

        Raises:
            ValidationError: Unknown status string
            InvalidTransition: Edge not allowed from the current status
        """
        target = LoanStatus.normalize(status)

        with self.locks.lock(loan_key(loan_id)):
            with self.storage.atomic():
                loan = self.loans.get(loan_id)
                self.state_machine.validate_status_update(loan, target)

                previous = loan.status
                loan.status = target
                if target == LoanStatus.REJECTED:
                    loan.rejected_by = updated_by
                    loan.rejected_by_name = self.display_name(updated_by)
                    loan.rejected_at = datetime.now(timezone.utc)
                self.loans.save(loan)
                self.after_commit(
                    loan, AuditEventType.LOAN_STATUS_CHANGED, DomainEvent.LOAN_STATUS_CHANGED,
                    "update_loan_status", user_id=updated_by,
                    metadata={"previous_status": previous.value, "new_status": target.value}
                )

        return loan

    def delete_loan(self, loan_id: str, deleted_by: Optional[str] = None) -> Loan:
        """
        Remove a loan that never touched the ledger

        Raises:
            LoanNotFound: If no such loan exists
            HasTransactions: If any ledger entry references the loan
        """
        with self.locks.lock(loan_key(loan_id)):
            with self.storage.atomic():
                loan = self.loans.get(loan_id)
                if self.ledger.has_transactions(loan_id):
                    raise HasTransactions(f"Loan {loan.loan_number} has transactions and cannot be deleted")
                self.loans.delete(loan_id)
                self.after_commit(
                    loan, AuditEventType.LOAN_DELETED, DomainEvent.LOAN_DELETED, "delete_loan",
                    user_id=deleted_by
                )

        return loan

    def mark_overdue(self, loan_id: str, marked_by: Optional[str] = None) -> Loan:
        """
        Scheduler signal moving an Active loan to Overdue

        Raises:
            InvalidTransition: If the loan is not Active
        """
        with self.locks.lock(loan_key(loan_id)):
            with self.storage.atomic():
                loan = self.loans.get(loan_id)
                loan.status = self.state_machine.transition(loan.status, LoanEvent.MARK_OVERDUE)
                self.loans.save(loan)
                self.after_commit(
                    loan, AuditEventType.LOAN_STATUS_CHANGED, DomainEvent.LOAN_STATUS_CHANGED,
                    "mark_overdue", user_id=marked_by,
                    metadata={"previous_status": LoanStatus.ACTIVE.value,
                              "new_status": LoanStatus.OVERDUE.value}
                )

        return loan

    def sweep_overdue(self, as_of: Any, marked_by: Optional[str] = None) -> List[Loan]:
        """Mark every Active loan whose commitment date is before as_of"""
        as_of = parse_date(as_of)
        if as_of is None:
            raise ValidationError("as_of date is required")

        candidates = [
            loan for loan in self.loans.all()
            if loan.status == LoanStatus.ACTIVE and loan.commitment_date and loan.commitment_date < as_of
        ]
        candidates.sort(key=lambda loan: (loan.commitment_date, loan.loan_number))

        marked = []
        for loan in candidates:
            try:
                marked.append(self.mark_overdue(loan.id, marked_by))
            except (InvalidTransition, LoanNotFound) as e:
                # Paid off or deleted since the scan
                logger.info(f"Skipping overdue mark for loan {loan.loan_number}: {e}")
        return marked
