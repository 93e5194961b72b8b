"""
Test suite for loans module

Creation in both directions, the status state machine, listing, profile
edits, generic status updates, deletion and the overdue sweep.
"""

import re
import pytest
from decimal import Decimal
from datetime import date, datetime, timedelta, timezone

from loan_core.api.dependencies import LoanSystem
from loan_core.audit import AuditEventType
from loan_core.config import LoanCoreConfig
from loan_core.directory import InMemoryOfficerDirectory
from loan_core.exceptions import (
    AccountNotFound, ConcurrencyConflict, HasTransactions, ImmutableFieldViolation,
    InvalidAmount, InvalidTransition, LoanNotFound, ValidationError
)
from loan_core.ledger import TransactionKind, TransactionCategory
from loan_core.loans import (
    BorrowerProfile, Loan, LoanDirection, LoanEvent, LoanStateMachine, LoanStatus
)
from loan_core.storage import InMemoryStorage


@pytest.fixture
def directory():
    return InMemoryOfficerDirectory({"off-1": "Rahim Uddin", "off-2": "Karima Begum"})


@pytest.fixture
def system(directory):
    config = LoanCoreConfig(database_url="memory://", default_page_limit=2, max_page_limit=5)
    return LoanSystem(config=config, storage=InMemoryStorage(), directory=directory)


@pytest.fixture
def manager(system):
    return system.loan_manager


def giving(manager, amount="50000", name="Abdul Karim", **kwargs):
    return manager.create_loan("giving", amount, {"full_name": name}, **kwargs)


def receiving(manager, amount="100000", name="Sonali Traders", **kwargs):
    return manager.create_loan("receiving", amount, {"full_name": name}, **kwargs)


class TestEnums:

    @pytest.mark.parametrize("raw", ["active", "ACTIVE", "Active", " active "])
    def test_status_normalized_from_any_case(self, raw):
        assert LoanStatus.normalize(raw) == LoanStatus.ACTIVE

    def test_unknown_status_rejected(self):
        with pytest.raises(ValidationError):
            LoanStatus.normalize("closed-ish")

    def test_direction_normalized(self):
        assert LoanDirection.normalize("GIVING") == LoanDirection.GIVING
        with pytest.raises(ValidationError):
            LoanDirection.normalize("sideways")

    def test_terminal_states(self):
        assert LoanStatus.COMPLETED.is_terminal
        assert LoanStatus.REJECTED.is_terminal
        assert not LoanStatus.OVERDUE.is_terminal


class TestStateMachine:

    def test_initial_status_by_direction(self):
        assert LoanStateMachine.initial_status(LoanDirection.GIVING) == LoanStatus.ACTIVE
        assert LoanStateMachine.initial_status(LoanDirection.RECEIVING) == LoanStatus.PENDING

    @pytest.mark.parametrize("current,event,expected", [
        (LoanStatus.PENDING, LoanEvent.APPROVE, LoanStatus.ACTIVE),
        (LoanStatus.PENDING, LoanEvent.REJECT, LoanStatus.REJECTED),
        (LoanStatus.ACTIVE, LoanEvent.MARK_OVERDUE, LoanStatus.OVERDUE),
    ])
    def test_allowed_edges(self, current, event, expected):
        assert LoanStateMachine.transition(current, event) == expected

    @pytest.mark.parametrize("current,event", [
        (LoanStatus.ACTIVE, LoanEvent.APPROVE),
        (LoanStatus.REJECTED, LoanEvent.APPROVE),
        (LoanStatus.COMPLETED, LoanEvent.PAYMENT),
        (LoanStatus.PENDING, LoanEvent.PAYMENT),
        (LoanStatus.OVERDUE, LoanEvent.MARK_OVERDUE),
        (LoanStatus.ACTIVE, LoanEvent.REJECT),
    ])
    def test_illegal_edges(self, current, event):
        with pytest.raises(InvalidTransition):
            LoanStateMachine.transition(current, event)


class TestCreateLoan:

    def test_giving_loan_starts_active_with_disbursement(self, system, manager):
        loan = giving(manager, amount="50000")

        assert loan.status == LoanStatus.ACTIVE
        assert loan.total_amount == Decimal("50000.00")
        assert loan.paid_amount == Decimal("0")
        assert loan.due_amount == Decimal("50000.00")

        entries = system.ledger.list_by_loan(loan.id)
        assert len(entries) == 1
        assert entries[0].kind == TransactionKind.DEBIT
        assert entries[0].category == TransactionCategory.DISBURSEMENT
        assert entries[0].amount == Decimal("50000.00")

    def test_receiving_loan_starts_pending_without_entries(self, system, manager):
        loan = receiving(manager, amount="100000")

        assert loan.status == LoanStatus.PENDING
        assert loan.due_amount == Decimal("100000.00")
        assert system.ledger.list_by_loan(loan.id) == []

    def test_loan_number_format(self, manager):
        loan = giving(manager)
        assert re.fullmatch(r"LN-\d{8}-[0-9A-F]{6}", loan.loan_number)

    def test_default_branch_applied(self, manager):
        assert giving(manager).branch_id == "main_branch"
        assert giving(manager, branch_id="chittagong").branch_id == "chittagong"

    def test_reservation_officer_name_looked_up(self, manager):
        loan = giving(manager, reservation_officer_id="off-1")
        assert loan.reservation_officer_name == "Rahim Uddin"

    def test_unknown_officer_leaves_name_empty(self, manager):
        loan = giving(manager, reservation_officer_id="ghost")
        assert loan.reservation_officer_id == "ghost"
        assert loan.reservation_officer_name is None

    def test_full_name_required(self, manager):
        with pytest.raises(ValidationError):
            manager.create_loan("giving", "100", {"full_name": "   "})

    def test_unknown_profile_field_rejected(self, manager):
        with pytest.raises(ValidationError):
            manager.create_loan("giving", "100", {"full_name": "A", "shoe_size": "9"})

    @pytest.mark.parametrize("value", [-1, 1.5])
    def test_bad_duration_rejected(self, manager, value):
        with pytest.raises(ValidationError):
            giving(manager, duration_months=value)

    @pytest.mark.parametrize("amount", ["0", "-10", "ten", "1e5", "12abc34", "1" + "0" * 30])
    def test_invalid_amount(self, manager, amount):
        with pytest.raises(InvalidAmount):
            giving(manager, amount=amount)

    def test_source_account_funds_giving_loan(self, system, manager):
        account = system.account_manager.create_account("Cash", opening_balance="80000")
        loan = giving(manager, amount="50000", source_account_id=account.id)

        assert system.account_manager.get_account(account.id).balance == Decimal("30000.00")
        assert system.ledger.list_by_loan(loan.id)[0].bank_account_id == account.id

    def test_insufficient_source_balance_creates_nothing(self, system, manager):
        account = system.account_manager.create_account("Cash", opening_balance="100")

        with pytest.raises(InvalidAmount):
            giving(manager, amount="50000", source_account_id=account.id)

        assert system.loan_manager.loans.all() == []
        assert system.ledger.list_all() == []
        assert system.account_manager.get_account(account.id).balance == Decimal("100.00")
        assert system.audit_trail.get_events_by_type(AuditEventType.LOAN_CREATED) == []

    def test_missing_source_account(self, system, manager):
        with pytest.raises(AccountNotFound):
            giving(manager, source_account_id="no-such-account")
        assert system.loan_manager.loans.all() == []

    def test_source_account_rejected_for_receiving(self, system, manager):
        account = system.account_manager.create_account("Cash", opening_balance="10")
        with pytest.raises(ValidationError):
            receiving(manager, source_account_id=account.id)

    def test_creation_audited(self, system, manager):
        loan = giving(manager, created_by="off-1")
        events = system.audit_trail.get_events_for_entity("loan", loan.id)
        assert [e.event_type for e in events] == [AuditEventType.LOAN_CREATED]
        assert events[0].user_id == "off-1"


class TestGetLoan:

    def test_get_missing_loan(self, manager):
        with pytest.raises(LoanNotFound):
            manager.get_loan("missing")

    def test_detail_includes_transaction_summary(self, manager):
        loan = giving(manager, amount="1000")
        detail = manager.get_loan_detail(loan.id).to_dict()

        assert detail["loan"]["id"] == loan.id
        assert detail["loan"]["due_amount"] == "1000.00"
        summary = detail["transactionSummary"]
        assert summary["count"] == 1
        assert summary["totalPaid"] == "1000.00"
        assert summary["totalReceived"] == "0.00"

    def test_loan_round_trip(self, manager):
        loan = giving(manager, commitment_date="2025-03-01", purpose="Rickshaw purchase")
        restored = Loan.from_dict(loan.to_dict())
        assert restored == loan
        assert restored.commitment_date == date(2025, 3, 1)


class TestListLoans:

    def test_filters_and_paging(self, manager):
        giving(manager, name="Abdul Karim", branch_id="dhaka")
        giving(manager, name="Nasima Akter", branch_id="dhaka")
        giving(manager, name="Jamal Hossain", branch_id="sylhet")
        receiving(manager, name="Padma Bank", branch_id="dhaka")

        page = manager.list_loans(branch_id="dhaka", page=1)
        assert page.total_count == 3
        assert page.count == 2
        assert page.total_pages == 2

        second = manager.list_loans(branch_id="dhaka", page=2)
        assert second.count == 1

        assert manager.list_loans(direction="receiving").total_count == 1
        assert manager.list_loans(status="PENDING").total_count == 1
        assert manager.list_loans(status="active", branch_id="sylhet").total_count == 1

    def test_newest_first(self, manager):
        first = giving(manager)
        second = giving(manager)
        ids = [loan.id for loan in manager.list_loans(limit=5).loans]
        assert ids.index(second.id) < ids.index(first.id)

    def test_search_matches_name_phone_and_number(self, manager):
        karim = manager.create_loan("giving", "100", {"full_name": "Abdul Karim", "contact_phone": "01711000000"})
        giving(manager, name="Someone Else")

        assert [l.id for l in manager.list_loans(search="karim").loans] == [karim.id]
        assert [l.id for l in manager.list_loans(search="017110").loans] == [karim.id]
        assert [l.id for l in manager.list_loans(search=karim.loan_number.lower()).loans] == [karim.id]

    def test_date_range_is_inclusive(self, manager):
        giving(manager)
        today = datetime.now(timezone.utc).date()
        assert manager.list_loans(date_from=today, date_to=today).total_count == 1
        assert manager.list_loans(date_from=today + timedelta(days=1)).total_count == 0
        assert manager.list_loans(date_to=today - timedelta(days=1)).total_count == 0

    def test_limit_is_capped(self, manager):
        for _ in range(7):
            giving(manager, amount="10")
        page = manager.list_loans(limit=100)
        assert page.count == 5
        assert page.total_pages == 2

    def test_empty_result(self, manager):
        page = manager.list_loans()
        assert page.to_dict() == {"loans": [], "count": 0, "totalCount": 0, "currentPage": 1, "totalPages": 0}

    @pytest.mark.parametrize("kwargs", [{"page": 0}, {"limit": 0}, {"status": "bogus"}, {"direction": "up"}])
    def test_bad_parameters(self, manager, kwargs):
        with pytest.raises(ValidationError):
            manager.list_loans(**kwargs)


class TestUpdateLoan:

    def test_profile_fields_updated(self, system, manager):
        loan = giving(manager)
        updated = manager.update_loan(loan.id, {
            "present_address": "House 12, Road 5, Dhanmondi",
            "contact_phone": "01811000000",
            "purpose": "Shop stock"
        }, updated_by="off-2")

        assert updated.profile.present_address == "House 12, Road 5, Dhanmondi"
        assert updated.purpose == "Shop stock"
        assert updated.version == loan.version + 1
        assert manager.get_loan(loan.id).profile.contact_phone == "01811000000"
        assert system.audit_trail.get_events_by_type(AuditEventType.LOAN_UPDATED)[0].user_id == "off-2"

    def test_nested_profile_accepted(self, manager):
        loan = giving(manager)
        updated = manager.update_loan(loan.id, {"profile": {"full_name": "Abdul Karim Sr."}})
        assert updated.profile.full_name == "Abdul Karim Sr."

    @pytest.mark.parametrize("field,value", [
        ("total_amount", "1"),
        ("direction", "receiving"),
        ("id", "other"),
        ("paid_amount", "10"),
        ("status", "Completed"),
        ("loan_number", "LN-1"),
    ])
    def test_immutable_fields(self, manager, field, value):
        loan = giving(manager)
        with pytest.raises(ImmutableFieldViolation):
            manager.update_loan(loan.id, {field: value, "purpose": "x"})
        assert manager.get_loan(loan.id) == loan

    def test_unknown_field(self, manager):
        loan = giving(manager)
        with pytest.raises(ValidationError):
            manager.update_loan(loan.id, {"favourite_colour": "blue"})

    def test_blank_name_rejected(self, manager):
        loan = giving(manager)
        with pytest.raises(ValidationError):
            manager.update_loan(loan.id, {"full_name": ""})
        assert manager.get_loan(loan.id).profile.full_name == "Abdul Karim"

    def test_officer_change_refreshes_name(self, manager):
        loan = giving(manager, reservation_officer_id="off-1")
        updated = manager.update_loan(loan.id, {"reservation_officer_id": "off-2"})
        assert updated.reservation_officer_name == "Karima Begum"

    def test_duration_updated(self, manager):
        loan = giving(manager, duration_months=6)
        assert manager.update_loan(loan.id, {"duration_months": 12}).duration_months == 12
        assert manager.update_loan(loan.id, {"duration_months": "18"}).duration_months == 18

    @pytest.mark.parametrize("value", [-1, "-3", 2.5, "six", True])
    def test_bad_duration_rejected(self, manager, value):
        loan = giving(manager, duration_months=6)
        with pytest.raises(ValidationError):
            manager.update_loan(loan.id, {"duration_months": value})
        assert manager.get_loan(loan.id).duration_months == 6

    def test_missing_loan(self, manager):
        with pytest.raises(LoanNotFound):
            manager.update_loan("missing", {"purpose": "x"})


class TestUpdateLoanStatus:

    def test_pending_to_rejected(self, manager):
        loan = receiving(manager)
        updated = manager.update_loan_status(loan.id, "rejected", updated_by="off-1")
        assert updated.status == LoanStatus.REJECTED
        assert updated.rejected_by_name == "Rahim Uddin"

    def test_active_to_overdue(self, manager):
        loan = giving(manager)
        assert manager.update_loan_status(loan.id, "OVERDUE").status == LoanStatus.OVERDUE

    def test_completion_requires_nothing_due(self, system, manager):
        loan = giving(manager, amount="100")
        with pytest.raises(InvalidTransition):
            manager.update_loan_status(loan.id, "Completed")

        system.payment_recorder.record_payment(loan.id, "100")
        assert manager.get_loan(loan.id).status == LoanStatus.COMPLETED

    @pytest.mark.parametrize("target", ["Active", "Pending", "Completed"])
    def test_pending_cannot_skip_approval(self, manager, target):
        loan = receiving(manager)
        with pytest.raises(InvalidTransition):
            manager.update_loan_status(loan.id, target)
        assert manager.get_loan(loan.id).status == LoanStatus.PENDING

    def test_same_status_rejected(self, manager):
        loan = giving(manager)
        with pytest.raises(InvalidTransition):
            manager.update_loan_status(loan.id, "Active")

    def test_terminal_status_is_final(self, manager):
        loan = receiving(manager)
        manager.update_loan_status(loan.id, "Rejected")
        for target in LoanStatus:
            with pytest.raises(InvalidTransition):
                manager.update_loan_status(loan.id, target.value)

    def test_unknown_status(self, manager):
        loan = giving(manager)
        with pytest.raises(ValidationError):
            manager.update_loan_status(loan.id, "closed")


class TestDeleteLoan:

    def test_delete_loan_without_transactions(self, system, manager):
        loan = receiving(manager)
        manager.delete_loan(loan.id, deleted_by="off-1")

        with pytest.raises(LoanNotFound):
            manager.get_loan(loan.id)
        assert len(system.audit_trail.get_events_by_type(AuditEventType.LOAN_DELETED)) == 1

    def test_giving_loan_has_disbursement(self, manager):
        loan = giving(manager)
        with pytest.raises(HasTransactions):
            manager.delete_loan(loan.id)
        assert manager.get_loan(loan.id).id == loan.id

    def test_delete_missing(self, manager):
        with pytest.raises(LoanNotFound):
            manager.delete_loan("missing")


class TestOverdue:

    def test_mark_overdue(self, manager):
        loan = giving(manager)
        assert manager.mark_overdue(loan.id).status == LoanStatus.OVERDUE

    def test_mark_overdue_requires_active(self, manager):
        loan = receiving(manager)
        with pytest.raises(InvalidTransition):
            manager.mark_overdue(loan.id)

    def test_sweep_marks_past_commitment_only(self, manager):
        late = giving(manager, commitment_date="2025-01-10")
        on_time = giving(manager, commitment_date="2025-02-10")
        undated = giving(manager)
        pending = receiving(manager, commitment_date="2025-01-01")

        marked = manager.sweep_overdue(date(2025, 2, 1))

        assert [loan.id for loan in marked] == [late.id]
        assert manager.get_loan(late.id).status == LoanStatus.OVERDUE
        assert manager.get_loan(on_time.id).status == LoanStatus.ACTIVE
        assert manager.get_loan(undated.id).status == LoanStatus.ACTIVE
        assert manager.get_loan(pending.id).status == LoanStatus.PENDING

    def test_sweep_requires_date(self, manager):
        with pytest.raises(ValidationError):
            manager.sweep_overdue(None)


class TestLoanStore:

    def test_stale_write_rejected(self, manager):
        loan = giving(manager)
        stale = manager.get_loan(loan.id)

        manager.update_loan(loan.id, {"purpose": "fresh"})

        stale.notes = "based on old data"
        with pytest.raises(ConcurrencyConflict) as exc_info:
            manager.loans.save(stale)
        assert exc_info.value.retryable
        assert manager.get_loan(loan.id).purpose == "fresh"

    def test_version_increments_on_each_save(self, manager):
        loan = giving(manager)
        assert loan.version == 1
        manager.update_loan(loan.id, {"purpose": "a"})
        manager.update_loan(loan.id, {"purpose": "b"})
        assert manager.get_loan(loan.id).version == 3


class TestBorrowerProfile:

    def test_name_trimmed(self):
        assert BorrowerProfile(full_name="  Rina  ").full_name == "Rina"

    def test_to_dict_covers_all_fields(self):
        data = BorrowerProfile(full_name="Rina", district="Khulna").to_dict()
        assert data["district"] == "Khulna"
        assert BorrowerProfile.from_dict(data) == BorrowerProfile(full_name="Rina", district="Khulna")
