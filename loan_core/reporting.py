"""
Loan Reporting Module

Dashboard aggregates over the loan store and the ledger. Financial figures
come from ledger entries, never from running totals kept on loans, so the
dashboard always agrees with the ledger of record.

The engine holds no state of its own: identical store contents and filters
give byte-identical output (amounts as fixed-precision strings, lists in a
fixed order, no timestamps).
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .amounts import ZERO, format_amount
from .exceptions import ValidationError
from .ledger import (
    LedgerStore, Transaction, TransactionCategory,
    credit_total, debit_total, net_by_category
)
from .loans import LoanStore, Loan, LoanDirection, LoanStatus, parse_date


@dataclass
class DashboardFilters:
    """Optional dashboard selection; dates are inclusive"""
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    branch_id: Optional[str] = None
    direction: Optional[LoanDirection] = None

    @classmethod
    def build(cls, date_from: Any = None, date_to: Any = None,
              branch_id: Optional[str] = None, direction: Any = None) -> 'DashboardFilters':
        filters = cls(
            date_from=parse_date(date_from),
            date_to=parse_date(date_to),
            branch_id=branch_id or None,
            direction=LoanDirection.normalize(direction) if direction else None
        )
        if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
            raise ValidationError("dateFrom must not be after dateTo")
        return filters

    def in_range(self, day: date) -> bool:
        if self.date_from and day < self.date_from:
            return False
        if self.date_to and day > self.date_to:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'dateFrom': self.date_from.isoformat() if self.date_from else None,
            'dateTo': self.date_to.isoformat() if self.date_to else None,
            'branchId': self.branch_id,
            'direction': self.direction.value if self.direction else None
        }


@dataclass
class DirectionFinancials:
    total_amount: Decimal = ZERO
    paid_amount: Decimal = ZERO
    total_due: Decimal = ZERO
    disbursed: Decimal = ZERO
    repaid: Decimal = ZERO
    net_cash_flow: Decimal = ZERO

    def to_dict(self, precision: int) -> Dict[str, str]:
        return {
            'totalAmount': format_amount(self.total_amount, precision),
            'paidAmount': format_amount(self.paid_amount, precision),
            'totalDue': format_amount(self.total_due, precision),
            'disbursed': format_amount(self.disbursed, precision),
            'repaid': format_amount(self.repaid, precision),
            'netCashFlow': format_amount(self.net_cash_flow, precision)
        }


@dataclass
class TransactionTotals:
    count: int = 0
    total_debit: Decimal = ZERO
    total_credit: Decimal = ZERO

    @property
    def net_cashflow(self) -> Decimal:
        return self.total_credit - self.total_debit

    @classmethod
    def of(cls, transactions: List[Transaction]) -> 'TransactionTotals':
        return cls(
            count=len(transactions),
            total_debit=debit_total(transactions),
            total_credit=credit_total(transactions)
        )


@dataclass
class Breakdown:
    label: str
    count: int
    total_amount: Decimal

    def to_dict(self, precision: int) -> Dict[str, Any]:
        return {
            'label': self.label,
            'count': self.count,
            'totalAmount': format_amount(self.total_amount, precision)
        }


@dataclass
class LoanDashboard:
    """GetLoanDashboard result"""
    filters: DashboardFilters
    status_counts: Dict[LoanStatus, int]
    giving: DirectionFinancials
    receiving: DirectionFinancials
    giving_count: int
    receiving_count: int
    cash_in: Decimal
    cash_out: Decimal
    status_breakdown: List[Breakdown] = field(default_factory=list)
    direction_breakdown: List[Breakdown] = field(default_factory=list)
    transactions: TransactionTotals = field(default_factory=TransactionTotals)
    transactions_by_direction: Dict[LoanDirection, TransactionTotals] = field(default_factory=dict)

    @property
    def total_loans(self) -> int:
        return sum(self.status_counts.values())

    def to_dict(self, precision: int = 2) -> Dict[str, Any]:
        total_amount = self.giving.total_amount + self.receiving.total_amount
        paid_amount = self.giving.paid_amount + self.receiving.paid_amount
        total_due = self.giving.total_due + self.receiving.total_due

        return {
            'filters': self.filters.to_dict(),
            'totals': {
                'totalLoans': self.total_loans,
                'active': self.status_counts[LoanStatus.ACTIVE],
                'pending': self.status_counts[LoanStatus.PENDING],
                'closed': self.status_counts[LoanStatus.COMPLETED],
                'rejected': self.status_counts[LoanStatus.REJECTED],
                'overdue': self.status_counts[LoanStatus.OVERDUE]
            },
            'giving': {
                'count': self.giving_count,
                'financial': self.giving.to_dict(precision)
            },
            'receiving': {
                'count': self.receiving_count,
                'financial': self.receiving.to_dict(precision)
            },
            'financial': {
                'totalAmount': format_amount(total_amount, precision),
                'paidAmount': format_amount(paid_amount, precision),
                'totalDue': format_amount(total_due, precision),
                'cashIn': format_amount(self.cash_in, precision),
                'cashOut': format_amount(self.cash_out, precision),
                'netCashFlow': format_amount(self.cash_in - self.cash_out, precision)
            },
            'statusBreakdown': [row.to_dict(precision) for row in self.status_breakdown],
            'directionBreakdown': [row.to_dict(precision) for row in self.direction_breakdown],
            'transactions': {
                'totalTransactions': self.transactions.count,
                'totalDebit': format_amount(self.transactions.total_debit, precision),
                'totalCredit': format_amount(self.transactions.total_credit, precision),
                'netCashflow': format_amount(self.transactions.net_cashflow, precision),
                'byDirection': [
                    {
                        'loanDirection': direction.value,
                        'count': totals.count,
                        'totalDebit': format_amount(totals.total_debit, precision),
                        'totalCredit': format_amount(totals.total_credit, precision),
                        'netCashflow': format_amount(totals.net_cashflow, precision)
                    }
                    for direction, totals in self.transactions_by_direction.items()
                ]
            }
        }


class LoanReportingEngine:
    """Read-only dashboard computation; takes no locks"""

    def __init__(self, loans: LoanStore, ledger: LedgerStore, precision: int = 2):
        self.loans = loans
        self.ledger = ledger
        self.precision = precision

    def get_dashboard(
        self,
        date_from: Any = None,
        date_to: Any = None,
        branch_id: Optional[str] = None,
        direction: Any = None
    ) -> LoanDashboard:
        """
        Aggregate loans and their ledger entries

        Loans are selected by branch, direction and creation date. The
        transactions section covers entries of loans in the branch and
        direction whose own creation date is in range.
        """
        filters = DashboardFilters.build(date_from, date_to, branch_id, direction)

        def scoped(loan: Loan) -> bool:
            if filters.branch_id and loan.branch_id != filters.branch_id:
                return False
            if filters.direction and loan.direction != filters.direction:
                return False
            return True

        scoped_loans = {loan.id: loan for loan in self.loans.all() if scoped(loan)}
        selected = sorted(
            (loan for loan in scoped_loans.values() if filters.in_range(loan.created_at.date())),
            key=lambda loan: loan.loan_number
        )

        entries_by_loan: Dict[str, List[Transaction]] = {}
        for transaction in self.ledger.list_all():
            entries_by_loan.setdefault(transaction.loan_id, []).append(transaction)

        status_counts = {status: 0 for status in LoanStatus}
        status_amounts = {status: ZERO for status in LoanStatus}
        direction_counts = {direction: 0 for direction in LoanDirection}
        financials = {direction: DirectionFinancials() for direction in LoanDirection}
        cash_in = ZERO
        cash_out = ZERO

        for loan in selected:
            entries = entries_by_loan.get(loan.id, [])
            by_category = net_by_category(entries)
            paid = by_category[TransactionCategory.PAYMENT] + by_category[TransactionCategory.REPAYMENT]
            credits = credit_total(entries)
            debits = debit_total(entries)

            status_counts[loan.status] += 1
            status_amounts[loan.status] += loan.total_amount
            direction_counts[loan.direction] += 1

            financial = financials[loan.direction]
            financial.total_amount += loan.total_amount
            financial.paid_amount += paid
            financial.total_due += max(ZERO, loan.total_amount - paid)
            financial.disbursed += by_category[TransactionCategory.DISBURSEMENT]
            financial.repaid += paid
            financial.net_cash_flow += credits - debits

            cash_in += credits
            cash_out += debits

        in_range_entries = {direction: [] for direction in LoanDirection}
        for loan_id, entries in entries_by_loan.items():
            loan = scoped_loans.get(loan_id)
            if loan is None:
                continue
            in_range_entries[loan.direction].extend(
                t for t in entries if filters.in_range(t.created_at.date())
            )
        by_direction = {direction: TransactionTotals.of(in_range_entries[direction]) for direction in LoanDirection}
        all_entries = [t for direction in LoanDirection for t in in_range_entries[direction]]

        return LoanDashboard(
            filters=filters,
            status_counts=status_counts,
            giving=financials[LoanDirection.GIVING],
            receiving=financials[LoanDirection.RECEIVING],
            giving_count=direction_counts[LoanDirection.GIVING],
            receiving_count=direction_counts[LoanDirection.RECEIVING],
            cash_in=cash_in,
            cash_out=cash_out,
            status_breakdown=[
                Breakdown(status.value, status_counts[status], status_amounts[status]) for status in LoanStatus
            ],
            direction_breakdown=[
                Breakdown(direction.value, direction_counts[direction], financials[direction].total_amount)
                for direction in LoanDirection
            ],
            transactions=TransactionTotals.of(all_entries),
            transactions_by_direction=by_direction
        )
