"""
loan.py - Loan Records and Pure Loan Arithmetic

=== LOAN MODEL ===

A LoanRecord represents one collateralized token loan between two parties:
    - Borrower escrows native currency as collateral and asks for `principal`
      tokens, promising `interest` tokens on top within `duration` seconds
    - Lender sends the principal straight to the borrower; the repayment
      window starts then (due_date = funding_time + duration)
    - Borrower repays principal + interest (or less, early) to get the
      collateral back, or the lender claims the collateral after due_date

Lifecycle:
    REQUESTED -> FUNDED | CANCELLED
    FUNDED    -> REPAID | EARLY_REPAID | CLAIMED

=== EARLY REPAYMENT REBATE ===

    time_remaining    = due_date - now              (0 < time_remaining <= duration)
    rebate            = interest * time_remaining // duration
    reduced_repayment = repayment_amount - rebate   (always >= principal)

Floor division never favours the borrower over the exact proportional value.

=== PURE FUNCTIONS ===

Everything here is side-effect free and integer-only:
    create_loan_record(...) -> LoanRecord
    compute_rebate(interest, time_remaining, duration) -> int
    compute_early_repayment(loan, now) -> (reduced_repayment, rebate)
    quote_repayment(loan, now) -> int

LoanRecord is frozen: each transition builds a new record with
dataclasses.replace(), and __post_init__ re-checks the record invariants.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from .core import (
    UINT256_MAX,
    InvalidArgument, PreconditionViolation, Unauthorized,
    checked_add, checked_sub, checked_mul,
)


# =============================================================================
# ENUMS
# =============================================================================

class LoanStatus(str, Enum):
    """Lifecycle state of a loan record."""
    REQUESTED = "requested"         # Collateral escrowed, waiting for a lender
    FUNDED = "funded"               # Principal delivered, repayment window open
    CANCELLED = "cancelled"         # Withdrawn by the borrower before funding
    REPAID = "repaid"               # Repaid in full, collateral returned
    EARLY_REPAID = "early_repaid"   # Repaid before due date with a rebate
    CLAIMED = "claimed"             # Defaulted, collateral taken by the lender


CLOSED_STATUSES = frozenset({LoanStatus.REPAID, LoanStatus.EARLY_REPAID, LoanStatus.CLAIMED})


# =============================================================================
# LOAN RECORD
# =============================================================================

@dataclass(frozen=True, slots=True)
class LoanRecord:
    """
    Immutable snapshot of one loan.

    Terms (borrower, collateral_amount, principal, interest, repayment_amount,
    duration) never change after creation. Lifecycle fields (lender, due_date,
    is_funded, is_closed, is_cancelled, closed_as) are set exactly once.
    """
    loan_id: int
    borrower: str
    collateral_amount: int
    principal: int
    interest: int
    repayment_amount: int
    duration: int
    lender: Optional[str] = None
    due_date: int = 0
    is_funded: bool = False
    is_closed: bool = False
    is_cancelled: bool = False
    closed_as: Optional[LoanStatus] = None

    def __post_init__(self):
        if not self.borrower:
            raise ValueError("Loan borrower cannot be empty")
        if self.repayment_amount != self.principal + self.interest:
            raise ValueError("repayment_amount must equal principal + interest")
        if self.is_funded and self.is_cancelled:
            raise ValueError("A loan cannot be both funded and cancelled")
        if (self.due_date != 0) != self.is_funded:
            raise ValueError("due_date is set if and only if the loan is funded")
        if (self.lender is not None) != self.is_funded:
            raise ValueError("lender is set if and only if the loan is funded")
        if self.is_closed and not self.is_funded:
            raise ValueError("Only a funded loan can be closed")
        if (self.closed_as is not None) != self.is_closed:
            raise ValueError("closed_as is set if and only if the loan is closed")
        if self.closed_as is not None and self.closed_as not in CLOSED_STATUSES:
            raise ValueError(f"{self.closed_as} is not a closing status")

    @property
    def is_active(self) -> bool:
        """Funded and not yet closed: repayable by the borrower, claimable after due_date."""
        return self.is_funded and not self.is_closed

    @property
    def status(self) -> LoanStatus:
        if self.is_cancelled:
            return LoanStatus.CANCELLED
        if self.is_closed:
            return self.closed_as
        if self.is_funded:
            return LoanStatus.FUNDED
        return LoanStatus.REQUESTED

    def __repr__(self) -> str:
        return (
            f"Loan#{self.loan_id}({self.status.value}: {self.borrower}"
            f"<-{self.lender or '?'} {self.principal}+{self.interest}, due={self.due_date})"
        )


# =============================================================================
# PURE FUNCTIONS
# =============================================================================

def _require_int(value: int, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{name} must be an integer, got {type(value).__name__}")
    if value > UINT256_MAX:
        raise InvalidArgument(f"{name} overflows uint256")
    return value


def compute_repayment_amount(principal: int, interest: int) -> int:
    """Total owed at or after the due date: principal + interest (checked)."""
    return checked_add(principal, interest)


def compute_due_date(funding_time: int, duration: int) -> int:
    """The repayment window starts when capital moves: funding_time + duration (checked)."""
    return checked_add(funding_time, duration)


def compute_rebate(interest: int, time_remaining: int, duration: int) -> int:
    """
    Interest forgiven for repaying `time_remaining` seconds before the due date.

    rebate = interest * time_remaining // duration

    Args:
        interest: Agreed interest in token base units
        time_remaining: Seconds left until due_date (0 <= time_remaining <= duration)
        duration: Length of the repayment window in seconds (> 0)

    Returns:
        Rebate in token base units, never more than interest

    Example:
        interest 10, 1800s left of 3600s -> rebate 5
        interest 10, 1s left of 3600s    -> rebate 0
    """
    if duration <= 0:
        raise InvalidArgument("Duration must be greater than 0")
    if time_remaining < 0 or time_remaining > duration:
        raise InvalidArgument(
            f"time_remaining must lie in [0, {duration}], got {time_remaining}"
        )
    return checked_mul(interest, time_remaining) // duration


def compute_early_repayment(loan: LoanRecord, now: int) -> Tuple[int, int]:
    """
    Amount owed for an early repayment at `now`, and the rebate it includes.

    Returns:
        (reduced_repayment, rebate)

    Raises:
        PreconditionViolation: If the loan is not funded or now >= due_date
    """
    if not loan.is_funded:
        raise PreconditionViolation("Loan is not funded")
    if now >= loan.due_date:
        raise PreconditionViolation("Loan is past due; no rebate applies")
    time_remaining = min(checked_sub(loan.due_date, now), loan.duration)
    rebate = compute_rebate(loan.interest, time_remaining, loan.duration)
    return checked_sub(loan.repayment_amount, rebate), rebate


def quote_repayment(loan: LoanRecord, now: int) -> int:
    """
    What the borrower would pay to close the loan at `now`.

    Before the due date this is the early repayment amount, from the due date
    on it is the full repayment_amount.
    """
    if loan.is_funded and now < loan.due_date:
        return compute_early_repayment(loan, now)[0]
    return loan.repayment_amount


def create_loan_record(
    loan_id: int,
    borrower: str,
    collateral_amount: int,
    principal: int,
    interest: int,
    duration: int,
) -> LoanRecord:
    """
    Validate loan terms and build a fresh REQUESTED record.

    Raises:
        InvalidArgument: If collateral, principal or duration is not strictly
            positive, interest is negative, or any amount is not an integer
        ArithmeticOverflow: If principal + interest overflows
    """
    _require_int(collateral_amount, "Collateral")
    _require_int(principal, "Principal")
    _require_int(interest, "Interest")
    _require_int(duration, "Duration")
    if collateral_amount <= 0:
        raise InvalidArgument("Collateral must be greater than 0")
    if principal <= 0:
        raise InvalidArgument("Principal must be greater than 0")
    if interest < 0:
        raise InvalidArgument("Interest cannot be negative")
    if duration <= 0:
        raise InvalidArgument("Duration must be greater than 0")

    return LoanRecord(
        loan_id=loan_id,
        borrower=borrower,
        collateral_amount=collateral_amount,
        principal=principal,
        interest=interest,
        repayment_amount=compute_repayment_amount(principal, interest),
        duration=duration,
    )


# =============================================================================
# ACCESS AND LIFECYCLE PREDICATES
# =============================================================================

def require_party(loan: LoanRecord, sender: str, role: str, action: str) -> None:
    """
    Capability check against the party stored on the record.

    Args:
        loan: Record being acted on
        sender: Caller identity
        role: "borrower" or "lender"
        action: Verb used in the error message (e.g. "repay")

    Raises:
        Unauthorized: If sender is not the record's party for that role
    """
    if sender != getattr(loan, role):
        raise Unauthorized(f"Only {role} can {action}")


def require_active(loan: LoanRecord) -> None:
    """
    Raises:
        PreconditionViolation: Unless the loan is funded and not closed
    """
    if not loan.is_funded:
        raise PreconditionViolation("Loan is not funded")
    if loan.is_closed:
        raise PreconditionViolation("Loan is already closed")
