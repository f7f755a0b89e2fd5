"""
events.py - Observable Log Records of the Loan Book

One immutable record is appended per successful transition:

    LoanRequested     {loan_id, borrower, principal, interest, duration}
    LoanFunded        {loan_id, lender}
    LoanRepaid        {loan_id, borrower}
    LoanEarlyRepaid   {loan_id, borrower, rebate}
    LoanCancelled     {loan_id, borrower}
    CollateralClaimed {loan_id, lender}

Every record also carries the ledger timestamp of its transition. The log is
append-only; a voided transition leaves no record because rolling the book
back truncates the log to its length at the checkpoint.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterator, List, Union


@dataclass(frozen=True, slots=True)
class LoanRequested:
    loan_id: int
    borrower: str
    principal: int
    interest: int
    duration: int
    timestamp: int

    @property
    def party(self) -> str:
        return self.borrower


@dataclass(frozen=True, slots=True)
class LoanFunded:
    loan_id: int
    lender: str
    timestamp: int

    @property
    def party(self) -> str:
        return self.lender


@dataclass(frozen=True, slots=True)
class LoanRepaid:
    loan_id: int
    borrower: str
    timestamp: int

    @property
    def party(self) -> str:
        return self.borrower


@dataclass(frozen=True, slots=True)
class LoanEarlyRepaid:
    loan_id: int
    borrower: str
    rebate: int
    timestamp: int

    @property
    def party(self) -> str:
        return self.borrower


@dataclass(frozen=True, slots=True)
class LoanCancelled:
    loan_id: int
    borrower: str
    timestamp: int

    @property
    def party(self) -> str:
        return self.borrower


@dataclass(frozen=True, slots=True)
class CollateralClaimed:
    loan_id: int
    lender: str
    timestamp: int

    @property
    def party(self) -> str:
        return self.lender


LoanEvent = Union[
    LoanRequested, LoanFunded, LoanRepaid,
    LoanEarlyRepaid, LoanCancelled, CollateralClaimed,
]


class EventLog:
    """
    Append-only list of loan events, queryable by loan id and by party.

    Example:
        log.append(LoanFunded(loan_id=0, lender="bob", timestamp=0))
        log.for_loan(0)     # [LoanFunded(...)]
        log.for_party("bob")
    """

    def __init__(self, events: List[LoanEvent] = None):
        self._events: List[LoanEvent] = list(events or [])

    def append(self, event: LoanEvent) -> None:
        self._events.append(event)

    def for_loan(self, loan_id: int) -> List[LoanEvent]:
        return [e for e in self._events if e.loan_id == loan_id]

    def for_party(self, party: str) -> List[LoanEvent]:
        return [e for e in self._events if e.party == party]

    def of_type(self, event_type: type) -> List[LoanEvent]:
        return [e for e in self._events if isinstance(e, event_type)]

    def truncate(self, length: int) -> None:
        """Drop every event after the first `length`."""
        del self._events[length:]

    def __iter__(self) -> Iterator[LoanEvent]:
        return iter(list(self._events))

    def __len__(self) -> int:
        return len(self._events)

    def __getitem__(self, index: int) -> LoanEvent:
        return self._events[index]
