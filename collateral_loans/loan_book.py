"""
loan_book.py - Collateralized Loan Book (the loan lifecycle state machine)

The CollateralizedLoanBook holds every loan record and is the only place a
record changes. It exposes six transitions:

    request_loan      borrower escrows collateral, record created (REQUESTED)
    fund_loan         lender sends principal to borrower (FUNDED, clock starts)
    repay_loan        borrower pays principal + interest, collateral back (REPAID)
    early_repay_loan  borrower pays less before due_date (EARLY_REPAID)
    cancel_loan       borrower withdraws an unfunded request (CANCELLED)
    claim_collateral  lender takes collateral after due_date (CLAIMED)

Safety model, applied to every transition:
    1. non_reentrant: a per-book entered flag rejects nested transitions
       while one is in flight (ReentrantCall).
    2. Checks, then effects, then interactions: the new record (funded,
       closed or cancelled) is stored before any token pull or native payout,
       so code running inside a payout already sees the final state.
    3. All-or-nothing: every ledger the book touches is checkpointed on entry
       and rolled back if anything raises. Books attach themselves to their
       ledgers, so any rollback (this book's or one triggered by a failing
       receive hook) also rewinds every book that changed since the
       checkpoint, and a failed transition leaves no trace anywhere.

The current time is read once per transition from the ledger clock.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import replace
from functools import wraps
from typing import Dict, Iterator, List, Optional, Tuple

from .core import (
    Move, TransactionOrigin, OriginType, ExecuteResult, TokenLedger,
    NATIVE_SYMBOL,
    RecipientRejected, UnitNotRegistered,
    LoanNotFound, InvalidArgument, PreconditionViolation,
    LoanPastDue, LoanNotYetDue, ReentrantCall, ExternalTransferFailure,
    build_transaction, checked_add,
)
from .events import (
    EventLog, LoanEvent,
    LoanRequested, LoanFunded, LoanRepaid, LoanEarlyRepaid,
    LoanCancelled, CollateralClaimed,
)
from .ledger import Ledger
from .loan import (
    LoanRecord, LoanStatus,
    create_loan_record, compute_due_date, compute_early_repayment,
    quote_repayment, require_party, require_active,
)


DEFAULT_LOAN_BOOK_ADDRESS = "loan_book"


def non_reentrant(method):
    """
    Wrap a transition in the book's mutex and its all-or-nothing boundary.

    The entered flag is held for the whole transition, external calls
    included, and is cleared on every exit path.
    """
    @wraps(method)
    def guarded(self, *args, **kwargs):
        if self._entered:
            raise ReentrantCall(f"Reentrant call to {method.__name__} rejected")
        self._entered = True
        try:
            with self._atomic(method.__name__):
                return method(self, *args, **kwargs)
        finally:
            self._entered = False
    return guarded


class CollateralizedLoanBook:
    """
    Two-party collateralized lending: native-currency collateral, token loans.

    The book owns a wallet (`address`) on the ledger that escrows collateral.
    Tokens never rest in the book: principal goes lender -> borrower and
    repayments go borrower -> lender, pulled through the bound token with
    allowances the parties granted to `address`.

    Example:
        book = CollateralizedLoanBook(ledger, token)
        loan_id = book.request_loan("alice", principal=100, interest=10,
                                    duration=3600, value=10**18)
        token.approve("bob", book.address, 100)
        book.fund_loan("bob", loan_id)
    """

    def __init__(
        self,
        ledger: Ledger,
        token: TokenLedger,
        address: str = DEFAULT_LOAN_BOOK_ADDRESS,
        native_symbol: str = NATIVE_SYMBOL,
        verbose: Optional[bool] = None,
    ):
        """
        Deploy a loan book on a ledger, bound once to a token.

        Args:
            ledger: Hosting ledger (clock, native currency, wallets)
            token: Token collaborator implementing transfer_from()
            address: Wallet ID of the book's escrow account
            native_symbol: Unit used as collateral
            verbose: Print transition outcomes (default: follow the ledger)

        Raises:
            TypeError: If token does not implement TokenLedger
            UnitNotRegistered: If the native unit is not registered
        """
        if not isinstance(token, TokenLedger):
            raise TypeError(f"{token!r} does not implement transfer_from()")
        if native_symbol not in ledger.units:
            raise UnitNotRegistered(f"Unit {native_symbol} not registered")
        self.ledger = ledger
        self.token = token
        self.address = address
        self.native_symbol = native_symbol
        self.verbose = ledger.verbose if verbose is None else verbose
        if not ledger.is_registered(address):
            ledger.register_wallet(address)

        self._loans: Dict[int, LoanRecord] = {}
        self._next_loan_id: int = 0
        self.event_log = EventLog()
        self._entered = False
        # (loan_id, previous record) for every write while a checkpoint is open
        self._journal: List[Tuple[int, Optional[LoanRecord]]] = []
        self._open_checkpoints = 0

        # Every ledger whose state a transition can touch
        self._ledgers: List[Ledger] = [ledger]
        token_ledger = getattr(token, "ledger", None)
        if isinstance(token_ledger, Ledger) and token_ledger is not ledger:
            self._ledgers.append(token_ledger)
        for hosting_ledger in self._ledgers:
            hosting_ledger.attach(self)

    def __repr__(self) -> str:
        return f"CollateralizedLoanBook({self.address}, {len(self._loans)} loans)"

    # ========================================================================
    # QUERIES
    # ========================================================================

    @property
    def next_loan_id(self) -> int:
        """Identifier the next request_loan() will assign."""
        return self._next_loan_id

    @property
    def events(self) -> List[LoanEvent]:
        return list(self.event_log)

    def get_loan(self, loan_id: int) -> LoanRecord:
        """
        Return the record for loan_id (records are never deleted).

        Raises:
            LoanNotFound: If no record has that identifier
        """
        if isinstance(loan_id, bool) or loan_id not in self._loans:
            raise LoanNotFound(f"Loan {loan_id!r} does not exist")
        return self._loans[loan_id]

    def loan_status(self, loan_id: int) -> LoanStatus:
        return self.get_loan(loan_id).status

    def list_loans(
        self,
        borrower: Optional[str] = None,
        lender: Optional[str] = None,
        status: Optional[LoanStatus] = None,
    ) -> List[LoanRecord]:
        """Return records in id order, optionally filtered by party and status."""
        return [
            loan for _, loan in sorted(self._loans.items())
            if (borrower is None or loan.borrower == borrower)
            and (lender is None or loan.lender == lender)
            and (status is None or loan.status == status)
        ]

    def quote_repayment(self, loan_id: int) -> int:
        """
        Tokens the borrower must approve to close an active loan right now.

        Raises:
            LoanNotFound: If the loan does not exist
            PreconditionViolation: If the loan is not active
        """
        loan = self.get_loan(loan_id)
        require_active(loan)
        return quote_repayment(loan, self.ledger.current_time)

    def events_for_loan(self, loan_id: int) -> List[LoanEvent]:
        return self.event_log.for_loan(loan_id)

    def events_for_party(self, party: str) -> List[LoanEvent]:
        return self.event_log.for_party(party)

    def escrow_balance(self) -> int:
        """Native currency currently held by the book."""
        return self.ledger.get_balance(self.address, self.native_symbol)

    def outstanding_collateral(self) -> int:
        """Collateral not yet released: sum over requested and active loans."""
        return sum(
            loan.collateral_amount for loan in self._loans.values()
            if not loan.is_cancelled and not loan.is_closed
        )

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    @non_reentrant
    def request_loan(
        self,
        sender: str,
        principal: int,
        interest: int,
        duration: int,
        value: int,
    ) -> int:
        """
        Escrow `value` native units as collateral and open a loan request.

        Args:
            sender: Borrower identity
            principal: Requested token amount (> 0)
            interest: Token interest agreed upfront (>= 0)
            duration: Repayment window in seconds (> 0), started at funding
            value: Collateral attached to the call (> 0)

        Returns:
            The new loan identifier

        Raises:
            InvalidArgument: On non-positive collateral, principal or duration
            ExternalTransferFailure: If the collateral cannot be escrowed
        """
        self._require_caller(sender)
        now = self.ledger.current_time
        loan_id = self._next_loan_id
        loan = create_loan_record(loan_id, sender, value, principal, interest, duration)

        self._store(loan)
        self._next_loan_id = checked_add(loan_id, 1)
        self._transfer_native(sender, self.address, value, loan_id, "ESCROW")

        self._emit(LoanRequested(
            loan_id=loan_id,
            borrower=sender,
            principal=principal,
            interest=interest,
            duration=duration,
            timestamp=now,
        ))
        return loan_id

    @non_reentrant
    def fund_loan(self, sender: str, loan_id: int) -> None:
        """
        Become the lender: send the principal to the borrower and start the clock.

        The sender must have approved the book for at least `principal` tokens.

        Raises:
            LoanNotFound, PreconditionViolation (cancelled or already funded),
            ExternalTransferFailure (token pull failed)
        """
        self._require_caller(sender)
        now = self.ledger.current_time
        loan = self.get_loan(loan_id)
        if loan.is_cancelled:
            raise PreconditionViolation("Loan has been cancelled")
        if loan.is_funded:
            raise PreconditionViolation("Loan already funded")

        self._store(replace(
            loan,
            lender=sender,
            is_funded=True,
            due_date=compute_due_date(now, loan.duration),
        ))
        self._pull_tokens(sender, loan.borrower, loan.principal)

        self._emit(LoanFunded(loan_id=loan_id, lender=sender, timestamp=now))

    @non_reentrant
    def repay_loan(self, sender: str, loan_id: int) -> None:
        """
        Repay principal + interest in full and recover the collateral.

        Valid before or after the due date, as long as the lender has not
        claimed the collateral.

        Raises:
            LoanNotFound, PreconditionViolation (not active), Unauthorized
            (not the borrower), ExternalTransferFailure
        """
        now = self.ledger.current_time
        loan = self.get_loan(loan_id)
        require_active(loan)
        require_party(loan, sender, "borrower", "repay")

        self._close(loan, LoanStatus.REPAID)
        self._pull_tokens(sender, loan.lender, loan.repayment_amount)
        self._transfer_native(self.address, loan.borrower, loan.collateral_amount, loan_id, "RELEASE")

        self._emit(LoanRepaid(loan_id=loan_id, borrower=sender, timestamp=now))

    @non_reentrant
    def early_repay_loan(self, sender: str, loan_id: int) -> int:
        """
        Repay before the due date, with interest rebated for the unused window.

        Returns:
            The rebate granted

        Raises:
            LoanNotFound, PreconditionViolation (not active), Unauthorized
            (not the borrower), LoanPastDue (now >= due_date, use repay_loan),
            ExternalTransferFailure
        """
        now = self.ledger.current_time
        loan = self.get_loan(loan_id)
        require_active(loan)
        require_party(loan, sender, "borrower", "repay")
        if now >= loan.due_date:
            raise LoanPastDue("Loan is past due; use repay_loan")

        reduced_repayment, rebate = compute_early_repayment(loan, now)

        self._close(loan, LoanStatus.EARLY_REPAID)
        self._pull_tokens(sender, loan.lender, reduced_repayment)
        self._transfer_native(self.address, loan.borrower, loan.collateral_amount, loan_id, "RELEASE")

        self._emit(LoanEarlyRepaid(loan_id=loan_id, borrower=sender, rebate=rebate, timestamp=now))
        return rebate

    @non_reentrant
    def cancel_loan(self, sender: str, loan_id: int) -> None:
        """
        Withdraw an unfunded request and take the collateral back.

        Raises:
            LoanNotFound, Unauthorized (not the borrower), PreconditionViolation
            (funded or already cancelled), ExternalTransferFailure
        """
        now = self.ledger.current_time
        loan = self.get_loan(loan_id)
        require_party(loan, sender, "borrower", "cancel")
        if loan.is_funded:
            raise PreconditionViolation("Cannot cancel a funded loan")
        if loan.is_cancelled:
            raise PreconditionViolation("Loan already cancelled")

        self._store(replace(loan, is_cancelled=True))
        self._transfer_native(self.address, loan.borrower, loan.collateral_amount, loan_id, "REFUND")

        self._emit(LoanCancelled(loan_id=loan_id, borrower=sender, timestamp=now))

    @non_reentrant
    def claim_collateral(self, sender: str, loan_id: int) -> None:
        """
        Declare default and take the collateral.

        Only strictly after the due date. The lender receives the collateral
        and nothing else; unpaid principal and interest are not recoverable.

        Raises:
            LoanNotFound, PreconditionViolation (not active), LoanNotYetDue
            (now <= due_date), Unauthorized (not the lender), ExternalTransferFailure
        """
        now = self.ledger.current_time
        loan = self.get_loan(loan_id)
        require_active(loan)
        if now <= loan.due_date:
            raise LoanNotYetDue("Loan is not yet past due")
        require_party(loan, sender, "lender", "claim collateral")

        self._close(loan, LoanStatus.CLAIMED)
        self._transfer_native(self.address, loan.lender, loan.collateral_amount, loan_id, "CLAIM")

        self._emit(CollateralClaimed(loan_id=loan_id, lender=sender, timestamp=now))

    # ========================================================================
    # INTERNALS
    # ========================================================================

    @contextmanager
    def _atomic(self, action: str) -> Iterator[None]:
        """Checkpoint every ledger the book touches; roll all back if the body raises."""
        checkpoints = [(ledger, ledger.checkpoint()) for ledger in self._ledgers]
        try:
            yield
        except Exception as exc:
            for ledger, checkpoint in reversed(checkpoints):
                ledger.rollback(checkpoint)
            if self.verbose:
                print(f"✗ {action} reverted: {type(exc).__name__}: {exc}")
            raise
        for ledger, checkpoint in reversed(checkpoints):
            ledger.release(checkpoint)

    # ========================================================================
    # CHECKPOINTS (called by the hosting ledgers)
    # ========================================================================

    def checkpoint(self) -> Tuple[int, int, int]:
        self._open_checkpoints += 1
        return len(self._journal), self._next_loan_id, len(self.event_log)

    def rollback(self, checkpoint: Tuple[int, int, int]) -> None:
        """Undo record writes, issued ids and events made since `checkpoint`."""
        journal_length, next_loan_id, event_count = checkpoint
        while len(self._journal) > journal_length:
            loan_id, previous = self._journal.pop()
            if previous is None:
                del self._loans[loan_id]
            else:
                self._loans[loan_id] = previous
        self._next_loan_id = next_loan_id
        self.event_log.truncate(event_count)
        self.release(checkpoint)

    def release(self, checkpoint: Tuple[int, int, int]) -> None:
        self._open_checkpoints -= 1
        if not self._open_checkpoints:
            self._journal.clear()

    def _require_caller(self, sender: str) -> None:
        if not isinstance(sender, str) or not sender.strip():
            raise InvalidArgument(f"Caller must be a non-empty wallet id, got {sender!r}")
        if sender == self.address:
            raise InvalidArgument("The loan book cannot act as borrower or lender")

    def _close(self, loan: LoanRecord, closed_as: LoanStatus) -> None:
        self._store(replace(loan, is_closed=True, closed_as=closed_as))

    def _store(self, loan: LoanRecord) -> None:
        if self._open_checkpoints:
            self._journal.append((loan.loan_id, self._loans.get(loan.loan_id)))
        self._loans[loan.loan_id] = loan

    def _pull_tokens(self, payer: str, payee: str, amount: int) -> None:
        """Single outbound call to the token ledger; a False result voids the transition."""
        try:
            moved = self.token.transfer_from(self.address, payer, payee, amount)
        except RecipientRejected as exc:
            raise ExternalTransferFailure(f"Token transfer failed: {exc}") from exc
        if not moved:
            raise ExternalTransferFailure("Token transfer failed")

    def _transfer_native(self, source: str, dest: str, amount: int, loan_id: int, event_type: str) -> None:
        """Move native currency into or out of escrow; failure voids the transition."""
        pending = build_transaction(
            self.ledger,
            [Move(amount, self.native_symbol, source, dest, f"loan_{loan_id}")],
            origin=TransactionOrigin(
                OriginType.CONTRACT, self.address, self.native_symbol, event_type
            ),
        )
        try:
            result = self.ledger.execute(pending)
        except RecipientRejected as exc:
            raise ExternalTransferFailure(f"Failed to send {self.native_symbol}: {exc}") from exc
        if result != ExecuteResult.APPLIED:
            raise ExternalTransferFailure(
                f"Failed to move {amount} {self.native_symbol} from {source} to {dest}"
            )

    def _emit(self, event: LoanEvent) -> None:
        self.event_log.append(event)
        if self.verbose:
            print(f"✓ {type(event).__name__}: {event}")
