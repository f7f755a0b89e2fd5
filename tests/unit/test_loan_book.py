"""
test_loan_book.py - Unit tests for CollateralizedLoanBook transitions

Tests:
- Construction and token binding
- request_loan / fund_loan / repay_loan / early_repay_loan /
  cancel_loan / claim_collateral: effects, events, failure modes
- Precondition check order
- Checkpoints: attachment to the ledger, journal and in-place rollback
- Queries: get_loan, list_loans, quote_repayment, escrow
"""

import pytest

from collateral_loans import (
    CollateralizedLoanBook, FungibleToken, Ledger, LoanStatus, NATIVE_SYMBOL,
    LoanRequested, LoanFunded, LoanRepaid, LoanEarlyRepaid, LoanCancelled,
    CollateralClaimed,
    LoanNotFound, InvalidArgument, PreconditionViolation, LoanPastDue,
    LoanNotYetDue, Unauthorized, ExternalTransferFailure, UnitNotRegistered,
)
from tests.loan_helpers import (
    COLLATERAL, PRINCIPAL, INTEREST, DURATION, BORROWER_ETH,
    LENDER_TOKENS, BORROWER_TOKENS, request, fund,
)


def eth(ledger, wallet):
    return ledger.get_balance(wallet, NATIVE_SYMBOL)


# =============================================================================
# CONSTRUCTION
# =============================================================================

class TestConstruction:

    def test_registers_escrow_wallet(self, book, ledger):
        assert ledger.is_registered(book.address)
        assert book.escrow_balance() == 0
        assert book.next_loan_id == 0

    def test_inherits_ledger_verbosity(self, ledger, token):
        assert CollateralizedLoanBook(ledger, token, address="other").verbose is False

    def test_requires_token_ledger(self, ledger):
        with pytest.raises(TypeError, match="transfer_from"):
            CollateralizedLoanBook(ledger, object(), address="other")

    def test_requires_native_unit(self):
        ledger = Ledger("bare", verbose=False)
        token = FungibleToken(ledger, "MCK", "Mock Token")
        with pytest.raises(UnitNotRegistered):
            CollateralizedLoanBook(ledger, token)

    def test_repr(self, book):
        assert repr(book) == "CollateralizedLoanBook(loan_book, 0 loans)"


# =============================================================================
# REQUEST
# =============================================================================

class TestRequestLoan:

    def test_creates_record_and_escrows(self, ledger, book):
        loan_id = request(book)
        loan = book.get_loan(loan_id)
        assert loan_id == 0
        assert loan.borrower == "borrower"
        assert loan.collateral_amount == COLLATERAL
        assert loan.principal == PRINCIPAL
        assert loan.interest == INTEREST
        assert loan.due_date == 0
        assert not loan.is_funded
        assert book.escrow_balance() == COLLATERAL
        assert eth(ledger, "borrower") == BORROWER_ETH - COLLATERAL

    def test_emits_event(self, book):
        request(book)
        assert book.events == [LoanRequested(0, "borrower", PRINCIPAL, INTEREST, DURATION, 0)]

    def test_ids_are_sequential(self, book):
        assert [request(book) for _ in range(3)] == [0, 1, 2]
        assert book.next_loan_id == 3

    @pytest.mark.parametrize("terms", [
        {"value": 0}, {"principal": 0}, {"duration": 0}, {"interest": -1},
    ])
    def test_invalid_terms_leave_no_trace(self, ledger, book, terms):
        with pytest.raises(InvalidArgument):
            request(book, **terms)
        assert book.next_loan_id == 0
        assert book.events == []
        assert eth(ledger, "borrower") == BORROWER_ETH

    def test_collateral_beyond_balance(self, ledger, book):
        with pytest.raises(ExternalTransferFailure):
            request(book, value=BORROWER_ETH + 1)
        assert book.next_loan_id == 0
        assert book.list_loans() == []

    def test_unregistered_borrower(self, book):
        with pytest.raises(ExternalTransferFailure):
            request(book, borrower="ghost")

    def test_empty_sender(self, book):
        with pytest.raises(InvalidArgument):
            request(book, borrower="")

    def test_book_cannot_borrow_from_itself(self, ledger, book):
        with pytest.raises(InvalidArgument, match="cannot act as borrower"):
            book.request_loan(book.address, 1, 0, 1, 1)
        assert book.next_loan_id == 0
        assert book.escrow_balance() == 0

    def test_book_cannot_fund(self, book, requested_loan):
        with pytest.raises(InvalidArgument):
            book.fund_loan(book.address, requested_loan)
        assert not book.get_loan(requested_loan).is_funded


# =============================================================================
# FUND
# =============================================================================

class TestFundLoan:

    def test_funding_sets_lender_and_due_date(self, ledger, book, token, requested_loan):
        ledger.advance_time(500)
        fund(book, token, requested_loan)
        loan = book.get_loan(requested_loan)
        assert loan.lender == "lender"
        assert loan.is_funded
        assert loan.due_date == 500 + DURATION
        assert loan.status == LoanStatus.FUNDED

    def test_principal_goes_to_borrower(self, book, token, funded_loan):
        assert token.balance_of("borrower") == BORROWER_TOKENS + PRINCIPAL
        assert token.balance_of("lender") == LENDER_TOKENS - PRINCIPAL
        assert token.balance_of(book.address) == 0
        assert token.allowance("lender", book.address) == 0

    def test_emits_event(self, book, funded_loan):
        assert book.events[-1] == LoanFunded(funded_loan, "lender", 0)

    def test_any_party_may_fund(self, book, token, requested_loan):
        fund(book, token, requested_loan, lender="stranger")
        assert book.get_loan(requested_loan).lender == "stranger"

    def test_borrower_may_fund_own_loan(self, book, token, requested_loan):
        fund(book, token, requested_loan, lender="borrower")
        assert book.get_loan(requested_loan).lender == "borrower"
        assert token.balance_of("borrower") == BORROWER_TOKENS
        assert token.allowance("borrower", book.address) == 0

    def test_cannot_fund_twice(self, book, token, funded_loan):
        token.approve("stranger", book.address, PRINCIPAL)
        with pytest.raises(PreconditionViolation, match="already funded"):
            book.fund_loan("stranger", funded_loan)
        assert book.get_loan(funded_loan).lender == "lender"

    def test_cannot_fund_cancelled(self, book, token, requested_loan):
        book.cancel_loan("borrower", requested_loan)
        token.approve("lender", book.address, PRINCIPAL)
        with pytest.raises(PreconditionViolation, match="has been cancelled"):
            book.fund_loan("lender", requested_loan)

    def test_without_allowance_fails_and_stays_requested(self, book, token, requested_loan):
        with pytest.raises(ExternalTransferFailure):
            book.fund_loan("lender", requested_loan)
        loan = book.get_loan(requested_loan)
        assert not loan.is_funded
        assert loan.lender is None
        assert loan.due_date == 0
        assert token.balance_of("lender") == LENDER_TOKENS
        assert len(book.events) == 1

    def test_unknown_loan(self, book):
        with pytest.raises(LoanNotFound):
            book.fund_loan("lender", 7)


# =============================================================================
# REPAY
# =============================================================================

class TestRepayLoan:

    def test_repay_before_due(self, ledger, book, token, repayment_approved):
        lender_before = token.balance_of("lender")
        book.repay_loan("borrower", repayment_approved)
        assert token.balance_of("lender") - lender_before == PRINCIPAL + INTEREST
        assert eth(ledger, "borrower") == BORROWER_ETH
        assert book.escrow_balance() == 0
        loan = book.get_loan(repayment_approved)
        assert loan.is_closed
        assert loan.status == LoanStatus.REPAID
        assert book.events[-1] == LoanRepaid(repayment_approved, "borrower", 0)

    def test_repay_after_due_pays_full_amount(self, ledger, book, token, repayment_approved):
        ledger.advance_time(4000)
        lender_before = token.balance_of("lender")
        book.repay_loan("borrower", repayment_approved)
        assert token.balance_of("lender") - lender_before == 110

    def test_only_borrower(self, book, repayment_approved):
        with pytest.raises(Unauthorized, match="Only borrower can repay"):
            book.repay_loan("lender", repayment_approved)

    def test_unfunded(self, book, requested_loan):
        with pytest.raises(PreconditionViolation, match="not funded"):
            book.repay_loan("borrower", requested_loan)

    def test_twice(self, book, token, repayment_approved):
        book.repay_loan("borrower", repayment_approved)
        token.approve("borrower", book.address, 110)
        with pytest.raises(PreconditionViolation, match="already closed"):
            book.repay_loan("borrower", repayment_approved)

    def test_insufficient_allowance_keeps_loan_active(self, ledger, book, token, funded_loan):
        token.approve("borrower", book.address, PRINCIPAL + INTEREST - 1)
        with pytest.raises(ExternalTransferFailure):
            book.repay_loan("borrower", funded_loan)
        loan = book.get_loan(funded_loan)
        assert loan.is_active
        assert book.escrow_balance() == COLLATERAL
        assert token.allowance("borrower", book.address) == PRINCIPAL + INTEREST - 1

    def test_insufficient_balance(self, book, token, funded_loan):
        token.transfer("borrower", "stranger", BORROWER_TOKENS + PRINCIPAL - 50)
        token.approve("borrower", book.address, 110)
        with pytest.raises(ExternalTransferFailure):
            book.repay_loan("borrower", funded_loan)
        assert book.get_loan(funded_loan).is_active


# =============================================================================
# EARLY REPAY
# =============================================================================

class TestEarlyRepayLoan:

    def test_halfway_rebate(self, ledger, book, token, funded_loan):
        ledger.advance_time(1800)
        token.approve("borrower", book.address, 105)
        lender_before = token.balance_of("lender")
        rebate = book.early_repay_loan("borrower", funded_loan)
        assert rebate == 5
        assert token.balance_of("lender") - lender_before == 105
        assert book.loan_status(funded_loan) == LoanStatus.EARLY_REPAID
        assert book.events[-1] == LoanEarlyRepaid(funded_loan, "borrower", 5, 1800)
        assert book.escrow_balance() == 0

    def test_one_second_before_due_no_rebate(self, ledger, book, token, repayment_approved):
        ledger.advance_time(DURATION - 1)
        assert book.early_repay_loan("borrower", repayment_approved) == 0

    def test_at_due_date_is_past_due(self, ledger, book, repayment_approved):
        ledger.advance_time(DURATION)
        with pytest.raises(LoanPastDue, match="use repay_loan"):
            book.early_repay_loan("borrower", repayment_approved)

    def test_only_borrower(self, book, repayment_approved):
        with pytest.raises(Unauthorized):
            book.early_repay_loan("lender", repayment_approved)

    def test_quote_matches_charge(self, ledger, book, token, funded_loan):
        ledger.advance_time(900)
        quote = book.quote_repayment(funded_loan)
        token.approve("borrower", book.address, quote)
        book.early_repay_loan("borrower", funded_loan)
        assert token.allowance("borrower", book.address) == 0


# =============================================================================
# CANCEL
# =============================================================================

class TestCancelLoan:

    def test_cancel_returns_collateral(self, ledger, book, requested_loan):
        book.cancel_loan("borrower", requested_loan)
        assert eth(ledger, "borrower") == BORROWER_ETH
        assert book.escrow_balance() == 0
        assert book.loan_status(requested_loan) == LoanStatus.CANCELLED
        assert book.events[-1] == LoanCancelled(requested_loan, "borrower", 0)

    def test_cannot_cancel_funded(self, book, funded_loan):
        with pytest.raises(PreconditionViolation, match="Cannot cancel a funded loan"):
            book.cancel_loan("borrower", funded_loan)

    def test_cannot_cancel_twice(self, book, requested_loan):
        book.cancel_loan("borrower", requested_loan)
        with pytest.raises(PreconditionViolation, match="already cancelled"):
            book.cancel_loan("borrower", requested_loan)

    def test_only_borrower(self, book, requested_loan):
        with pytest.raises(Unauthorized, match="Only borrower can cancel"):
            book.cancel_loan("stranger", requested_loan)


# =============================================================================
# CLAIM
# =============================================================================

class TestClaimCollateral:

    def test_claim_after_due(self, ledger, book, token, funded_loan):
        ledger.advance_time(DURATION + 1)
        lender_tokens = token.balance_of("lender")
        book.claim_collateral("lender", funded_loan)
        assert eth(ledger, "lender") == BORROWER_ETH + COLLATERAL
        assert token.balance_of("lender") == lender_tokens
        assert book.loan_status(funded_loan) == LoanStatus.CLAIMED
        assert book.events[-1] == CollateralClaimed(funded_loan, "lender", DURATION + 1)

    def test_claim_at_due_date_rejected(self, ledger, book, funded_loan):
        ledger.advance_time(DURATION)
        with pytest.raises(LoanNotYetDue):
            book.claim_collateral("lender", funded_loan)

    def test_only_lender(self, ledger, book, funded_loan):
        ledger.advance_time(DURATION + 1)
        with pytest.raises(Unauthorized, match="Only lender can claim collateral"):
            book.claim_collateral("borrower", funded_loan)

    def test_cannot_repay_after_claim(self, ledger, book, token, funded_loan):
        ledger.advance_time(DURATION + 1)
        book.claim_collateral("lender", funded_loan)
        token.approve("borrower", book.address, 110)
        with pytest.raises(PreconditionViolation):
            book.repay_loan("borrower", funded_loan)

    def test_cannot_claim_after_repay(self, ledger, book, repayment_approved):
        book.repay_loan("borrower", repayment_approved)
        ledger.advance_time(DURATION + 1)
        with pytest.raises(PreconditionViolation, match="already closed"):
            book.claim_collateral("lender", repayment_approved)


# =============================================================================
# CHECK ORDER
# =============================================================================

class TestCheckOrder:

    def test_not_found_before_unauthorized(self, book):
        with pytest.raises(LoanNotFound):
            book.repay_loan("nobody", 99)

    def test_lifecycle_before_unauthorized(self, book, requested_loan):
        with pytest.raises(PreconditionViolation, match="not funded"):
            book.repay_loan("stranger", requested_loan)

    def test_claim_on_unfunded_loan_is_precondition(self, book, requested_loan):
        with pytest.raises(PreconditionViolation, match="not funded"):
            book.claim_collateral("lender", requested_loan)

    @pytest.mark.parametrize("caller, action", [
        ("stranger", "repay_loan"),
        ("lender", "repay_loan"),
        ("stranger", "early_repay_loan"),
        ("borrower", "claim_collateral"),
        ("lender", "claim_collateral"),
    ])
    def test_closed_loan_rejects_every_caller(self, ledger, book, repayment_approved, caller, action):
        book.repay_loan("borrower", repayment_approved)
        ledger.advance_time(DURATION + 1)
        with pytest.raises(PreconditionViolation, match="already closed"):
            getattr(book, action)(caller, repayment_approved)

    def test_lifecycle_before_time(self, ledger, book, token, repayment_approved):
        book.repay_loan("borrower", repayment_approved)
        ledger.advance_time(DURATION)
        with pytest.raises(PreconditionViolation) as info:
            book.early_repay_loan("borrower", repayment_approved)
        assert not isinstance(info.value, LoanPastDue)

    def test_not_yet_due_before_unauthorized(self, book, funded_loan):
        with pytest.raises(LoanNotYetDue):
            book.claim_collateral("stranger", funded_loan)

    def test_unauthorized_after_due(self, ledger, book, funded_loan):
        ledger.advance_time(DURATION + 1)
        with pytest.raises(Unauthorized):
            book.claim_collateral("stranger", funded_loan)

    def test_cancel_checks_caller_first(self, book, funded_loan):
        with pytest.raises(Unauthorized):
            book.cancel_loan("stranger", funded_loan)


# =============================================================================
# CHECKPOINTS
# =============================================================================

class TestCheckpoints:

    def test_book_attached_to_its_ledger(self, ledger, book):
        checkpoint = ledger.checkpoint()
        assert any(participant is book for participant, _ in checkpoint.participants)
        ledger.release(checkpoint)

    def test_journal_empty_between_transitions(self, ledger, book, token, repayment_approved):
        book.repay_loan("borrower", repayment_approved)
        assert book._journal == []
        assert book._open_checkpoints == 0

    def test_failed_transition_truncates_logs_in_place(self, ledger, book, funded_loan):
        transaction_log = ledger.transaction_log
        length = len(transaction_log)
        with pytest.raises(ExternalTransferFailure):
            book.repay_loan("borrower", funded_loan)
        assert ledger.transaction_log is transaction_log
        assert len(transaction_log) == length
        assert book._journal == []
        assert book._open_checkpoints == 0

    def test_checkpoint_keeps_log_length_only(self, ledger, book, funded_loan):
        checkpoint = ledger.checkpoint()
        assert checkpoint.log_length == len(ledger.transaction_log)
        assert not hasattr(checkpoint, "transaction_log")
        (state,) = [state for participant, state in checkpoint.participants if participant is book]
        assert state == (0, 1, 2)
        ledger.release(checkpoint)

    def test_manual_rollback_undoes_request(self, ledger, book):
        checkpoint = ledger.checkpoint()
        loan_id = request(book)
        ledger.rollback(checkpoint)
        assert book.next_loan_id == 0
        with pytest.raises(LoanNotFound):
            book.get_loan(loan_id)
        assert book.escrow_balance() == 0
        assert book.events == []


# =============================================================================
# QUERIES
# =============================================================================

class TestQueries:

    def test_get_loan_unknown(self, book):
        with pytest.raises(LoanNotFound):
            book.get_loan(0)

    @pytest.mark.parametrize("loan_id", [-1, True, "0", None])
    def test_get_loan_odd_ids(self, book, requested_loan, loan_id):
        with pytest.raises(LoanNotFound):
            book.get_loan(loan_id)

    def test_list_loans_filters(self, ledger, book, token):
        first = request(book)
        second = request(book)
        request(book, borrower="stranger")
        fund(book, token, second)
        assert [loan.loan_id for loan in book.list_loans()] == [0, 1, 2]
        assert [loan.loan_id for loan in book.list_loans(borrower="borrower")] == [first, second]
        assert [loan.loan_id for loan in book.list_loans(lender="lender")] == [second]
        assert [loan.loan_id for loan in book.list_loans(status=LoanStatus.REQUESTED)] == [0, 2]

    def test_quote_requires_active(self, book, requested_loan):
        with pytest.raises(PreconditionViolation):
            book.quote_repayment(requested_loan)

    def test_quote_over_time(self, ledger, book, funded_loan):
        assert book.quote_repayment(funded_loan) == PRINCIPAL
        ledger.advance_time(1800)
        assert book.quote_repayment(funded_loan) == 105
        ledger.advance_time(DURATION)
        assert book.quote_repayment(funded_loan) == 110

    def test_events_by_loan_and_party(self, book, token, funded_loan):
        request(book, borrower="stranger")
        assert [type(e) for e in book.events_for_loan(funded_loan)] == [LoanRequested, LoanFunded]
        assert [e.loan_id for e in book.events_for_party("stranger")] == [1]

    def test_outstanding_collateral_tracks_escrow(self, book, funded_loan):
        request(book, value=7)
        assert book.outstanding_collateral() == COLLATERAL + 7 == book.escrow_balance()

    def test_verbose_transition_lines(self, ledger, token, capsys):
        book = CollateralizedLoanBook(ledger, token, address="loud", verbose=True)
        request(book)
        with pytest.raises(LoanNotFound):
            book.fund_loan("lender", 5)
        out = capsys.readouterr().out
        assert "✓ LoanRequested" in out
        assert "✗ fund_loan reverted: LoanNotFound" in out
