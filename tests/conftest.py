"""
conftest.py - Shared pytest fixtures for loan book tests

Provides common fixtures used across unit, conformance and functional tests:
- Ledgers (empty, with native currency and funded parties)
- Mock token and loan book deployments
- Loans at each lifecycle stage (requested, funded, repayment approved)
"""

import pytest

from collateral_loans import Ledger, deploy, native_currency

from tests.loan_helpers import (
    BORROWER_ETH, LENDER_TOKENS, BORROWER_TOKENS,
    fund_native, request, fund,
)


# =============================================================================
# BASIC FIXTURES
# =============================================================================

@pytest.fixture
def empty_ledger():
    """Fresh ledger with no registrations."""
    return Ledger("test", verbose=False, test_mode=True)


@pytest.fixture
def ledger():
    """Ledger at t=0 with native currency and ETH-funded borrower, lender and stranger."""
    ledger = Ledger("chain", initial_time=0, verbose=False, test_mode=True)
    ledger.register_unit(native_currency())
    for wallet in ("borrower", "lender", "stranger"):
        ledger.register_wallet(wallet)
        fund_native(ledger, wallet, BORROWER_ETH)
    return ledger


@pytest.fixture
def deployment(ledger):
    """Mock token and loan book deployed on the ledger, parties holding tokens."""
    deployment = deploy(ledger)
    deployment.token.mint("lender", LENDER_TOKENS)
    deployment.token.mint("borrower", BORROWER_TOKENS)
    deployment.token.mint("stranger", LENDER_TOKENS)
    return deployment


@pytest.fixture
def token(deployment):
    return deployment.token


@pytest.fixture
def book(deployment):
    return deployment.loan_book


# =============================================================================
# LOAN FIXTURES
# =============================================================================

@pytest.fixture
def requested_loan(book):
    """Loan 0 requested by borrower with default terms, not funded."""
    return request(book)


@pytest.fixture
def funded_loan(ledger, book, token, requested_loan):
    """Loan 0 funded by lender at t=0 (due_date = 3600)."""
    fund(book, token, requested_loan)
    return requested_loan


@pytest.fixture
def repayment_approved(book, token, funded_loan):
    """Funded loan with the borrower's full repayment approved to the book."""
    token.approve("borrower", book.address, book.get_loan(funded_loan).repayment_amount)
    return funded_loan
