#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Collateralized Loans Step by Step

This is a pedagogical demonstration of the loan book. Each step builds on the
previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3: Foundation   - Deploying, requesting a loan, funding it
  4-6: Outcomes     - Early repayment with rebate, late repayment, default claim
  7-8: Safety       - Reentrant payouts rejected, conservation proof

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
import sys

from collateral_loans import (
    Ledger, Move, build_transaction, deploy,
    Deployment, SYSTEM_WALLET, NATIVE_SYMBOL,
    LoanNotYetDue, ReentrantCall, ExternalTransferFailure,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    collateral: int = 10 ** 18      # 1 ETH in wei
    principal: int = 100
    interest: int = 10
    duration: int = 3600            # 1 hour in seconds

    borrower_eth: int = 5 * 10 ** 18
    lender_tokens: int = 1000
    borrower_tokens: int = 50       # To cover interest on top of the principal


CONFIG = DemoConfig()

# Global state for interactive mode
QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    """Print a section header within a step."""
    print(f"\n--- {text} ---\n")


def setup_chain(verbose: bool = False) -> tuple:
    """Fresh ledger, mock token and loan book, with funded borrower and lender."""
    ledger = Ledger("chain", initial_time=0, verbose=verbose)
    deployment = deploy(ledger)
    ledger.register_wallet("borrower")
    ledger.register_wallet("lender")
    ledger.execute(build_transaction(ledger, [
        Move(CONFIG.borrower_eth, NATIVE_SYMBOL, SYSTEM_WALLET, "borrower", "genesis"),
    ]))
    deployment.token.mint("lender", CONFIG.lender_tokens)
    deployment.token.mint("borrower", CONFIG.borrower_tokens)
    return ledger, deployment


def open_funded_loan(ledger: Ledger, deployment: Deployment) -> int:
    """Request and fund one loan with the configured terms at the current time."""
    token, book = deployment.token, deployment.loan_book
    loan_id = book.request_loan(
        "borrower", CONFIG.principal, CONFIG.interest, CONFIG.duration, CONFIG.collateral
    )
    token.approve("lender", book.address, CONFIG.principal)
    book.fund_loan("lender", loan_id)
    return loan_id


def print_balances(ledger: Ledger, deployment: Deployment):
    token, book = deployment.token, deployment.loan_book
    for wallet in ("borrower", "lender", book.address):
        eth = ledger.get_unit(NATIVE_SYMBOL).format(ledger.get_balance(wallet, NATIVE_SYMBOL))
        print(f"  {wallet:<10} {eth:>12}   {token.balance_of(wallet):>5} {token.symbol}")


# ============================================================================
# PHASE 1: FOUNDATION (Steps 1-3)
# ============================================================================

def step_01_deploy():
    """Deploy a mock token and the loan book on a fresh ledger."""
    step_header(1, "Deploying",
        "A loan book is bound to exactly one token when it is deployed.")

    print("""
    The ledger hosts two kinds of value:

    1. NATIVE currency (ETH) - the collateral, escrowed by the loan book
    2. TOKENS (MCK)          - lent and repaid, never held by the loan book

    deploy() registers ETH if needed, deploys a mock token and the book.
    """)

    wait_for_enter()

    print(">>> deployment = deploy(ledger)")
    ledger, deployment = setup_chain(verbose=False)

    section_header("Starting Balances")
    print_balances(ledger, deployment)
    return ledger, deployment


def step_02_request(ledger: Ledger, deployment: Deployment) -> int:
    """Borrower escrows collateral and asks for tokens."""
    step_header(2, "Requesting a Loan",
        "Collateral moves into escrow as part of the request itself.")

    book = deployment.loan_book
    print(f">>> book.request_loan('borrower', {CONFIG.principal}, {CONFIG.interest}, "
          f"{CONFIG.duration}, value={CONFIG.collateral})")
    loan_id = book.request_loan(
        "borrower", CONFIG.principal, CONFIG.interest, CONFIG.duration, CONFIG.collateral
    )

    section_header("Loan Record")
    print(f"  {book.get_loan(loan_id)!r}")
    print(f"  Escrow: {book.escrow_balance()} wei")

    wait_for_enter()
    return loan_id


def step_03_fund(ledger: Ledger, deployment: Deployment, loan_id: int):
    """Lender approves the book and funds the loan."""
    step_header(3, "Funding the Loan",
        "The repayment window starts when the principal moves, not at request time.")

    token, book = deployment.token, deployment.loan_book
    print(f">>> token.approve('lender', '{book.address}', {CONFIG.principal})")
    token.approve("lender", book.address, CONFIG.principal)
    print(f">>> book.fund_loan('lender', {loan_id})")
    book.fund_loan("lender", loan_id)

    loan = book.get_loan(loan_id)
    section_header("Loan Record")
    print(f"  {loan!r}")
    print(f"  due_date = funding time {ledger.current_time} + duration {loan.duration}")
    print_balances(ledger, deployment)

    wait_for_enter()


# ============================================================================
# PHASE 2: OUTCOMES (Steps 4-6)
# ============================================================================

def step_04_early_repay(ledger: Ledger, deployment: Deployment, loan_id: int):
    """Repay halfway through the window and receive half the interest back."""
    step_header(4, "Early Repayment",
        "rebate = interest * time_remaining // duration")

    token, book = deployment.token, deployment.loan_book
    ledger.advance_time(1800)
    owed = book.quote_repayment(loan_id)
    print(f"At t={ledger.current_time}: owed {owed} (instead of {CONFIG.principal + CONFIG.interest})")

    token.approve("borrower", book.address, owed)
    lender_before = token.balance_of("lender")
    rebate = book.early_repay_loan("borrower", loan_id)

    section_header("Result")
    print(f"  Rebate:          {rebate}")
    print(f"  Lender received: {token.balance_of('lender') - lender_before}")
    print_balances(ledger, deployment)

    wait_for_enter()


def step_05_late_repay():
    """Repay after the due date: the full amount, collateral still returned."""
    step_header(5, "Late Repayment",
        "Until the lender claims, the borrower can always repay in full.")

    ledger, deployment = setup_chain()
    token, book = deployment.token, deployment.loan_book
    loan_id = open_funded_loan(ledger, deployment)

    ledger.advance_time(4000)
    token.approve("borrower", book.address, CONFIG.principal + CONFIG.interest)
    lender_before = token.balance_of("lender")
    book.repay_loan("borrower", loan_id)

    section_header("Result")
    print(f"  At t=4000 (due {book.get_loan(loan_id).due_date}) lender received "
          f"{token.balance_of('lender') - lender_before}")
    print(f"  Status: {book.loan_status(loan_id).value}")

    wait_for_enter()


def step_06_claim():
    """Claim collateral on default, strictly after the due date."""
    step_header(6, "Claiming Collateral",
        "The lender may claim only once due_date has fully elapsed.")

    ledger, deployment = setup_chain()
    book = deployment.loan_book
    loan_id = open_funded_loan(ledger, deployment)

    ledger.advance_time(3600)
    try:
        book.claim_collateral("lender", loan_id)
    except LoanNotYetDue as exc:
        print(f"  t=3600: ✗ {exc}")

    ledger.advance_time(3601)
    book.claim_collateral("lender", loan_id)
    print(f"  t=3601: ✓ lender holds {ledger.get_balance('lender', NATIVE_SYMBOL)} wei")

    wait_for_enter()


# ============================================================================
# PHASE 3: SAFETY (Steps 7-8)
# ============================================================================

def step_07_reentrancy():
    """A borrower whose wallet re-enters the book during the collateral payout."""
    step_header(7, "Reentrant Payouts",
        "Records are updated before payouts, and nested transitions are rejected.")

    ledger, deployment = setup_chain()
    token, book = deployment.token, deployment.loan_book
    loan_id = open_funded_loan(ledger, deployment)
    token.approve("borrower", book.address, 2 * (CONFIG.principal + CONFIG.interest))

    def reenter(move):
        print(f"  hook: received {move.quantity} wei, loan is {book.loan_status(loan_id).value}")
        try:
            book.repay_loan("borrower", loan_id)
        except ReentrantCall as exc:
            print(f"  hook: ✗ {exc}")

    ledger.set_receive_hook("borrower", reenter)
    book.repay_loan("borrower", loan_id)
    ledger.set_receive_hook("borrower", None)

    section_header("Result")
    print(f"  Collateral paid once, escrow now {book.escrow_balance()}")

    def refuse(move):
        raise RuntimeError("wallet refuses ETH")

    loan_id = open_funded_loan(ledger, deployment)
    ledger.set_receive_hook("borrower", refuse)
    try:
        book.repay_loan("borrower", loan_id)
    except ExternalTransferFailure as exc:
        print(f"  Refusing wallet: ✗ {exc}")
    print(f"  Loan {loan_id} still {book.loan_status(loan_id).value}, nothing moved")

    wait_for_enter()


def step_08_conservation():
    """Every transition conserves both units."""
    step_header(8, "The Conservation Law",
        "The sum over all wallets (system included) is zero for every unit.")

    ledger, deployment = setup_chain()
    token, book = deployment.token, deployment.loan_book
    for _ in range(3):
        open_funded_loan(ledger, deployment)
    book.request_loan("borrower", 1, 0, 60, 1)
    ledger.advance_time(5000)
    book.claim_collateral("lender", 0)
    book.cancel_loan("borrower", 3)

    result = ledger.verify_double_entry({
        NATIVE_SYMBOL: CONFIG.borrower_eth,
        token.symbol: CONFIG.lender_tokens + CONFIG.borrower_tokens,
    })
    print(f"  Supplies: {result['supplies']}")
    print(f"  Valid:    {result['valid']}")
    print(f"  Escrow {book.escrow_balance()} == outstanding {book.outstanding_collateral()}")


def main():
    ledger, deployment = step_01_deploy()
    loan_id = step_02_request(ledger, deployment)
    step_03_fund(ledger, deployment, loan_id)
    step_04_early_repay(ledger, deployment, loan_id)
    step_05_late_repay()
    step_06_claim()
    step_07_reentrancy()
    step_08_conservation()
    print(f"\n{'='*70}\nDone.\n")


if __name__ == "__main__":
    main()
