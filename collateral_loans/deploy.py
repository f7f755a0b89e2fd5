"""
deploy.py - Bootstrap a Mock Token and a Loan Book on a Ledger

For local runs and tests: registers the native currency if the ledger does
not have it yet, deploys a fresh mock token, then deploys the loan book bound
to that token. On a ledger that already carries a real token, construct
CollateralizedLoanBook directly with that token instead.
"""

from __future__ import annotations
from dataclasses import dataclass

from .core import NATIVE_SYMBOL, native_currency
from .ledger import Ledger
from .loan_book import CollateralizedLoanBook, DEFAULT_LOAN_BOOK_ADDRESS
from .token import FungibleToken


@dataclass(frozen=True, slots=True)
class Deployment:
    """Handles to the contracts created by deploy()."""
    token: FungibleToken
    loan_book: CollateralizedLoanBook


def deploy(
    ledger: Ledger,
    token_symbol: str = "MCK",
    token_name: str = "Mock Token",
    address: str = DEFAULT_LOAN_BOOK_ADDRESS,
    native_symbol: str = NATIVE_SYMBOL,
) -> Deployment:
    """
    Deploy a mock token and a loan book bound to it.

    Args:
        ledger: Hosting ledger
        token_symbol: Symbol of the mock token (default: "MCK")
        token_name: Name of the mock token
        address: Wallet ID of the loan book's escrow account
        native_symbol: Collateral unit, registered if missing

    Returns:
        Deployment with the token and the loan book

    Raises:
        ValueError: If the token symbol is already registered as a non-token
    """
    if native_symbol not in ledger.units:
        ledger.register_unit(native_currency(native_symbol))

    token = FungibleToken(ledger, token_symbol, token_name)
    if ledger.verbose:
        print(f"{token_name} deployed to: {token_symbol}")

    loan_book = CollateralizedLoanBook(ledger, token, address=address, native_symbol=native_symbol)
    if ledger.verbose:
        print(f"CollateralizedLoanBook deployed to: {address}")

    return Deployment(token=token, loan_book=loan_book)
