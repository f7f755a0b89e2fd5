"""
token.py - Fungible Token Ledger (ERC-20 style) on top of the Ledger

This module provides the token collaborator the loan book pulls principal and
repayments through:
1. get_allowance() - Read an approval from the token's unit state
2. compute_approval() - Pure function building an allowance update
3. compute_transfer() / compute_transfer_from() - Pure functions building moves
4. FungibleToken - Stateful wrapper that executes the above on a Ledger

Allowances live in the token unit's state as {owner: {spender: amount}}, so an
approval or an allowance spend is an ordinary UnitStateChange. A transfer_from
is a single PendingTransaction carrying both the Move and the allowance
decrement, which the ledger applies atomically.

Pattern:
    approve(lender, loan_book, 100)
        UnitStateChange(MCK, allowances[lender][loan_book] = 100)

    transfer_from(loan_book, lender, borrower, 100)
        Move(100, "MCK", lender, borrower)
        UnitStateChange(MCK, allowances[lender][loan_book] -= 100)

All compute_* functions take a LedgerView (read-only) and return immutable
results.
"""

from __future__ import annotations
from typing import Dict

from .core import (
    LedgerView, Move, PendingTransaction, UnitStateChange,
    TransactionOrigin, OriginType, ExecuteResult,
    SYSTEM_WALLET, UNIT_TYPE_TOKEN, UINT256_MAX,
    InsufficientAllowance, InsufficientFunds, LedgerError,
    build_transaction, empty_pending_transaction, fungible_token,
)
from .ledger import Ledger


# =============================================================================
# PURE FUNCTIONS
# =============================================================================

def _require_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"Token amount must be int, got {type(amount).__name__}")
    if amount < 0 or amount > UINT256_MAX:
        raise ValueError(f"Token amount out of range: {amount}")


def get_allowance(view: LedgerView, symbol: str, owner: str, spender: str) -> int:
    """Return how much `spender` may still pull from `owner`."""
    allowances: Dict[str, Dict[str, int]] = view.get_unit_state(symbol).get('allowances', {})
    return allowances.get(owner, {}).get(spender, 0)


def compute_approval(
    view: LedgerView,
    symbol: str,
    owner: str,
    spender: str,
    amount: int,
) -> PendingTransaction:
    """
    Build the state change that sets allowances[owner][spender] = amount.

    Approval overwrites (it does not add), like ERC-20 approve().
    """
    _require_amount(amount)
    if owner == spender:
        raise ValueError("Owner cannot approve itself")
    old_state = view.get_unit_state(symbol)
    new_state = view.get_unit_state(symbol)
    allowances = new_state.setdefault('allowances', {})
    if amount:
        allowances.setdefault(owner, {})[spender] = amount
    else:
        allowances.get(owner, {}).pop(spender, None)
        if owner in allowances and not allowances[owner]:
            del allowances[owner]
    return build_transaction(
        view,
        [],
        [UnitStateChange(unit=symbol, old_state=old_state, new_state=new_state)],
        origin=TransactionOrigin(OriginType.USER_ACTION, owner, symbol, "APPROVE"),
    )


def compute_transfer(
    view: LedgerView,
    symbol: str,
    sender: str,
    to: str,
    amount: int,
) -> PendingTransaction:
    """
    Build a direct transfer of `amount` tokens from sender to to.

    Raises:
        InsufficientFunds: If the sender's balance is too low
    """
    _require_amount(amount)
    if amount == 0:
        return empty_pending_transaction(view)
    balance = view.get_balance(sender, symbol)
    if balance < amount:
        raise InsufficientFunds(f"{sender} holds {balance} {symbol}, needs {amount}")
    moves = [] if sender == to else [Move(amount, symbol, sender, to, f"{symbol}_transfer")]
    return build_transaction(
        view,
        moves,
        origin=TransactionOrigin(OriginType.USER_ACTION, sender, symbol, "TRANSFER"),
    )


def compute_transfer_from(
    view: LedgerView,
    symbol: str,
    spender: str,
    payer: str,
    payee: str,
    amount: int,
) -> PendingTransaction:
    """
    Build a delegated transfer: spender moves `amount` from payer to payee.

    The transaction carries the move and the allowance decrement together.

    Raises:
        InsufficientAllowance: If payer approved spender for less than amount
        InsufficientFunds: If payer's balance is too low
    """
    _require_amount(amount)
    if amount == 0:
        return empty_pending_transaction(view)
    allowed = get_allowance(view, symbol, payer, spender)
    if allowed < amount:
        raise InsufficientAllowance(
            f"{spender} may pull {allowed} {symbol} from {payer}, needs {amount}"
        )
    balance = view.get_balance(payer, symbol)
    if balance < amount:
        raise InsufficientFunds(f"{payer} holds {balance} {symbol}, needs {amount}")

    old_state = view.get_unit_state(symbol)
    new_state = view.get_unit_state(symbol)
    remaining = allowed - amount
    if remaining:
        new_state['allowances'][payer][spender] = remaining
    else:
        del new_state['allowances'][payer][spender]
        if not new_state['allowances'][payer]:
            del new_state['allowances'][payer]

    # A self-transfer only spends allowance
    moves = [] if payer == payee else [
        Move(amount, symbol, payer, payee, f"{symbol}_transfer_from:{spender}")
    ]
    return build_transaction(
        view,
        moves,
        [UnitStateChange(unit=symbol, old_state=old_state, new_state=new_state)],
        origin=TransactionOrigin(OriginType.CONTRACT, spender, symbol, "TRANSFER_FROM"),
    )


# =============================================================================
# STATEFUL TOKEN
# =============================================================================

class FungibleToken:
    """
    ERC-20 style token whose balances and allowances live on a Ledger.

    Implements the TokenLedger protocol used by the loan book. Methods that
    move value return a bool, as an ERC-20 contract does: False means nothing
    changed. A receive hook that raises during a transfer surfaces as
    RecipientRejected from the ledger.

    Example:
        token = FungibleToken(ledger, "MCK", "Mock Token")
        token.mint("lender", 1000)
        token.approve("lender", "loan_book", 100)
        token.transfer_from("loan_book", "lender", "borrower", 100)  # True
    """

    def __init__(self, ledger: Ledger, symbol: str, name: str, decimals: int = 18):
        self.ledger = ledger
        self.symbol = symbol
        self.name = name
        self.decimals = decimals
        if symbol not in ledger.units:
            ledger.register_unit(fungible_token(symbol, name, decimals))
        elif ledger.get_unit(symbol).unit_type != UNIT_TYPE_TOKEN:
            raise ValueError(f"Unit {symbol} is registered but is not a token")

    def __repr__(self) -> str:
        return f"FungibleToken({self.symbol})"

    # ------------------------------------------------------------------ views

    def balance_of(self, owner: str) -> int:
        return self.ledger.get_balance(owner, self.symbol)

    def allowance(self, owner: str, spender: str) -> int:
        return get_allowance(self.ledger, self.symbol, owner, spender)

    def total_supply(self) -> int:
        return self.ledger.total_supply(self.symbol)

    # -------------------------------------------------------------- mutations

    def mint(self, to: str, amount: int) -> None:
        """
        Issue new tokens to a wallet from the system wallet.

        Raises:
            LedgerError: If the ledger rejects the issuance
        """
        _require_amount(amount)
        if amount == 0:
            return
        pending = build_transaction(
            self.ledger,
            [Move(amount, self.symbol, SYSTEM_WALLET, to, f"{self.symbol}_mint")],
            origin=TransactionOrigin(OriginType.SYSTEM, SYSTEM_WALLET, self.symbol, "MINT"),
        )
        if self.ledger.execute(pending) != ExecuteResult.APPLIED:
            raise LedgerError(f"Mint of {amount} {self.symbol} to {to} rejected")

    def approve(self, owner: str, spender: str, amount: int) -> bool:
        pending = compute_approval(self.ledger, self.symbol, owner, spender, amount)
        return self.ledger.execute(pending) == ExecuteResult.APPLIED

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        try:
            pending = compute_transfer(self.ledger, self.symbol, sender, to, amount)
        except InsufficientFunds as exc:
            if self.ledger.verbose:
                print(f"✗ {self.symbol} transfer refused: {exc}")
            return False
        return self.ledger.execute(pending) == ExecuteResult.APPLIED

    def transfer_from(self, spender: str, payer: str, payee: str, amount: int) -> bool:
        """
        Pull `amount` tokens from payer to payee using spender's allowance.

        Returns:
            True if the tokens moved, False if balance or allowance was insufficient

        Raises:
            RecipientRejected: If the payee's receive hook raised
        """
        try:
            pending = compute_transfer_from(
                self.ledger, self.symbol, spender, payer, payee, amount
            )
        except (InsufficientAllowance, InsufficientFunds) as exc:
            if self.ledger.verbose:
                print(f"✗ {self.symbol} transfer_from refused: {exc}")
            return False
        return self.ledger.execute(pending) == ExecuteResult.APPLIED
