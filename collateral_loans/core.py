"""
Core types and pure functions for the collateralized lending runtime.

This module provides the foundational data structures and protocols:
1. Protocols: LedgerView for read-only ledger access, TokenLedger for token pulls
2. Immutable data structures: Move, PendingTransaction, Transaction, Unit
3. Exceptions: LedgerError (runtime) and LoanError (protocol) hierarchies
4. Checked integer arithmetic bounded by UINT256_MAX
5. Unit factories: native_currency() and fungible_token()

All amounts are non-negative integers in base units (like wei). There is no
floating point and no Decimal anywhere in the system.

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
import copy
from typing import (
    Dict, List, Set, Optional, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance and redemption.
# The system wallet is exempt from balance validation and can hold any balance.
SYSTEM_WALLET = "system"

# Symbol of the hosting runtime's native currency (the collateral asset).
NATIVE_SYMBOL = "ETH"

# Upper bound for every amount, timestamp and intermediate product.
UINT256_MAX = 2 ** 256 - 1

# Unit type constants (strings, not enum per design decision).
UNIT_TYPE_NATIVE = "NATIVE"
UNIT_TYPE_TOKEN = "TOKEN"


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Internal state for a unit (token allowances, issuer, etc.).
UnitState = Dict[str, Any]


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all runtime ledger errors."""
    pass


class InsufficientFunds(LedgerError):
    """Raised when a move would cause a wallet balance to fall below the unit's minimum."""
    pass


class InsufficientAllowance(LedgerError):
    """Raised when a spender tries to pull more tokens than it was approved for."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when attempting to operate on a unit that has not been registered with the ledger."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when attempting to operate on a wallet that has not been registered with the ledger."""
    pass


class RecipientRejected(LedgerError):
    """Raised when a receive hook raised while accepting a transfer; the transfer was rolled back."""
    pass


class LoanError(Exception):
    """Base exception for all loan protocol errors. Every LoanError voids the transition."""
    pass


class LoanNotFound(LoanError):
    """The loan identifier has no record."""
    pass


class InvalidArgument(LoanError):
    """Zero or negative amount, zero duration, or a non-integer amount."""
    pass


class ArithmeticOverflow(InvalidArgument):
    """An amount or timestamp computation left the [0, UINT256_MAX] range."""
    pass


class PreconditionViolation(LoanError):
    """The loan is in the wrong lifecycle state for the requested transition."""
    pass


class LoanPastDue(PreconditionViolation):
    """Early repayment attempted on or after the due date; use repay_loan instead."""
    pass


class LoanNotYetDue(PreconditionViolation):
    """Collateral claim attempted before the due date has fully elapsed."""
    pass


class ReentrantCall(PreconditionViolation):
    """A transition was entered while another transition was still in flight."""
    pass


class Unauthorized(LoanError):
    """The caller is not the party required by the transition."""
    pass


class ExternalTransferFailure(LoanError):
    """The token ledger or a native-currency payout failed."""
    pass


# ============================================================================
# CHECKED ARITHMETIC
# ============================================================================

def _require_uint(value: int, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{what} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise ArithmeticOverflow(f"{what} underflows: {value} < 0")
    if value > UINT256_MAX:
        raise ArithmeticOverflow(f"{what} overflows uint256")
    return value


def checked_add(a: int, b: int) -> int:
    """Add two uints, raising ArithmeticOverflow if the sum exceeds UINT256_MAX."""
    return _require_uint(_require_uint(a, "addend") + _require_uint(b, "addend"), "sum")


def checked_sub(a: int, b: int) -> int:
    """Subtract two uints, raising ArithmeticOverflow if the result is negative."""
    return _require_uint(_require_uint(a, "minuend") - _require_uint(b, "subtrahend"), "difference")


def checked_mul(a: int, b: int) -> int:
    """Multiply two uints, raising ArithmeticOverflow if the product exceeds UINT256_MAX."""
    return _require_uint(_require_uint(a, "factor") * _require_uint(b, "factor"), "product")


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Token pure functions and the loan arithmetic take a LedgerView to declare
    their read-only intent. The Ledger class implements this protocol but also
    provides mutation methods. For testing, FakeView provides a truly
    immutable implementation.
    """

    @property
    def current_time(self) -> int:
        """Return the current logical time of the ledger, in seconds."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> int:
        """Return the balance of a specific unit in a wallet."""
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Return a copy of the unit's internal state."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...


@runtime_checkable
class TokenLedger(Protocol):
    """
    The single token capability the loan book depends on.

    transfer_from moves `amount` from payer to payee on behalf of `spender`
    and reports success. It must leave no trace when it returns False.
    """

    def transfer_from(self, spender: str, payer: str, payee: str, amount: int) -> bool:
        ...


class Checkpointable(Protocol):
    """
    State kept outside the ledger that must rewind with it.

    A ledger calls checkpoint() on every attached participant whenever it
    takes a checkpoint of its own, then exactly one of rollback() or
    release() with the value returned. Checkpoints nest: they are rolled
    back or released in reverse order of creation.
    """

    def checkpoint(self) -> Any:
        ...

    def rollback(self, checkpoint: Any) -> None:
        ...

    def release(self, checkpoint: Any) -> None:
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was successfully validated and applied to the ledger.
    REJECTED: Transaction failed validation due to insufficient funds, balance
              constraints, registration or stale unit state.
    """
    APPLIED = "applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """
    Classification of where a transaction originated.

    Used for audit trails and reconciliation.
    """
    USER_ACTION = "user_action"           # Direct wallet action (approve, transfer)
    CONTRACT = "contract"                 # Loan book transition
    SYSTEM = "system"                     # Issuance, bootstrap


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source
        source_id: Identifier of the specific source (loan book address, wallet, ...)
        unit_symbol: Symbol of the unit involved (if applicable)
        event_type: Specific event within the source (e.g., "FUND", "APPROVE")
    """
    origin_type: OriginType
    source_id: str
    unit_symbol: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.unit_symbol:
            parts.append(f"unit={self.unit_symbol}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# UNIT STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class UnitStateChange:
    """
    Record of a unit state change for transaction logging and stale-state checks.

    Attributes:
        unit: Symbol of the unit whose state changed
        old_state: Complete state before the change (dict or None)
        new_state: Complete state after the change (dict)
    """
    unit: str
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """
        Compute fields that differ between old and new state.

        Returns:
            Dict mapping field name to (old_value, new_value) tuples.
        """
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state if isinstance(self.new_state, dict) else {}
        changes = {}
        for key in set(old.keys()) | set(new.keys()):
            old_val = old.get(key)
            new_val = new.get(key)
            if old_val != new_val:
                changes[key] = (old_val, new_val)
        return changes


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: The amount to transfer, in base units (strictly positive int).
        unit_symbol: The symbol of the unit being transferred (e.g., "ETH", "MCK").
        source: The wallet ID from which value is debited.
        dest: The wallet ID to which value is credited.
        contract_id: Identifier of the contract generating this move.
        metadata: Optional additional information about the move.
    """
    quantity: int
    unit_symbol: str
    source: str
    dest: str
    contract_id: str
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValueError(f"Move quantity must be int, got {type(self.quantity)}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.quantity > UINT256_MAX:
            raise ValueError("Move quantity overflows uint256")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction specification before execution - represents INTENT.

    Created by token functions and the loan book and submitted to the ledger.
    Contains everything needed to describe what should happen, but without
    execution-specific metadata (exec_id, ledger_name, execution_time).

    Attributes:
        moves: Tuple of value transfers between wallets
        state_changes: Tuple of unit state changes (with old_state and new_state)
        origin: Who/what created this transaction and why
        timestamp: Ledger time when this pending transaction was built
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: int

    def is_empty(self) -> bool:
        """Return True if this pending transaction has no moves and no state deltas."""
        return not self.moves and not self.state_changes

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} deltas, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[UnitStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction from moves and state deltas.

    Args:
        view: Read-only ledger view (provides current_time)
        moves: List of moves to include in the transaction
        state_changes: Optional list of UnitStateChange objects
        origin: Transaction origin (defaults to CONTRACT origin)

    Returns:
        A PendingTransaction ready for execution

    Example:
        tx = build_transaction(ledger, [
            Move(10**18, "ETH", "alice", "loan_book", "loan_0")
        ])
        ledger.execute(tx)
    """
    if origin is None:
        origin = TransactionOrigin(
            origin_type=OriginType.CONTRACT,
            source_id="contract",
        )

    # Deep copy state changes to prevent mutation
    copied_changes: Tuple[UnitStateChange, ...] = ()
    if state_changes:
        copied_changes = tuple(
            UnitStateChange(
                unit=sc.unit,
                old_state=copy.deepcopy(sc.old_state),
                new_state=copy.deepcopy(sc.new_state),
            )
            for sc in state_changes
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied_changes,
        origin=origin,
        timestamp=view.current_time,
    )


def empty_pending_transaction(view: LedgerView) -> PendingTransaction:
    """
    Create an empty PendingTransaction (no moves, no state changes).

    Use this when a function has nothing to do (e.g. a zero-amount transfer).
    """
    return PendingTransaction(
        moves=(),
        state_changes=(),
        origin=TransactionOrigin(OriginType.CONTRACT, "noop"),
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Attributes:
        moves: Tuple of value transfers between wallets
        state_changes: Tuple of unit state changes
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was built
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: When this was executed and logged
        sequence_number: Monotonic sequence within the ledger (for ordering)
        contract_ids: Set of contract IDs from moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: int
    exec_id: str
    ledger_name: str
    execution_time: int
    sequence_number: int
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes:
            raise ValueError("Transaction must have moves or state_changes")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        w = 100  # Inner content width
        bar = "─" * w

        def pad(text: str) -> str:
            """Pad or truncate text to exactly w characters."""
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' Transaction: ' + self.exec_id)}│",
            f"├{bar}┤",
            f"│{pad('   timestamp      : ' + str(self.timestamp))}│",
            f"│{pad('   ledger_name    : ' + self.ledger_name)}│",
            f"│{pad('   execution_time : ' + str(self.execution_time))}│",
            f"│{pad('   sequence       : ' + str(self.sequence_number))}│",
            f"│{pad('   origin         : ' + str(self.origin))}│",
            f"│{pad('   contract_ids   : ' + str(set(self.contract_ids)))}│",
        ]
        lines.append(f"├{bar}┤")
        lines.append(f"│{pad(' Moves (' + str(len(self.moves)) + '):')}│")
        for i, move in enumerate(self.moves):
            move_str = f"   [{i}] {move.quantity} {move.unit_symbol}: {move.source} → {move.dest}"
            lines.append(f"│{pad(move_str)}│")
        if self.state_changes:
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' State Changes (' + str(len(self.state_changes)) + '):')}│")
            for sc in self.state_changes:
                lines.append(f"│{pad('   [' + sc.unit + ']')}│")
                for field_name, (old_val, new_val) in sc.changed_fields().items():
                    lines.append(f"│{pad(f'      {field_name}: {old_val!r} → {new_val!r}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """
    Convert a mutable state dict to an immutable frozen representation.

    Returns:
        Tuple of (key, value) pairs, sorted by key for determinism
    """
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    """Convert a frozen state representation back to a (deep-copied) mutable dict."""
    return copy.deepcopy(dict(frozen_state))


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a transferable asset in the ledger.

    Attributes:
        symbol: Short identifier for the unit (e.g., "ETH", "MCK").
        name: Human-readable name for the unit.
        unit_type: Category of the unit (NATIVE, TOKEN).
        min_balance: Minimum allowed balance in any non-system wallet.
        max_balance: Maximum allowed balance in any wallet.
        decimals: Display precision; amounts are always integer base units.
        _frozen_state: Internal frozen state representation (tuple of key-value pairs).
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: int = 0
    max_balance: int = UINT256_MAX
    decimals: int = 18
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """
        Get the unit's state as a mutable dictionary.

        Returns a new dict each time to prevent accidental mutation.
        """
        return _thaw_state(self._frozen_state)

    def format(self, quantity: int) -> str:
        """Render a base-unit amount using the unit's decimals (display only)."""
        whole, frac = divmod(quantity, 10 ** self.decimals)
        if not frac:
            return f"{whole} {self.symbol}"
        digits = str(frac).rjust(self.decimals, "0").rstrip("0")
        return f"{whole}.{digits} {self.symbol}"


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def native_currency(symbol: str = NATIVE_SYMBOL, name: str = "Ether", decimals: int = 18) -> Unit:
    """
    Create the hosting runtime's native currency unit (the collateral asset).

    Args:
        symbol: Currency symbol (default: "ETH").
        name: Full name of the currency.
        decimals: Display precision (default: 18).

    Returns:
        A Unit that cannot be overdrawn; issuance flows from SYSTEM_WALLET.
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_NATIVE,
        decimals=decimals,
        _frozen_state=_freeze_state({'issuer': SYSTEM_WALLET}),
    )


def fungible_token(symbol: str, name: str, decimals: int = 18) -> Unit:
    """
    Create a fungible token unit with an empty allowance table.

    Allowances are stored in the unit state as {owner: {spender: amount}} so that
    approvals and pulls are recorded as ordinary unit state changes and roll back
    with the rest of the ledger.
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_TOKEN,
        decimals=decimals,
        _frozen_state=_freeze_state({'issuer': SYSTEM_WALLET, 'allowances': {}}),
    )
