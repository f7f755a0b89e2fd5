"""
ledger.py - Stateful Double-Entry Ledger Hosting the Loan Book

The Ledger class is the hosting runtime for the lending protocol. It is the
only module that mutates balances, ensuring controlled and auditable changes.

Key responsibilities:
    - Implements LedgerView protocol for safe read-only access by pure functions
    - Executes transactions atomically (all moves succeed or all fail)
    - Maintains wallet balances for the native currency and token units
    - Keeps the authoritative clock (integer seconds, never moves backwards)
    - Runs receive hooks on destination wallets after a transfer is applied,
      which is how callee code can re-enter a contract during a payout
    - Provides checkpoint()/rollback() for all-or-nothing transitions, rewinding
      attached participants (loan books) together with the ledger
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set, Tuple
import copy

from .core import (
    # Types
    Move, Transaction, Unit,
    PendingTransaction,
    ExecuteResult,
    UnitState, Checkpointable,
    # Constants
    SYSTEM_WALLET, UINT256_MAX,
    # Exceptions
    LedgerError, RecipientRejected,
    UnitNotRegistered, WalletNotRegistered,
    # Helper functions
    _freeze_state,
)


# Callee code run synchronously when a wallet receives a move.
ReceiveHook = Callable[[Move], None]


class Ledger:
    """
    Double-entry ledger with full validation and audit trail.

    Implements the LedgerView protocol, allowing the ledger to be passed to pure
    functions that access only read-only methods.

    Design Principles:
        - Always validates: Every transaction is validated against registration,
          balance limits, stale unit state and timestamp requirements.
        - Always logs: Every applied transaction is recorded in the audit trail.
        - Never partially applies: a receive hook that raises rolls back the
          transaction that triggered it.

    Thread Safety:
        Not thread-safe. One transition runs to completion before the next.

    Example:
        ledger = Ledger("chain", verbose=False)
        ledger.register_unit(native_currency())
        ledger.register_wallet("alice")
        ledger.register_wallet("bob")

        tx = build_transaction(ledger, [
            Move(100, "ETH", "alice", "bob", "payment_001")
        ])
        result = ledger.execute(tx)
    """

    def __init__(
        self,
        name: str,
        initial_time: int = 0,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time in seconds (default: 0)
            verbose: Enable debug output (default: True)
            test_mode: Enable test mode to allow set_balance() calls (default: False)
        """
        if isinstance(initial_time, bool) or not isinstance(initial_time, int) or initial_time < 0:
            raise ValueError(f"initial_time must be a non-negative int, got {initial_time!r}")
        self.name = name
        self.balances: Dict[str, Dict[str, int]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: int = initial_time
        self.verbose = verbose
        self._test_mode = test_mode
        # Monotonic sequence counter for execution ordering
        self._next_sequence: int = 0
        # Callee code attached to wallets; configuration, not state (never rolled back)
        self._receive_hooks: Dict[str, ReceiveHook] = {}
        # State held outside the ledger that rewinds with every rollback
        self._participants: List[Checkpointable] = []

        # Auto-register the system wallet (used for issuance/redemption)
        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(int)

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> int:
        """Current logical time of the ledger, in seconds."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> int:
        """
        Get the balance of a specific unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, 0)

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """
        Get a deep copy of a unit's internal state.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.units[unit_symbol].state

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        """List all registered unit symbols."""
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def total_supply(self, unit_symbol: str) -> int:
        """
        Calculate total supply of a unit across all non-system wallets.

        The system wallet holds the negative of everything ever issued, so the
        sum over every wallet including it is always zero.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            self.balances[w].get(unit_symbol, 0)
            for w in sorted(self.registered_wallets)
            if w != SYSTEM_WALLET
        )

    def verify_double_entry(self, expected_supplies: Dict[str, int] = None) -> Dict[str, Any]:
        """
        Verify that conservation laws hold for all units.

        For every unit, the sum of all balances (system wallet included) must be
        zero, and if expected_supplies is given, the circulating supply must
        match it exactly.

        Returns:
            Dict with keys:
            - 'valid': bool - True if all conservation laws hold
            - 'supplies': Dict[str, int] - Current circulating supply per unit
            - 'discrepancies': List[Dict] - Details of any violations

        Example:
            result = ledger.verify_double_entry({'ETH': 10 * 10**18})
            assert result['valid'], result['discrepancies']
        """
        supplies = {}
        discrepancies = []

        for unit_symbol in self.units:
            circulating = self.total_supply(unit_symbol)
            supplies[unit_symbol] = circulating
            net = circulating + self.balances[SYSTEM_WALLET].get(unit_symbol, 0)
            if net != 0:
                discrepancies.append({
                    'unit': unit_symbol,
                    'expected': 0,
                    'actual': net,
                    'error': 'double entry broken',
                })
            if expected_supplies and unit_symbol in expected_supplies:
                expected = expected_supplies[unit_symbol]
                if circulating != expected:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': circulating,
                        'difference': circulating - expected,
                    })

        if expected_supplies:
            for unit_symbol, expected in expected_supplies.items():
                if unit_symbol not in supplies:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': 0,
                        'difference': -expected,
                        'error': 'unit not registered',
                    })

        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: int) -> None:
        """
        Advance the ledger's logical clock to a new time.

        Time can only move forward, never backward.

        Raises:
            ValueError: If new_time is before the current time or out of range
        """
        if isinstance(new_time, bool) or not isinstance(new_time, int):
            raise ValueError(f"Time must be an int number of seconds, got {new_time!r}")
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        if new_time > UINT256_MAX:
            raise ValueError("Time overflows uint256")
        self._current_time = new_time

    def advance_by(self, seconds: int) -> int:
        """Advance the clock by a number of seconds and return the new time."""
        self.advance_time(self._current_time + seconds)
        return self._current_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str, on_receive: Optional[ReceiveHook] = None) -> str:
        """
        Register a new wallet in the ledger.

        Args:
            wallet_id: Unique identifier for the wallet
            on_receive: Optional callee code run after this wallet receives a move

        Returns:
            The wallet_id that was registered

        Raises:
            ValueError: If wallet is already registered
        """
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(int)
        if on_receive is not None:
            self._receive_hooks[wallet_id] = on_receive
        return wallet_id

    def set_receive_hook(self, wallet_id: str, on_receive: Optional[ReceiveHook]) -> None:
        """Attach (or with None, detach) the receive hook of a registered wallet."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if on_receive is None:
            self._receive_hooks.pop(wallet_id, None)
        else:
            self._receive_hooks[wallet_id] = on_receive

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit (asset type) in the ledger.

        Raises:
            ValueError: If unit symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            print(f"📝 Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: int) -> None:
        """
        Set a wallet's balance for a unit directly.

        WARNING: This method bypasses double-entry accounting and is only
        available in test mode. Use build_transaction() and execute() instead.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use build_transaction() and execute() to modify balances. "
                "Set test_mode=True when creating Ledger for testing."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValueError(f"Balance must be int, got {type(quantity)}")
        self.balances[wallet_id][unit_symbol] = quantity

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """
        Generate a unique execution ID.

        Format: exec:{ledger_name}:{sequence:012d}:{timestamp}
        """
        return f"exec:{self.name}:{sequence:012d}:{self._current_time}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        All moves and state changes succeed together or all fail together.
        After the transaction is applied, receive hooks of destination wallets
        run in move order. If any hook raises, the ledger and its attached
        participants are rolled back to their state before this call and
        RecipientRejected is raised.

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.REJECTED if validation failed

        Raises:
            RecipientRejected: If a receive hook raised
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        valid, reason = self._validate_pending(pending)
        if not valid:
            if self.verbose:
                print(f"✗ REJECTED: {reason}")
            return ExecuteResult.REJECTED

        hooks: List[Tuple[ReceiveHook, Move]] = [
            (self._receive_hooks[move.dest], move)
            for move in pending.moves
            if move.dest in self._receive_hooks
        ]
        checkpoint = self.checkpoint() if hooks else None

        sequence = self._next_sequence
        self._next_sequence += 1
        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
        )

        self._execute_moves(tx.moves)
        for sc in tx.state_changes:
            new_state = copy.deepcopy(sc.new_state if isinstance(sc.new_state, dict) else {})
            self.units[sc.unit] = replace(self.units[sc.unit], _frozen_state=_freeze_state(new_state))

        # Log transaction (always - audit trail is mandatory)
        self.transaction_log.append(tx)

        if self.verbose:
            self._print_tx_result(tx, "APPLIED", "✓")

        for hook, move in hooks:
            try:
                hook(move)
            except Exception as exc:
                self.rollback(checkpoint)
                if self.verbose:
                    print(f"✗ ROLLED BACK {tx.exec_id}: {move.dest} rejected {move!r}: {exc}")
                raise RecipientRejected(
                    f"{move.dest} rejected {move.quantity} {move.unit_symbol}: {exc}"
                ) from exc

        if checkpoint is not None:
            self.release(checkpoint)
        return ExecuteResult.APPLIED

    def _print_tx_result(self, tx: Transaction, result: str, icon: str) -> None:
        """Print transaction details followed by a result line."""
        lines = repr(tx).split('\n')
        w = 100
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines[-1] = f"├{bar}┤"
        lines.append(f"│{pad(' ' + icon + ' ' + result)}│")
        lines.append(f"└{bar}┘")
        print("\n".join(lines))

    def _validate_pending(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Validate pending transaction against all constraints.

        Checks performed:
        1. Timestamp validation (transaction must not be from the future)
        2. Unit and wallet registration
        3. Stale state (old_state of each state change must match current state)
        4. Balance constraint validation (min/max balance limits)

        Returns:
            Tuple of (success, reason); reason is empty on success
        """
        if pending.timestamp > self._current_time:
            return False, "future timestamp"

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return False, f"unit not registered: {move.unit_symbol}"
            if not self.is_registered(move.source):
                return False, f"wallet not registered: {move.source}"
            if not self.is_registered(move.dest):
                return False, f"wallet not registered: {move.dest}"

        # Optimistic concurrency: reject if the state moved since the tx was built
        for sc in pending.state_changes:
            if sc.unit not in self.units:
                return False, f"unit not registered: {sc.unit}"
            if sc.old_state is not None and sc.old_state != self.units[sc.unit].state:
                return False, f"stale state for {sc.unit}"

        net: Dict[Tuple[str, str], int] = {}
        for move in pending.moves:
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = net.get(key_src, 0) - move.quantity
            net[key_dst] = net.get(key_dst, 0) + move.quantity

        # SYSTEM_WALLET is exempt from balance validation - it can hold any balance
        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            unit = self.units[unit_sym]
            proposed = self.balances[wallet][unit_sym] + delta
            if proposed < unit.min_balance:
                return False, f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
            if proposed > unit.max_balance:
                return False, f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"

        return True, ""

    def _execute_moves(self, moves) -> None:
        """Apply all moves to wallet balances (debit source, credit dest)."""
        for move in moves:
            self.balances[move.source][move.unit_symbol] -= move.quantity
            self.balances[move.dest][move.unit_symbol] += move.quantity

    # ========================================================================
    # CHECKPOINTS
    # ========================================================================

    def attach(self, participant: Checkpointable) -> None:
        """
        Rewind `participant` together with this ledger.

        Every checkpoint taken from now on also checkpoints the participant,
        and every rollback rolls it back, whoever triggered the rollback.
        """
        if not any(p is participant for p in self._participants):
            self._participants.append(participant)

    def checkpoint(self) -> LedgerCheckpoint:
        """
        Capture the current state for a later rollback() or release().

        Balances, units and wallets are copied (size of the current state);
        the transaction log is append-only and only its length is kept.
        """
        return LedgerCheckpoint(
            balances={wallet: dict(bals) for wallet, bals in self.balances.items()},
            units=dict(self.units),
            registered_wallets=frozenset(self.registered_wallets),
            log_length=len(self.transaction_log),
            next_sequence=self._next_sequence,
            current_time=self._current_time,
            participants=tuple((p, p.checkpoint()) for p in self._participants),
        )

    def rollback(self, checkpoint: LedgerCheckpoint) -> None:
        """
        Rewind this ledger and its participants to `checkpoint`.

        Balances, units (including token allowances), wallets, the
        transaction log, the sequence counter and the clock are restored.
        Receive hooks and the verbose flag are configuration and are kept.
        """
        self.balances = {
            wallet: defaultdict(int, bals) for wallet, bals in checkpoint.balances.items()
        }
        self.units = dict(checkpoint.units)
        self.registered_wallets = set(checkpoint.registered_wallets)
        del self.transaction_log[checkpoint.log_length:]
        self._next_sequence = checkpoint.next_sequence
        self._current_time = checkpoint.current_time
        for participant, state in reversed(checkpoint.participants):
            participant.rollback(state)

    def release(self, checkpoint: LedgerCheckpoint) -> None:
        """Discard a checkpoint that will not be rolled back."""
        for participant, state in reversed(checkpoint.participants):
            participant.release(state)


@dataclass(frozen=True)
class LedgerCheckpoint:
    """State captured by Ledger.checkpoint()."""
    balances: Dict[str, Dict[str, int]]
    units: Dict[str, Unit]
    registered_wallets: FrozenSet[str]
    log_length: int
    next_sequence: int
    current_time: int
    participants: Tuple[Tuple[Checkpointable, Any], ...]
