"""
collateral_loans - Collateralized Lending on a Double-Entry Ledger

Borrowers escrow native currency as collateral to borrow tokens from lenders,
with fixed upfront interest, a repayment window that starts at funding, an
interest rebate for early repayment, and collateral forfeiture on default.

Usage:
    from collateral_loans import Ledger, deploy, build_transaction, Move, SYSTEM_WALLET

    ledger = Ledger("chain", verbose=False)
    deployment = deploy(ledger)
    token, book = deployment.token, deployment.loan_book

    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    ledger.execute(build_transaction(ledger, [
        Move(10**18, "ETH", SYSTEM_WALLET, "alice", "genesis")
    ]))
    token.mint("bob", 1000)

    loan_id = book.request_loan("alice", principal=100, interest=10,
                                duration=3600, value=10**18)
    token.approve("bob", book.address, 100)
    book.fund_loan("bob", loan_id)

    ledger.advance_by(1800)
    token.approve("alice", book.address, book.quote_repayment(loan_id))
    book.early_repay_loan("alice", loan_id)   # rebate 5, bob receives 105
"""

# Core types
from .core import (
    LedgerView,
    TokenLedger,
    Checkpointable,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    empty_pending_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    native_currency,
    fungible_token,
    checked_add,
    checked_sub,
    checked_mul,
    SYSTEM_WALLET,
    NATIVE_SYMBOL,
    UINT256_MAX,
    UNIT_TYPE_NATIVE,
    UNIT_TYPE_TOKEN,
    # Runtime errors
    LedgerError,
    InsufficientFunds,
    InsufficientAllowance,
    UnitNotRegistered,
    WalletNotRegistered,
    RecipientRejected,
    # Protocol errors
    LoanError,
    LoanNotFound,
    InvalidArgument,
    ArithmeticOverflow,
    PreconditionViolation,
    LoanPastDue,
    LoanNotYetDue,
    ReentrantCall,
    Unauthorized,
    ExternalTransferFailure,
)

# Ledger
from .ledger import Ledger, LedgerCheckpoint

# Token
from .token import (
    FungibleToken,
    get_allowance,
    compute_approval,
    compute_transfer,
    compute_transfer_from,
)

# Loans
from .loan import (
    LoanStatus,
    LoanRecord,
    CLOSED_STATUSES,
    create_loan_record,
    compute_repayment_amount,
    compute_due_date,
    compute_rebate,
    compute_early_repayment,
    quote_repayment,
    require_party,
    require_active,
)

# Events
from .events import (
    LoanEvent,
    LoanRequested,
    LoanFunded,
    LoanRepaid,
    LoanEarlyRepaid,
    LoanCancelled,
    CollateralClaimed,
    EventLog,
)

# Loan book
from .loan_book import (
    CollateralizedLoanBook,
    DEFAULT_LOAN_BOOK_ADDRESS,
    non_reentrant,
)

# Deployment
from .deploy import Deployment, deploy

__all__ = [
    # Core
    'LedgerView', 'TokenLedger', 'Checkpointable', 'Move', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType', 'build_transaction', 'empty_pending_transaction',
    'Unit', 'UnitStateChange', 'ExecuteResult', 'native_currency', 'fungible_token',
    'checked_add', 'checked_sub', 'checked_mul',
    'SYSTEM_WALLET', 'NATIVE_SYMBOL', 'UINT256_MAX', 'UNIT_TYPE_NATIVE', 'UNIT_TYPE_TOKEN',
    # Errors
    'LedgerError', 'InsufficientFunds', 'InsufficientAllowance',
    'UnitNotRegistered', 'WalletNotRegistered', 'RecipientRejected',
    'LoanError', 'LoanNotFound', 'InvalidArgument', 'ArithmeticOverflow',
    'PreconditionViolation', 'LoanPastDue', 'LoanNotYetDue', 'ReentrantCall',
    'Unauthorized', 'ExternalTransferFailure',
    # Ledger
    'Ledger', 'LedgerCheckpoint',
    # Token
    'FungibleToken', 'get_allowance', 'compute_approval', 'compute_transfer',
    'compute_transfer_from',
    # Loans
    'LoanStatus', 'LoanRecord', 'CLOSED_STATUSES', 'create_loan_record',
    'compute_repayment_amount', 'compute_due_date', 'compute_rebate',
    'compute_early_repayment', 'quote_repayment', 'require_party', 'require_active',
    # Events
    'LoanEvent', 'LoanRequested', 'LoanFunded', 'LoanRepaid', 'LoanEarlyRepaid',
    'LoanCancelled', 'CollateralClaimed', 'EventLog',
    # Loan book
    'CollateralizedLoanBook', 'DEFAULT_LOAN_BOOK_ADDRESS', 'non_reentrant',
    # Deployment
    'Deployment', 'deploy',
]

__version__ = '1.0.0'
