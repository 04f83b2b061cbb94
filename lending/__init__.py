"""
lending - Collateralized Lending Risk-and-Accounting Core

Decides how much a user may borrow, accrues interest, flags unsafe loans and
executes liquidations. Token movement and prices are reached through the
AssetCustody and PriceFeed interfaces.

Usage:
    from decimal import Decimal
    from lending import LendingProtocol, StaticPriceFeed

    feed = StaticPriceFeed({"ETH": Decimal("1")})
    protocol = LendingProtocol(feed)
    protocol.create_pool("USD")
    protocol.create_pool("ETH")

    lender = protocol.register_user("0xlender")
    borrower = protocol.register_user("0xborrower")

    protocol.deposit(lender, "USD", Decimal("10000"))
    protocol.deposit_collateral(borrower, "ETH", Decimal("10000"))
    loan_id = protocol.borrow(borrower, "ETH", Decimal("10000"), "USD", Decimal("7500"))

    protocol.set_price("ETH", Decimal("0.9"))
    for bad in protocol.find_bad_loans():
        protocol.liquidate(bad, Decimal("3000"), "liquidator")
"""

# Core types
from .core import (
    AssetId,
    UserId,
    LoanId,
    TransferInstruction,
    SYSTEM_WALLET,
    QUANTITY_EPSILON,
    INFINITY,
    pool_wallet,
    collateral_wallet,
    # Exceptions
    LendingError,
    InsufficientLiquidity,
    InsufficientBalance,
    ExceedsMaxBorrow,
    NotLiquidatable,
    HealthNotImproved,
    ExceedsLiquidationLimit,
    PartialSeizureShortfall,
    UnknownAsset,
    UnknownLoan,
    UnknownUser,
    LoanClosed,
    Unauthorized,
    CustodyRejected,
    ConcurrentModification,
)

# Interest rates
from .interest_rate import (
    InterestRateParams,
    InterestRateModel,
    calculate_borrow_rate,
    calculate_supply_rate,
)

# Pools
from .pool import (
    Pool,
    DEFAULT_RESERVE_FACTOR,
    create_pool,
    calculate_utilization,
    accrue_indices,
    apply_deposit,
    apply_withdraw,
    apply_borrow,
    apply_repay,
    capitalize_interest,
    write_off,
)

# Credit records and scoring
from .credit_record import (
    CreditRecord,
    RepaymentEvent,
    create_credit_record,
)
from .credit_scorer import (
    CreditScorer,
    ScoreTier,
    ScoreUpdate,
    DEFAULT_SCORE_TIERS,
    DEFAULT_SCORE_CEILING,
    calculate_score_update,
)

# Loans
from .loan import (
    Loan,
    LoanStatus,
    RepaymentAllocation,
    create_loan,
    calculate_pending_interest,
    accrue_interest,
    apply_repayment,
)

# Risk
from .risk import (
    CreditTier,
    RiskParameters,
    RiskAssessment,
    DEFAULT_CREDIT_TIERS,
    assess_loan,
    calculate_health_factor,
    calculate_liquidation_threshold,
    calculate_max_loan_to_value,
    calculate_max_liquidatable,
    calculate_liquidation_window,
    calculate_loan_rate,
    check_max_borrow,
    stress_health_factors,
    iter_liquidatable,
)

# Liquidation
from .liquidation import (
    LiquidationEngine,
    LiquidationResult,
    calculate_collateral_seized,
)

# External interfaces
from .pricing_source import (
    PriceFeed,
    StaticPriceFeed,
    TimeSeriesPriceFeed,
)
from .custody import (
    AssetCustody,
    RecordingCustody,
    InMemoryCustody,
)

# Protocol
from .protocol import (
    LendingProtocol,
    ProtocolConfig,
    OperationRecord,
    RepayResult,
)


__all__ = [
    # Core
    'AssetId', 'UserId', 'LoanId', 'TransferInstruction',
    'SYSTEM_WALLET', 'QUANTITY_EPSILON', 'INFINITY',
    'pool_wallet', 'collateral_wallet',
    # Exceptions
    'LendingError', 'InsufficientLiquidity', 'InsufficientBalance',
    'ExceedsMaxBorrow', 'NotLiquidatable', 'HealthNotImproved',
    'ExceedsLiquidationLimit', 'PartialSeizureShortfall',
    'UnknownAsset', 'UnknownLoan', 'UnknownUser', 'LoanClosed',
    'Unauthorized', 'CustodyRejected', 'ConcurrentModification',
    # Interest rates
    'InterestRateParams', 'InterestRateModel',
    'calculate_borrow_rate', 'calculate_supply_rate',
    # Pools
    'Pool', 'DEFAULT_RESERVE_FACTOR', 'create_pool', 'calculate_utilization',
    'accrue_indices', 'apply_deposit', 'apply_withdraw', 'apply_borrow',
    'apply_repay', 'capitalize_interest', 'write_off',
    # Credit
    'CreditRecord', 'RepaymentEvent', 'create_credit_record',
    'CreditScorer', 'ScoreTier', 'ScoreUpdate',
    'DEFAULT_SCORE_TIERS', 'DEFAULT_SCORE_CEILING', 'calculate_score_update',
    # Loans
    'Loan', 'LoanStatus', 'RepaymentAllocation', 'create_loan',
    'calculate_pending_interest', 'accrue_interest', 'apply_repayment',
    # Risk
    'CreditTier', 'RiskParameters', 'RiskAssessment', 'DEFAULT_CREDIT_TIERS',
    'assess_loan', 'calculate_health_factor', 'calculate_liquidation_threshold',
    'calculate_max_loan_to_value', 'calculate_max_liquidatable', 'calculate_liquidation_window',
    'calculate_loan_rate', 'check_max_borrow', 'stress_health_factors',
    'iter_liquidatable',
    # Liquidation
    'LiquidationEngine', 'LiquidationResult', 'calculate_collateral_seized',
    # Interfaces
    'PriceFeed', 'StaticPriceFeed', 'TimeSeriesPriceFeed',
    'AssetCustody', 'RecordingCustody', 'InMemoryCustody',
    # Protocol
    'LendingProtocol', 'ProtocolConfig', 'OperationRecord', 'RepayResult',
]

__version__ = '0.1.0'
