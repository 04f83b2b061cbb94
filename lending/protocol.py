"""
protocol.py - Stateful lending protocol

LendingProtocol is the only object in the package that holds and mutates
state. Every other module is pure: it takes snapshots and returns new ones.

Key responsibilities:
    - Owns the pools, credit records and loans, keyed by id
    - Runs each operation atomically: read snapshots, compute new ones with
      the pure functions, settle custody transfers, then publish everything
      together (or nothing, if any step raises)
    - Serialises access per entity with re-entrant locks taken in one global
      order, so unrelated pools and loans proceed in parallel
    - Tracks logical time; interest and indices accrue lazily on each touch
    - Keeps an audit log of committed operations

Thread Safety:
    Operations may be called from several threads. Locks are per pool, per
    user and per loan. Snapshots of one operation are published under a
    short view lock, so a query that reads several of them (a loan and its
    borrower, say) never mixes two commits.

Example:
    feed = StaticPriceFeed({"ETH": Decimal("2000")})
    protocol = LendingProtocol(feed)
    protocol.create_pool("USD")
    protocol.create_pool("ETH")

    lender = protocol.register_user("0xlender")
    borrower = protocol.register_user("0xborrower")
    protocol.deposit(lender, "USD", Decimal("10000"))
    protocol.deposit_collateral(borrower, "ETH", Decimal("5"))
    loan_id = protocol.borrow(borrower, "ETH", Decimal("5"), "USD", Decimal("5000"))
"""

from __future__ import annotations
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
import itertools
import logging
import threading
from typing import (
    Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union,
)

from .core import (
    AssetId, ConcurrentModification, LoanClosed, LoanId, TransferInstruction,
    Unauthorized, UnknownAsset, UnknownLoan, UnknownUser, UserId,
    collateral_wallet, compute_record_id, pool_wallet, to_decimal,
)
from .credit_record import (
    CreditRecord, RepaymentEvent,
    attach_loan, close_loan, create_credit_record, credit_collateral,
    credit_deposit, debit_collateral, debit_deposit, record_default,
    record_repayment,
)
from .credit_scorer import CreditScorer
from .custody import AssetCustody, RecordingCustody
from .interest_rate import InterestRateModel, InterestRateParams
from .liquidation import LiquidationEngine, LiquidationResult
from .loan import (
    Loan, LoanStatus,
    accrue_interest, add_collateral, apply_repayment, calculate_pending_interest,
    create_loan, increase_principal, remove_collateral, reprice, transfer_holder,
    with_status,
)
from .pool import (
    DEFAULT_RESERVE_FACTOR, Pool,
    accrue_indices, apply_borrow, apply_collateral_in, apply_collateral_out,
    apply_deposit, apply_repay, apply_withdraw, capitalize_interest, create_pool,
    write_off,
)
from .pricing_source import PriceFeed
from .risk import (
    RiskAssessment, RiskParameters,
    assess_loan, calculate_liquidation_threshold, calculate_loan_rate,
    check_max_borrow, iter_liquidatable,
)


logger = logging.getLogger(__name__)

_ZERO = Decimal("0")
_ONE = Decimal("1")

Snapshot = Union[Pool, CreditRecord, Loan]


# ============================================================================
# CONFIGURATION AND RESULTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class ProtocolConfig:
    """
    Protocol-wide settings.

    raise_on_shortfall: refuse liquidations whose seizure would exceed the
    loan's collateral instead of committing a capped seizure.
    """
    risk: RiskParameters = RiskParameters()
    default_reserve_factor: Decimal = DEFAULT_RESERVE_FACTOR
    default_rate_params: InterestRateParams = InterestRateParams()
    raise_on_shortfall: bool = False

    def __post_init__(self):
        if not isinstance(self.default_reserve_factor, Decimal):
            object.__setattr__(self, 'default_reserve_factor', to_decimal(self.default_reserve_factor))


@dataclass(frozen=True, slots=True)
class OperationRecord:
    """
    Audit entry for one committed operation.

    record_id is a content hash of the operation, its details and sequence.
    """
    sequence: int
    operation: str
    timestamp: datetime
    ticket: Optional[str]
    record_id: str
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RepayResult:
    """Outcome of an ordinary repayment."""
    loan: Loan
    interest_paid: Decimal
    principal_paid: Decimal
    refunded: Decimal
    collateral_released: Decimal
    credit_score: int

    @property
    def remaining_balance(self) -> Decimal:
        return self.loan.total_debt

    @property
    def status(self) -> LoanStatus:
        return self.loan.status


def _pool_key(asset_id: AssetId) -> str:
    return f"pool:{asset_id}"


def _user_key(user_id: UserId) -> str:
    return f"user:{user_id}"


def _loan_key(loan_id: LoanId) -> str:
    return f"loan:{loan_id}"


def _positive(amount: Decimal, what: str = "Amount") -> Decimal:
    amount = to_decimal(amount)
    if not amount.is_finite() or amount <= _ZERO:
        raise ValueError(f"{what} must be positive, got {amount}")
    return amount


class _Staged:
    """Old/new snapshot pairs for one operation, keyed by entity."""

    def __init__(self) -> None:
        self._pairs: Dict[str, Tuple[Optional[Snapshot], Snapshot]] = {}

    def read(self, key: str, current: Snapshot) -> Snapshot:
        """Latest staged version of an entity, or the committed one."""
        if key in self._pairs:
            return self._pairs[key][1]
        return current

    def put(self, key: str, old: Optional[Snapshot], new: Snapshot) -> None:
        if key in self._pairs:
            old = self._pairs[key][0]
        self._pairs[key] = (old, new)

    def pairs(self) -> List[Tuple[Optional[Snapshot], Snapshot]]:
        return list(self._pairs.values())


# ============================================================================
# PROTOCOL
# ============================================================================

class LendingProtocol:
    """
    Collateralized lending protocol core.

    Design Principles:
        - All-or-nothing: an operation that raises leaves every pool, record,
          loan and custody balance exactly as it was.
        - Lazy accrual: pool indices and loan interest catch up to
          current_time whenever an operation touches them.
        - Credit scores only change through the CreditScorer on repayment.
    """

    def __init__(
        self,
        price_feed: PriceFeed,
        custody: Optional[AssetCustody] = None,
        config: Optional[ProtocolConfig] = None,
        scorer: Optional[CreditScorer] = None,
        initial_time: Optional[datetime] = None,
        name: str = "main",
    ):
        """
        Args:
            price_feed: Source of asset prices
            custody: Two-phase custody for token movements (default: RecordingCustody)
            config: Risk and pool defaults
            scorer: Credit scorer (default tier table)
            initial_time: Starting logical time (default: 1970-01-01)
            name: Protocol identifier used in logs
        """
        self.name = name
        self.price_feed = price_feed
        self.custody: AssetCustody = custody if custody is not None else RecordingCustody()
        self.config = config if config is not None else ProtocolConfig()
        self.scorer = scorer if scorer is not None else CreditScorer()
        self.liquidation_engine = LiquidationEngine(
            self.config.risk, raise_on_shortfall=self.config.raise_on_shortfall
        )

        self._pools: Dict[AssetId, Pool] = {}
        self._models: Dict[AssetId, InterestRateModel] = {}
        self._records: Dict[UserId, CreditRecord] = {}
        self._accounts: Dict[str, UserId] = {}
        self._loans: Dict[LoanId, Loan] = {}

        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._user_seq = itertools.count(1)
        self._loan_seq = itertools.count(1)
        self._op_seq = itertools.count()
        self._batch_seq = itertools.count()
        self._view_lock = threading.Lock()
        self.operation_log: List[OperationRecord] = []

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the protocol."""
        return self._current_time

    def advance_time(self, new_time: datetime) -> None:
        """
        Move the logical clock forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        with self._registry_lock:
            if new_time < self._current_time:
                raise ValueError(
                    f"Cannot move time backwards: {new_time} < {self._current_time}"
                )
            self._current_time = new_time

    # ========================================================================
    # LOCKING AND COMMIT
    # ========================================================================

    def _lock_for(self, key: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def _locked(self, *keys: str) -> Iterator[None]:
        """Acquire entity locks in sorted key order."""
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._lock_for(key))
            yield

    @contextmanager
    def _locked_loan(self, loan_id: LoanId, *extra_keys: str) -> Iterator[Loan]:
        """
        Lock a loan together with its pools, borrower and holder.

        The holder can change between the unlocked read and lock acquisition,
        so the read is repeated until it is stable.
        """
        while True:
            seen = self._require_loan(loan_id)
            keys = (
                _loan_key(loan_id),
                _pool_key(seen.collateral_asset_id),
                _pool_key(seen.debt_asset_id),
                _user_key(seen.borrower_id),
                _user_key(seen.holder_id),
            ) + extra_keys
            with self._locked(*keys):
                loan = self._require_loan(loan_id)
                if loan.holder_id == seen.holder_id:
                    yield loan
                    return

    def _store_for(self, snapshot: Snapshot) -> Tuple[Dict[str, Any], str]:
        if isinstance(snapshot, Pool):
            return self._pools, snapshot.asset_id
        if isinstance(snapshot, Loan):
            return self._loans, snapshot.loan_id
        if isinstance(snapshot, CreditRecord):
            return self._records, snapshot.user_id
        raise TypeError(f"Not a protocol snapshot: {type(snapshot).__name__}")

    def _commit(
        self,
        operation: str,
        pairs: Sequence[Tuple[Optional[Snapshot], Snapshot]],
        instructions: Sequence[TransferInstruction] = (),
        details: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> OperationRecord:
        """
        Settle custody, then swap in new snapshots.

        Each new snapshot is stored with version = old.version + 1 (or 1 for a
        new entity). Custody is proposed and committed before anything is
        stored, so a rejected or failed batch leaves state untouched and no
        reader ever sees snapshots of an operation that did not settle. The
        snapshots are published together under the view lock.

        Args:
            now: Logical time the operation ran at (default: current time)

        Raises:
            ConcurrentModification: If a stored snapshot is not the one read
            CustodyRejected: If custody refuses the batch
        """
        if now is None:
            now = self._current_time
        staged = []
        for old, new in pairs:
            store, key = self._store_for(new)
            current = store.get(key)
            current_version = current.version if current is not None else None
            expected_version = old.version if old is not None else None
            if current_version != expected_version:
                raise ConcurrentModification(
                    f"{type(new).__name__} {key} changed during {operation}: "
                    f"expected version {expected_version}, found {current_version}"
                )
            staged.append((store, key, replace(new, version=(expected_version or 0) + 1)))

        ticket = None
        if instructions:
            with self._registry_lock:
                salt = f"{self.name}:{next(self._batch_seq)}"
            ticket = self.custody.propose(instructions, salt=salt)
            try:
                self.custody.commit(ticket)
            except Exception:
                self.custody.abort(ticket)
                raise

        with self._view_lock:
            for store, key, value in staged:
                store[key] = value

        details = dict(details or {})
        with self._registry_lock:
            sequence = next(self._op_seq)
            record = OperationRecord(
                sequence=sequence,
                operation=operation,
                timestamp=now,
                ticket=ticket,
                record_id=compute_record_id({"op": operation, "seq": sequence, **details}),
                details=details,
            )
            self.operation_log.append(record)
        logger.info("%s %s seq=%d %s", self.name, operation, sequence, details)
        return record

    # ========================================================================
    # LOOKUPS
    # ========================================================================

    def _require_pool(self, asset_id: AssetId) -> Pool:
        pool = self._pools.get(asset_id)
        if pool is None:
            raise UnknownAsset(f"No pool for asset {asset_id}")
        return pool

    def _require_user(self, user_id: UserId) -> CreditRecord:
        record = self._records.get(user_id)
        if record is None:
            raise UnknownUser(f"No credit record for user {user_id}")
        return record

    def _require_loan(self, loan_id: LoanId) -> Loan:
        loan = self._loans.get(loan_id)
        if loan is None:
            raise UnknownLoan(f"No loan {loan_id}")
        return loan

    def _model(self, asset_id: AssetId) -> InterestRateModel:
        return self._models[asset_id]

    def _price(self, asset_id: AssetId) -> Decimal:
        return self.price_feed.get_price(asset_id)

    def _accrue(self, pool: Pool, now: datetime) -> Pool:
        return accrue_indices(pool, now, self._model(pool.asset_id))

    def _refresh_loan(self, loan: Loan, debt_pool: Pool, now: datetime) -> Tuple[Loan, Pool]:
        """Accrue loan interest to now and capitalise it into the debt pool."""
        loan, interest = accrue_interest(loan, now)
        if interest > _ZERO:
            debt_pool = capitalize_interest(debt_pool, interest)
        return loan, debt_pool

    def _reprice(self, loan: Loan, debt_pool: Pool, score: int) -> Loan:
        if not loan.is_active:
            return loan
        pool_rate = self._model(debt_pool.asset_id).borrow_rate(debt_pool.utilization)
        return reprice(loan, calculate_loan_rate(pool_rate, score, self.config.risk))

    def _restore_status(self, loan: Loan, score: int) -> Loan:
        """A partially liquidated loan that is healthy again returns to OPEN."""
        if loan.status != LoanStatus.PARTIALLY_LIQUIDATED:
            return loan
        assessment = assess_loan(
            loan,
            self._price(loan.collateral_asset_id),
            self._price(loan.debt_asset_id),
            score,
            self.config.risk,
        )
        if assessment.health_factor > _ONE:
            return with_status(loan, LoanStatus.OPEN)
        return loan

    def _pending_interest(self, loan: Loan, now: datetime) -> Decimal:
        if not loan.is_active:
            return _ZERO
        return calculate_pending_interest(
            loan.principal, loan.interest_rate, loan.last_update_timestamp, now
        )

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    def register_user(self, account: str) -> UserId:
        """
        Create the credit record for an account.

        Raises:
            ValueError: If the account already has a record
        """
        if not account or not account.strip():
            raise ValueError("account cannot be empty")
        with self._registry_lock:
            if account in self._accounts:
                raise ValueError(f"Account {account} already has a credit record")
            user_id = f"user_{next(self._user_seq)}"
            self._accounts[account] = user_id
        record = create_credit_record(user_id, account)
        with self._locked(_user_key(user_id)):
            self._commit("register_user", [(None, record)], details={"user": user_id, "account": account},
                         now=self.current_time)
        return user_id

    def create_pool(
        self,
        asset_id: AssetId,
        reserve_factor: Optional[Decimal] = None,
        rate_params: Optional[InterestRateParams] = None,
    ) -> Pool:
        """
        Create the pool for an asset.

        Raises:
            ValueError: If the asset already has a pool
        """
        rate_params = rate_params if rate_params is not None else self.config.default_rate_params
        if reserve_factor is None:
            reserve_factor = self.config.default_reserve_factor
        with self._locked(_pool_key(asset_id)):
            if asset_id in self._pools:
                raise ValueError(f"Pool for {asset_id} already exists")
            now = self.current_time
            pool = create_pool(asset_id, now, reserve_factor, rate_params)
            self._models[asset_id] = InterestRateModel(rate_params)
            self._commit("create_pool", [(None, pool)], details={"asset": asset_id}, now=now)
            return self._pools[asset_id]

    def set_price(self, asset_id: AssetId, price: Decimal) -> None:
        """Privileged price update, forwarded to the feed."""
        self.price_feed.set_price(asset_id, price)
        logger.info("%s price %s = %s", self.name, asset_id, price)

    # ========================================================================
    # DEPOSITS AND COLLATERAL
    # ========================================================================

    def deposit(self, user_id: UserId, asset_id: AssetId, amount: Decimal) -> OperationRecord:
        """Supply liquidity to an asset's pool."""
        amount = _positive(amount, "Deposit amount")
        with self._locked(_pool_key(asset_id), _user_key(user_id)):
            record_old = self._require_user(user_id)
            pool_old = self._require_pool(asset_id)
            now = self.current_time
            pool = apply_deposit(self._accrue(pool_old, now), amount)
            record = credit_deposit(record_old, asset_id, amount)
            return self._commit(
                "deposit",
                [(pool_old, pool), (record_old, record)],
                [TransferInstruction(asset_id, amount, user_id, pool_wallet(asset_id), "deposit")],
                {"user": user_id, "asset": asset_id, "amount": amount},
                now=now,
            )

    def withdraw(self, user_id: UserId, asset_id: AssetId, amount: Decimal) -> OperationRecord:
        """
        Withdraw previously supplied liquidity.

        Raises:
            InsufficientBalance: If the user deposited less than amount
            InsufficientLiquidity: If the pool cannot release amount
        """
        amount = _positive(amount, "Withdraw amount")
        with self._locked(_pool_key(asset_id), _user_key(user_id)):
            record_old = self._require_user(user_id)
            pool_old = self._require_pool(asset_id)
            now = self.current_time
            record = debit_deposit(record_old, asset_id, amount)
            pool = apply_withdraw(self._accrue(pool_old, now), amount)
            return self._commit(
                "withdraw",
                [(pool_old, pool), (record_old, record)],
                [TransferInstruction(asset_id, amount, pool_wallet(asset_id), user_id, "withdraw")],
                {"user": user_id, "asset": asset_id, "amount": amount},
                now=now,
            )

    def deposit_collateral(self, user_id: UserId, asset_id: AssetId, amount: Decimal) -> OperationRecord:
        """Post free collateral, available to lock into loans."""
        amount = _positive(amount, "Collateral amount")
        with self._locked(_pool_key(asset_id), _user_key(user_id)):
            record_old = self._require_user(user_id)
            pool_old = self._require_pool(asset_id)
            now = self.current_time
            pool = apply_collateral_in(self._accrue(pool_old, now), amount)
            record = credit_collateral(record_old, asset_id, amount)
            return self._commit(
                "deposit_collateral",
                [(pool_old, pool), (record_old, record)],
                [TransferInstruction(asset_id, amount, user_id, collateral_wallet(asset_id),
                                     "deposit_collateral")],
                {"user": user_id, "asset": asset_id, "amount": amount},
                now=now,
            )

    def withdraw_collateral(self, user_id: UserId, asset_id: AssetId, amount: Decimal) -> OperationRecord:
        """
        Take back free collateral.

        Raises:
            InsufficientBalance: If the user has less free collateral than amount
        """
        amount = _positive(amount, "Collateral amount")
        with self._locked(_pool_key(asset_id), _user_key(user_id)):
            record_old = self._require_user(user_id)
            pool_old = self._require_pool(asset_id)
            now = self.current_time
            record = debit_collateral(record_old, asset_id, amount)
            pool = apply_collateral_out(self._accrue(pool_old, now), amount)
            return self._commit(
                "withdraw_collateral",
                [(pool_old, pool), (record_old, record)],
                [TransferInstruction(asset_id, amount, collateral_wallet(asset_id), user_id,
                                     "withdraw_collateral")],
                {"user": user_id, "asset": asset_id, "amount": amount},
                now=now,
            )

    def convert_to_collateral(self, user_id: UserId, asset_id: AssetId, amount: Decimal) -> OperationRecord:
        """
        Move supplied liquidity into free collateral.

        Raises:
            InsufficientBalance: If the user deposited less than amount
            InsufficientLiquidity: If the pool cannot release amount
        """
        amount = _positive(amount, "Convert amount")
        with self._locked(_pool_key(asset_id), _user_key(user_id)):
            record_old = self._require_user(user_id)
            pool_old = self._require_pool(asset_id)
            now = self.current_time
            record = credit_collateral(debit_deposit(record_old, asset_id, amount), asset_id, amount)
            pool = apply_collateral_in(apply_withdraw(self._accrue(pool_old, now), amount), amount)
            return self._commit(
                "convert_to_collateral",
                [(pool_old, pool), (record_old, record)],
                [TransferInstruction(asset_id, amount, pool_wallet(asset_id),
                                     collateral_wallet(asset_id), "convert_to_collateral")],
                {"user": user_id, "asset": asset_id, "amount": amount},
                now=now,
            )

    def convert_to_deposit(self, user_id: UserId, asset_id: AssetId, amount: Decimal) -> OperationRecord:
        """
        Move free collateral into supplied liquidity.

        Raises:
            InsufficientBalance: If the user has less free collateral than amount
        """
        amount = _positive(amount, "Convert amount")
        with self._locked(_pool_key(asset_id), _user_key(user_id)):
            record_old = self._require_user(user_id)
            pool_old = self._require_pool(asset_id)
            now = self.current_time
            record = credit_deposit(debit_collateral(record_old, asset_id, amount), asset_id, amount)
            pool = apply_deposit(apply_collateral_out(self._accrue(pool_old, now), amount), amount)
            return self._commit(
                "convert_to_deposit",
                [(pool_old, pool), (record_old, record)],
                [TransferInstruction(asset_id, amount, collateral_wallet(asset_id),
                                     pool_wallet(asset_id), "convert_to_deposit")],
                {"user": user_id, "asset": asset_id, "amount": amount},
                now=now,
            )

    # ========================================================================
    # BORROWING
    # ========================================================================

    def borrow(
        self,
        user_id: UserId,
        collateral_asset_id: AssetId,
        collateral_amount: Decimal,
        debt_asset_id: AssetId,
        amount: Decimal,
    ) -> LoanId:
        """
        Open a loan: lock free collateral and draw debt from a pool.

        The loan's rate is the debt pool's borrow rate after this draw, less
        the borrower's credit discount.

        Returns:
            The new loan's id

        Raises:
            InsufficientBalance: If the user lacks the free collateral
            ExceedsMaxBorrow: If the loan-to-value would exceed the user's maximum
            InsufficientLiquidity: If the debt pool cannot lend amount
        """
        collateral_amount = _positive(collateral_amount, "Collateral amount")
        amount = _positive(amount, "Borrow amount")
        if collateral_asset_id == debt_asset_id:
            raise ValueError("Collateral and debt asset must differ")

        with self._locked(_pool_key(collateral_asset_id), _pool_key(debt_asset_id), _user_key(user_id)):
            record_old = self._require_user(user_id)
            cpool_old = self._require_pool(collateral_asset_id)
            dpool_old = self._require_pool(debt_asset_id)

            record = debit_collateral(record_old, collateral_asset_id, collateral_amount)
            check_max_borrow(
                collateral_amount, self._price(collateral_asset_id),
                amount, self._price(debt_asset_id),
                record.credit_score, self.config.risk,
            )
            now = self.current_time
            cpool = self._accrue(cpool_old, now)
            dpool = apply_borrow(self._accrue(dpool_old, now), amount)

            pool_rate = self._model(debt_asset_id).borrow_rate(dpool.utilization)
            rate = calculate_loan_rate(pool_rate, record.credit_score, self.config.risk)
            with self._registry_lock:
                loan_id = f"loan_{next(self._loan_seq)}"
            loan = create_loan(
                loan_id, user_id, collateral_asset_id, collateral_amount,
                debt_asset_id, amount, rate, now,
            )
            record = attach_loan(record, loan_id)

            self._commit(
                "borrow",
                [(cpool_old, cpool), (dpool_old, dpool), (record_old, record), (None, loan)],
                [TransferInstruction(debt_asset_id, amount, pool_wallet(debt_asset_id), user_id, "borrow")],
                {"user": user_id, "loan": loan_id, "collateral_asset": collateral_asset_id,
                 "collateral": collateral_amount, "debt_asset": debt_asset_id, "amount": amount,
                 "rate": rate},
                now=now,
            )
            return loan_id

    def borrow_more(self, user_id: UserId, loan_id: LoanId, amount: Decimal) -> Loan:
        """
        Draw more debt against an existing loan's collateral.

        Raises:
            Unauthorized: If user_id does not hold the loan
            LoanClosed: If the loan is closed
            ExceedsMaxBorrow: If the new total debt breaks max loan-to-value
            InsufficientLiquidity: If the debt pool cannot lend amount
        """
        amount = _positive(amount, "Borrow amount")
        with self._locked_loan(loan_id, _user_key(user_id)) as loan_old:
            if loan_old.holder_id != user_id:
                raise Unauthorized(f"{user_id} does not hold loan {loan_id}")
            if not loan_old.is_active:
                raise LoanClosed(f"Loan {loan_id} is closed")
            borrower = self._require_user(loan_old.borrower_id)
            dpool_old = self._require_pool(loan_old.debt_asset_id)

            now = self.current_time
            loan, dpool = self._refresh_loan(loan_old, self._accrue(dpool_old, now), now)
            check_max_borrow(
                loan.collateral_amount, self._price(loan.collateral_asset_id),
                loan.total_debt + amount, self._price(loan.debt_asset_id),
                borrower.credit_score, self.config.risk,
            )
            dpool = apply_borrow(dpool, amount)
            loan = increase_principal(loan, amount)
            loan = self._restore_status(loan, borrower.credit_score)
            loan = self._reprice(loan, dpool, borrower.credit_score)

            self._commit(
                "borrow_more",
                [(dpool_old, dpool), (loan_old, loan)],
                [TransferInstruction(loan.debt_asset_id, amount, pool_wallet(loan.debt_asset_id),
                                     user_id, "borrow")],
                {"user": user_id, "loan": loan_id, "amount": amount},
                now=now,
            )
            return self._loans[loan_id]

    def add_collateral(self, user_id: UserId, loan_id: LoanId, amount: Decimal) -> Loan:
        """
        Lock more of the holder's free collateral into a loan.

        Raises:
            Unauthorized: If user_id does not hold the loan
            InsufficientBalance: If the holder lacks the free collateral
        """
        amount = _positive(amount, "Collateral amount")
        with self._locked_loan(loan_id, _user_key(user_id)) as loan_old:
            if loan_old.holder_id != user_id:
                raise Unauthorized(f"{user_id} does not hold loan {loan_id}")
            if not loan_old.is_active:
                raise LoanClosed(f"Loan {loan_id} is closed")
            staged = _Staged()
            holder_old = self._require_user(user_id)
            borrower = self._require_user(loan_old.borrower_id)
            dpool_old = self._require_pool(loan_old.debt_asset_id)

            staged.put(_user_key(user_id), holder_old,
                       debit_collateral(holder_old, loan_old.collateral_asset_id, amount))
            now = self.current_time
            loan, dpool = self._refresh_loan(loan_old, self._accrue(dpool_old, now), now)
            loan = add_collateral(loan, amount)
            loan = self._restore_status(loan, borrower.credit_score)
            loan = self._reprice(loan, dpool, borrower.credit_score)
            staged.put(_pool_key(dpool.asset_id), dpool_old, dpool)
            staged.put(_loan_key(loan_id), loan_old, loan)

            self._commit(
                "add_collateral",
                staged.pairs(),
                details={"user": user_id, "loan": loan_id, "amount": amount},
                now=now,
            )
            return self._loans[loan_id]

    def repay(self, user_id: UserId, loan_id: LoanId, amount: Decimal) -> RepayResult:
        """
        Repay a loan, interest first.

        Any amount beyond the outstanding debt is not taken and is reported as
        refunded. A full repayment closes the loan and releases its collateral
        to the holder's free collateral.

        Raises:
            Unauthorized: If user_id does not hold the loan
            LoanClosed: If the loan is closed
        """
        amount = _positive(amount, "Repay amount")
        with self._locked_loan(loan_id, _user_key(user_id)) as loan_old:
            if loan_old.holder_id != user_id:
                raise Unauthorized(f"{user_id} does not hold loan {loan_id}")
            if not loan_old.is_active:
                raise LoanClosed(f"Loan {loan_id} is closed")
            staged = _Staged()
            borrower_key = _user_key(loan_old.borrower_id)
            borrower_old = self._require_user(loan_old.borrower_id)
            holder_old = self._require_user(loan_old.holder_id)
            dpool_old = self._require_pool(loan_old.debt_asset_id)

            now = self.current_time
            loan, dpool = self._refresh_loan(loan_old, self._accrue(dpool_old, now), now)
            allocation = apply_repayment(loan, amount)
            dpool = apply_repay(dpool, allocation.amount_applied)
            loan = allocation.loan

            event = RepaymentEvent(
                loan_id=loan_id,
                amount=allocation.amount_applied,
                interest_paid=allocation.interest_paid,
                principal_paid=allocation.principal_paid,
                remaining_balance=loan.total_debt,
                timestamp=now,
            )
            borrower = record_repayment(borrower_old, event)
            borrower, loan, _ = self.scorer.score_repayment(borrower, loan)
            staged.put(borrower_key, borrower_old, borrower)

            released = _ZERO
            if loan.status == LoanStatus.CLOSED:
                released = loan.collateral_amount
                staged.put(borrower_key, borrower_old, close_loan(
                    staged.read(borrower_key, borrower_old), loan_id, repaid_by_borrower=True,
                ))
                if released > _ZERO:
                    loan = remove_collateral(loan, released)
                    holder_key = _user_key(loan.holder_id)
                    holder = staged.read(holder_key, holder_old)
                    staged.put(holder_key, holder_old,
                               credit_collateral(holder, loan.collateral_asset_id, released))
            else:
                loan = self._restore_status(loan, borrower.credit_score)
                loan = self._reprice(loan, dpool, borrower.credit_score)

            staged.put(_pool_key(dpool.asset_id), dpool_old, dpool)
            staged.put(_loan_key(loan_id), loan_old, loan)
            self._commit(
                "repay",
                staged.pairs(),
                [TransferInstruction(loan.debt_asset_id, allocation.amount_applied, user_id,
                                     pool_wallet(loan.debt_asset_id), "repay")],
                {"user": user_id, "loan": loan_id, "amount": allocation.amount_applied,
                 "refunded": allocation.excess, "status": loan.status.value},
                now=now,
            )
            final_borrower = self._records[loan_old.borrower_id]
            return RepayResult(
                loan=self._loans[loan_id],
                interest_paid=allocation.interest_paid,
                principal_paid=allocation.principal_paid,
                refunded=allocation.excess,
                collateral_released=released,
                credit_score=final_borrower.credit_score,
            )

    # ========================================================================
    # LIQUIDATION
    # ========================================================================

    def liquidate(self, loan_id: LoanId, repay_amount: Decimal, liquidator_id: str) -> LiquidationResult:
        """
        Repay part of an unhealthy loan in exchange for its collateral plus bonus.

        The liquidator pays repay_amount of the debt asset into the pool and
        receives the seized collateral. The borrower's default count rises by
        one and the repayment is scored like any other.

        Raises:
            ValueError: If repay_amount is not positive
            LoanClosed: If the loan is closed
            NotLiquidatable: If the loan's health factor is above 1
            HealthNotImproved: If this liquidation would not raise health
            ExceedsLiquidationLimit: If repay_amount exceeds the close-factor cap
            PartialSeizureShortfall: On a capped seizure when configured to raise
        """
        repay_amount = _positive(repay_amount, "Repay amount")
        if not liquidator_id:
            raise ValueError("liquidator_id cannot be empty")
        with self._locked_loan(loan_id) as loan_old:
            if not loan_old.is_active:
                raise LoanClosed(f"Loan {loan_id} is closed")
            staged = _Staged()
            borrower_key = _user_key(loan_old.borrower_id)
            borrower_old = self._require_user(loan_old.borrower_id)
            holder_old = self._require_user(loan_old.holder_id)
            dpool_old = self._require_pool(loan_old.debt_asset_id)
            cpool_old = self._require_pool(loan_old.collateral_asset_id)

            now = self.current_time
            dpool = self._accrue(dpool_old, now)
            cpool = self._accrue(cpool_old, now)
            loan, dpool = self._refresh_loan(loan_old, dpool, now)

            result = self.liquidation_engine.evaluate(
                loan, repay_amount,
                self._price(loan.collateral_asset_id),
                self._price(loan.debt_asset_id),
                borrower_old.credit_score,
            )

            dpool = apply_repay(dpool, result.repaid)
            if result.written_off > _ZERO:
                dpool = write_off(dpool, result.written_off)
            if result.collateral_seized > _ZERO:
                cpool = apply_collateral_out(cpool, result.collateral_seized)
            loan = result.loan

            event = RepaymentEvent(
                loan_id=loan_id,
                amount=result.repaid,
                interest_paid=result.interest_paid,
                principal_paid=result.principal_paid,
                remaining_balance=loan.total_debt + result.written_off,
                timestamp=now,
                via_liquidation=True,
            )
            borrower = record_repayment(record_default(borrower_old), event)
            borrower, loan, _ = self.scorer.score_repayment(
                borrower, loan, remaining_debt=loan.total_debt + result.written_off,
            )
            staged.put(borrower_key, borrower_old, borrower)

            if loan.status == LoanStatus.CLOSED:
                staged.put(borrower_key, borrower_old, close_loan(
                    staged.read(borrower_key, borrower_old), loan_id, repaid_by_borrower=False,
                ))
                released = loan.collateral_amount
                if released > _ZERO:
                    loan = remove_collateral(loan, released)
                    holder_key = _user_key(loan.holder_id)
                    holder = staged.read(holder_key, holder_old)
                    staged.put(holder_key, holder_old,
                               credit_collateral(holder, loan.collateral_asset_id, released))
            else:
                loan = self._reprice(loan, dpool, borrower.credit_score)

            staged.put(_pool_key(dpool.asset_id), dpool_old, dpool)
            staged.put(_pool_key(cpool.asset_id), cpool_old, cpool)
            staged.put(_loan_key(loan_id), loan_old, loan)

            instructions = [
                TransferInstruction(loan.debt_asset_id, result.repaid, liquidator_id,
                                    pool_wallet(loan.debt_asset_id), "liquidate"),
            ]
            if result.collateral_seized > _ZERO:
                instructions.append(TransferInstruction(
                    loan.collateral_asset_id, result.collateral_seized,
                    collateral_wallet(loan.collateral_asset_id), liquidator_id, "liquidate",
                ))
            self._commit(
                "liquidate",
                staged.pairs(),
                instructions,
                {"loan": loan_id, "liquidator": liquidator_id, "repaid": result.repaid,
                 "seized": result.collateral_seized, "shortfall": result.shortfall_value,
                 "written_off": result.written_off, "status": loan.status.value},
                now=now,
            )
            if result.has_shortfall:
                logger.warning(
                    "%s liquidation of %s left shortfall %s (written off %s)",
                    self.name, loan_id, result.shortfall_value, result.written_off,
                )
            return replace(result, loan=self._loans[loan_id])

    # ========================================================================
    # LOAN DOCUMENTS
    # ========================================================================

    def transfer_loan(self, loan_id: LoanId, from_holder: UserId, to_holder: UserId) -> Loan:
        """
        Reassign who holds a loan.

        Raises:
            Unauthorized: If from_holder is not the current holder
            UnknownUser: If to_holder has no credit record
        """
        with self._locked_loan(loan_id, _user_key(to_holder)) as loan_old:
            if loan_old.holder_id != from_holder:
                raise Unauthorized(f"{from_holder} does not hold loan {loan_id}")
            self._require_user(to_holder)
            loan = transfer_holder(loan_old, to_holder)
            self._commit(
                "transfer_loan",
                [(loan_old, loan)],
                details={"loan": loan_id, "from": from_holder, "to": to_holder},
                now=self.current_time,
            )
            return self._loans[loan_id]

    # ========================================================================
    # QUERIES (read-only)
    # ========================================================================

    def get_pool(self, asset_id: AssetId) -> Pool:
        return self._require_pool(asset_id)

    def get_liquidity(self, asset_id: AssetId) -> Decimal:
        return self._require_pool(asset_id).available_liquidity

    def get_total_supply(self, asset_id: AssetId) -> Decimal:
        return self._require_pool(asset_id).total_supply

    def get_total_borrowed(self, asset_id: AssetId) -> Decimal:
        return self._require_pool(asset_id).total_borrowed

    def get_utilization(self, asset_id: AssetId) -> Decimal:
        return self._require_pool(asset_id).utilization

    def get_borrow_rate(self, asset_id: AssetId) -> Decimal:
        pool = self._require_pool(asset_id)
        return self._model(asset_id).borrow_rate(pool.utilization)

    def get_supply_rate(self, asset_id: AssetId) -> Decimal:
        pool = self._require_pool(asset_id)
        return self._model(asset_id).supply_rate(pool.utilization, pool.reserve_factor)

    def quote_borrow_rate(self, user_id: UserId, asset_id: AssetId) -> Decimal:
        """Rate a user would be charged on a new loan at current utilization."""
        record = self._require_user(user_id)
        return calculate_loan_rate(self.get_borrow_rate(asset_id), record.credit_score, self.config.risk)

    def get_liquidation_threshold(self, user_id: UserId) -> Decimal:
        return calculate_liquidation_threshold(self._require_user(user_id).credit_score, self.config.risk)

    def get_credit_record(self, user_id: UserId) -> CreditRecord:
        return self._require_user(user_id)

    def get_user_id(self, account: str) -> UserId:
        user_id = self._accounts.get(account)
        if user_id is None or user_id not in self._records:
            raise UnknownUser(f"No credit record for account {account}")
        return user_id

    def get_loan(self, loan_id: LoanId) -> Loan:
        """Stored loan snapshot (interest as of its last touch)."""
        return self._require_loan(loan_id)

    def _loan_view(self, loan_id: LoanId) -> Tuple[Loan, CreditRecord, datetime]:
        """A loan, its borrower's record and the clock, all from one commit."""
        with self._view_lock:
            loan = self._require_loan(loan_id)
            return loan, self._require_user(loan.borrower_id), self._current_time

    def get_loan_debt(self, loan_id: LoanId) -> Decimal:
        """Principal plus interest accrued up to current_time."""
        loan, _, now = self._loan_view(loan_id)
        return loan.total_debt + self._pending_interest(loan, now)

    def assess(self, loan_id: LoanId) -> RiskAssessment:
        """Risk assessment of a loan as of current_time and current prices."""
        loan, borrower, now = self._loan_view(loan_id)
        return assess_loan(
            loan,
            self._price(loan.collateral_asset_id),
            self._price(loan.debt_asset_id),
            borrower.credit_score,
            self.config.risk,
            pending_interest=self._pending_interest(loan, now),
        )

    def get_health_factor(self, loan_id: LoanId) -> Decimal:
        return self.assess(loan_id).health_factor

    def list_loans(self) -> List[LoanId]:
        return sorted(self._loans)

    def find_bad_loans(self, include_blocked: bool = False) -> Iterator[LoanId]:
        """
        Lazily yield ids of loans a liquidator can act on now.

        Each call starts a fresh scan over the loans that exist at that
        moment; health is computed from current prices as each loan is
        reached, each from a single committed state. Loans with health
        factor <= 1 whose liquidation window is empty (see
        RiskAssessment.liquidation_blocked) are only yielded when
        include_blocked is set.
        """
        with self._view_lock:
            loans = list(self._loans.values())
        return iter_liquidatable(loans, lambda loan: self.assess(loan.loan_id), include_blocked)

    def is_liquidatable(self, loan_id: LoanId) -> bool:
        return self.assess(loan_id).liquidatable

    def __repr__(self):
        return (
            f"LendingProtocol({self.name!r}, {len(self._pools)} pools, "
            f"{len(self._records)} users, {len(self._loans)} loans, t={self._current_time.isoformat()})"
        )
