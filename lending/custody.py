"""
custody.py - Two-phase asset custody

The lending core never moves tokens itself. Each operation produces
TransferInstructions and hands them to an AssetCustody in two phases:

    ticket = custody.propose(instructions, salt)   # may raise CustodyRejected
    custody.commit(ticket)                         # or custody.abort(ticket)
    ... core state is published ...

so that custody and core state either both change or neither does.

Implementations:
- RecordingCustody: accepts everything and keeps a journal (default)
- InMemoryCustody: double-entry wallets with balance checks; funds are
  held at propose time so two pending batches cannot spend the same balance

Batches are identified by a content hash of their instructions plus an
optional salt (compute_batch_id). InMemoryCustody applies each batch id at
most once: proposing a batch whose id is pending or committed returns a
ticket whose commit and abort do nothing. Callers that send the same
transfer twice on purpose (two equal deposits) pass distinct salts.
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
import itertools
import logging
import threading
from typing import Dict, List, Optional, Protocol, Sequence, Set, Tuple, runtime_checkable

from .core import (
    CustodyRejected, SYSTEM_WALLET, TransferInstruction,
    compute_batch_id, to_decimal,
)


logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


@runtime_checkable
class AssetCustody(Protocol):
    """Two-phase transfer interface used by LendingProtocol."""

    def propose(self, instructions: Sequence[TransferInstruction], salt: Optional[str] = None) -> str:
        """Validate and reserve a batch; return a ticket. Raises CustodyRejected."""
        ...

    def commit(self, ticket: str) -> None:
        """Make a proposed batch final."""
        ...

    def abort(self, ticket: str) -> None:
        """Release a proposed batch without effect."""
        ...


@dataclass(frozen=True, slots=True)
class CustodyEntry:
    """A committed batch."""
    ticket: str
    batch_id: str
    instructions: Tuple[TransferInstruction, ...]
    sequence: int


class RecordingCustody:
    """
    Custody that accepts every batch and journals what was committed.

    Useful when token movement happens elsewhere and the core only needs an
    audit trail of what it asked for.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sequence = itertools.count()
        self._pending: Dict[str, Tuple[str, Tuple[TransferInstruction, ...], int]] = {}
        self.journal: List[CustodyEntry] = []
        self.aborted: List[str] = []

    def propose(self, instructions: Sequence[TransferInstruction], salt: Optional[str] = None) -> str:
        batch = tuple(instructions)
        with self._lock:
            seq = next(self._sequence)
            batch_id = compute_batch_id(batch, salt)
            ticket = f"{batch_id}-{seq}"
            self._pending[ticket] = (batch_id, batch, seq)
        return ticket

    def commit(self, ticket: str) -> None:
        with self._lock:
            try:
                batch_id, batch, seq = self._pending.pop(ticket)
            except KeyError:
                raise CustodyRejected(f"Unknown or already settled ticket {ticket}") from None
            self.journal.append(CustodyEntry(ticket, batch_id, batch, seq))

    def abort(self, ticket: str) -> None:
        with self._lock:
            if self._pending.pop(ticket, None) is not None:
                self.aborted.append(ticket)

    def instructions(self) -> List[TransferInstruction]:
        """All committed instructions in commit order."""
        return [i for entry in self.journal for i in entry.instructions]

    def __repr__(self):
        return f"RecordingCustody({len(self.journal)} committed, {len(self._pending)} pending)"


class InMemoryCustody:
    """
    Wallet balances kept in memory.

    Every non-system source wallet must hold the amount it sends. Debits are
    taken at propose time and credits land at commit; abort refunds the
    debits. The system wallet may go negative (it models issuance).

    Example:
        custody = InMemoryCustody()
        custody.fund("alice", "USD", Decimal("1000"))
        ticket = custody.propose([TransferInstruction("USD", Decimal("100"), "alice", "pool:USD")])
        custody.commit(ticket)
        custody.balance("pool:USD", "USD")   # Decimal("100")
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sequence = itertools.count()
        self.balances: Dict[str, Dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: _ZERO))
        self._pending: Dict[str, Tuple[str, Tuple[TransferInstruction, ...], int]] = {}
        self._duplicates: Set[str] = set()
        self._fund_seq = itertools.count()
        self.seen_batch_ids: Set[str] = set()
        self.journal: List[CustodyEntry] = []

    def balance(self, wallet: str, asset_id: str) -> Decimal:
        with self._lock:
            return self.balances[wallet][asset_id]

    def fund(self, wallet: str, asset_id: str, amount: Decimal) -> None:
        """Issue tokens to a wallet from the system wallet."""
        amount = to_decimal(amount)
        ticket = self.propose(
            [TransferInstruction(asset_id, amount, SYSTEM_WALLET, wallet, "fund")],
            salt=f"fund-{next(self._fund_seq)}",
        )
        self.commit(ticket)

    def propose(self, instructions: Sequence[TransferInstruction], salt: Optional[str] = None) -> str:
        """
        Hold the debits of a batch.

        A batch whose id (content plus salt) is already pending or committed
        is not applied again; its ticket settles as a no-op.

        Raises:
            CustodyRejected: If any source wallet cannot cover its total outflow;
                nothing is held in that case
        """
        batch = tuple(instructions)
        batch_id = compute_batch_id(batch, salt)
        outflow: Dict[Tuple[str, str], Decimal] = defaultdict(lambda: _ZERO)
        for instr in batch:
            outflow[(instr.source, instr.asset_id)] += instr.amount

        with self._lock:
            if batch_id in self.seen_batch_ids:
                ticket = f"{batch_id}-{next(self._sequence)}"
                self._duplicates.add(ticket)
                logger.debug("custody batch %s already applied", batch_id)
                return ticket
            for (wallet, asset_id), amount in outflow.items():
                if wallet == SYSTEM_WALLET:
                    continue
                held = self.balances[wallet][asset_id]
                if held < amount:
                    raise CustodyRejected(
                        f"{wallet} holds {held} {asset_id}, batch needs {amount}"
                    )
            for (wallet, asset_id), amount in outflow.items():
                self.balances[wallet][asset_id] -= amount
            seq = next(self._sequence)
            ticket = f"{batch_id}-{seq}"
            self._pending[ticket] = (batch_id, batch, seq)
            self.seen_batch_ids.add(batch_id)
        return ticket

    def commit(self, ticket: str) -> None:
        with self._lock:
            if ticket in self._duplicates:
                self._duplicates.discard(ticket)
                return
            try:
                batch_id, batch, seq = self._pending.pop(ticket)
            except KeyError:
                raise CustodyRejected(f"Unknown or already settled ticket {ticket}") from None
            for instr in batch:
                self.balances[instr.dest][instr.asset_id] += instr.amount
            self.journal.append(CustodyEntry(ticket, batch_id, batch, seq))

    def abort(self, ticket: str) -> None:
        with self._lock:
            if ticket in self._duplicates:
                self._duplicates.discard(ticket)
                return
            pending = self._pending.pop(ticket, None)
            if pending is None:
                return
            self.seen_batch_ids.discard(pending[0])
            for instr in pending[1]:
                self.balances[instr.source][instr.asset_id] += instr.amount
        logger.debug("custody batch %s aborted", ticket)

    def total_supply(self, asset_id: str) -> Decimal:
        """Sum over all non-system wallets, pending debits excluded."""
        with self._lock:
            return sum(
                (bal[asset_id] for wallet, bal in self.balances.items() if wallet != SYSTEM_WALLET),
                _ZERO,
            )

    def __repr__(self):
        return f"InMemoryCustody({len(self.balances)} wallets, {len(self.journal)} committed)"
