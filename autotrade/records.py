"""
Persisted recommendation records and the pure matching rule used for dedup.

A RecommendationRecord is one proposal plus everything the engine learned
about it afterwards: the entry order it produced, the fill, and the OCO exit.
Records are never deleted; the reconciliation loop only moves them forward.

Examples:
    >>> from datetime import datetime, timezone
    >>> from decimal import Decimal
    >>> p = Proposal(signal="BUY", confidence="HIGH", amount=Decimal("100"), amountType="USDC")
    >>> rec = RecommendationRecord.from_proposal(p, now=datetime(2024, 1, 1, tzinfo=timezone.utc))
    >>> rec.matches(p)
    True
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import (
    AmountUnit,
    Confidence,
    EntryType,
    OcoExit,
    Order,
    OrderStatus,
    OrderType,
    Proposal,
    Signal,
)

MAX_EXIT_CHILDREN = 4


def _dec(value: Any) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class ExecutionResult:
    """Outcome of a filled entry order."""

    order_id: int
    executed_quantity: Decimal
    average_price: Decimal
    status: OrderStatus

    @classmethod
    def from_order(cls, order: Order) -> "ExecutionResult":
        return cls(
            order_id=order.order_id,
            executed_quantity=order.executed_quantity,
            average_price=order.average_price,
            status=order.status,
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "orderId": str(self.order_id),
            "executedQty": str(self.executed_quantity),
            "avgPrice": str(self.average_price),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, str]) -> "ExecutionResult":
        return cls(
            order_id=int(d["orderId"]),
            executed_quantity=Decimal(d["executedQty"]),
            average_price=Decimal(d["avgPrice"]),
            status=OrderStatus(d["status"]),
        )


@dataclass
class RecommendationRecord:
    """A stored proposal and its execution lifecycle.

    Invariants:
        - executed implies entry_order_id is set
        - oco_order_list_id is set at most once
        - an OCO exit exists only for an executed BUY
    """

    created_at: datetime
    signal: Signal
    confidence: Confidence
    amount: Optional[Decimal] = None
    amount_unit: AmountUnit = AmountUnit.NONE
    entry_type: Optional[EntryType] = None
    entry_price: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    take_profit1: Optional[Decimal] = None
    take_profit2: Optional[Decimal] = None
    expected_risk_reward: Optional[Decimal] = None
    time_horizon_minutes: Optional[int] = None
    reasoning: str = ""
    memory: List[str] = field(default_factory=list)
    id: Optional[int] = None
    executed: bool = False
    entry_order_id: Optional[int] = None
    entry_client_order_id: Optional[str] = None
    entry_order_status: Optional[OrderStatus] = None
    entry_order_type: Optional[OrderType] = None
    entry_placed_at: Optional[datetime] = None
    oco_order_list_id: Optional[int] = None
    exit_orders: Dict[str, str] = field(default_factory=dict)
    exit_claimed_at: Optional[datetime] = None
    execution_result: Optional[ExecutionResult] = None
    market_context: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_proposal(
        cls,
        proposal: Proposal,
        now: datetime,
        market_context: Optional[Dict[str, str]] = None,
    ) -> "RecommendationRecord":
        return cls(
            created_at=now,
            signal=proposal.signal,
            confidence=proposal.confidence,
            amount=proposal.amount,
            amount_unit=proposal.amount_unit,
            entry_type=proposal.entry_type,
            entry_price=proposal.entry_price,
            stop_loss=proposal.stop_loss,
            take_profit1=proposal.take_profit1,
            take_profit2=proposal.take_profit2,
            expected_risk_reward=proposal.expected_risk_reward,
            time_horizon_minutes=proposal.time_horizon_minutes,
            reasoning=proposal.reasoning,
            memory=list(proposal.memory),
            market_context=dict(market_context or {}),
        )

    def to_proposal(self) -> Proposal:
        return Proposal(
            signal=self.signal,
            confidence=self.confidence,
            amount=self.amount,
            amount_unit=self.amount_unit,
            entry_type=self.entry_type,
            entry_price=self.entry_price,
            stop_loss=self.stop_loss,
            take_profit1=self.take_profit1,
            take_profit2=self.take_profit2,
            expected_risk_reward=self.expected_risk_reward,
            time_horizon_minutes=self.time_horizon_minutes,
            reasoning=self.reasoning,
            memory=list(self.memory),
        )

    def matches(self, proposal: Proposal) -> bool:
        """Same signal, confidence and amount (two missing amounts match)."""
        return (
            self.signal == proposal.signal
            and self.confidence == proposal.confidence
            and self.amount == proposal.amount
        )

    @property
    def expiry_anchor(self) -> datetime:
        return self.entry_placed_at or self.created_at

    def is_expired(self, now: datetime) -> bool:
        if self.time_horizon_minutes is None:
            return False
        return now > self.expiry_anchor + timedelta(minutes=self.time_horizon_minutes)

    @property
    def has_exit_targets(self) -> bool:
        return self.take_profit1 is not None and self.stop_loss is not None

    @property
    def needs_exit(self) -> bool:
        """Executed BUY with targets, no OCO and no prior placement attempt."""
        return (
            self.executed
            and self.signal == Signal.BUY
            and self.has_exit_targets
            and self.oco_order_list_id is None
            and self.exit_claimed_at is None
        )

    def apply_order(self, order: Order, executed: bool) -> None:
        """Copy the exchange's view of the entry order onto this record."""
        self.entry_order_id = order.order_id
        if order.client_order_id:
            self.entry_client_order_id = order.client_order_id
        self.entry_order_status = order.status
        if order.type is not None:
            self.entry_order_type = order.type
        if order.placed_at is not None and self.entry_placed_at is None:
            self.entry_placed_at = order.placed_at
        if executed:
            self.executed = True
            self.execution_result = ExecutionResult.from_order(order)

    def apply_oco(self, oco: OcoExit) -> None:
        self.oco_order_list_id = oco.order_list_id
        self.exit_orders["orderListType"] = "OCO"
        self.exit_orders["orderListStatus"] = oco.list_order_status or "EXECUTING"
        for i, child in enumerate(oco.orders[:MAX_EXIT_CHILDREN]):
            self.exit_orders[f"order{i}Id"] = str(child.order_id)
            if child.client_order_id:
                self.exit_orders[f"order{i}ClientId"] = child.client_order_id

    def carry_forward(self, stored: "RecommendationRecord") -> None:
        """Keep lifecycle progress already persisted in ``stored``.

        Execution and exit state only move forward; a stale in-memory copy must
        not clear a fill, a claim or an OCO reference written by someone else.
        """
        if stored.executed and not self.executed:
            self.executed = True
            self.execution_result = stored.execution_result
        if self.exit_claimed_at is None:
            self.exit_claimed_at = stored.exit_claimed_at
        if self.oco_order_list_id is None and stored.oco_order_list_id is not None:
            self.oco_order_list_id = stored.oco_order_list_id
        for key, value in stored.exit_orders.items():
            self.exit_orders.setdefault(key, value)

    def exit_children(self) -> List[Tuple[int, int]]:
        """(index, order_id) pairs of tracked OCO children."""
        children = []
        for i in range(MAX_EXIT_CHILDREN):
            order_id = self.exit_orders.get(f"order{i}Id")
            if order_id:
                children.append((i, int(order_id)))
        return children

    def exit_child_status(self, index: int) -> Optional[OrderStatus]:
        status = self.exit_orders.get(f"order{index}Status")
        return OrderStatus.parse(status) if status else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": _iso(self.created_at),
            "signal": self.signal.value,
            "confidence": self.confidence.value,
            "amount": _str(self.amount),
            "amount_unit": self.amount_unit.value,
            "entry_type": self.entry_type.value if self.entry_type else None,
            "entry_price": _str(self.entry_price),
            "stop_loss": _str(self.stop_loss),
            "take_profit1": _str(self.take_profit1),
            "take_profit2": _str(self.take_profit2),
            "expected_risk_reward": _str(self.expected_risk_reward),
            "time_horizon_minutes": self.time_horizon_minutes,
            "reasoning": self.reasoning,
            "memory": list(self.memory),
            "executed": self.executed,
            "entry_order_id": self.entry_order_id,
            "entry_client_order_id": self.entry_client_order_id,
            "entry_order_status": self.entry_order_status.value if self.entry_order_status else None,
            "entry_order_type": self.entry_order_type.value if self.entry_order_type else None,
            "entry_placed_at": _iso(self.entry_placed_at),
            "oco_order_list_id": self.oco_order_list_id,
            "exit_orders": dict(self.exit_orders),
            "exit_claimed_at": _iso(self.exit_claimed_at),
            "execution_result": self.execution_result.to_dict() if self.execution_result else None,
            "market_context": dict(self.market_context),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "RecommendationRecord":
        return RecommendationRecord(
            id=d.get("id"),
            created_at=_dt(d["created_at"]),
            signal=Signal(d["signal"]),
            confidence=Confidence(d["confidence"]),
            amount=_dec(d.get("amount")),
            amount_unit=AmountUnit(d.get("amount_unit") or "NONE"),
            entry_type=EntryType(d["entry_type"]) if d.get("entry_type") else None,
            entry_price=_dec(d.get("entry_price")),
            stop_loss=_dec(d.get("stop_loss")),
            take_profit1=_dec(d.get("take_profit1")),
            take_profit2=_dec(d.get("take_profit2")),
            expected_risk_reward=_dec(d.get("expected_risk_reward")),
            time_horizon_minutes=d.get("time_horizon_minutes"),
            reasoning=d.get("reasoning") or "",
            memory=list(d.get("memory") or []),
            executed=bool(d.get("executed")),
            entry_order_id=d.get("entry_order_id"),
            entry_client_order_id=d.get("entry_client_order_id"),
            entry_order_status=OrderStatus(d["entry_order_status"]) if d.get("entry_order_status") else None,
            entry_order_type=OrderType(d["entry_order_type"]) if d.get("entry_order_type") else None,
            entry_placed_at=_dt(d.get("entry_placed_at")),
            oco_order_list_id=d.get("oco_order_list_id"),
            exit_orders=dict(d.get("exit_orders") or {}),
            exit_claimed_at=_dt(d.get("exit_claimed_at")),
            execution_result=(
                ExecutionResult.from_dict(d["execution_result"]) if d.get("execution_result") else None
            ),
            market_context=dict(d.get("market_context") or {}),
        )


def find_matching_record(
    candidates: Iterable[RecommendationRecord],
    proposal: Proposal,
    now: datetime,
    window: timedelta,
) -> Optional[RecommendationRecord]:
    """Newest unexecuted record within the window that matches the proposal."""
    cutoff = now - window
    eligible = [
        r for r in candidates
        if not r.executed and r.created_at >= cutoff and r.matches(proposal)
    ]
    if not eligible:
        return None
    return max(eligible, key=lambda r: (r.created_at, r.id or 0))
