"""
Decision trigger: one proposal in, at most one entry order out.

``AutomatedTrader.run_cycle`` pulls the latest proposal from a decision source,
records it, applies admission control, places the entry order and links the
order back to the stored record. OCO exits for filled buys are placed by the
reconciliation loop on its next tick, never here.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from pydantic import ValidationError

from .admission import AdmissionController
from .errors import ConfigurationError, ExchangeAPIError, InvalidProposalError, OrderValidationError
from .execution import OrderExecutor
from .logging_setup import logger
from .models import Order, OrderStatus, Proposal
from .notifications import EventKind, LoggingNotifier, Notifier, TradeEvent
from .persistence_sqlite import RecommendationStore
from .records import RecommendationRecord


def parse_proposal(data: Union[Proposal, Dict[str, Any]]) -> Proposal:
    """Validate a raw proposal payload, raising InvalidProposalError on bad input."""
    if isinstance(data, Proposal):
        return data
    try:
        return Proposal.model_validate(data)
    except ValidationError as e:
        raise InvalidProposalError(f"Invalid proposal: {e.error_count()} validation error(s): {e}")


class DecisionSource(ABC):
    """Produces trade proposals (typically an AI model behind an API)."""

    @abstractmethod
    def get_proposal(self) -> Optional[Proposal]:
        """Latest proposal, or None when there is nothing new."""

    def market_context(self) -> Dict[str, str]:
        return {}


class StaticDecisionSource(DecisionSource):
    """Returns the same proposal on every call."""

    def __init__(self, proposal: Union[Proposal, Dict[str, Any]], context: Optional[Dict[str, str]] = None):
        self._raw = proposal
        self._context = dict(context or {})

    def get_proposal(self) -> Optional[Proposal]:
        return parse_proposal(self._raw)

    def market_context(self) -> Dict[str, str]:
        return dict(self._context)


class JsonFileDecisionSource(DecisionSource):
    """Reads a proposal JSON file written by an external decision process.

    A file is returned once per modification; unchanged files yield None.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._last_mtime: Optional[float] = None

    def get_proposal(self) -> Optional[Proposal]:
        if not self.path.exists():
            return None
        mtime = self.path.stat().st_mtime
        if self._last_mtime is not None and mtime <= self._last_mtime:
            return None
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise InvalidProposalError(f"Proposal file {self.path} is not valid JSON: {e}")
        finally:
            self._last_mtime = mtime
        if not isinstance(data, dict):
            raise InvalidProposalError(f"Proposal file {self.path} must contain a JSON object")
        return parse_proposal(data)


class CycleStatus(str, Enum):
    NO_PROPOSAL = "NO_PROPOSAL"
    INVALID = "INVALID"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"
    PLACED = "PLACED"
    EXECUTED = "EXECUTED"


@dataclass
class CycleOutcome:
    status: CycleStatus
    record: Optional[RecommendationRecord] = None
    order: Optional[Order] = None
    reason: str = ""


class AutomatedTrader:
    """Runs decision cycles: proposal -> record -> admission -> entry order."""

    def __init__(
        self,
        source: DecisionSource,
        store: RecommendationStore,
        admission: AdmissionController,
        executor: OrderExecutor,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.source = source
        self.store = store
        self.admission = admission
        self.executor = executor
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _notify(self, kind: EventKind, message: str, **details) -> None:
        self.notifier.send(TradeEvent(kind=kind, message=message, details=details))

    def run_cycle(self, now: Optional[datetime] = None) -> CycleOutcome:
        now = now or self.clock()

        try:
            proposal = self.source.get_proposal()
        except InvalidProposalError as e:
            logger.error(f"Invalid proposal from decision source | error={e}")
            self._notify(EventKind.ERROR, str(e))
            return CycleOutcome(CycleStatus.INVALID, reason=str(e))

        if proposal is None:
            logger.debug("No new proposal")
            return CycleOutcome(CycleStatus.NO_PROPOSAL)

        record = self.store.save(proposal, now=now, market_context=self.source.market_context())
        logger.info(
            f"Proposal received | id={record.id} signal={proposal.signal.value} "
            f"confidence={proposal.confidence.value} amount={proposal.amount} unit={proposal.amount_unit.value}"
        )
        self._notify(EventKind.PROPOSAL, proposal.to_display_string(), record_id=record.id)

        decision = self.admission.evaluate(proposal)
        if not decision.admitted:
            logger.info(f"Trade skipped | id={record.id} reason={decision.reason}")
            self._notify(EventKind.TRADE_SKIPPED, decision.reason, record_id=record.id)
            return CycleOutcome(CycleStatus.SKIPPED, record=record, reason=decision.reason)

        try:
            order = self.executor.execute(proposal)
        except (OrderValidationError, ExchangeAPIError, ConfigurationError) as e:
            message = e.message if isinstance(e, ExchangeAPIError) else str(e)
            logger.error(f"Trade execution failed | id={record.id} error={e}")
            self._notify(EventKind.ERROR, f"Trade failed: {message}", record_id=record.id)
            return CycleOutcome(CycleStatus.FAILED, record=record, reason=message)

        executed = order.status == OrderStatus.FILLED
        record = self.store.attach_execution(proposal, executed, order, now=now)

        if executed:
            self._notify(
                EventKind.TRADE_EXECUTED,
                f"{proposal.signal.value} executed: {order.executed_quantity} @ {order.average_price}",
                record_id=record.id,
                order_id=order.order_id,
            )
            return CycleOutcome(CycleStatus.EXECUTED, record=record, order=order)

        self._notify(
            EventKind.TRADE_EXECUTED,
            f"{proposal.signal.value} order placed: {order.orig_quantity} @ {order.price} ({order.status.value})",
            record_id=record.id,
            order_id=order.order_id,
        )
        return CycleOutcome(CycleStatus.PLACED, record=record, order=order)
