"""Admission control: decide whether a proposal may be executed.

The decision is pure with respect to side effects: callers log and notify the
rejection reason. Rules are applied in order and the first failing rule wins:

1. HOLD signals are never executed.
2. The proposal must be actionable (amount, stop-loss/take-profit, R/R, LIMIT price).
3. LOW confidence is rejected.
4. A BUY with a take-profit must clear round-trip taker fees to TP1.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional

from .errors import ConfigurationError, ExchangeAPIError
from .logging_setup import logger
from .models import Confidence, Proposal, Signal, TradeFee, actionable_problem

PCT_QUANTUM = Decimal("0.00000001")


@dataclass(frozen=True)
class FeeCheck:
    """Outcome of the fee gate for one proposal.

    Percentages are fractions (0.002 == 0.2%). ``available`` is False when the
    fee or the reference price could not be fetched.
    """

    available: bool
    round_trip_fee: Decimal = Decimal("0")
    pct_to_tp1: Decimal = Decimal("0")
    entry_price: Optional[Decimal] = None
    error: Optional[str] = None

    @property
    def passes(self) -> bool:
        return self.available and self.pct_to_tp1 > self.round_trip_fee

    @classmethod
    def unavailable(cls, error: str) -> "FeeCheck":
        return cls(available=False, error=error)


@dataclass(frozen=True)
class AdmissionDecision:
    admitted: bool
    reason: str = ""
    fee_check: Optional[FeeCheck] = None


def pct_to_target(entry: Decimal, target: Decimal) -> Decimal:
    """Fractional move from entry to target, floored at zero."""
    if entry <= 0:
        return Decimal("0")
    pct = ((target - entry) / entry).quantize(PCT_QUANTUM, rounding=ROUND_HALF_UP)
    return max(Decimal("0"), pct)


class AdmissionController:
    """Gatekeeper between the decision source and the order executor.

    Args:
        fee_source: Returns the symbol's TradeFee (may raise ExchangeAPIError)
        price_source: Returns the current market price (may raise ExchangeAPIError)
        min_risk_reward: Minimum expected risk/reward for an actionable proposal
        fail_closed: Reject when fee data is unavailable instead of skipping the fee gate
    """

    def __init__(
        self,
        fee_source: Callable[[], TradeFee],
        price_source: Callable[[], Decimal],
        min_risk_reward: Decimal = Decimal("2.0"),
        fail_closed: bool = False,
    ):
        self.fee_source = fee_source
        self.price_source = price_source
        self.min_risk_reward = min_risk_reward
        self.fail_closed = fail_closed

    def fee_check(self, proposal: Proposal) -> Optional[FeeCheck]:
        """Compute the fee gate for a BUY with a TP1; None when it does not apply."""
        if proposal.signal != Signal.BUY or proposal.take_profit1 is None:
            return None
        try:
            fee = self.fee_source()
            if proposal.is_limit and proposal.entry_price is not None:
                entry = proposal.entry_price
            else:
                entry = self.price_source()
        except (ExchangeAPIError, ConfigurationError) as e:
            logger.warning(f"Fee gate data unavailable | error={e}")
            return FeeCheck.unavailable(str(e))

        return FeeCheck(
            available=True,
            round_trip_fee=fee.round_trip,
            pct_to_tp1=pct_to_target(entry, proposal.take_profit1),
            entry_price=entry,
        )

    def _rejection(self, proposal: Proposal, fee_check: Optional[FeeCheck]) -> Optional[str]:
        if proposal.signal == Signal.HOLD:
            return "Signal is HOLD - no action needed"

        problem = actionable_problem(proposal, self.min_risk_reward)
        if problem is not None:
            return problem

        if proposal.confidence == Confidence.LOW:
            return "Confidence too low (LOW) - minimum MEDIUM required"

        if fee_check is None:
            fee_check = self.fee_check(proposal)
        if fee_check is None:
            return None
        if not fee_check.available:
            if self.fail_closed:
                return "Fee data unavailable - fee gate is fail-closed"
            return None
        if not fee_check.passes:
            return (
                f"TP1 ({fee_check.pct_to_tp1 * 100:.2f}%) does not clear "
                f"round-trip fees ({fee_check.round_trip_fee * 100:.2f}%)"
            )
        return None

    def should_execute(self, proposal: Proposal, fee_check: Optional[FeeCheck] = None) -> bool:
        return self._rejection(proposal, fee_check) is None

    def skip_reason(self, proposal: Proposal, fee_check: Optional[FeeCheck] = None) -> str:
        """Human-readable rejection reason, or an empty string if admitted."""
        return self._rejection(proposal, fee_check) or ""

    def evaluate(self, proposal: Proposal) -> AdmissionDecision:
        """Run every rule once, fetching fee data at most once."""
        fee_check = None
        if (
            proposal.signal != Signal.HOLD
            and proposal.confidence != Confidence.LOW
            and actionable_problem(proposal, self.min_risk_reward) is None
        ):
            fee_check = self.fee_check(proposal)
        reason = self._rejection(proposal, fee_check)
        return AdmissionDecision(admitted=reason is None, reason=reason or "", fee_check=fee_check)
