"""Notification sink interface for trade lifecycle events."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from .logging_setup import logger


class EventKind(str, Enum):
    PROPOSAL = "PROPOSAL"
    TRADE_EXECUTED = "TRADE_EXECUTED"
    TRADE_SKIPPED = "TRADE_SKIPPED"
    OCO_PLACED = "OCO_PLACED"
    ERROR = "ERROR"


@dataclass
class TradeEvent:
    kind: EventKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


class Notifier(ABC):
    """Delivers trade events to an outside channel (chat, Slack, ...)."""

    @abstractmethod
    def send(self, event: TradeEvent) -> None:
        pass


class LoggingNotifier(Notifier):
    """Default sink: writes events to the log."""

    def send(self, event: TradeEvent) -> None:
        details = " ".join(f"{k}={v}" for k, v in event.details.items())
        line = f"Notification | kind={event.kind.value} message={event.message!r} {details}".rstrip()
        if event.kind == EventKind.ERROR:
            logger.error(line)
        else:
            logger.info(line)


class RecordingNotifier(Notifier):
    """Keeps events in memory; used by tests and the demo."""

    def __init__(self):
        self.events: List[TradeEvent] = []

    def send(self, event: TradeEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> List[TradeEvent]:
        return [e for e in self.events if e.kind == kind]
