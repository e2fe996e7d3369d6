# events.py
# State-transition events published by the runners, and the channel that
# delivers them. Subscribers are called synchronously, in emit order, on the
# event loop that owns the runner.

import logging
from enum import Enum
from typing import Callable

from pydantic import BaseModel

from scriptlet_runner.models import ExecutionOutcome, StepStatus

logger = logging.getLogger(__name__)


class Event(BaseModel):
    """Base class for everything emitted on an EventChannel."""


class OutputAppended(Event):
    text: str


class OutputCleared(Event):
    pass


class RunStarted(Event):
    command: list[str]
    working_directory: str


class RunFinished(Event):
    outcome: ExecutionOutcome


class ChainOutcome(str, Enum):
    COMPLETED = "completed"
    STOPPED_BY_USER = "stopped_by_user"
    STOPPED_ON_ERROR = "stopped_on_error"


class ChainStarted(Event):
    chain_id: str
    chain_name: str
    total_steps: int


class StepStarted(Event):
    index: int
    step_id: str
    script_name: str


class StepFinished(Event):
    index: int
    step_id: str
    status: StepStatus


class ChainFinished(Event):
    outcome: ChainOutcome
    overall_success: bool


Subscriber = Callable[[Event], None]


class EventChannel:
    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register `callback`. Returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: Event) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                # A broken observer must not take the run down with it.
                logger.exception("Subscriber %r failed on %s", callback, type(event).__name__)
