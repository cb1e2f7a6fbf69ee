"""
Job registry — maps job names to their dedup strategy and handler.

Two things are decided per job name, both at registration time:
- how its dedup key is derived (a DedupStrategy, default: whole payload)
- which handler the worker runs for it

The dedup side is needed by every process that submits jobs; handlers are
only needed where workers run, so a definition may exist without one.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Union

from jobs.base import AbstractJobHandler, FunctionHandler
from outbox.dedup import (
    DEFAULT_STRATEGY,
    ByCompositeId,
    ByField,
    ByHash,
    DedupStrategy,
)


class UnknownJobError(ValueError):
    """No handler is registered for a job name."""


@dataclass
class JobDefinition:
    name: str
    dedup: DedupStrategy = DEFAULT_STRATEGY
    handler: Optional[AbstractJobHandler] = None


class JobRegistry:

    def __init__(self):
        self._definitions: dict[str, JobDefinition] = {}

    def register(
        self,
        name: str,
        handler: Union[AbstractJobHandler, Callable[[dict], dict], None] = None,
        dedup: Optional[DedupStrategy] = None,
    ) -> JobDefinition:
        """
        Register (or update) a job name.

        Re-registering keeps whatever the new call does not specify, so the
        host application can attach a handler to a name whose dedup strategy
        was registered by default.
        """
        definition = self._definitions.get(name) or JobDefinition(name=name)
        if dedup is not None:
            definition.dedup = dedup
        if handler is not None:
            if not isinstance(handler, AbstractJobHandler):
                handler = FunctionHandler(name, handler)
            definition.handler = handler
        self._definitions[name] = definition
        return definition

    def dedup_key(self, name: str, payload: dict) -> str:
        definition = self._definitions.get(name)
        strategy = definition.dedup if definition else DEFAULT_STRATEGY
        return strategy.key_for(name, payload)

    def get_handler(self, name: str) -> AbstractJobHandler:
        """Look up a handler by job name. Raises UnknownJobError if none is registered."""
        definition = self._definitions.get(name)
        if definition is None or definition.handler is None:
            available = [n for n, d in self._definitions.items() if d.handler]
            raise UnknownJobError(
                f"Unknown job type: '{name}'. Available: {available}"
            )
        return definition.handler

    def names(self) -> list[str]:
        return sorted(self._definitions)


def register_booking_jobs(registry: JobRegistry) -> JobRegistry:
    """Dedup strategies for the booking application's job names."""
    for name in ("verifyEmail", "resetPassword", "sendInvitation"):
        registry.register(name, dedup=ByField("recipient"))
    for name in ("adminCancellationNotif", "refundConfirmation"):
        registry.register(name, dedup=ByField("payment._id", "payment.id"))
    for name in ("eventDeleted", "unauthorizedBooking", "userCancellation"):
        registry.register(name, dedup=ByField("recipient", "calendlyEmail"))
    registry.register("ContactMe", dedup=ByHash("email", "message"))
    registry.register("deleteDocuments", dedup=ByCompositeId("model", "documentIds"))
    registry.register("syncCalendar", dedup=ByField("bookingId"))
    return registry


def build_default_registry() -> JobRegistry:
    return register_booking_jobs(JobRegistry())
