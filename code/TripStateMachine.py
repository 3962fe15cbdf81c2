from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Dict, FrozenSet, List, Optional

import config

logger = logging.getLogger(__name__)


class TripPhase(Enum):
    IDLE = auto()
    REQUESTED = auto()
    ACCEPTED = auto()
    EN_ROUTE_PICKUP = auto()
    ARRIVED_PICKUP = auto()
    ONBOARD = auto()
    EN_ROUTE_DESTINATION = auto()
    COMPLETED = auto()
    CANCELLED = auto()


class TransitionKind(Enum):
    NORMAL = auto()
    OVERRIDE = auto()


TERMINAL_PHASES: FrozenSet[TripPhase] = frozenset({TripPhase.COMPLETED, TripPhase.CANCELLED})

CANCELLABLE_PHASES: FrozenSet[TripPhase] = frozenset({
    TripPhase.IDLE,
    TripPhase.REQUESTED,
    TripPhase.ACCEPTED,
    TripPhase.EN_ROUTE_PICKUP,
    TripPhase.ARRIVED_PICKUP,
})

OVERRIDE_PHASES: FrozenSet[TripPhase] = frozenset({
    TripPhase.ACCEPTED,
    TripPhase.EN_ROUTE_PICKUP,
    TripPhase.ARRIVED_PICKUP,
})

VALID_TRANSITIONS: Dict[TripPhase, FrozenSet[TripPhase]] = {
    TripPhase.IDLE: frozenset({TripPhase.REQUESTED, TripPhase.ACCEPTED, TripPhase.CANCELLED}),
    TripPhase.REQUESTED: frozenset({TripPhase.IDLE, TripPhase.ACCEPTED, TripPhase.CANCELLED}),
    TripPhase.ACCEPTED: frozenset({TripPhase.EN_ROUTE_PICKUP, TripPhase.CANCELLED}),
    TripPhase.EN_ROUTE_PICKUP: frozenset({TripPhase.ARRIVED_PICKUP, TripPhase.CANCELLED}),
    TripPhase.ARRIVED_PICKUP: frozenset({TripPhase.ONBOARD, TripPhase.CANCELLED}),
    TripPhase.ONBOARD: frozenset({TripPhase.EN_ROUTE_DESTINATION}),
    TripPhase.EN_ROUTE_DESTINATION: frozenset({TripPhase.COMPLETED}),
    TripPhase.COMPLETED: frozenset(),
    TripPhase.CANCELLED: frozenset(),
}


class InvalidTransition(RuntimeError):
    def __init__(self, source: TripPhase, target: TripPhase, detail: str = ""):
        self.source = source
        self.target = target
        msg = f"cannot go from {source.name} to {target.name}"
        super().__init__(f"{msg}: {detail}" if detail else msg)


@dataclass(frozen=True)
class TransitionRecord:
    source: TripPhase
    target: TripPhase
    kind: TransitionKind
    reason: str
    at: float


class TripStateMachine:
    """
    Responder-owned trip lifecycle.

    Every successful transition is appended to `history`. Verification bypasses
    are recorded with TransitionKind.OVERRIDE so they can be told apart from
    normal code checks.
    """

    def __init__(self,
                 verification_code: str = config.VERIFICATION_CODE,
                 on_transition: Optional[Callable[[TransitionRecord], None]] = None,
                 clock: Callable[[], float] = time.time):
        if not verification_code.isdigit():
            raise ValueError("verification code must be numeric")
        self._expected_code = verification_code
        self.on_transition = on_transition
        self.clock = clock
        self.phase = TripPhase.IDLE
        self.history: List[TransitionRecord] = []
        self.code_input = ""

    @property
    def code_length(self) -> int:
        return len(self._expected_code)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def overridden(self) -> bool:
        return any(r.kind is TransitionKind.OVERRIDE for r in self.history)

    def can(self, target: TripPhase) -> bool:
        return target in VALID_TRANSITIONS[self.phase]

    def _go(self, target: TripPhase, reason: str = "",
            kind: TransitionKind = TransitionKind.NORMAL) -> TransitionRecord:
        if kind is TransitionKind.OVERRIDE:
            allowed = target is TripPhase.ONBOARD and self.phase in OVERRIDE_PHASES
        else:
            allowed = self.can(target)
        if not allowed:
            raise InvalidTransition(self.phase, target, reason)
        record = TransitionRecord(self.phase, target, kind, reason, self.clock())
        self.phase = target
        self.history.append(record)
        logger.debug("trip %s -> %s (%s)", record.source.name, target.name, reason or kind.name)
        if self.on_transition:
            self.on_transition(record)
        return record

    # operator / engine driven transitions

    def receive_request(self) -> TransitionRecord:
        return self._go(TripPhase.REQUESTED, "request received")

    def decline_request(self) -> TransitionRecord:
        if self.phase is not TripPhase.REQUESTED:
            raise InvalidTransition(self.phase, TripPhase.IDLE, "no pending request")
        return self._go(TripPhase.IDLE, "request declined")

    def accept(self) -> TransitionRecord:
        return self._go(TripPhase.ACCEPTED, "operator accepted")

    def depart_to_pickup(self) -> TransitionRecord:
        return self._go(TripPhase.EN_ROUTE_PICKUP, "pickup leg started")

    def arrive_at_pickup(self) -> TransitionRecord:
        return self._go(TripPhase.ARRIVED_PICKUP, "pickup leg finished")

    def enter_verification_code(self, code: str) -> bool:
        """
        Compare `code` with the expected pickup code.

        Only an exact match moves ARRIVED_PICKUP -> ONBOARD. On a mismatch the
        entered input is cleared for re-entry and nothing else changes.
        """
        if self.phase is not TripPhase.ARRIVED_PICKUP:
            raise InvalidTransition(self.phase, TripPhase.ONBOARD, "not waiting for a pickup code")
        self.code_input = code
        if code != self._expected_code:
            logger.info("pickup code rejected (%d digits entered)", len(code))
            self.code_input = ""
            return False
        self._go(TripPhase.ONBOARD, "pickup code verified")
        self.code_input = ""
        return True

    def override_verification(self, reason: str = "emergency override") -> TransitionRecord:
        record = self._go(TripPhase.ONBOARD, reason, kind=TransitionKind.OVERRIDE)
        logger.warning("verification bypassed from %s: %s", record.source.name, reason)
        return record

    def depart_to_destination(self) -> TransitionRecord:
        return self._go(TripPhase.EN_ROUTE_DESTINATION, "destination leg started")

    def complete(self, reason: str = "destination reached") -> TransitionRecord:
        return self._go(TripPhase.COMPLETED, reason)

    def cancel(self, reason: str = "operator cancelled") -> TransitionRecord:
        if self.phase not in CANCELLABLE_PHASES:
            raise InvalidTransition(self.phase, TripPhase.CANCELLED, "patient already onboard")
        return self._go(TripPhase.CANCELLED, reason)

    def reset(self) -> None:
        if not (self.is_terminal or self.phase is TripPhase.IDLE):
            raise InvalidTransition(self.phase, TripPhase.IDLE, "trip still in progress")
        self.phase = TripPhase.IDLE
        self.history.clear()
        self.code_input = ""
