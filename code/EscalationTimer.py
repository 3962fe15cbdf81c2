from __future__ import annotations

import logging
from enum import IntEnum
from typing import Callable, List, Optional, Sequence, Tuple

import config
from Scheduler import Scheduler, TickHandle

logger = logging.getLogger(__name__)


class EscalationPhase(IntEnum):
    SEARCHING = 0
    RADIUS_EXPANDED = 1
    PARTNERS_NOTIFIED = 2
    SATELLITE_PRIORITY = 3
    CONFIRMED = 4


# (elapsed seconds, phase entered)
DEFAULT_LADDER: Tuple[Tuple[float, EscalationPhase], ...] = (
    (config.RADIUS_EXPAND_AFTER_S, EscalationPhase.RADIUS_EXPANDED),
    (config.PARTNERS_AFTER_S, EscalationPhase.PARTNERS_NOTIFIED),
    (config.SATELLITE_AFTER_S, EscalationPhase.SATELLITE_PRIORITY),
)


class EscalationTimer:
    """
    Time-gated visibility ladder for one broadcast request.

    Phases only move forward. confirm() freezes the timer at CONFIRMED and
    cancels everything it had scheduled; a timer is single-use, so a new
    request needs a new instance.
    """

    def __init__(self,
                 scheduler: Scheduler,
                 on_phase: Optional[Callable[[EscalationPhase], None]] = None,
                 on_partner_notified: Optional[Callable[[str], None]] = None,
                 partners: Sequence[str] = tuple(config.PARTNER_FACILITIES),
                 partner_delay_s: float = config.PARTNER_NOTIFY_DELAY_S,
                 base_radius_km: float = config.BASE_SEARCH_RADIUS_KM,
                 expanded_radius_km: float = config.EXPANDED_SEARCH_RADIUS_KM,
                 ladder: Sequence[Tuple[float, EscalationPhase]] = DEFAULT_LADDER,
                 tick_interval: float = config.ESCALATION_TICK_S):
        self.scheduler = scheduler
        self.on_phase = on_phase
        self.on_partner_notified = on_partner_notified
        self.partners = list(partners)
        self.partner_delay_s = partner_delay_s
        self.expanded_radius_km = expanded_radius_km
        self.ladder = sorted(ladder)
        self.tick_interval = tick_interval

        self.phase = EscalationPhase.SEARCHING
        self.search_radius_km = base_radius_km
        self.satellite_priority = False
        self.notified_partners: List[str] = []
        self.started_at: Optional[float] = None
        self.stopped = False
        self._tick: Optional[TickHandle] = None
        self._pending: List[TickHandle] = []

    @property
    def is_running(self) -> bool:
        return self._tick is not None

    @property
    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return self.scheduler.now() - self.started_at

    def start(self) -> None:
        if self.started_at is not None:
            raise RuntimeError("escalation timer is single-use; create a new one per request")
        self.started_at = self.scheduler.now()
        self._tick = self.scheduler.every(self.tick_interval, self.evaluate)
        logger.info("escalation started, searching within %.1f km", self.search_radius_km)

    def evaluate(self) -> None:
        if self.stopped:
            return
        elapsed = self.elapsed
        for threshold, phase in self.ladder:
            if elapsed >= threshold and phase > self.phase:
                self._enter(phase)

    def confirm(self) -> None:
        if self.phase is EscalationPhase.CONFIRMED:
            return
        self._halt()
        self._set_phase(EscalationPhase.CONFIRMED)
        logger.info("request confirmed after %.1fs", self.elapsed)

    def cancel(self) -> None:
        if not self.stopped:
            self._halt()
            logger.info("escalation cancelled in %s", self.phase.name)

    def _halt(self) -> None:
        self.stopped = True
        if self._tick is not None:
            self._tick.cancel()
            self._tick = None
        for handle in self._pending:
            handle.cancel()
        self._pending.clear()

    def _set_phase(self, phase: EscalationPhase) -> None:
        if phase <= self.phase:
            raise RuntimeError(f"escalation cannot go from {self.phase.name} to {phase.name}")
        self.phase = phase
        if self.on_phase:
            self.on_phase(phase)

    def _enter(self, phase: EscalationPhase) -> None:
        if phase is EscalationPhase.RADIUS_EXPANDED:
            self.search_radius_km = self.expanded_radius_km
            logger.info("no acceptance yet, search radius widened to %.1f km", self.search_radius_km)
        elif phase is EscalationPhase.PARTNERS_NOTIFIED:
            self._schedule_partners()
        elif phase is EscalationPhase.SATELLITE_PRIORITY:
            self.satellite_priority = True
            logger.warning("no acceptance after %.0fs, broadcasting at maximum priority", self.elapsed)
        self._set_phase(phase)

    def _schedule_partners(self) -> None:
        for i, partner in enumerate(self.partners):
            handle = self.scheduler.after(i * self.partner_delay_s,
                                          lambda p=partner: self._notify_partner(p))
            self._pending.append(handle)

    def _notify_partner(self, partner: str) -> None:
        if self.stopped:
            return
        self.notified_partners.append(partner)
        logger.info("partner facility notified: %s", partner)
        if self.on_partner_notified:
            self.on_partner_notified(partner)
