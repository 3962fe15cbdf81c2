import asyncio

import pytest

from EscalationTimer import EscalationPhase
from Messages import DriverPosition, Message, MessageKind
from RequesterClient import RequesterClient
from ResponderClient import DESTINATION, PICKUP, ResponderClient
from RouteProvider import RouteLookupError, StaticRouteProvider
from Scheduler import SimulatedScheduler
from TripStateMachine import InvalidTransition, TransitionKind, TripPhase
from realtime_runner import demo_request
from ws_bus import BroadcastHub


class FlakyRouter(StaticRouteProvider):
    """Fails the first `failures` lookups, then behaves like a static provider."""

    def __init__(self, failures=1, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures

    async def lookup(self, origin, destination, routing_mode=None, preferences=None):
        if self.failures > 0:
            self.failures -= 1
            raise RouteLookupError("routing service unreachable")
        return await super().lookup(origin, destination)


def _wire(responder_router=None, requester_router=None, **hub_kwargs):
    sched = SimulatedScheduler()
    hub = BroadcastHub(sched, **hub_kwargs)
    responder = ResponderClient(hub.endpoint("responder"), sched,
                                responder_router or StaticRouteProvider(steps=4),
                                verification_code="4029", progress_step=0.05, tick_interval=0.1)
    requester = RequesterClient(hub.endpoint("requester"), sched,
                                requester_router or StaticRouteProvider(steps=4),
                                verification_code="4029", progress_step=0.05, tick_interval=0.1)
    responder.attach()
    requester.attach()
    return sched, hub, responder, requester


def _events(client):
    seen = []
    client.add_listener(lambda event, payload: seen.append((event, payload)))
    return seen


async def _request_and_accept(sched, responder, requester):
    assert await requester.request_emergency(demo_request())
    sched.run_pending()
    assert responder.phase is TripPhase.REQUESTED
    assert await responder.accept_request()
    sched.advance(0.5)


async def _drive_trip(sched, responder, requester):
    await _request_and_accept(sched, responder, requester)
    assert responder.phase is TripPhase.EN_ROUTE_PICKUP
    assert requester.state.trip_phase is TripPhase.ACCEPTED
    assert requester.state.escalation_phase is EscalationPhase.CONFIRMED
    assert requester.state.driver_name == responder.driver_name
    assert requester.state.position_authoritative

    sched.advance(5.0)
    assert responder.phase is TripPhase.ARRIVED_PICKUP
    assert requester.state.trip_phase is TripPhase.ARRIVED_PICKUP
    assert requester.state.pickup_code == "4029"

    assert await responder.enter_verification_code("1111") is False
    assert responder.phase is TripPhase.ARRIVED_PICKUP
    assert await responder.enter_verification_code("4029") is True
    assert responder.phase is TripPhase.EN_ROUTE_DESTINATION
    sched.run_pending()
    assert requester.state.trip_phase is TripPhase.ONBOARD
    assert requester.state.pickup_code is None

    sched.advance(5.0)
    assert responder.phase is TripPhase.COMPLETED
    assert requester.state.trip_phase is TripPhase.COMPLETED


async def _test_full_trip():
    sched, _, responder, requester = _wire()
    events = _events(responder)
    await _drive_trip(sched, responder, requester)

    assert ("arrived", PICKUP) in events
    assert ("arrived", DESTINATION) in events
    assert ("code_rejected", "1111") in events
    assert not responder.interpolator.is_active()
    assert not requester.interpolator.is_active()
    assert responder.state.position == pytest.approx(responder.hospital)
    assert requester.state.snapshot()["phase"] == "COMPLETED"


def test_full_trip():
    asyncio.run(_test_full_trip())


async def _test_trip_survives_duplicate_delivery():
    sched, hub, responder, requester = _wire(duplicate_rate=1.0, seed=7)
    await _drive_trip(sched, responder, requester)
    assert hub.delivered > hub.published


def test_trip_survives_duplicate_delivery():
    asyncio.run(_test_trip_survives_duplicate_delivery())


async def _test_requester_mirrors_positions_exactly():
    sched, _, responder, requester = _wire()
    await requester.request_emergency(demo_request())
    sched.advance(0.3)
    assert requester.interpolator.is_active()
    assert not requester.state.position_authoritative

    for i in range(5):
        pos = (12.97 + i * 0.001, 77.59 - i * 0.002)
        responder.publish(DriverPosition(pos=pos, angle=i * 30.0, eta=9 - i))
        sched.run_pending()
        assert requester.state.position == pos
        assert requester.state.heading == i * 30.0
        assert requester.state.eta_min == 9 - i
        # the optimistic animation is gone, nothing else moves the marker
        sched.advance(0.3)
        assert requester.state.position == pos
    assert not requester.interpolator.is_active()
    assert requester.state.vehicle_visible


def test_requester_mirrors_positions_exactly():
    asyncio.run(_test_requester_mirrors_positions_exactly())


async def _test_escalation_climbs_until_accepted():
    sched, _, responder, requester = _wire()
    events = _events(requester)
    await requester.request_emergency(demo_request())
    sched.run_pending()

    sched.advance(46.0)
    assert requester.state.escalation_phase is EscalationPhase.SATELLITE_PRIORITY
    ladder = [p for e, p in events if e == "escalation"]
    assert ladder == [EscalationPhase.RADIUS_EXPANDED, EscalationPhase.PARTNERS_NOTIFIED,
                      EscalationPhase.SATELLITE_PRIORITY]
    assert len([p for e, p in events if e == "partner_notified"]) == len(requester.escalation.partners)

    await responder.accept_request()
    sched.run_pending()
    assert requester.state.escalation_phase is EscalationPhase.CONFIRMED
    assert not requester.escalation.is_running


def test_escalation_climbs_until_accepted():
    asyncio.run(_test_escalation_climbs_until_accepted())


async def _test_offline_responder_hides_vehicle():
    sched, _, responder, requester = _wire()
    events = _events(requester)
    await _request_and_accept(sched, responder, requester)
    assert requester.state.vehicle_visible

    responder.go_offline()
    assert responder.phase is TripPhase.CANCELLED
    assert not responder.interpolator.is_active()
    sched.run_pending()
    assert not requester.state.vehicle_visible
    assert requester.state.assignment_void
    assert requester.state.driver_name is None
    assert ("vehicle_hidden", None) in events

    # offline responders do not pick up new requests
    await requester.request_emergency(demo_request())
    sched.run_pending()
    assert responder.phase is TripPhase.CANCELLED

    responder.go_online()
    assert responder.phase is TripPhase.IDLE
    await requester.request_emergency(demo_request())
    sched.run_pending()
    assert responder.phase is TripPhase.REQUESTED


def test_offline_responder_hides_vehicle():
    asyncio.run(_test_offline_responder_hides_vehicle())


async def _test_cannot_go_offline_with_patient_onboard():
    sched, _, responder, requester = _wire()
    await _request_and_accept(sched, responder, requester)
    await responder.override_verification("patient critical")
    with pytest.raises(InvalidTransition):
        responder.go_offline()
    assert not responder.state.offline
    assert responder.phase is TripPhase.EN_ROUTE_DESTINATION


def test_cannot_go_offline_with_patient_onboard():
    asyncio.run(_test_cannot_go_offline_with_patient_onboard())


async def _test_override_skips_code_and_is_recorded():
    sched, _, responder, requester = _wire()
    await _request_and_accept(sched, responder, requester)
    assert await responder.override_verification("patient critical")

    assert responder.trip.overridden
    overrides = [r for r in responder.trip.history if r.kind is TransitionKind.OVERRIDE]
    assert [(r.source, r.target) for r in overrides] == [(TripPhase.EN_ROUTE_PICKUP, TripPhase.ONBOARD)]
    sched.run_pending()
    assert requester.state.trip_phase is TripPhase.ONBOARD

    sched.advance(5.0)
    assert responder.phase is TripPhase.COMPLETED
    assert requester.state.trip_phase is TripPhase.COMPLETED


def test_override_skips_code_and_is_recorded():
    asyncio.run(_test_override_skips_code_and_is_recorded())


async def _test_cancel_is_mirrored():
    sched, _, responder, requester = _wire()
    await _request_and_accept(sched, responder, requester)
    responder.cancel()
    sched.run_pending()
    assert responder.phase is TripPhase.CANCELLED
    assert requester.state.trip_phase is TripPhase.CANCELLED
    assert not requester.state.vehicle_visible


def test_cancel_is_mirrored():
    asyncio.run(_test_cancel_is_mirrored())


async def _test_route_failure_is_retryable():
    sched, _, responder, requester = _wire(responder_router=FlakyRouter(failures=1, steps=4))
    events = _events(responder)
    with pytest.raises(RuntimeError):
        await responder.retry_navigation()

    assert await requester.request_emergency(demo_request())
    sched.run_pending()
    assert await responder.accept_request() is False
    assert responder.phase is TripPhase.ACCEPTED
    assert responder.state.route_error == "routing service unreachable"
    assert any(e == "route_failed" for e, _ in events)

    assert await responder.retry_navigation() is True
    assert responder.phase is TripPhase.EN_ROUTE_PICKUP
    assert responder.state.route_error is None


def test_route_failure_is_retryable():
    asyncio.run(_test_route_failure_is_retryable())


async def _test_requester_route_failure_keeps_vehicle_hidden():
    sched, _, _, requester = _wire(requester_router=FlakyRouter(failures=1, steps=4))
    assert await requester.request_emergency(demo_request()) is False
    assert requester.state.route_error is not None
    assert not requester.state.vehicle_visible
    assert await requester.retry_route() is True
    assert requester.state.vehicle_visible
    assert requester.interpolator.is_active()


def test_requester_route_failure_keeps_vehicle_hidden():
    asyncio.run(_test_requester_route_failure_keeps_vehicle_hidden())


async def _test_new_request_after_completion_starts_fresh():
    sched, _, responder, requester = _wire()
    await _drive_trip(sched, responder, requester)

    await requester.request_emergency(demo_request(intelligent=False))
    assert requester.state.trip_phase is TripPhase.IDLE
    assert requester.state.escalation_phase is EscalationPhase.SEARCHING
    sched.run_pending()
    assert responder.phase is TripPhase.REQUESTED
    assert [r.target for r in responder.trip.history] == [TripPhase.REQUESTED]


def test_new_request_after_completion_starts_fresh():
    asyncio.run(_test_new_request_after_completion_starts_fresh())


def test_unhandled_kinds_are_ignored():
    sched, _, responder, _ = _wire()
    responder.receive(Message.create(DriverPosition(pos=(1.0, 1.0), angle=0.0)))
    sched.run_pending()
    assert responder.phase is TripPhase.IDLE
    assert MessageKind.DRIVER_POSITION not in responder.handlers


async def _test_decline_and_manual_completion():
    sched, _, responder, requester = _wire()
    await requester.request_emergency(demo_request())
    sched.run_pending()
    responder.decline_request()
    assert responder.phase is TripPhase.IDLE
    assert responder.state.request is None

    await requester.request_emergency(demo_request())
    sched.run_pending()
    assert responder.phase is TripPhase.REQUESTED
    await responder.accept_request()
    sched.advance(5.0)
    await responder.enter_verification_code("4029")
    sched.advance(0.2)
    responder.mark_trip_complete()
    assert not responder.interpolator.is_active()
    sched.run_pending()
    assert requester.state.trip_phase is TripPhase.COMPLETED


def test_decline_and_manual_completion():
    asyncio.run(_test_decline_and_manual_completion())


async def _test_cancel_request_stops_local_work():
    sched, _, _, requester = _wire()
    await requester.request_emergency(demo_request())
    timer = requester.escalation
    requester.cancel_request()
    assert requester.escalation is None
    assert timer.stopped
    assert not requester.interpolator.is_active()
    with pytest.raises(RuntimeError):
        await requester.retry_route()
    sched.advance(60.0)
    assert requester.state.escalation_phase is EscalationPhase.SEARCHING


def test_cancel_request_stops_local_work():
    asyncio.run(_test_cancel_request_stops_local_work())


async def _test_cancel_before_positions_stops_optimistic_motion():
    sched, _, responder, requester = _wire()
    events = _events(requester)
    await requester.request_emergency(demo_request())
    sched.advance(0.2)
    assert requester.interpolator.is_active()

    responder.cancel("no crew available")
    sched.run_pending()
    assert requester.state.trip_phase is TripPhase.CANCELLED
    assert not requester.interpolator.is_active()

    events.clear()
    sched.advance(10.0)
    assert not any(e in ("position", "arrived") for e, _ in events)
    assert not requester.state.vehicle_visible


def test_cancel_before_positions_stops_optimistic_motion():
    asyncio.run(_test_cancel_before_positions_stops_optimistic_motion())
