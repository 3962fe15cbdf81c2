import asyncio
import json
import logging
import os
import tempfile
import time
from typing import Any, Dict, List, Optional, Sequence

import config
from DispatchClient import DispatchClient
from Messages import EmergencyRequest, RoutePreferences, RoutingMode
from RequesterClient import RequesterClient
from ResponderClient import PICKUP, ResponderClient
from RouteProvider import RouteProvider
from Scheduler import AsyncioScheduler
from TripStateMachine import TERMINAL_PHASES, TransitionRecord
from ws_bus import BroadcastHub, SyncBus, WsSyncBus

logger = logging.getLogger(__name__)

SNAPSHOT_EVERY_S = 0.5


def write_positions_json(data, path="snapshot.json", retries=30, sleep_s=0.01):
    dir_name = os.path.dirname(os.path.abspath(path)) or "."
    last_err = None

    for _ in range(retries):
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(prefix="pos_", suffix=".json", dir=dir_name)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
                f.flush()
                os.fsync(f.fileno())

            os.replace(tmp_path, path)
            tmp_path = None
            return
        except PermissionError as e:
            last_err = e
            time.sleep(sleep_s)
        finally:
            if tmp_path is not None:
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    raise last_err


def snapshot_all(t_s: float, clients: Sequence[DispatchClient]) -> Dict[str, Any]:
    return {
        "t_s": t_s,
        "participants": [c.state.snapshot() for c in clients],
    }


def demo_request(intelligent: bool = True) -> EmergencyRequest:
    return EmergencyRequest(
        patient_location=config.PATIENT_POS,
        address="722 Medical Drive, Sector 4",
        condition="Cardiac distress",
        routing_mode=RoutingMode.INTELLIGENT if intelligent else RoutingMode.STANDARD,
        route_preferences=RoutePreferences.intelligent() if intelligent else RoutePreferences(),
    )


class AutoOperator:
    """Plays the driver: accepts after a delay, fumbles the code once, then types it right."""

    def __init__(self, responder: ResponderClient, accept_after_s: float,
                 code: str = config.VERIFICATION_CODE, wrong_code: str = "0000"):
        self.responder = responder
        self.code = code
        self.accept_after_s = accept_after_s
        self.wrong_code = wrong_code
        self._tasks: List[asyncio.Task] = []
        responder.add_listener(self.on_event)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        task.add_done_callback(self._report)
        self._tasks.append(task)

    def _report(self, task: asyncio.Task) -> None:
        if task in self._tasks:
            self._tasks.remove(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("operator action failed: %r", exc, exc_info=exc)

    def on_event(self, event: str, payload) -> None:
        r = self.responder
        if event == "request":
            r.scheduler.after(self.accept_after_s, lambda: self._spawn(r.accept_request()))
        elif event == "arrived" and payload == PICKUP:
            self._spawn(self._verify())
        elif event == "route_failed":
            r.scheduler.after(2.0, lambda: self._spawn(r.retry_navigation()))

    async def _verify(self) -> None:
        await self.responder.enter_verification_code(self.wrong_code)
        await self.responder.enter_verification_code(self.code)


def _printer(name: str):
    def show(event: str, payload) -> None:
        if event == "position":
            return
        if isinstance(payload, TransitionRecord):
            payload = f"{payload.source.name} -> {payload.target.name} ({payload.reason})"
        elif hasattr(payload, "name"):
            payload = payload.name
        print(f"[{name}] {event}: {payload if payload is not None else ''}")
    return show


async def run_demo(router: RouteProvider,
                   roles: Sequence[str] = ("requester", "responder"),
                   relay_url: Optional[str] = None,
                   time_scale: float = 20.0,
                   accept_after_s: float = 5.0,
                   snapshot_path: Optional[str] = None,
                   limit_s: float = 900.0) -> Dict[str, str]:
    scheduler = AsyncioScheduler()
    hub = BroadcastHub(scheduler) if relay_url is None else None
    buses: List[SyncBus] = []

    async def make_bus(label: str) -> SyncBus:
        if hub is not None:
            return hub.endpoint(label)
        bus = WsSyncBus(relay_url)
        await bus.connect()
        buses.append(bus)
        return bus

    clients: List[DispatchClient] = []
    requester: Optional[RequesterClient] = None
    if "responder" in roles:
        responder = ResponderClient(await make_bus("responder"), scheduler, router, time_scale=time_scale)
        AutoOperator(responder, accept_after_s)
        clients.append(responder)
    if "requester" in roles:
        requester = RequesterClient(await make_bus("requester"), scheduler, router, time_scale=time_scale)
        clients.append(requester)

    done = asyncio.Event()

    def check_done(_event=None, _payload=None) -> None:
        if all(c.state.trip_phase in TERMINAL_PHASES for c in clients):
            done.set()

    for c in clients:
        c.add_listener(_printer(c.role.value))
        c.add_listener(check_done)
        c.attach()

    snap = None
    started = scheduler.now()
    if snapshot_path:
        logger.info("writing live snapshots to %s every %.1fs", snapshot_path, SNAPSHOT_EVERY_S)
        snap = scheduler.every(SNAPSHOT_EVERY_S, lambda: write_positions_json(
            snapshot_all(scheduler.now() - started, clients), snapshot_path))

    try:
        if requester is not None:
            if relay_url is not None:
                await asyncio.sleep(0.5)  # give the other side time to attach
            await requester.request_emergency(demo_request())
        await asyncio.wait_for(done.wait(), timeout=limit_s)
    finally:
        if snap is not None:
            snap.cancel()
        for c in clients:
            c.detach()
        for bus in buses:
            await bus.close()

    result = {c.role.value: c.state.trip_phase.name for c in clients}
    print("finished:", result)
    return result
