import argparse
import asyncio
import logging

import config
from RouteProvider import StaticRouteProvider
from local_osrm import OsrmRouteProvider
from realtime_runner import run_demo
from ws_bus import run_relay


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="RapidAid requester/responder dispatch simulation")
    sub = p.add_subparsers(dest="command", required=True)

    demo = sub.add_parser("demo", help="run a full emergency trip")
    demo.add_argument("--role", choices=["both", "requester", "responder"], default="both")
    demo.add_argument("--relay", metavar="URL", default=None,
                      help="websocket relay url, e.g. ws://127.0.0.1:8000/ws/rapid_aid_dispatch")
    demo.add_argument("--static-routes", action="store_true",
                      help="straight-line routes instead of calling OSRM")
    demo.add_argument("--osrm", default=config.OSRM_URL)
    demo.add_argument("--time-scale", type=float, default=20.0)
    demo.add_argument("--accept-after", type=float, default=5.0,
                      help="seconds before the driver accepts (>20 shows escalation)")
    demo.add_argument("--snapshot", default=None, help="write live state json here")

    relay = sub.add_parser("relay", help="run the websocket relay")
    relay.add_argument("--host", default=config.RELAY_HOST)
    relay.add_argument("--port", type=int, default=config.RELAY_PORT)
    return p


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=config.LOG_LEVEL,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "relay":
        run_relay(args.host, args.port)
        return

    router = StaticRouteProvider() if args.static_routes else OsrmRouteProvider(args.osrm)
    roles = ("requester", "responder") if args.role == "both" else (args.role,)
    asyncio.run(run_demo(
        router,
        roles=roles,
        relay_url=args.relay,
        time_scale=args.time_scale,
        accept_after_s=args.accept_after,
        snapshot_path=args.snapshot,
    ))


if __name__ == "__main__":
    main()
