"""ridelink command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import json
import signal
import sys
from pathlib import Path
from time import monotonic
from typing import Any, Dict, List, Optional

import uvicorn
from rich.console import Console
from rich.table import Table

from ridelink.codec import decode
from ridelink.config import LinkConfig
from ridelink.errors import MalformedFrame, RidelinkError
from ridelink.manager import LinkManager
from ridelink.reconnect import Reconnector
from ridelink.scanner import discover
from ridelink.session import SessionState

console = Console()


def _config_from_args(args: argparse.Namespace) -> LinkConfig:
	config = LinkConfig.from_env()
	overrides: Dict[str, Any] = {}
	if getattr(args, "adapter", None):
		overrides["adapter"] = args.adapter
	if getattr(args, "connect_timeout", None) is not None:
		overrides["connect_timeout"] = args.connect_timeout
	if getattr(args, "frame_timeout", None) is not None:
		overrides["frame_timeout"] = args.frame_timeout
	if getattr(args, "data_dir", None):
		overrides["data_dir"] = Path(args.data_dir).expanduser()
	# replace() re-runs the validation in __post_init__.
	return dataclasses.replace(config, **overrides)


async def _cmd_scan(args: argparse.Namespace) -> int:
	try:
		results = await discover(
			timeout=args.timeout,
			service_uuids=args.service_uuid or None,
			names=args.name or None,
			adapter=args.adapter,
		)
	except RidelinkError as exc:
		console.print(f"[red]{exc.reason}[/red]: {exc}")
		return 1

	data = [handle.to_dict() for handle in results]
	if args.json:
		json.dump(data, sys.stdout, indent=2)
		sys.stdout.write("\n")
		return 0
	table = Table(title="ridelink scan results", show_lines=False)
	for column in ("address", "name"):
		table.add_column(column.upper())
	for entry in data:
		table.add_row(str(entry["address"]), str(entry["name"]))
	console.print(table)
	return 0


async def _print_snapshots(manager: LinkManager) -> None:
	async for snapshot in manager.subscribe():
		flags = [
			name
			for name, on in (
				("HIGH-BEAM", snapshot.high_beam),
				("HAZARDS", snapshot.hazards),
				("ENGINE", snapshot.engine_check),
				("BATTERY", snapshot.battery),
			)
			if on
		]
		console.print(
			f"speed={snapshot.speed:>3} km/h  rpm={snapshot.rpm:>5}  gear={snapshot.gear}  "
			f"fuel={snapshot.fuel:>3}%  {' '.join(flags)}"
		)


async def _wait_while_subscribed(
	manager: LinkManager,
	stop_event: asyncio.Event,
	runtime: Optional[float],
	poll_interval: float = 0.2,
) -> bool:
	"""Return ``True`` if the link dropped, ``False`` on stop or timeout."""
	deadline = monotonic() + runtime if runtime else None
	while manager.state is SessionState.SUBSCRIBED:
		wait_time = poll_interval
		if deadline is not None:
			wait_time = min(wait_time, deadline - monotonic())
			if wait_time <= 0:
				return False
		try:
			await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
		except asyncio.TimeoutError:
			continue
		return False
	return True


async def _cmd_monitor(args: argparse.Namespace) -> int:
	config = _config_from_args(args)
	async with LinkManager(config) as manager:
		printer = asyncio.create_task(_print_snapshots(manager))
		stop_event = asyncio.Event()
		reconnector: Optional[Reconnector] = None

		def _signal_handler(*_: Any) -> None:
			stop_event.set()
			if reconnector is not None:
				reconnector.request_stop()

		loop = asyncio.get_running_loop()
		signals = (signal.SIGINT, signal.SIGTERM)
		for sig in signals:
			with contextlib.suppress(NotImplementedError, RuntimeError):
				loop.add_signal_handler(sig, _signal_handler)

		exit_code = 0
		try:
			if args.reconnect:
				reconnector = Reconnector(
					manager,
					args.device,
					base_backoff=args.base_backoff,
					max_backoff=args.max_backoff,
				)
				await reconnector.run(runtime=args.runtime)
			else:
				state = await manager.connect(args.device)
				if state is not SessionState.SUBSCRIBED:
					failure = manager.failure
					console.print(f"[red]{state.value}[/red]: {failure or 'no data stream'}")
					for attempt in manager.attempts:
						console.print(f"  {attempt.describe()}")
					exit_code = 1
				elif await _wait_while_subscribed(manager, stop_event, args.runtime):
					console.print(f"[yellow]{manager.state.value}[/yellow]: link to {args.device} lost")
					exit_code = 1
		finally:
			for sig in signals:
				with contextlib.suppress(NotImplementedError, RuntimeError):
					loop.remove_signal_handler(sig)
			printer.cancel()
			with contextlib.suppress(asyncio.CancelledError):
				await printer
			if args.export:
				manager.export_logs(args.export)
	return exit_code


async def _cmd_decode(args: argparse.Namespace) -> int:
	try:
		frame = bytes.fromhex(args.frame)
	except ValueError as exc:
		raise ValueError(f"invalid hex frame: {exc}") from exc
	try:
		snapshot = decode(frame)
	except MalformedFrame as exc:
		console.print(f"[red]{exc.reason}[/red]: {exc}")
		return 1
	json.dump(snapshot.to_dict(), sys.stdout, indent=2)
	sys.stdout.write("\n")
	return 0


async def _cmd_serve(args: argparse.Namespace) -> int:
	server = uvicorn.Server(uvicorn.Config("ridelink.api:app", host=args.host, port=args.port, log_level="info"))
	await server.serve()
	return 0


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="ridelink BLE cluster telemetry")
	sub = parser.add_subparsers(dest="command", required=True)

	scan = sub.add_parser("scan", help="Discover nearby named BLE peripherals")
	scan.add_argument("--timeout", type=float, default=6.0, help="Scan duration in seconds")
	scan.add_argument("--service-uuid", action="append", help="Filter by service UUID", dest="service_uuid")
	scan.add_argument("--name", action="append", help="Filter by advertised name")
	scan.add_argument("--adapter", help="BLE adapter identifier")
	scan.add_argument("--json", action="store_true", help="Output JSON")
	scan.set_defaults(handler=_cmd_scan)

	monitor = sub.add_parser("monitor", help="Connect to a cluster and print telemetry")
	monitor.add_argument("device", help="MAC/UUID of the cluster")
	monitor.add_argument("--adapter", help="BLE adapter identifier")
	monitor.add_argument("--connect-timeout", type=float, help="Connection timeout seconds")
	monitor.add_argument("--frame-timeout", type=float, help="Seconds to wait for the first frame per strategy")
	monitor.add_argument("--data-dir", help="Directory for the layout cache and exports")
	monitor.add_argument("--runtime", type=float, help="Optional monitor duration seconds")
	monitor.add_argument("--reconnect", action="store_true", help="Reconnect with backoff when the link drops")
	monitor.add_argument("--base-backoff", type=float, default=2.0, help="Initial reconnect backoff")
	monitor.add_argument("--max-backoff", type=float, default=60.0, help="Maximum reconnect backoff")
	monitor.add_argument("--export", help="Export the event log to this file on exit")
	monitor.set_defaults(handler=_cmd_monitor)

	dec = sub.add_parser("decode", help="Decode one telemetry frame given as hex")
	dec.add_argument("frame", help="Frame bytes as hex, e.g. 2d012c0a3c03")
	dec.set_defaults(handler=_cmd_decode)

	serve = sub.add_parser("serve", help="Run the HTTP/WebSocket API")
	serve.add_argument("--host", default="127.0.0.1", help="Bind address")
	serve.add_argument("--port", type=int, default=8000, help="Bind port")
	serve.set_defaults(handler=_cmd_serve)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	try:
		return asyncio.run(args.handler(args))
	except ValueError as exc:
		parser.error(str(exc))


if __name__ == "__main__":
	sys.exit(main())
