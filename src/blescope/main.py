#!/usr/bin/env python3
"""
blescope command line.

    blescope scan --timeout 10 --name Sensor
    blescope services AA:BB:CC:DD:EE:FF
    blescope read AA:BB:CC:DD:EE:FF 2a19
    blescope write AA:BB:CC:DD:EE:FF 6e400002-b5a3-f393-e0a9-e50e24dcca9e --text "hello"
    blescope watch AA:BB:CC:DD:EE:FF 2a37 --count 20
    blescope serve --port 8082

With --remote URL, scan/services/read/write/watch go through a running
`blescope serve` instead of the local radio.
"""
import argparse
import asyncio
import json
import os
import sys
import time

from . import __version__
from .config_loader import Config
from .decode import parse_hex, sample_to_dict
from .errors import BlescopeError
from .inspector import Inspector
from .logging_setup import get_logger, setup_logging
from .models import ScanFilters

logger = get_logger(__name__)


# --- Output ---

def print_devices(devices: list[dict]) -> None:
    if not devices:
        print("No devices found.")
        return
    print(f"Found {len(devices)} device(s):")
    for d in devices:
        name = d.get("name") or "(unknown)"
        print(f"  {d['address']:<40} {d['rssi']:>5} dBm  {name}")


def print_services(services: list[dict]) -> None:
    if not services:
        print("No services found.")
        return
    for service in services:
        print(f"Service {service['uuid']}  {service.get('description', '')}".rstrip())
        for char in service["characteristics"]:
            flags = ",".join(char["properties"]) or "-"
            print(f"  [{char['handle']:>4}] {char['uuid']}  {flags}")


def print_sample(sample: dict) -> None:
    stamp = time.strftime("%H:%M:%S", time.localtime(sample["timestamp"] / 1000))
    print(f"[{stamp}] {sample['characteristic']} ({sample['length']} bytes)")
    print(f"  hex:  {sample['hex']}")
    text = sample["text"] if sample["text_valid"] else f"{sample['text']!r} (not UTF-8)"
    print(f"  text: {text}")
    if sample["json"]:
        print(f"  json: {json.dumps(sample['json'], ensure_ascii=False)}")


# --- Commands (local radio) ---

async def _local(args, cfg: Config) -> int:
    async with Inspector.from_config(cfg) as inspector:
        if args.command == "scan":
            filters = ScanFilters.build(
                names=args.name, addresses=args.address, service_uuids=args.service
            )
            found = await inspector.scan(timeout=args.timeout, filters=filters)
            print_devices([p.to_dict() for p in found])
            return 0

        await inspector.connect(args.device)
        services = await inspector.discover_services(args.device)

        if args.command == "services":
            print_services([s.to_dict(actionable_only=not args.all) for s in services])
            return 0

        characteristic = await inspector.characteristic(args.device, args.characteristic)

        if args.command == "read":
            sample = await inspector.read_once(characteristic)
            print_sample(sample_to_dict(sample))
            return 0

        if args.command == "write":
            data = _payload(args)
            await inspector.write(characteristic, data, with_response=not args.no_response)
            print(f"Wrote {len(data)} byte(s) to {characteristic.uuid}")
            return 0

        if args.command == "watch":
            return await _watch(
                inspector.subscriptions.samples(characteristic), args, to_dict=sample_to_dict
            )

    return 2


# --- Commands (remote service) ---

async def _remote(args, cfg: Config) -> int:
    from .client_remote import BlescopeClientRemote

    api_key = args.api_key if args.api_key is not None else cfg.api.api_key
    async with BlescopeClientRemote(args.remote, api_key=api_key) as client:
        if args.command == "scan":
            result = await client.scan(
                timeout=args.timeout or cfg.ble.scan_timeout,
                names=args.name,
                addresses=args.address,
                service_uuids=args.service,
            )
            print_devices(result["devices"])
            return 0

        status = await client.status(args.device)
        if not status["connected"]:
            await client.connect(args.device)

        if args.command == "services":
            result = await client.services(args.device, actionable_only=not args.all)
            print_services(result["services"])
        elif args.command == "read":
            print_sample(await client.read(args.device, args.characteristic))
        elif args.command == "write":
            data = _payload(args)
            result = await client.write(
                args.device, args.characteristic, data, with_response=not args.no_response
            )
            print(result["message"])
        elif args.command == "watch":
            return await _watch(client.stream_samples(args.device, args.characteristic), args)
        return 0


async def _watch(stream, args, to_dict=None) -> int:
    """Print samples until --count, --duration or the end of the stream."""
    received = 0

    async def consume():
        nonlocal received
        async for sample in stream:
            print_sample(to_dict(sample) if to_dict else sample)
            received += 1
            if args.count and received >= args.count:
                break

    try:
        await asyncio.wait_for(consume(), timeout=args.duration)
    except asyncio.TimeoutError:
        pass
    finally:
        await stream.aclose()
    logger.info("%d sample(s) received", received)
    return 0


async def _serve(args, cfg: Config) -> int:
    from .service_api import serve

    if args.host:
        cfg.api.host = args.host
    if args.port:
        cfg.api.port = args.port
    inspector = Inspector.from_config(cfg)
    await serve(inspector, cfg.api)
    return 0


def _payload(args) -> bytes:
    if args.hex is not None:
        return parse_hex(args.hex)
    return args.text.encode("utf-8")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="blescope", description="Bluetooth Low Energy inspector")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--config", help="config file (default /etc/blescope/config.json)")
    parser.add_argument("--log-file", help="also log to this file")
    parser.add_argument("--mode", choices=["bleak", "disabled"], help="override BLE backend")
    parser.add_argument("--remote", metavar="URL", help="use a blescope service instead of the local radio")
    parser.add_argument("--api-key", help="API key for --remote")

    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="scan for advertising devices")
    scan.add_argument("--timeout", type=float, help="seconds (default from config)")
    scan.add_argument("--name", action="append", default=[], help="name contains (repeatable)")
    scan.add_argument("--address", action="append", default=[], help="address allow-list (repeatable)")
    scan.add_argument("--service", action="append", default=[], help="advertised service UUID (repeatable)")

    services = sub.add_parser("services", help="connect and list services")
    services.add_argument("device", help="device address")
    services.add_argument("--all", action="store_true", help="include characteristics without read/write/notify")

    read = sub.add_parser("read", help="read a characteristic once")
    read.add_argument("device")
    read.add_argument("characteristic", help="UUID or handle")

    write = sub.add_parser("write", help="write a characteristic")
    write.add_argument("device")
    write.add_argument("characteristic", help="UUID or handle")
    payload = write.add_mutually_exclusive_group(required=True)
    payload.add_argument("--hex", help="bytes as hex, e.g. '01 ff'")
    payload.add_argument("--text", help="UTF-8 text")
    write.add_argument("--no-response", action="store_true", help="write without response")

    watch = sub.add_parser("watch", help="print notifications of a characteristic")
    watch.add_argument("device")
    watch.add_argument("characteristic", help="UUID or handle")
    watch.add_argument("--count", type=int, help="stop after N samples")
    watch.add_argument("--duration", type=float, help="stop after S seconds")

    serve = sub.add_parser("serve", help="run the HTTP/SSE service")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)

    return parser


async def main(args, cfg: Config) -> int:
    if args.command == "serve":
        return await _serve(args, cfg)
    if args.remote:
        return await _remote(args, cfg)
    return await _local(args, cfg)


def run(argv: list[str] | None = None) -> int:
    """Entry point for blescope CLI."""
    args = build_parser().parse_args(argv)

    is_dev = os.getenv("BLESCOPE_ENV") == "dev"
    setup_logging(
        verbose=args.verbose or is_dev,
        log_file=args.log_file,
        simple_format=not args.verbose,
    )

    cfg = Config.load(args.config)
    if args.mode:
        cfg.ble.mode = args.mode

    try:
        return asyncio.run(main(args, cfg))
    except KeyboardInterrupt:
        logger.info("Manually stopped with Ctrl+C")
        return 130
    except BlescopeError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1
    except ValueError as e:
        logger.error("Invalid input: %s", e)
        return 2
    except Exception as e:
        logger.exception("Unexpected error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(run())
