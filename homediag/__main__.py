"""
Command line entry points.

    python -m homediag serve [--host H] [--port P] [--reload]
    python -m homediag diagnose photo.jpg [--lat LAT --lng LNG | --address "..."]

``diagnose`` talks to a running server, streams the initial diagnosis and
then keeps a small chat loop going until an empty line or EOF.
"""

import argparse
import asyncio
import base64
import logging
import mimetypes
import sys
from pathlib import Path
from uuid import uuid4

import httpx
import uvicorn

from .cache import PendingImageCache
from .clients import (
    AddressGeolocator,
    DiagnoseClient,
    GeocodeClient,
    NoGeolocator,
    ProviderSearchClient,
    StaticGeolocator,
)
from .config import API_HOST, API_PORT, LOG_LEVEL, SIDE_HTTP_TIMEOUT, configure_logging
from .errors import DiagnosisError
from .session import DiagnosticSession
from .store import InMemoryStore

logger = logging.getLogger("homediag.cli")


def image_data_url(path: Path) -> str:
    mime = mimetypes.guess_type(path.name)[0] or "image/jpeg"
    data = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{data}"


def _print_event(kind: str, payload) -> None:
    if kind == "reasoning":
        print(f"\r… {payload[-100:]}", end="", flush=True)
    elif kind == "diagnosis":
        print(f"\n\nDIAGNOSIS: {payload.diagnosis}")
        print(f"TRADE: {payload.trade}")
        if payload.estimated_cost:
            print(f"ESTIMATED COST: {payload.estimated_cost}")
    elif kind == "message" and payload.role == "assistant":
        flag = " (updated diagnosis)" if payload.has_updated_diagnosis else ""
        print(f"\nassistant{flag}: {payload.content}\n")
    elif kind == "providers":
        print("\nRecommended service providers:")
        for p in payload:
            rating = f"{p.rating:.1f}★ ({p.rating_count})" if p.rating is not None else "unrated"
            print(f"  - {p.name} | {rating} | {p.phone or 'no phone'} | {p.distance_text or ''}")
    elif kind == "location":
        print(f"\nLocation: {payload.address}")


def _geolocator(args, geocoder: GeocodeClient):
    if args.lat is not None and args.lng is not None:
        return StaticGeolocator(args.lat, args.lng)
    if args.address:
        return AddressGeolocator(args.address, geocoder)
    return NoGeolocator()


async def _read_line(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: input(prompt))


async def run_diagnose(args) -> int:
    path = Path(args.image)
    if not path.is_file():
        print(f"No such image: {path}", file=sys.stderr)
        return 2

    conversation_id = uuid4().hex
    cache = PendingImageCache()
    cache.put(conversation_id, image_data_url(path), path.name)
    logger.info("cli: diagnosing %s as conversation %s", path.name, conversation_id)

    async with httpx.AsyncClient(timeout=SIDE_HTTP_TIMEOUT) as client:
        geocoder = GeocodeClient(client=client)
        session = DiagnosticSession(
            conversation_id,
            diagnoser=DiagnoseClient(client=client),
            store=InMemoryStore(),
            provider_search=ProviderSearchClient(client=client),
            geocoder=geocoder,
            geolocator=_geolocator(args, geocoder),
            image_cache=cache,
            notify=lambda text: print(f"\n[!] {text}", file=sys.stderr),
            on_event=_print_event,
        )
        await session.load()
        result = await session.start_diagnosis()
        if result is None or not result.ok:
            await session.drain()
            return 1

        while not args.once:
            try:
                line = (await _read_line("you> ")).strip()
            except EOFError:
                break
            if not line:
                break
            try:
                await session.send_message(line)
            except DiagnosisError as e:
                print(f"[!] {e}", file=sys.stderr)

        await session.drain()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="homediag", description="Home maintenance image diagnosis")
    parser.add_argument("--log-level", default=LOG_LEVEL)
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the API server")
    serve.add_argument("--host", default=API_HOST)
    serve.add_argument("--port", type=int, default=API_PORT)
    serve.add_argument("--reload", action="store_true")

    diag = sub.add_parser("diagnose", help="diagnose an image against a running server")
    diag.add_argument("image")
    diag.add_argument("--lat", type=float)
    diag.add_argument("--lng", type=float)
    diag.add_argument("--address")
    diag.add_argument("--once", action="store_true", help="exit after the initial diagnosis")

    args = parser.parse_args(argv)
    configure_logging(args.log_level.upper())

    if args.command == "serve":
        uvicorn.run("homediag.server:app", host=args.host, port=args.port, reload=args.reload)
        return 0
    try:
        return asyncio.run(run_diagnose(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
