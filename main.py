"""
Booking engine command-line entry point.

Resolves a builder's bookable slots from JSON files, for checking
availability rules without running the web application.

Usage:
    python main.py slots --availability builder.json --date 2026-03-02 --timezone Europe/London
    python main.py slots --availability builder.json --date 2026-03-02 --timezone UTC \
        --bookings bookings.json --slot-minutes 45
"""

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as SchemaError

from booking_engine.config import settings
from booking_engine.errors import BookingEngineError
from booking_engine.scheduling.availability import AvailabilityResolver
from booking_engine.schemas.availability_schema import BuilderAvailability, TimeSlot

logger = logging.getLogger(__name__)


def _read_json(path: str):
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _run_slots(args: argparse.Namespace) -> int:
    availability = BuilderAvailability.model_validate(_read_json(args.availability))
    occupied: list[TimeSlot] = []
    if args.bookings:
        occupied = TypeAdapter(list[TimeSlot]).validate_python(_read_json(args.bookings))

    resolver = AvailabilityResolver(settings.availability)
    slots = resolver.resolve_slots(
        date.fromisoformat(args.date),
        availability,
        occupied,
        args.timezone,
        slot_minutes=args.slot_minutes,
        buffer_minutes=args.buffer_minutes,
    )
    logger.info("Resolved %d slot(s) for builder %s on %s", len(slots), availability.builder_id, args.date)
    print(json.dumps([
        {"start_time": s.start_time.isoformat(), "end_time": s.end_time.isoformat()}
        for s in slots
    ], indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="booking-engine", description=__doc__.splitlines()[1])
    commands = parser.add_subparsers(dest="command", required=True)

    slots = commands.add_parser("slots", help="Resolve bookable slots for one day")
    slots.add_argument("--availability", required=True, help="BuilderAvailability JSON file")
    slots.add_argument("--date", required=True, help="Builder-local date, YYYY-MM-DD")
    slots.add_argument("--timezone", default="UTC", help="Client IANA timezone")
    slots.add_argument("--bookings", help="JSON list of occupied {start_time, end_time}")
    slots.add_argument("--slot-minutes", type=int, help="Override the slot length")
    slots.add_argument("--buffer-minutes", type=int, help="Override the buffer between slots")
    slots.set_defaults(handler=_run_slots)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.handler(args)
    except (BookingEngineError, SchemaError, ValueError, OSError) as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
