from __future__ import annotations

import argparse
import asyncio
import sys

from abuseguard.core.logging import configure_logging
from abuseguard.persistence.db import SessionLocal
from abuseguard.services.overrides import OverrideRequest, perform_manual_override


def _parse_cap(raw: str) -> tuple[str, int]:
    # Accept cap_type=value pairs from the command line.
    cap_type, sep, value = raw.partition("=")
    if not sep:
        raise argparse.ArgumentTypeError("caps must look like cap_type=value")
    try:
        return cap_type.strip(), int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"cap value for {cap_type} must be an integer") from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Unsuspend a project and/or raise its caps")
    parser.add_argument("--project", required=True, help="Project identifier")
    parser.add_argument("--action", required=True, choices=["unsuspend", "increase_caps", "both"])
    parser.add_argument("--reason", required=True, help="Why the override is needed")
    parser.add_argument("--performed-by", required=True, help="Operator identity recorded in the audit trail")
    parser.add_argument("--cap", action="append", type=_parse_cap, default=[], help="cap_type=value, repeatable")
    parser.add_argument("--notes", default=None)
    return parser


async def _run(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        result = await perform_manual_override(
            session=session,
            request=OverrideRequest(
                project_id=args.project,
                action=args.action,
                reason=args.reason,
                performed_by=args.performed_by,
                new_caps=dict(args.cap) or None,
                notes=args.notes,
            ),
        )
    if not result.success:
        print(f"override failed: {result.error}", file=sys.stderr)
        return 1
    print(f"override {result.override_id} applied")
    print(f"  status: {result.previous_status} -> {result.new_status}")
    if result.new_caps is not None:
        for cap_type, value in sorted(result.new_caps.items()):
            previous = (result.previous_caps or {}).get(cap_type)
            print(f"  {cap_type}: {previous} -> {value}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
