"""CLI entrypoint to take, hold and release one lock."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

from coordlock.core.factory import build_engine
from coordlock.core.models import LockMode, LockRequest
from coordlock.core.settings import LockSettings
from coordlock.utils.logging import get_logger


logger = get_logger("LockCLI")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Acquire a distributed lock, hold it, then release it.")
    parser.add_argument("key", help="Name of the contended resource")
    parser.add_argument("--config", type=Path, default=None, help="Path to lock settings YAML")
    parser.add_argument("--backend", choices=["redis", "zookeeper", "etcd"], default=None)
    parser.add_argument("--token", default=None, help="Ownership token (random when omitted)")
    parser.add_argument("--ttl", type=int, default=5, help="Lock expiry in seconds")
    parser.add_argument("--hold", type=float, default=0.0, help="Seconds to hold the lock before releasing")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in LockMode],
        default=LockMode.ADVISORY.value,
        help="etcd only: advisory key write or server-side lock",
    )
    parser.add_argument("--lease-id", type=int, default=None, help="etcd only: lease id (defaults to current time)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = LockSettings.from_file(args.config) if args.config else LockSettings.from_env()

    request = LockRequest(
        key=args.key,
        ttl=args.ttl,
        mode=LockMode(args.mode),
        lease_id=args.lease_id or int(time.time()),
    )
    if args.token:
        request.token = args.token

    with build_engine(settings, args.backend) as engine:
        outcome = engine.acquire(request)
        if not outcome.acquired:
            logger.error("Could not acquire %s: %s", args.key, outcome.error)
            if outcome.handle is not None:
                # A timed-out queue entry is still registered; withdraw it.
                engine.release(outcome.handle)
            return 1

        logger.info("Acquired %s (token %s)", args.key, request.token)
        if args.hold > 0:
            time.sleep(args.hold)

        released = engine.release(outcome.handle)
        if not released.released:
            logger.error("Release of %s failed: %s", args.key, released.error)
            return 2
        logger.info("Released %s (%s)", args.key, released.status.value)
    return 0


if __name__ == "__main__":
    sys.exit(main())
