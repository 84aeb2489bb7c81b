"""Command line entrypoint: run a command under a lock, inspect or clear a lock."""

from __future__ import annotations

import argparse
import subprocess
import sys
import threading
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from redis import Redis

from keylock.core.errors import LockError
from keylock.core.lock import Lock
from keylock.core.locks import StrategyKind, as_text
from keylock.core.settings import LockSettings
from keylock.core.strategies import make_strategy, store_errors
from keylock.core.token import TokenScope
from keylock.utils.logging import get_logger


logger = get_logger("keylock.cli")

EX_TEMPFAIL = 75
EX_NOEXEC = 126
EX_NOTFOUND = 127


def _connection_options() -> argparse.ArgumentParser:
    # Accepted before or after the subcommand; SUPPRESS keeps a subcommand
    # from wiping a value given at the top level.
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--url", default=argparse.SUPPRESS, help="Redis URL (defaults to REDIS_URL)")
    common.add_argument("--config", type=Path, default=argparse.SUPPRESS, help="YAML file with lock settings")
    common.add_argument("--strategy", choices=[kind.value for kind in StrategyKind], default=argparse.SUPPRESS)
    return common


def build_parser() -> argparse.ArgumentParser:
    common = _connection_options()
    parser = argparse.ArgumentParser(
        prog="keylock",
        description="Redis-backed distributed locks.",
        parents=[common],
        epilog="Usage for run: keylock run KEY [options] -- COMMAND...",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", parents=[common], help="Hold KEY while running the command after --")
    run.add_argument("key")
    run.add_argument("--ttl-ms", type=int, help="Lock TTL; renewed every third of it while the command runs")
    run.add_argument("--timeout-ms", type=int, help="How long to wait for the lock")
    run.add_argument("--no-wait", action="store_true", help="Fail immediately if the lock is taken")

    status = sub.add_parser("status", parents=[common], help="Show whether KEY is held")
    status.add_argument("key")

    release = sub.add_parser("release", parents=[common], help="Delete KEY if it still holds TOKEN")
    release.add_argument("key")
    release.add_argument("token")
    return parser


def split_command(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    """Split ``argv`` on the first ``--`` into keylock options and the command."""
    argv = list(argv)
    if "--" not in argv:
        return argv, []
    index = argv.index("--")
    return argv[:index], argv[index + 1 :]


def _load_settings(args: argparse.Namespace) -> LockSettings:
    config = getattr(args, "config", None)
    settings = LockSettings.from_file(config) if config else LockSettings.from_env()
    updates = {}
    if getattr(args, "url", None):
        updates["redis_url"] = args.url
    if getattr(args, "strategy", None):
        updates["strategy"] = StrategyKind(args.strategy)
    if getattr(args, "ttl_ms", None) is not None:
        updates["ttl_ms"] = args.ttl_ms
    # model_copy skips validation; merged values go through the model again.
    return LockSettings._validate({**settings.model_dump(), **updates})


def _keep_alive(lock: Lock, stop: threading.Event) -> None:
    """Push the expiry out every third of the TTL until ``stop`` is set."""
    interval_ms = max(lock.ttl_ms // 3, 1)
    while not stop.wait(interval_ms / 1000.0):
        try:
            extended = lock.extend(interval_ms)
        except LockError as exc:
            logger.warning("Could not extend %s: %s", lock.name, exc)
            return
        if not extended:
            logger.warning("Lost %s while the command was still running", lock.name)
            return


def _run(client: Redis, settings: LockSettings, args: argparse.Namespace) -> int:
    command = list(args.argv)
    if not command:
        logger.error("No command given; usage: keylock run KEY [options] -- COMMAND...")
        return 2

    lock = Lock.from_settings(client, args.key, settings, token_scope=TokenScope.INSTANCE)
    if not lock.acquire(blocking=not args.no_wait, blocking_timeout_ms=args.timeout_ms):
        logger.warning("Lock %s is held by another process", lock.name)
        return EX_TEMPFAIL

    stop = threading.Event()
    keeper = threading.Thread(target=_keep_alive, args=(lock, stop), name=f"keylock-{lock.name}", daemon=True)
    keeper.start()
    try:
        logger.info("Holding %s while running %s", lock.name, command[0])
        return subprocess.run(command, check=False).returncode
    except FileNotFoundError as exc:
        logger.error("Command not found: %s", exc)
        return EX_NOTFOUND
    except OSError as exc:
        logger.error("Cannot run %s: %s", command[0], exc)
        return EX_NOEXEC
    finally:
        stop.set()
        keeper.join()
        lock.release()


def _status(client: Redis, settings: LockSettings, args: argparse.Namespace) -> int:
    key = settings.key(args.key)
    with store_errors(key, "status"):
        token = as_text(client.get(key))
        ttl = client.pttl(key)
    if token is None:
        print(f"{key}: free")
        return 0
    remaining = f"{ttl} ms" if ttl is not None and ttl >= 0 else "no expiry"
    print(f"{key}: held by {token} ({remaining} left)")
    return 0


def _release(client: Redis, settings: LockSettings, args: argparse.Namespace) -> int:
    key = settings.key(args.key)
    released = make_strategy(settings.strategy, client).release(key, args.token)
    print(f"{key}: {'released' if released else 'not held by that token'}")
    return 0 if released else 1


_COMMANDS = {"run": _run, "status": _status, "release": _release}


def main(argv: Optional[Sequence[str]] = None, *, client: Optional[Redis] = None) -> int:
    options, command = split_command(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(options)
    if command and args.command != "run":
        parser.error(f"{args.command} does not take a command after --")
    args.argv = command
    try:
        settings = _load_settings(args)
    except ValueError as exc:
        logger.error("%s", exc)
        return 2
    if client is None:
        client = Redis.from_url(settings.redis_url)
    try:
        return _COMMANDS[args.command](client, settings, args)
    except LockError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
