"""Command line entry point.

Usage:
  vshield migrate
  vshield status [--project PROJECT_ID]
  vshield verify CLAIM_ID
  vshield sync [--retry-failed]

Global options (before the subcommand): --config PATH, --db PATH, --log-level LEVEL.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Sequence

from pydantic import BaseModel

from vshield.config import VShieldConfig, load_config
from vshield.errors import RecordNotFoundError, VShieldError
from vshield.logging import configure_logging, setup_logging
from vshield.storage.sqlite import SQLiteRecordStore
from vshield.sync.connectivity import ConnectivityMonitor
from vshield.sync.reconciler import SyncReconciler
from vshield.sync.remote import HttpRemoteBackend

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NOT_FOUND = 2

logger = setup_logging(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vshield",
        description="Offline-first evidence store for construction variation claims.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to vshield.toml (default: $VSHIELD_CONFIG or ./vshield.toml)")
    parser.add_argument("--db", default=None, help="SQLite database path (overrides the config file)")
    parser.add_argument("--log-level", default=None, help="Logging level, e.g. DEBUG or INFO")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("migrate", help="Create or upgrade the local database schema")

    status = subparsers.add_parser("status", help="Show claim totals and the reconciliation backlog")
    status.add_argument("--project", default=None, help="Limit totals to one project id")

    verify = subparsers.add_parser("verify", help="Re-hash a claim's evidence files")
    verify.add_argument("claim_id", help="Claim id to verify")

    sync = subparsers.add_parser("sync", help="Run one reconciliation pass with the remote backend")
    sync.add_argument("--retry-failed", action="store_true", help="Requeue rows previously rejected by the server")
    return parser


def _emit(model: BaseModel) -> None:
    print(model.model_dump_json(indent=2))


async def _migrate(store: SQLiteRecordStore, args: argparse.Namespace, config: VShieldConfig) -> int:
    print(f"Schema version {store.schema_version} at {store.db_path}")
    return EXIT_OK


async def _status(store: SQLiteRecordStore, args: argparse.Namespace, config: VShieldConfig) -> int:
    _emit(await store.dashboard_stats(args.project))
    _emit(await store.sync_backlog())
    return EXIT_OK


async def _verify(store: SQLiteRecordStore, args: argparse.Namespace, config: VShieldConfig) -> int:
    try:
        report = await store.verify_claim_integrity(args.claim_id)
    except RecordNotFoundError as e:
        print(str(e), file=sys.stderr)
        return EXIT_NOT_FOUND
    _emit(report)
    return EXIT_OK if report.ok else EXIT_FAILED


async def _sync(store: SQLiteRecordStore, args: argparse.Namespace, config: VShieldConfig) -> int:
    if not config.sync_enabled:
        print("Remote sync is not configured (set remote.base_url and remote.owner_id)", file=sys.stderr)
        return EXIT_FAILED
    if args.retry_failed:
        await store.requeue_failed()
    async with HttpRemoteBackend.from_config(config.remote) as remote:
        monitor = ConnectivityMonitor()
        await monitor.check(remote.ping)
        reconciler = SyncReconciler(store, remote, monitor, fetch_chunk_size=config.sync.fetch_chunk_size)
        result = await reconciler.reconcile()
    _emit(result)
    return EXIT_OK if result.success else EXIT_FAILED


_COMMANDS = {
    "migrate": _migrate,
    "status": _status,
    "verify": _verify,
    "sync": _sync,
}


async def _run(args: argparse.Namespace, config: VShieldConfig) -> int:
    store = SQLiteRecordStore(args.db or config.store.db_path, wal=config.store.wal)
    async with store:
        return await _COMMANDS[args.command](store, args, config)


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    config = load_config(args.config)
    configure_logging(args.log_level or config.logging.level)
    try:
        return asyncio.run(_run(args, config))
    except (VShieldError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
