"""Two-way reconciliation between the local store and the remote backend.

A pass pushes every pending row (uploading evidence files first), then pulls
owner-scoped rows back, table by table in dependency order. Every row is its
own short transaction on the local side and an idempotent upsert on the
remote side, so an interrupted pass loses nothing: whatever was not marked
synced is simply pushed again next time.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Callable, Optional, Sequence

from vshield.domain import PullAction, SyncResult
from vshield.errors import InvariantViolation, RemoteError, RemoteRejectedError, StoreWriteError
from vshield.logging import PprintLogger
from vshield.storage.interfaces import RecordStoreInterface, RowDict
from vshield.storage.tables import LOCAL_ONLY_COLUMNS
from vshield.sync.conflicts import decide
from vshield.sync.connectivity import ConnectivityMonitor
from vshield.sync.remote import RemoteBackendInterface
from vshield.sync.tables import SYNC_TABLES, SyncTable, blob_content_type, blob_key

logger = logging.getLogger(__name__)

NO_CONNECTIVITY = "no connectivity"
CONNECTIVITY_LOST = "connectivity lost"


class _ConnectivityLost(Exception):
    pass


@dataclass
class _PassStats:
    pushed: int = 0
    pulled: int = 0
    failed: int = 0
    skipped: int = 0
    fetch_failed: bool = False
    errors: list[str] = field(default_factory=list)

    def result(self, reason: str | None = None) -> SyncResult:
        return SyncResult(
            pushed=self.pushed,
            pulled=self.pulled,
            success=reason is None and not self.fetch_failed,
            reason=reason,
            failed=self.failed,
            skipped=self.skipped,
            errors=tuple(self.errors),
        )


def _chunks(items: Sequence[str], size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class SyncReconciler:
    """
    Pushes local changes and pulls remote ones.

    Only one pass runs at a time: concurrent `reconcile()` callers share the
    pass in flight. When connectivity returns during a pass, one more pass is
    run after it instead of a second concurrent one.

    Example:
        ```python
        reconciler = SyncReconciler(store, remote, monitor)
        reconciler.bind(monitor)
        result = await reconciler.reconcile()
        ```
    """

    def __init__(
        self,
        store: RecordStoreInterface,
        remote: RemoteBackendInterface,
        monitor: Optional[ConnectivityMonitor] = None,
        fetch_chunk_size: int = 100,
        tables: Sequence[SyncTable] = SYNC_TABLES,
    ):
        self.store = store
        self.remote = remote
        self.monitor = monitor
        self.fetch_chunk_size = fetch_chunk_size
        self.tables = tuple(tables)
        self._inflight: Optional[asyncio.Task] = None
        self._rerun = False
        self._background: set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._log = PprintLogger(logger)

    @property
    def is_running(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def reconcile(self) -> SyncResult:
        """Run a reconciliation pass, or join the one already running."""
        if not self.is_running:
            self._inflight = asyncio.create_task(self._run())
        return await asyncio.shield(self._inflight)

    async def _run(self) -> SyncResult:
        result = await self._pass()
        while self._rerun:
            self._rerun = False
            result = await self._pass()
        return result

    def bind(self, monitor: ConnectivityMonitor) -> Callable[[], None]:
        """Start a pass on every offline -> online transition of `monitor`."""
        self.unbind()
        self.monitor = monitor
        self._unsubscribe = monitor.on_change(self._on_connectivity_change)
        return self.unbind

    def unbind(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_connectivity_change(self, connected: bool) -> None:
        if not connected:
            return
        if self.is_running:
            self._rerun = True
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Connectivity restored outside an event loop; reconciliation not started")
            return
        task = loop.create_task(self.reconcile())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_idle(self) -> None:
        """Wait for the running pass, and any pass it scheduled, to finish."""
        while self.is_running or self._background:
            if self._inflight is not None:
                await asyncio.gather(self._inflight, return_exceptions=True)
            if self._background:
                await asyncio.gather(*list(self._background), return_exceptions=True)

    def _connected(self) -> bool:
        return self.monitor is None or self.monitor.is_connected

    def _ensure_connected(self) -> None:
        if not self._connected():
            raise _ConnectivityLost()

    async def _pass(self) -> SyncResult:
        if not self._connected():
            logger.info("Skipping reconciliation: %s", NO_CONNECTIVITY)
            return SyncResult(success=False, reason=NO_CONNECTIVITY)
        stats = _PassStats()
        try:
            await self._push(stats)
            await self._pull(stats)
        except _ConnectivityLost:
            logger.warning("Reconciliation aborted: %s", CONNECTIVITY_LOST)
            result = stats.result(reason=CONNECTIVITY_LOST)
        else:
            result = stats.result()
        self._log.info(result)
        return result

    # --- Push ---

    async def _push(self, stats: _PassStats) -> None:
        for table in self.tables:
            rows = await self.store.pending_rows(table.name)
            if rows:
                logger.debug("Pushing %d %s rows", len(rows), table.name)
            for row in rows:
                self._ensure_connected()
                await self._push_row(table, row, stats)

    async def _upload(self, table: SyncTable, row: RowDict) -> str | None:
        local_path = row.get("local_path")
        key = blob_key(self.remote.owner_id, table, row)
        try:
            if not local_path or not Path(local_path).is_file():
                raise FileNotFoundError(local_path)
            uri = await self.remote.upload(key, local_path, blob_content_type(table, row))
        except OSError as e:
            logger.warning(
                "Evidence file for %s %s is missing or unreadable (%s); pushing metadata only",
                table.name,
                row["id"],
                e,
            )
            return None
        await self.store.record_remote_uri(table.name, row["id"], uri)
        return uri

    async def _push_row(self, table: SyncTable, row: RowDict, stats: _PassStats) -> None:
        row_id = row["id"]
        try:
            if table.blob_kind is not None and not row.get("remote_uri"):
                uri = await self._upload(table, row)
                if uri is not None:
                    row = {**row, "remote_uri": uri}
            payload = {name: value for name, value in row.items() if name not in LOCAL_ONLY_COLUMNS}
            if table.owner_scoped:
                payload["owner_id"] = self.remote.owner_id
            saved = await self.remote.upsert(table.name, payload)
        except RemoteRejectedError as e:
            logger.error("Remote rejected %s %s: %s", table.name, row_id, e)
            try:
                await self.store.mark_failed(table.name, row_id, row.get("updated_at"))
            except StoreWriteError as write_error:
                logger.error("Could not mark %s %s failed: %s", table.name, row_id, write_error)
            stats.failed += 1
            stats.errors.append(f"{table.name} {row_id}: {e}")
            return
        except (RemoteError, StoreWriteError) as e:
            logger.warning("Could not push %s %s, will retry: %s", table.name, row_id, e)
            stats.failed += 1
            stats.errors.append(f"{table.name} {row_id}: {e}")
            return

        server_updated_at = saved.get("updated_at") if "updated_at" in row else None
        if not await self.store.mark_synced(table.name, row_id, row.get("updated_at"), server_updated_at):
            logger.debug("%s %s changed while being pushed; left pending", table.name, row_id)
        stats.pushed += 1

    # --- Pull ---

    async def _fetch(self, table: SyncTable) -> list[RowDict]:
        if table.parent_table is None:
            return await self.remote.fetch(table.name, owner_id=self.remote.owner_id)
        parent_ids = await self.store.list_ids(table.parent_table)
        rows: list[RowDict] = []
        for chunk in _chunks(parent_ids, self.fetch_chunk_size):
            self._ensure_connected()
            rows.extend(await self.remote.fetch(table.name, parent_field=table.parent_field, parent_ids=chunk))
        return rows

    async def _pull(self, stats: _PassStats) -> None:
        for table in self.tables:
            self._ensure_connected()
            try:
                rows = await self._fetch(table)
            except RemoteError as e:
                logger.warning("Could not fetch %s: %s", table.name, e)
                stats.fetch_failed = True
                stats.errors.append(f"fetch {table.name}: {e}")
                continue
            policy = partial(decide, table)
            for row in rows:
                try:
                    action = await self.store.apply_remote(table.name, row, policy)
                except (InvariantViolation, StoreWriteError) as e:
                    logger.warning("Skipped remote %s %s: %s", table.name, row.get("id"), e)
                    stats.skipped += 1
                    stats.errors.append(f"{table.name} {row.get('id')}: {e}")
                    continue
                if action.applied:
                    stats.pulled += 1
                elif action == PullAction.SKIP_PENDING:
                    stats.skipped += 1
