from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar, Union

from ledger_engine.common.config import FacadeConfig
from ledger_engine.common.errors import InvalidTransactionError, TransactionNotFoundError
from ledger_engine.common.logging import bind_correlation_id, log_event
from ledger_engine.common.timeutils import utc_now
from ledger_engine.ledger.models import Transaction, is_local_pending_id, new_local_pending_id
from ledger_engine.ledger.sorter import sort_transactions
from ledger_engine.persistence.interfaces import DurableTransactionStore, LocalCache, SnapshotRows, Unsubscribe
from ledger_engine.positions.lifecycle import PositionLifecycleManager

T = TypeVar("T")
logger = logging.getLogger(__name__)

# Local cache layout (per user):
# - transactions: mirror of the merged ledger, durable and local-pending alike
# - pending_deletes: durable ids whose delete has not reached the store yet
# - pending_updates: {durable_id: partial record} not yet applied remotely
# - tombstones: content keys of local-pending records deleted or amended while
#   their insert may still land; a durable record matching one is deleted
CACHE_TRANSACTIONS = "transactions"
CACHE_PENDING_DELETES = "pending_deletes"
CACHE_PENDING_UPDATES = "pending_updates"
CACHE_TOMBSTONES = "tombstones"


@dataclass(slots=True)
class ResyncReport:
    synced: dict[str, str] = field(default_factory=dict)
    already_synced: dict[str, str] = field(default_factory=dict)
    deleted: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "synced": dict(self.synced),
            "already_synced": dict(self.already_synced),
            "deleted": list(self.deleted),
            "updated": list(self.updated),
            "failed": list(self.failed),
        }


def _cache_record(tx: Transaction) -> dict[str, Any]:
    rec = tx.to_record()
    rec["id"] = tx.id
    return rec


def _parse_rows(rows: SnapshotRows, *, source: str) -> list[Transaction]:
    out: list[Transaction] = []
    for doc_id, rec in rows:
        try:
            out.append(Transaction.from_record(rec, tx_id=str(doc_id)))
        except InvalidTransactionError as e:
            log_event(logger, "tx.record_invalid", severity="WARNING", source=source, tx_id=str(doc_id), error=str(e))
    return out


class TransactionStoreFacade:
    """
    Single entry point for transaction writes and reads for one user.

    Write path (add/update/delete):
      validate -> link position (best effort) -> durable write raced against
      `write_timeout_s` -> on failure keep going locally (degraded mode)

    Degraded mode never surfaces to callers: the write lands in the local
    cache under a `local_` id and `resync()` pushes it once the durable store
    is reachable again.

    A durable write that loses the race is not retracted. If it later lands,
    the merged read collapses it with its local twin by content, and the
    twin answers to the `local_` id the caller holds. A local copy deleted or
    amended while its insert is still in flight leaves a tombstone; the late
    record matching it is deleted on the next resync.
    """

    def __init__(
        self,
        *,
        durable: DurableTransactionStore,
        cache: LocalCache,
        lifecycle: PositionLifecycleManager,
        user_id: str,
        config: Optional[FacadeConfig] = None,
    ) -> None:
        if not (user_id or "").strip():
            raise ValueError("user_id is required")
        self.durable = durable
        self.cache = cache
        self.lifecycle = lifecycle
        self.user_id = user_id
        self.config = config or FacadeConfig()

        self.lifecycle.attach_reader(self)

        self._degraded = False
        self._locks: dict[str, asyncio.Lock] = {}
        self._resync_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._inflight: set[asyncio.Future] = set()
        self._inflight_inserts: set[asyncio.Future] = set()
        self._unsubscribe: Optional[Unsubscribe] = None
        self.background_errors: list[tuple[str, BaseException]] = []

    # ---- health ----------------------------------------------------------

    @property
    def is_degraded(self) -> bool:
        return self._degraded

    def _mark_degraded(self, op: str, error: BaseException) -> None:
        log_event(
            logger,
            "tx.write.degraded" if not self._degraded else "tx.store.unavailable",
            severity="WARNING",
            user_id=self.user_id,
            op=op,
            error=f"{type(error).__name__}: {error}",
        )
        self._degraded = True

    def _mark_healthy(self, source: str) -> None:
        if not self._degraded:
            return
        self._degraded = False
        log_event(logger, "tx.store.recovered", user_id=self.user_id, source=source, pending=self.pending_count())
        if self.config.resync_on_recovery and self.pending_count() > 0:
            self._spawn(self.resync(), name="resync")

    # ---- background tasks ------------------------------------------------

    def _spawn(self, coro: Awaitable[Any], *, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        self.background_errors.append((task.get_name(), exc))
        log_event(
            logger,
            "tx.background_task_failed",
            severity="ERROR",
            user_id=self.user_id,
            task=task.get_name(),
            error=f"{type(exc).__name__}: {exc}",
        )

    def _on_inflight_done(self, fut: asyncio.Future) -> None:
        self._inflight.discard(fut)
        self._inflight_inserts.discard(fut)
        if fut.cancelled():
            return
        # Retrieve the outcome so a timed-out write never logs "exception was never retrieved".
        exc = fut.exception()
        if exc is not None:
            log_event(logger, "tx.durable_call_failed", severity="DEBUG", user_id=self.user_id, error=str(exc))

    async def drain(self) -> None:
        """Wait for every background follow-up and every dispatched durable call."""
        while self._tasks or self._inflight:
            await asyncio.gather(*list(self._tasks), *list(self._inflight), return_exceptions=True)

    async def _durable_call(self, fn: Callable[..., Awaitable[T]], *args: Any, insert: bool = False) -> T:
        """
        Race one durable-store call against the write timeout.

        The call runs as its own task and is shielded: a timeout stops the
        wait, not the write.
        """
        fut = asyncio.ensure_future(fn(*args))
        self._inflight.add(fut)
        if insert:
            self._inflight_inserts.add(fut)
        fut.add_done_callback(self._on_inflight_done)
        return await asyncio.wait_for(asyncio.shield(fut), timeout=self.config.write_timeout_s)

    def _lock_for(self, asset: str) -> asyncio.Lock:
        key = str(asset).upper()
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ---- local cache -----------------------------------------------------

    def _cached_transactions(self) -> list[Transaction]:
        raw = self.cache.get(CACHE_TRANSACTIONS) or []
        out: list[Transaction] = []
        for rec in raw if isinstance(raw, list) else []:
            try:
                out.append(Transaction.from_record(rec))
            except InvalidTransactionError as e:
                log_event(logger, "tx.cache_record_invalid", severity="WARNING", user_id=self.user_id, error=str(e))
        return out

    def _write_cached_transactions(self, transactions: list[Transaction]) -> None:
        self.cache.set(CACHE_TRANSACTIONS, [_cache_record(tx) for tx in sort_transactions(transactions)])

    def _cache_upsert(self, tx: Transaction) -> None:
        rest = [t for t in self._cached_transactions() if t.id != tx.id]
        self._write_cached_transactions(rest + [tx])

    def _cache_remove(self, tx_id: str) -> None:
        self._write_cached_transactions([t for t in self._cached_transactions() if t.id != tx_id])

    def _pending_deletes(self) -> list[str]:
        raw = self.cache.get(CACHE_PENDING_DELETES)
        return [str(x) for x in raw] if isinstance(raw, list) else []

    def _pending_updates(self) -> dict[str, dict[str, Any]]:
        raw = self.cache.get(CACHE_PENDING_UPDATES)
        return {str(k): dict(v) for k, v in raw.items()} if isinstance(raw, dict) else {}

    def _tombstones(self) -> list[list[Any]]:
        raw = self.cache.get(CACHE_TOMBSTONES)
        return [list(k) for k in raw] if isinstance(raw, list) else []

    def _add_tombstone(self, tx: Transaction) -> None:
        # Only an insert still in flight can land after the local copy is gone.
        if not self._inflight_inserts:
            return
        tombstones = self._tombstones()
        key = list(tx.content_key())
        if key not in tombstones:
            tombstones.append(key)
            self.cache.set(CACHE_TOMBSTONES, tombstones)

    def _queue_update(self, tx_id: str, partial: Mapping[str, Any]) -> None:
        pending = self._pending_updates()
        pending[tx_id] = {**pending.get(tx_id, {}), **partial}
        self.cache.set(CACHE_PENDING_UPDATES, pending)

    def _local_pending(self) -> list[Transaction]:
        return [t for t in self._cached_transactions() if t.is_local_pending]

    def pending_count(self) -> int:
        return (
            len(self._local_pending())
            + len(self._pending_deletes())
            + len(self._pending_updates())
            + len(self._tombstones())
        )

    # ---- read path -------------------------------------------------------

    def _merge(self, durable: list[Transaction]) -> list[Transaction]:
        """
        Cache mirror: durable records (pending deletes dropped, pending
        updates overlaid) plus every local-pending record. Durable wins on id.
        """
        deletes = set(self._pending_deletes())
        updates = self._pending_updates()

        by_id: dict[str, Transaction] = {}
        for tx in durable:
            if tx.id in deletes:
                continue
            partial = updates.get(tx.id or "")
            if partial:
                tx = Transaction.from_record({**_cache_record(tx), **partial}, tx_id=tx.id)
            by_id[tx.id or ""] = tx

        for tx in self._local_pending():
            by_id.setdefault(tx.id or "", tx)
        return list(by_id.values())

    @staticmethod
    def _collapse_twins(transactions: list[Transaction]) -> list[Transaction]:
        # A local-pending copy with the same content as a durable record is a
        # write that landed after its timeout. It stays pending (resync swaps
        # its id) but is hidden from reads.
        durable_keys = {tx.content_key() for tx in transactions if not tx.is_local_pending}
        return [tx for tx in transactions if not (tx.is_local_pending and tx.content_key() in durable_keys)]

    def _settle_tombstones(self, durable: list[Transaction]) -> None:
        """Queue a delete for every durable record that matches a tombstone."""
        tombstones = self._tombstones()
        if not tombstones:
            return
        deletes = self._pending_deletes()
        for tx in durable:
            key = list(tx.content_key())
            if tx.id and key in tombstones:
                tombstones.remove(key)
                if tx.id not in deletes:
                    deletes.append(tx.id)
                log_event(logger, "tx.late_write_tombstoned", severity="WARNING", user_id=self.user_id, tx_id=tx.id)
        self.cache.set(CACHE_PENDING_DELETES, deletes)
        self.cache.set(CACHE_TOMBSTONES, tombstones)

    def _refresh_from_durable(self, durable: list[Transaction]) -> list[Transaction]:
        self._settle_tombstones(durable)
        merged = self._merge(durable)
        self._write_cached_transactions(merged)
        return merged

    async def get_transactions(self, asset: Optional[str] = None) -> list[Transaction]:
        """
        Merged ledger view (durable + local-pending), in ledger order.

        Durable read failures are absorbed: the local cache view is served.
        """
        try:
            rows = await self._durable_call(self.durable.query_by_user, self.user_id)
        except Exception as e:
            self._mark_degraded("read", e)
            merged = self._cached_transactions()
        else:
            merged = self._refresh_from_durable(_parse_rows(rows, source="durable"))
            self._mark_healthy("read")

        merged = self._collapse_twins(merged)
        if asset is not None:
            sym = str(asset).strip().upper()
            merged = [tx for tx in merged if tx.asset == sym]
        return sort_transactions(merged)

    async def list_transactions(self, user_id: str, asset: Optional[str] = None) -> list[Transaction]:
        if user_id != self.user_id:
            raise ValueError(f"facade is scoped to user {self.user_id!r}, not {user_id!r}")
        return await self.get_transactions(asset)

    async def _find(self, tx_id: str) -> Optional[Transaction]:
        """
        Look up a visible transaction by id.

        A `local_` id whose copy is hidden behind a late durable twin resolves
        to the twin, so callers holding the id `add_transaction` returned can
        still edit or delete it.
        """
        visible = await self.get_transactions()
        for tx in visible:
            if tx.id == tx_id:
                return tx
        if not is_local_pending_id(tx_id):
            return None
        local = next((t for t in self._local_pending() if t.id == tx_id), None)
        if local is None:
            return None
        key = local.content_key()
        twin = next((t for t in visible if not t.is_local_pending and t.content_key() == key), None)
        if twin is None:
            return None
        await self._adopt_twin(local, twin)
        return twin

    async def _adopt_twin(self, local: Transaction, twin: Transaction) -> None:
        """
        Retire a local-pending copy in favour of its durable twin.

        Notes edited on the local copy after the insert was dispatched are
        queued as a pending update on the twin.
        """
        self._cache_remove(local.id or "")
        self._cache_upsert(twin)
        changed = twin.changed_fields(local)
        if changed:
            record = local.to_record()
            self._queue_update(twin.id or "", {name: record[name] for name in sorted(changed)})
        if local.position_id and local.id and twin.id:
            try:
                await self.lifecycle.replace_transaction_id(local.position_id, local.id, twin.id)
            except Exception as e:
                log_event(
                    logger,
                    "position.id_swap_failed",
                    severity="WARNING",
                    user_id=self.user_id,
                    position_id=local.position_id,
                    error=f"{type(e).__name__}: {e}",
                )
        log_event(logger, "tx.local_id_replaced", user_id=self.user_id, local_id=local.id, tx_id=twin.id)

    # ---- live subscription -----------------------------------------------

    def on_snapshot(self, rows: SnapshotRows) -> None:
        """Full-set delivery from the live subscription; a healthy signal."""
        self._refresh_from_durable(_parse_rows(rows, source="snapshot"))
        self._mark_healthy("snapshot")

    def on_snapshot_error(self, error: BaseException) -> None:
        self._mark_degraded("subscribe", error)

    def start_live_sync(self) -> None:
        """
        Subscribe to the user's durable transactions.

        Store callbacks may fire on a foreign thread; they are re-dispatched
        onto the running event loop.
        """
        if self._unsubscribe is not None:
            return
        loop = asyncio.get_running_loop()

        def _on_data(rows: SnapshotRows) -> None:
            loop.call_soon_threadsafe(self.on_snapshot, list(rows))

        def _on_error(error: BaseException) -> None:
            loop.call_soon_threadsafe(self.on_snapshot_error, error)

        self._unsubscribe = self.durable.subscribe(self.user_id, _on_data, _on_error)
        log_event(logger, "tx.live_sync.started", user_id=self.user_id)

    def stop_live_sync(self) -> None:
        if self._unsubscribe is None:
            return
        self._unsubscribe()
        self._unsubscribe = None
        log_event(logger, "tx.live_sync.stopped", user_id=self.user_id)

    # ---- write path ------------------------------------------------------

    def _coerce(self, tx: Union[Transaction, Mapping[str, Any]]) -> Transaction:
        if isinstance(tx, Mapping):
            rec = dict(tx)
            rec.setdefault("userId", self.user_id)
            tx = Transaction.from_record(rec)
        if not isinstance(tx, Transaction):
            raise InvalidTransactionError(f"expected a Transaction or mapping (got {type(tx).__name__})")
        if tx.user_id != self.user_id:
            raise InvalidTransactionError(f"transaction belongs to user {tx.user_id!r}, not {self.user_id!r}")
        return tx

    async def _apply_to_position(self, tx: Transaction) -> None:
        if not tx.position_id:
            return
        try:
            await self.lifecycle.record_transaction(tx.position_id, tx)
        except Exception as e:
            log_event(
                logger,
                "position.apply_failed",
                severity="WARNING",
                user_id=self.user_id,
                asset=tx.asset,
                position_id=tx.position_id,
                tx_id=tx.id,
                error=f"{type(e).__name__}: {e}",
            )

    async def add_transaction(self, tx: Union[Transaction, Mapping[str, Any]]) -> Transaction:
        """
        Persist a new transaction and apply it to its position.

        Invalid input raises InvalidTransactionError before any write. Store
        failures never raise: the transaction is kept locally instead.
        """
        tx = self._coerce(tx)
        if tx.id is not None:
            raise InvalidTransactionError("new transactions must not carry an id")
        if tx.created_at is None:
            tx = tx.with_created_at(utc_now())

        with bind_correlation_id():
            async with self._lock_for(tx.asset):
                _position, tx = await self.lifecycle.link_transaction(self.user_id, tx)
                try:
                    durable_id = await self._durable_call(self.durable.insert, tx.to_record(), insert=True)
                except Exception as e:
                    self._mark_degraded("add", e)
                    stored = tx.with_id(new_local_pending_id())
                    log_event(
                        logger, "tx.saved_locally", severity="WARNING", user_id=self.user_id, tx_id=stored.id, asset=tx.asset
                    )
                else:
                    stored = tx.with_id(durable_id)
                    log_event(logger, "tx.saved", user_id=self.user_id, tx_id=durable_id, asset=tx.asset)
                    self._mark_healthy("add")
                self._cache_upsert(stored)
                await self._apply_to_position(stored)
        return stored

    async def update_transaction(self, tx: Transaction) -> Transaction:
        """
        Correct a persisted transaction's editable fields (price, date, notes).

        Always followed by a full replay of the asset's position.
        """
        if not isinstance(tx, Transaction) or not tx.id:
            raise InvalidTransactionError("update requires a Transaction with an id")
        tx = self._coerce(tx)

        existing = await self._find(tx.id)
        if existing is None:
            raise TransactionNotFoundError(tx.id)
        changed = existing.changed_fields(tx)
        if not changed:
            return existing
        amended = existing.amend(**{name: getattr(tx, name) for name in changed})

        with bind_correlation_id():
            async with self._lock_for(amended.asset):
                self._cache_upsert(amended)
                if amended.is_local_pending:
                    if amended.content_key() != existing.content_key():
                        # The original insert may still land with the old content.
                        self._add_tombstone(existing)
                else:
                    record = amended.to_record()
                    partial = {name: record[name] for name in sorted(changed)}
                    try:
                        await self._durable_call(self.durable.update, amended.id, partial)
                    except Exception as e:
                        self._mark_degraded("update", e)
                        self._queue_update(amended.id, partial)
                    else:
                        self._mark_healthy("update")
                log_event(logger, "tx.updated", user_id=self.user_id, tx_id=amended.id, fields=sorted(changed))
            self._spawn(self._replay(amended.asset), name=f"replay:{amended.asset}")
        return amended

    async def delete_transaction(self, tx_id: str) -> bool:
        """
        Remove a transaction. Unknown ids are a no-op (returns False).
        """
        existing = await self._find(tx_id)
        if existing is None:
            log_event(logger, "tx.delete_unknown", severity="WARNING", user_id=self.user_id, tx_id=tx_id)
            return False

        target = existing.id or tx_id
        with bind_correlation_id():
            async with self._lock_for(existing.asset):
                self._cache_remove(target)
                # A queued correction is moot once the record is gone.
                updates = self._pending_updates()
                if updates.pop(target, None) is not None:
                    self.cache.set(CACHE_PENDING_UPDATES, updates)
                if existing.is_local_pending:
                    # Its insert may have timed out rather than failed.
                    self._add_tombstone(existing)
                else:
                    try:
                        await self._durable_call(self.durable.delete, target)
                    except Exception as e:
                        self._mark_degraded("delete", e)
                        pending = self._pending_deletes()
                        if target not in pending:
                            pending.append(target)
                        self.cache.set(CACHE_PENDING_DELETES, pending)
                    else:
                        self._mark_healthy("delete")
                log_event(logger, "tx.deleted", user_id=self.user_id, tx_id=target, asset=existing.asset)
            self._spawn(self._replay(existing.asset), name=f"replay:{existing.asset}")
        return True

    async def _replay(self, asset: str) -> None:
        async with self._lock_for(asset):
            await self.lifecycle.recalculate(self.user_id, asset)

    # ---- resync ----------------------------------------------------------

    async def resync(self) -> ResyncReport:
        """
        Push everything the local cache holds that the durable store lacks.

        - local-pending transactions are inserted unless an identical durable
          record already exists (a previous partial batch or a late write)
        - durable records matching a tombstone are deleted; tombstones expire
          once no insert is in flight
        - pending deletes and updates are replayed
        - failures stay pending for the next attempt

        Idempotent: a second call with nothing pending does nothing.
        """
        with bind_correlation_id():
            async with self._resync_lock:
                report = ResyncReport()
                if self.pending_count() == 0:
                    return report

                try:
                    rows = await self._durable_call(self.durable.query_by_user, self.user_id)
                except Exception as e:
                    self._mark_degraded("resync", e)
                    report.failed.extend(t.id for t in self._local_pending() if t.id)
                    report.failed.extend(self._pending_deletes())
                    report.failed.extend(self._pending_updates())
                    return report

                durable = _parse_rows(rows, source="resync")
                self._settle_tombstones(durable)
                if not self._inflight_inserts and self._tombstones():
                    # No insert is still travelling; nothing can match them any more.
                    self.cache.remove(CACHE_TOMBSTONES)

                doomed = set(self._pending_deletes())
                durable_by_key = {tx.content_key(): tx for tx in durable if tx.id not in doomed}
                touched: set[str] = set()

                for local in sort_transactions(self._local_pending()):
                    async with self._lock_for(local.asset):
                        twin = durable_by_key.get(local.content_key())
                        if twin is not None:
                            report.already_synced[local.id] = twin.id
                        else:
                            try:
                                durable_id = await self._durable_call(self.durable.insert, local.to_record(), insert=True)
                            except Exception as e:
                                self._mark_degraded("resync", e)
                                report.failed.append(local.id)
                                continue
                            report.synced[local.id] = durable_id
                            twin = durable_by_key[local.content_key()] = local.with_id(durable_id)

                        await self._adopt_twin(local, twin)
                        touched.add(local.asset)

                deletes = self._pending_deletes()
                for tx_id in list(deletes):
                    try:
                        await self._durable_call(self.durable.delete, tx_id)
                    except Exception as e:
                        self._mark_degraded("resync", e)
                        report.failed.append(tx_id)
                        continue
                    deletes.remove(tx_id)
                    report.deleted.append(tx_id)
                self.cache.set(CACHE_PENDING_DELETES, deletes)

                updates = self._pending_updates()
                for tx_id, partial in list(updates.items()):
                    try:
                        await self._durable_call(self.durable.update, tx_id, partial)
                    except TransactionNotFoundError:
                        # Deleted remotely in the meantime; nothing left to correct.
                        updates.pop(tx_id)
                        continue
                    except Exception as e:
                        self._mark_degraded("resync", e)
                        report.failed.append(tx_id)
                        continue
                    updates.pop(tx_id)
                    report.updated.append(tx_id)
                self.cache.set(CACHE_PENDING_UPDATES, updates)

                if report.ok:
                    self._mark_healthy("resync")

                log_event(
                    logger,
                    "tx.resync.completed",
                    severity="INFO" if report.ok else "WARNING",
                    user_id=self.user_id,
                    synced=len(report.synced),
                    already_synced=len(report.already_synced),
                    deleted=len(report.deleted),
                    updated=len(report.updated),
                    failed=len(report.failed),
                )

            for asset in sorted(touched):
                await self._replay(asset)
        return report
