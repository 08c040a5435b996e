"""
Dedup/Debounce Gate

Per-transaction idempotency in front of every ledger re-read and store
write. A burst of notifications for one transaction hash collapses into a
single unit of work that runs after a short quiet period.

Admission order:
1. STALE if the block is at or below the stream watermark
2. DUPLICATE if the hash is in flight (a pending debounce timer is reset)
3. DUPLICATE if the hash is committed (memory first, then the store)
4. ADMIT otherwise

Scheduled units of one stream run one at a time, and each re-checks the
watermark before its work starts. A unit whose block was overtaken while it
waited is released without running, so once block B commits nothing at or
below B commits afterwards.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Dict, Callable, Awaitable

from .types import AdmitResult, StaleEvent
from .watermark import WatermarkTracker

logger = logging.getLogger(__name__)

# Work returns True once its unit is durably recorded, False to abandon it
UnitOfWork = Callable[[], Awaitable[bool]]


@dataclass
class _InFlight:
    tx_hash: str
    block_number: int
    stream: str
    work: Optional[UnitOfWork] = None
    timer: Optional[asyncio.TimerHandle] = None
    task: Optional[asyncio.Task] = None
    done: Optional[asyncio.Future] = None
    notifications: int = 1


class DedupGate:
    """Admission gate keyed by transaction hash"""

    def __init__(
        self,
        watermarks: WatermarkTracker,
        is_committed: Optional[Callable[[str], Awaitable[bool]]] = None,
        debounce_seconds: float = 0.3,
        committed_cache_size: int = 10000,
        on_superseded: Optional[Callable[[str, int, str], None]] = None
    ):
        self.watermarks = watermarks
        self.is_committed = is_committed
        self.debounce_seconds = debounce_seconds
        self.committed_cache_size = committed_cache_size
        self.on_superseded = on_superseded

        self._in_flight: Dict[str, _InFlight] = {}
        self._committed: "OrderedDict[str, None]" = OrderedDict()
        self._stream_locks: Dict[str, asyncio.Lock] = {}

    async def admit(
        self,
        tx_hash: str,
        block_number: int,
        stream: str,
        work: Optional[UnitOfWork] = None
    ) -> AdmitResult:
        """
        Admit a notification.

        With work, the unit runs once after the debounce window and the gate
        commits or releases the hash itself. Without work, the caller must
        call commit() or release().
        """
        tx_hash = tx_hash.lower()

        if self.watermarks.is_stale(stream, block_number):
            return AdmitResult.STALE

        entry = self._in_flight.get(tx_hash)
        if entry is not None:
            entry.notifications += 1
            if entry.timer is not None:
                if work is not None:
                    entry.work = work
                self._schedule(entry)
            return AdmitResult.DUPLICATE

        if tx_hash in self._committed:
            self._committed.move_to_end(tx_hash)
            return AdmitResult.DUPLICATE

        entry = _InFlight(tx_hash=tx_hash, block_number=block_number, stream=stream, work=work)
        self._in_flight[tx_hash] = entry

        if self.is_committed is not None:
            try:
                committed = await self.is_committed(tx_hash)
            except Exception:
                self._in_flight.pop(tx_hash, None)
                raise
            if committed:
                self._in_flight.pop(tx_hash, None)
                self._remember(tx_hash)
                return AdmitResult.DUPLICATE

        if self._in_flight.get(tx_hash) is not entry:
            # Cancelled during the store lookup
            return AdmitResult.DUPLICATE

        if entry.work is not None:
            self._schedule(entry)
        return AdmitResult.ADMIT

    def _schedule(self, entry: _InFlight):
        """Start or restart the debounce timer"""
        loop = asyncio.get_running_loop()
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.done is None:
            entry.done = loop.create_future()
        entry.timer = loop.call_later(self.debounce_seconds, self._fire, entry)

    def _fire(self, entry: _InFlight):
        entry.timer = None
        if self._in_flight.get(entry.tx_hash) is not entry:
            return
        entry.task = asyncio.ensure_future(self._run(entry))

    async def _run(self, entry: _InFlight):
        lock = self._stream_locks.setdefault(entry.stream, asyncio.Lock())
        try:
            async with lock:
                self.watermarks.ensure_fresh(entry.stream, entry.block_number)
                recorded = await entry.work()
        except StaleEvent as e:
            self._supersede(entry, e)
        except asyncio.CancelledError:
            self.release(entry.tx_hash)
            raise
        except Exception as e:
            logger.error(f"Unit of work for {entry.tx_hash} failed: {e}")
            self.release(entry.tx_hash)
        else:
            if recorded:
                self.commit(entry.tx_hash, entry.block_number, entry.stream)
            else:
                self.release(entry.tx_hash)
        finally:
            if entry.done is not None and not entry.done.done():
                entry.done.set_result(None)

    def _supersede(self, entry: _InFlight, reason: StaleEvent):
        """Drop a unit whose block fell to or below the watermark while it waited"""
        self.release(entry.tx_hash)
        logger.info(f"Skipping {entry.tx_hash}: {reason}")
        if self.on_superseded is not None:
            self.on_superseded(entry.tx_hash, entry.block_number, entry.stream)

    def commit(self, tx_hash: str, block_number: int, stream: str):
        """Move a hash from in-flight to committed and advance the watermark"""
        tx_hash = tx_hash.lower()
        self._in_flight.pop(tx_hash, None)
        self._remember(tx_hash)
        self.watermarks.advance(stream, block_number)

    def release(self, tx_hash: str):
        """Drop the in-flight marker so the next delivery retries"""
        entry = self._in_flight.pop(tx_hash.lower(), None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
            if entry.done is not None and not entry.done.done():
                entry.done.set_result(None)

    def _remember(self, tx_hash: str):
        self._committed[tx_hash] = None
        self._committed.move_to_end(tx_hash)
        while len(self._committed) > self.committed_cache_size:
            self._committed.popitem(last=False)

    def is_in_flight(self, tx_hash: str) -> bool:
        return tx_hash.lower() in self._in_flight

    def notifications(self, tx_hash: str) -> int:
        entry = self._in_flight.get(tx_hash.lower())
        return entry.notifications if entry else 0

    @property
    def pending(self) -> int:
        return len(self._in_flight)

    async def drain(self):
        """Wait until every scheduled unit has finished"""
        while True:
            waiting = [e.done for e in self._in_flight.values() if e.done is not None and not e.done.done()]
            if not waiting:
                return
            await asyncio.gather(*waiting)

    async def cancel_all(self):
        """Abandon every pending unit without committing it"""
        entries = list(self._in_flight.values())
        self._in_flight.clear()

        tasks = []
        for entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
                entry.timer = None
            if entry.task is not None and not entry.task.done():
                entry.task.cancel()
                tasks.append(entry.task)
            if entry.done is not None and not entry.done.done():
                entry.done.set_result(None)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if entries:
            logger.info(f"Abandoned {len(entries)} in-flight units")
