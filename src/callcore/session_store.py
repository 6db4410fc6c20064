"""Tiered per-call session storage.

Reads try the process-local cache, then the shared redis cache, then the
durable document store. Writes land in the local tier immediately and in
redis before the turn returns; the durable copy is written in the
background except at checkpoints (every N turns, or on a transfer or
booking), which are awaited so the call survives a worker crash.

No storage failure ever fails a turn: a dead fast cache means durable
reads and synchronous durable writes, a dead durable store means a fresh
in-memory session.
"""

import asyncio
import json
import logging
import time
from typing import Optional

from callcore.cache import FastCache, LocalTTLCache
from callcore.errors import SessionStoreUnavailable
from callcore.memory import MemoryStore
from callcore.session import CallSession
from callcore.states import Lane
from callcore.store import DocumentStore
from callcore.transcript import build_archive

logger = logging.getLogger(__name__)

SESSION_TTL = 4 * 3600
CHECKPOINT_EVENTS = {"transfer", "booking"}
SUCCESS_OUTCOMES = {"booked", "resolved"}


def _key(call_id: str) -> str:
    return f"session:{call_id}"


class SessionStore:
    def __init__(
        self,
        local: LocalTTLCache | None = None,
        cache: FastCache | None = None,
        store: DocumentStore | None = None,
        memory: MemoryStore | None = None,
    ):
        self.local = local or LocalTTLCache()
        self.cache = cache
        self.store = store
        self.memory = memory
        self._background: set = set()

    async def get(self, call_id: str, tenant_id: str, caller_id: str = "") -> CallSession:
        key = _key(call_id)
        session = self.local.get(key)
        if session is not None:
            return session

        if self.cache is not None:
            try:
                raw = await self.cache.get(key)
                if raw:
                    session = CallSession.from_dict(json.loads(raw))
                    self.local.set(key, session)
                    return session
            except SessionStoreUnavailable as e:
                logger.warning("Fast cache unavailable for %s, reading durable store: %s", call_id, e)

        if self.store is not None:
            try:
                data = await self.store.get(tenant_id, key)
                if data:
                    session = CallSession.from_dict(data)
                    self.local.set(key, session)
                    return session
            except SessionStoreUnavailable as e:
                logger.error("Durable store unavailable for %s, starting in-memory session: %s", call_id, e)

        session = CallSession(
            call_id=call_id,
            tenant_id=tenant_id,
            caller_id=caller_id,
            start_time=time.time(),
        )
        self.local.set(key, session)
        logger.info("New session %s for tenant %s", call_id, tenant_id)
        return session

    async def update(self, session: CallSession, event: str = "", checkpoint_every: int = 3) -> None:
        """Persist the session after a turn.

        ``event`` is "transfer" or "booking" when the turn produced one;
        either forces a synchronous durable checkpoint.
        """
        key = _key(session.call_id)
        self.local.set(key, session)

        fast_cache_ok = False
        if self.cache is not None:
            try:
                await self.cache.set(key, json.dumps(session.to_dict()), SESSION_TTL)
                fast_cache_ok = True
            except SessionStoreUnavailable as e:
                logger.warning("Fast cache write failed for %s, writing durable store directly: %s", session.call_id, e)

        due = (
            event in CHECKPOINT_EVENTS
            or session.turn_count - session.last_checkpoint_turn >= checkpoint_every
            or not fast_cache_ok
        )
        if due:
            await self.checkpoint(session)
        elif self.store is not None:
            self._spawn(self._safe_put(session.tenant_id, key, session.to_dict()))

    async def checkpoint(self, session: CallSession) -> bool:
        """Synchronous durable write. Returns False if the store is down."""
        if self.store is None:
            return False
        previous = session.last_checkpoint_turn
        session.last_checkpoint_turn = session.turn_count
        try:
            await self.store.put(session.tenant_id, _key(session.call_id), session.to_dict())
        except SessionStoreUnavailable as e:
            session.last_checkpoint_turn = previous
            logger.error("Checkpoint failed for %s at turn %d: %s", session.call_id, session.turn_count, e)
            return False
        logger.debug("Checkpointed %s at turn %d", session.call_id, session.turn_count)
        return True

    async def finalize(self, call_id: str, tenant_id: str, outcome: str = "") -> Optional[dict]:
        """Archive the call and fold its outcome into memory."""
        session = await self.get(call_id, tenant_id)
        if session.turn_count == 0:
            logger.warning("Finalize for %s with no turns, nothing to archive", call_id)
            self.local.delete(_key(call_id))
            return None

        if outcome:
            session.outcome = outcome
        elif session.booking_requested:
            session.outcome = "booked"
        elif not session.outcome:
            session.outcome = "abandoned"
        session.lane = Lane.CLOSED

        archive = build_archive(session, end_time=time.time())
        if self.store is not None:
            try:
                await self.store.put(tenant_id, f"archive:{call_id}", archive)
            except SessionStoreUnavailable as e:
                logger.error("Archive write failed for %s: %s", call_id, e)

        if self.memory is not None:
            success = session.outcome in SUCCESS_OUTCOMES
            for path in session.served_scenarios:
                await self.memory.record_outcome(tenant_id, path, success)

        self.local.delete(_key(call_id))
        if self.cache is not None:
            try:
                await self.cache.delete(_key(call_id))
            except SessionStoreUnavailable as e:
                logger.warning("Fast cache cleanup failed for %s: %s", call_id, e)

        logger.info("Finalized %s outcome=%s turns=%d", call_id, session.outcome, session.turn_count)
        return archive

    # ── Background writes ──

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _safe_put(self, tenant_id: str, key: str, document: dict):
        try:
            await self.store.put(tenant_id, key, document)
        except SessionStoreUnavailable as e:
            logger.warning("Background session write failed for %s: %s", key, e)

    async def drain(self):
        """Wait for in-flight background writes (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
