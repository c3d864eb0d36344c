"""Pool of remote browser sessions with exclusive ownership."""

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Callable, Collection, Coroutine, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from grid_runner.backends.base import NodeProvisioner
from grid_runner.errors import UnavailableError
from grid_runner.models.session import SessionHandle, SessionStatus
from grid_runner.models.unit import Capability

log = logging.getLogger(__name__)


@dataclass(kw_only=True)
class _PoolEntry:
    handle: SessionHandle
    status: SessionStatus = "idle"
    leased_at: float | None = None


@dataclass(kw_only=True)
class SessionPool:
    """Tracks grid sessions and hands them out one holder at a time.

    Every status transition happens while holding `condition`, which is
    notified whenever a session becomes idle, joins or leaves the pool.
    The dispatcher waits on the same condition.
    """

    provisioner: NodeProvisioner
    # Minimum live sessions per capability tag
    min_size: Mapping[str, int] = field(default_factory=dict)
    clock: Callable[[], float] = time.monotonic
    condition: asyncio.Condition = field(default_factory=asyncio.Condition, repr=False)

    _entries: dict[str, _PoolEntry] = field(default_factory=dict, init=False)
    _removed: set[str] = field(default_factory=set, init=False)
    _pending: Counter[str] = field(default_factory=Counter, init=False)
    _tasks: set[asyncio.Task[None]] = field(default_factory=set, init=False)
    _closed: bool = field(default=False, init=False)

    async def fill(self) -> None:
        """Provision sessions until every configured minimum is met."""
        requests: list[Capability] = []
        async with self.condition:
            for tag, size in self.min_size.items():
                capability = Capability.parse(tag)
                missing = size - self._live_count(capability)
                requests.extend([capability] * max(missing, 0))

        if not requests:
            return

        log.info("Provisioning %d session(s)...", len(requests))
        results = await asyncio.gather(
            *(self.provisioner.provision(capability) for capability in requests),
            return_exceptions=True,
        )

        errors: list[BaseException] = []
        for capability, result in zip(requests, results):
            if isinstance(result, BaseException):
                log.error(
                    "Failed to provision session for %s: %s", capability.tag, result
                )
                errors.append(result)
            else:
                await self.add(result)

        if errors:
            raise errors[0]

    async def add(self, handle: SessionHandle) -> None:
        """Register a new idle session."""
        async with self.condition:
            if self._closed:
                log.info("Pool closed, retiring new session %s", handle.session_id)
                self._spawn(self._retire(handle))
                return
            self._entries[handle.session_id] = _PoolEntry(handle=handle)
            log.info(
                "Session %s joined the pool (%s)",
                handle.session_id,
                handle.capability.tag,
            )
            self.condition.notify_all()

    async def acquire(
        self,
        capability: Capability,
        timeout: float,
        avoid: Collection[str] = (),
    ) -> SessionHandle:
        """Wait for an idle session matching `capability` and mark it busy.

        Args:
            capability: Required capability
            timeout: Maximum wait in seconds
            avoid: Session IDs to use only when no other session matches

        Raises:
            UnavailableError: If no session became idle within `timeout`

        """
        async with self.condition:
            try:
                async with asyncio.timeout(timeout):
                    while (handle := self.take_idle(capability, avoid)) is None:
                        if self._closed:
                            raise UnavailableError("Session pool is closed")
                        await self.condition.wait()
            except TimeoutError:
                raise UnavailableError(
                    f"No idle session for {capability.tag} within {timeout:g}s"
                ) from None
            return handle

    def take_idle(
        self, capability: Capability, avoid: Collection[str] = ()
    ) -> SessionHandle | None:
        """Mark the first matching idle session busy and return it.

        Must be called while holding `condition`.
        """
        if self._closed:
            return None

        fallback: _PoolEntry | None = None
        for entry in self._entries.values():
            if entry.status != "idle" or not capability.matches(entry.handle.capability):
                continue
            if entry.handle.session_id not in avoid:
                return self._lease(entry)
            fallback = fallback or entry

        return self._lease(fallback) if fallback is not None else None

    async def release(self, handle: SessionHandle) -> None:
        """Return a busy session to the pool."""
        async with self.condition:
            entry = self._entries.get(handle.session_id)
            if entry is None:
                log.warning("Released session %s is not in the pool", handle.session_id)
                return

            if entry.status == "draining":
                self._remove(entry)
                self._spawn(self._retire(handle))
            else:
                entry.status = "idle"
                entry.leased_at = None
            self.condition.notify_all()

    async def recycle(self, handle: SessionHandle) -> SessionHandle:
        """Retire a busy session and lease a newly provisioned one in its place.

        Raises:
            UnavailableError: If the replacement could not be provisioned

        """
        tag = handle.capability.tag
        async with self.condition:
            entry = self._entries.get(handle.session_id)
            if entry is not None:
                self._remove(entry)
                self._spawn(self._retire(handle))
                self.condition.notify_all()

        log.info("Recycling session %s for a fresh %s session", handle.session_id, tag)
        try:
            fresh = await self.provisioner.provision(handle.capability)
        except Exception as exc:
            async with self.condition:
                if not self._closed:
                    self._request_replacements(handle.capability)
            raise UnavailableError(
                f"Could not provision a fresh session for {tag}: {exc}"
            ) from exc

        async with self.condition:
            if self._closed:
                self._spawn(self._retire(fresh))
                raise UnavailableError("Session pool is closed")
            entry = _PoolEntry(handle=fresh)
            self._entries[fresh.session_id] = entry
            return self._lease(entry)

    async def mark_dead(self, handle: SessionHandle) -> None:
        """Drop a broken session and request a replacement if below minimum."""
        async with self.condition:
            self._mark_dead(handle)

    async def reclaim_expired(self, lease_timeout: float) -> Sequence[SessionHandle]:
        """Mark sessions busy for longer than `lease_timeout` as dead.

        A busy session outliving its lease is assumed to be held by a holder
        that will never release it.
        """
        now = self.clock()
        async with self.condition:
            expired = [
                entry.handle
                for entry in self._entries.values()
                if entry.status in ("busy", "draining")
                and entry.leased_at is not None
                and now - entry.leased_at > lease_timeout
            ]
            for handle in expired:
                log.warning(
                    "Session %s exceeded its %gs lease, reclaiming",
                    handle.session_id,
                    lease_timeout,
                )
                self._mark_dead(handle)
        return expired

    def status(self, handle: SessionHandle) -> SessionStatus:
        """Current status of a session; sessions that left the pool are dead."""
        if (entry := self._entries.get(handle.session_id)) is not None:
            return entry.status
        if handle.session_id in self._removed:
            return "dead"
        raise KeyError(f"Unknown session {handle.session_id}")

    def snapshot(self) -> Mapping[str, SessionStatus]:
        """Status of every session currently in the pool."""
        return {
            session_id: entry.status for session_id, entry in self._entries.items()
        }

    async def drain(self) -> None:
        """Retire idle sessions now and busy sessions once they are released."""
        async with self.condition:
            for entry in list(self._entries.values()):
                if entry.status == "idle":
                    self._remove(entry)
                    self._spawn(self._retire(entry.handle))
                elif entry.status == "busy":
                    entry.status = "draining"
            self.condition.notify_all()

    async def close(self) -> None:
        """Stop handing out sessions, drain the pool and wait for retirements."""
        async with self.condition:
            self._closed = True
        await self.drain()

        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        log.info("Session pool closed")

    def _lease(self, entry: _PoolEntry) -> SessionHandle:
        entry.status = "busy"
        entry.leased_at = self.clock()
        return entry.handle

    def _remove(self, entry: _PoolEntry) -> None:
        del self._entries[entry.handle.session_id]
        self._removed.add(entry.handle.session_id)

    def _mark_dead(self, handle: SessionHandle) -> None:
        entry = self._entries.get(handle.session_id)
        if entry is None:
            self._removed.add(handle.session_id)
            return

        log.warning("Session %s marked dead", handle.session_id)
        self._remove(entry)
        self._spawn(self._retire(handle))
        if not self._closed:
            self._request_replacements(handle.capability)
        self.condition.notify_all()

    def _request_replacements(self, offered: Capability) -> None:
        for tag, size in self.min_size.items():
            capability = Capability.parse(tag)
            if not capability.matches(offered):
                continue
            missing = size - self._live_count(capability) - self._pending[tag]
            for _ in range(missing):
                log.info("Requesting replacement session for %s", tag)
                self._pending[tag] += 1
                self._spawn(self._replenish(tag, capability))

    def _live_count(self, capability: Capability) -> int:
        return sum(
            1
            for entry in self._entries.values()
            if entry.status != "draining"
            and capability.matches(entry.handle.capability)
        )

    async def _replenish(self, tag: str, capability: Capability) -> None:
        try:
            handle = await self.provisioner.provision(capability)
        except Exception:
            log.exception("Failed to provision replacement session for %s", tag)
            async with self.condition:
                self._pending[tag] -= 1
                self.condition.notify_all()
            return

        async with self.condition:
            self._pending[tag] -= 1
        await self.add(handle)

    async def _retire(self, handle: SessionHandle) -> None:
        try:
            await self.provisioner.retire(handle)
        except Exception:
            log.exception("Failed to retire session %s", handle.session_id)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
