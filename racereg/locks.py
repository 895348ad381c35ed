"""Named critical sections.

``KeyedMutex`` serializes coroutines within one process. It gives no
guarantee across processes or hosts; deployments with more than one
instance must select the database backend (``LOCK_BACKEND=database``).

Callers own the release: every ``acquire`` must be paired with exactly one
call of the returned release function, normally through ``hold()``::

    async with locks.hold(f"registration:{distance_id}"):
        ...
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Callable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request

from .models import AppLock, utcnow

log = logging.getLogger(__name__)

Release = Callable[[], None]


class LockTimeoutError(RuntimeError):
    """Raised when a lock could not be acquired before the deadline."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Timed out waiting for lock {key!r}")
        self.key = key


class KeyedMutex:
    """In-process mutex per string key with FIFO hand-off."""

    def __init__(self) -> None:
        # presence of a key means it is held; the deque holds waiting futures
        self._locks: dict[str, deque[asyncio.Future]] = {}

    async def acquire(self, key: str) -> Release:
        waiters = self._locks.get(key)
        if waiters is None:
            self._locks[key] = deque()
            return self._releaser(key)

        fut = asyncio.get_running_loop().create_future()
        waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # ownership was handed over just before cancellation
                self._release(key)
            else:
                try:
                    waiters.remove(fut)
                except ValueError:
                    pass
            raise
        return self._releaser(key)

    def try_acquire(self, key: str) -> Optional[Release]:
        if key in self._locks:
            return None
        self._locks[key] = deque()
        return self._releaser(key)

    def is_locked(self, key: str) -> bool:
        return key in self._locks

    def active_lock_count(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        release = await self.acquire(key)
        try:
            yield
        finally:
            release()

    def _releaser(self, key: str) -> Release:
        released = False

        def release() -> None:
            nonlocal released
            if released:
                raise RuntimeError(f"Lock {key!r} released twice")
            released = True
            self._release(key)

        return release

    def _release(self, key: str) -> None:
        waiters = self._locks.get(key)
        if waiters is None:
            return
        while waiters:
            fut = waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        del self._locks[key]


# ---------------------------
# Backends
# ---------------------------

class LockBackend(ABC):
    """Interface for named locks used by the services."""

    @abstractmethod
    async def acquire(self, key: str) -> Release:
        """Wait for ``key`` and return its release function."""
        ...

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        release = await self.acquire(key)
        try:
            yield
        finally:
            release()


class LocalLockBackend(LockBackend):
    def __init__(self, mutex: KeyedMutex | None = None) -> None:
        self.mutex = mutex or KeyedMutex()

    async def acquire(self, key: str) -> Release:
        return await self.mutex.acquire(key)


class DatabaseLockBackend(LockBackend):
    """Lease rows in ``app_locks`` shared by every instance using the database.

    A lease expires after ``ttl`` so a crashed holder cannot block a key
    forever; the critical section must finish well within it.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        ttl: timedelta,
        poll_interval: float = 0.05,
        acquire_timeout: float = 10.0,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = ttl
        self._poll_interval = poll_interval
        self._acquire_timeout = acquire_timeout

    async def acquire(self, key: str) -> Release:
        owner = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._acquire_timeout
        while not await run_in_threadpool(self._try_claim, key, owner):
            if loop.time() >= deadline:
                raise LockTimeoutError(key)
            await asyncio.sleep(self._poll_interval)

        released = False

        def release() -> None:
            nonlocal released
            if released:
                raise RuntimeError(f"Lock {key!r} released twice")
            released = True
            self._delete(key, owner)

        return release

    def _try_claim(self, key: str, owner: str) -> bool:
        now = utcnow()
        with self._session_factory() as s:
            s.add(AppLock(key=key, owner=owner, expires_at=now + self._ttl))
            try:
                s.commit()
                return True
            except IntegrityError:
                s.rollback()

            result = s.execute(
                update(AppLock)
                .where(AppLock.key == key, AppLock.expires_at <= now)
                .values(owner=owner, expires_at=now + self._ttl)
            )
            s.commit()
            if result.rowcount == 1:
                log.warning("Took over expired lock %s", key)
                return True
            return False

    def _delete(self, key: str, owner: str) -> None:
        with self._session_factory() as s:
            result = s.execute(delete(AppLock).where(AppLock.key == key, AppLock.owner == owner))
            s.commit()
            if result.rowcount == 0:
                log.warning("Lock %s expired before release", key)


def build_lock_backend(settings, session_factory: sessionmaker | None = None) -> LockBackend:
    kind = settings.LOCK_BACKEND.strip().lower()
    if kind == "local":
        return LocalLockBackend()
    if kind == "database":
        if session_factory is None:
            from .db import session_factory as _default_factory
            session_factory = _default_factory()
        return DatabaseLockBackend(
            session_factory,
            ttl=timedelta(seconds=settings.LOCK_TTL_SECONDS),
            poll_interval=settings.LOCK_POLL_INTERVAL_SECONDS,
            acquire_timeout=settings.LOCK_ACQUIRE_TIMEOUT_SECONDS,
        )
    raise ValueError(f"Unknown LOCK_BACKEND: {settings.LOCK_BACKEND!r}")


def get_locks(request: Request) -> LockBackend:
    """FastAPI dependency returning the backend built at startup."""
    return request.app.state.locks
