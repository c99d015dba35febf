from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pushdispatch.domain.models import DispatcherRunLock


async def try_acquire_run_lock(
    session: AsyncSession,
    *,
    lock_key: str,
    owner: str,
    ttl_s: int,
    now: datetime,
) -> bool:
    # Conditional insert: the primary key makes a second concurrent holder fail instead of wait.
    expires_at = now + timedelta(seconds=max(1, int(ttl_s)))
    session.add(DispatcherRunLock(lock_key=lock_key, owner=owner, acquired_at=now, expires_at=expires_at))
    try:
        await session.commit()
        return True
    except IntegrityError:
        await session.rollback()
    # Take over only a lease whose holder has outlived its TTL.
    result = await session.execute(
        update(DispatcherRunLock)
        .where(DispatcherRunLock.lock_key == lock_key, DispatcherRunLock.expires_at < now)
        .values(owner=owner, acquired_at=now, expires_at=expires_at)
    )
    await session.commit()
    return (result.rowcount or 0) == 1


async def release_run_lock(session: AsyncSession, *, lock_key: str, owner: str) -> bool:
    # Release only if this run still owns the lease to avoid clobbering a newer holder.
    result = await session.execute(
        delete(DispatcherRunLock).where(
            DispatcherRunLock.lock_key == lock_key,
            DispatcherRunLock.owner == owner,
        )
    )
    await session.commit()
    return (result.rowcount or 0) == 1


async def renew_run_lock(
    session: AsyncSession,
    *,
    lock_key: str,
    owner: str,
    ttl_s: int,
    now: datetime,
) -> bool:
    # Extend only a lease this run still owns; zero rows means another run took it over.
    result = await session.execute(
        update(DispatcherRunLock)
        .where(DispatcherRunLock.lock_key == lock_key, DispatcherRunLock.owner == owner)
        .values(expires_at=now + timedelta(seconds=max(1, int(ttl_s))))
    )
    await session.commit()
    return (result.rowcount or 0) == 1
