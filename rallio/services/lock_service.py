"""
Short-lived advisory locks for webhook processing.

A lock is a key held by an owner token until it is released or its TTL runs out;
an expired lock counts as abandoned by a crashed worker and may be taken over.
Two interchangeable backends: Redis (SET NX PX) and a row in payment_locks.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from redis.asyncio import Redis
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rallio.core.config import LOCK_BACKEND, LOCK_PREFIX
from rallio.core.redis import get_redis
from rallio.database.payment_models import PaymentLock

logger = logging.getLogger(__name__)

# Lua script for releasing a lock only while we still own it
RELEASE_LUA_SCRIPT = """
local key = KEYS[1]
local expected_owner = ARGV[1]

local current_owner = redis.call('GET', key)
if current_owner == expected_owner then
    redis.call('DEL', key)
    return 1
end
return 0
"""


def new_owner_token() -> str:
    return uuid.uuid4().hex


def payment_charge_key(payment_id: int) -> str:
    return f"payment:{payment_id}:charge"


def _key_for(key: str) -> str:
    """Generate consistent Redis key for processing locks."""
    p = LOCK_PREFIX or ""
    if p:
        if not p.endswith(":"):
            p = p + ":"
        return f"{p}lock:{key}"
    return f"lock:{key}"


class RedisLockBackend:
    name = "redis"

    def __init__(self, redis: Redis):
        self.redis = redis

    async def acquire(self, key: str, owner: str, ttl_seconds: int) -> bool:
        acquired = await self.redis.set(_key_for(key), owner, nx=True, px=int(ttl_seconds * 1000))
        if acquired:
            logger.info(f"Lock acquired: {key} by {owner} for {ttl_seconds}s")
            return True
        current = await self.redis.get(_key_for(key))
        logger.info(f"Lock busy: {key} held by {current}")
        return False

    async def release(self, key: str, owner: str) -> bool:
        released = await self.redis.eval(RELEASE_LUA_SCRIPT, 1, _key_for(key), owner)
        if not released:
            logger.warning(f"Lock {key} was not owned by {owner} at release (expired or taken over)")
        return bool(released)


class DatabaseLockBackend:
    """
    Lock rows in payment_locks, written through the caller's session.
    acquire() and release() commit that session, so call them while it holds no
    pending changes.
    """
    name = "database"

    def __init__(self, db: Session):
        self.db = db

    async def acquire(self, key: str, owner: str, ttl_seconds: int) -> bool:
        now = datetime.utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)
        try:
            row = (
                self.db.query(PaymentLock)
                .filter(PaymentLock.lock_key == key)
                .with_for_update()
                .first()
            )
            if row is None:
                self.db.add(PaymentLock(lock_key=key, owner=owner, acquired_at=now, expires_at=expires_at))
            elif row.expires_at > now and row.owner != owner:
                self.db.rollback()
                logger.info(f"Lock busy: {key} held by {row.owner} until {row.expires_at}")
                return False
            else:
                if row.owner != owner:
                    logger.warning(f"Taking over stale lock {key} from {row.owner} (expired {row.expires_at})")
                row.owner = owner
                row.acquired_at = now
                row.expires_at = expires_at
            self.db.commit()
        except IntegrityError:
            # another worker inserted the row first
            self.db.rollback()
            logger.info(f"Lock busy: {key} (lost insert race)")
            return False
        except SQLAlchemyError:
            self.db.rollback()
            raise

        logger.info(f"Lock acquired: {key} by {owner} for {ttl_seconds}s")
        return True

    async def release(self, key: str, owner: str) -> bool:
        try:
            deleted = (
                self.db.query(PaymentLock)
                .filter(PaymentLock.lock_key == key, PaymentLock.owner == owner)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        if not deleted:
            logger.warning(f"Lock {key} was not owned by {owner} at release (expired or taken over)")
        return bool(deleted)


async def get_processing_lock(db: Session, backend: Optional[str] = None):
    """Lock backend for this request, chosen by LOCK_BACKEND."""
    backend = (backend or LOCK_BACKEND).lower()
    if backend == "redis":
        return RedisLockBackend(await get_redis())
    return DatabaseLockBackend(db)
