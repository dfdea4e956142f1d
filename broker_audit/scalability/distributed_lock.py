"""Cross-replica mutual exclusion for retention runs: SET NX EX with an owner token, compare-and-delete release."""

import os
import socket
import uuid
from typing import Protocol


class RedisLockBackend(Protocol):
    """The three Redis operations the lock needs. RedisClient implements it; tests pass a dict-backed fake."""

    async def set_nx_ex(self, key: str, value: str, ttl: int) -> bool: ...
    async def get(self, key: str) -> str | None: ...
    async def delete_if_value(self, key: str, value: str) -> bool: ...


LOCK_PREFIX = "broker-audit:lock:"


def replica_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class DistributedLock:
    """
    One instance per replica. Tokens are "<host>:<pid>:<uuid>" so the current
    holder can be identified from Redis; only the instance that wrote a token
    can delete it. The TTL bounds how long a crashed replica blocks the others.
    """

    def __init__(self, backend: RedisLockBackend, key_prefix: str = LOCK_PREFIX, owner: str | None = None) -> None:
        self._backend = backend
        self._prefix = key_prefix
        self._owner = owner or replica_id()
        self._tokens: dict[str, str] = {}

    def _key(self, key: str) -> str:
        return self._prefix + key

    async def acquire(self, key: str, ttl: int) -> bool:
        token = f"{self._owner}:{uuid.uuid4().hex}"
        if not await self._backend.set_nx_ex(self._key(key), token, ttl):
            return False
        self._tokens[key] = token
        return True

    async def release(self, key: str) -> None:
        token = self._tokens.pop(key, None)
        if token is None:
            return
        await self._backend.delete_if_value(self._key(key), token)

    async def holder(self, key: str) -> str | None:
        """Owner part of the token currently stored under key, or None when the lock is free."""
        token = await self._backend.get(self._key(key))
        if token is None:
            return None
        return token.rsplit(":", 1)[0]

    def held(self, key: str) -> bool:
        return key in self._tokens
