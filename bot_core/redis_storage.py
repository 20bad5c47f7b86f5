import json
import logging
from typing import List, Dict, Any, Optional

import redis
import redis.asyncio as aioredis
from botbuilder.core import Storage

from bot_core.storage import (
    ETAG_KEY,
    ETagConflictError,
    StorageError,
    is_write_allowed,
    to_store_item,
)
from config import AppSettings

log = logging.getLogger(__name__)


class RedisStorageError(StorageError):
    """Custom exception for RedisStorage errors."""
    pass


class RedisStorage(Storage):
    """
    A Storage provider that uses an asynchronous Redis client for state persistence.
    Items are stored as JSON strings; eTags are enforced with WATCH/MULTI/EXEC so a
    concurrent writer between the check and the write also surfaces as a conflict.
    """

    def __init__(self, app_settings: AppSettings):
        """
        Initializes a new instance of the RedisStorage class.

        Args:
            app_settings: The application settings containing Redis configuration.
        """
        super().__init__()
        self._app_settings = app_settings
        self._redis_client: Optional[aioredis.Redis] = None
        self._is_initializing = False
        self._redis_prefix = self._app_settings.redis_prefix

    async def _ensure_client_initialized(self):
        """Ensures the Redis client is initialized before use."""
        if self._redis_client is None:
            if self._is_initializing:
                log.warning("Redis client initialization already in progress.")
                return

            self._is_initializing = True
            try:
                await self._initialize_client()
            finally:
                self._is_initializing = False

    async def _initialize_client(self):
        """
        Establishes a connection to the Redis server using settings from AppSettings.
        """
        if self._redis_client:
            return

        log.info("Initializing Redis client...")
        settings = self._app_settings

        try:
            if settings.redis_url:
                log.info(f"Connecting to Redis using URL: {settings.redis_url}")
                self._redis_client = aioredis.from_url(
                    str(settings.redis_url),
                    encoding="utf-8",
                    decode_responses=True
                )
            else:
                log.info(f"Connecting to Redis using host: {settings.redis_host}, port: {settings.redis_port}, DB: {settings.redis_db}")
                self._redis_client = aioredis.Redis(
                    host=settings.redis_host,
                    port=settings.redis_port or 6379,
                    password=settings.redis_password,
                    db=settings.redis_db or 0,
                    ssl=settings.redis_ssl_enabled or False,
                    encoding="utf-8",
                    decode_responses=True
                )

            await self._redis_client.ping()
            log.info("Successfully connected to Redis and pinged server.")

        except redis.exceptions.ConnectionError as e:
            log.error(f"Redis connection failed: {e}", exc_info=True)
            self._redis_client = None
            raise RedisStorageError(f"Failed to connect to Redis: {e}") from e

    def _prefixed(self, key: str) -> str:
        return self._redis_prefix + key

    async def read(self, keys: List[str]) -> Dict[str, Any]:
        """
        Reads items from Redis.

        Args:
            keys: A list of keys to read.

        Returns:
            A dictionary of the items found, with keys matching the input.
        """
        if not keys:
            return {}

        await self._ensure_client_initialized()
        if not self._redis_client:
            raise RedisStorageError("Redis client not available for read operation.")

        prefixed_keys = [self._prefixed(key) for key in keys]
        try:
            values = await self._redis_client.mget(prefixed_keys)
        except redis.exceptions.RedisError as e:
            log.error(f"Redis read operation failed: {e}", exc_info=True)
            raise RedisStorageError(f"Redis read failed: {e}") from e

        state: Dict[str, Any] = {}
        for original_key, value in zip(keys, values):
            if value is None:
                continue
            try:
                item = json.loads(value)
            except json.JSONDecodeError as e:
                log.error(f"Failed to deserialize JSON for key '{original_key}'. Value: '{value[:200]}'. Error: {e}")
                continue
            if not isinstance(item, dict):
                log.warning(f"Deserialized item for key '{original_key}' is not a dict, skipping.")
                continue
            state[original_key] = item
        log.debug(f"Read {len(state)} items from Redis.")
        return state

    async def write(self, changes: Dict[str, Any]):
        """
        Writes items to Redis.

        Args:
            changes: Items keyed by storage key. An item carrying an ``eTag`` other than
                ``*`` is only written when it matches the stored item's eTag.
        """
        if not changes:
            return

        await self._ensure_client_initialized()
        if not self._redis_client:
            raise RedisStorageError("Redis client not available for write operation.")

        items = {key: to_store_item(value) for key, value in changes.items()}
        prefixed_keys = [self._prefixed(key) for key in items]

        try:
            async with self._redis_client.pipeline(transaction=True) as pipe:
                await pipe.watch(*prefixed_keys)
                current = await pipe.mget(prefixed_keys)

                for (key, item), stored_raw in zip(items.items(), current):
                    stored = json.loads(stored_raw) if stored_raw else None
                    if not is_write_allowed(stored, item):
                        log.warning(f"eTag conflict writing key '{key}'")
                        raise ETagConflictError(key)

                next_etags = await pipe.incr(self._prefixed("__etag__"), len(items))
                pipe.multi()
                first_etag = next_etags - len(items) + 1
                for offset, (key, item) in enumerate(items.items()):
                    stamped = dict(item)
                    stamped[ETAG_KEY] = str(first_etag + offset)
                    pipe.set(self._prefixed(key), json.dumps(stamped))
                await pipe.execute()
            log.debug(f"Wrote {len(items)} items to Redis.")

        except redis.exceptions.WatchError as e:
            log.warning(f"Concurrent modification while writing keys {list(items)}")
            raise ETagConflictError(", ".join(items)) from e
        except redis.exceptions.RedisError as e:
            log.error(f"Redis write operation failed: {e}", exc_info=True)
            raise RedisStorageError(f"Redis write failed: {e}") from e
        except TypeError as e:
            log.error(f"Failed to serialize items to JSON: {e}", exc_info=True)
            raise RedisStorageError(f"Serialization failed: {e}") from e

    async def delete(self, keys: List[str]):
        """
        Deletes items from Redis.

        Args:
            keys: A list of keys to delete.
        """
        if not keys:
            return

        await self._ensure_client_initialized()
        if not self._redis_client:
            raise RedisStorageError("Redis client not available for delete operation.")

        prefixed_keys = [self._prefixed(key) for key in keys]
        try:
            deleted_count = await self._redis_client.delete(*prefixed_keys)
            log.debug(f"Deleted {deleted_count} keys from Redis.")
        except redis.exceptions.RedisError as e:
            log.error(f"Redis delete operation failed: {e}", exc_info=True)
            raise RedisStorageError(f"Redis delete failed: {e}") from e

    async def close(self):
        """
        Closes the Redis client connection if it's open.
        """
        if self._redis_client:
            log.info("Closing Redis client connection...")
            try:
                await self._redis_client.aclose()
                log.info("Redis client connection closed successfully.")
            except redis.exceptions.RedisError as e:
                log.error(f"Error closing Redis connection: {e}", exc_info=True)
            finally:
                self._redis_client = None
