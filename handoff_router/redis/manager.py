import asyncio
import os
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

from opentelemetry import trace
from opentelemetry.trace import SpanKind
from redis.cluster import RedisCluster
from redis.exceptions import (
    AuthenticationError,
    MovedError,
    RedisClusterException,
    RedisError,
    TimeoutError,
)
from redis.exceptions import ConnectionError as RedisConnectionError

import redis
from handoff_router.enums.monitoring import PeerService, SpanAttr
from utils.ml_logging import get_logger

T = TypeVar("T")


class RedisManager:
    """
    Thin Redis client wrapper used by the routing data store.

    Handles access-key or AAD authentication (Azure Cache for Redis),
    retries with client re-creation, and switches to cluster mode when
    the server answers MOVED.
    """

    def __init__(
        self,
        host: str | None = None,
        access_key: str | None = None,
        port: int | None = None,
        db: int = 0,
        ssl: bool = True,
        credential: object | None = None,
        user_name: str | None = None,
        scope: str | None = None,
        use_cluster: bool | None = None,
    ):
        self.logger = get_logger(__name__)
        self.host = host or os.getenv("REDIS_HOST")
        self.access_key = access_key or os.getenv("REDIS_ACCESS_KEY")

        if port is not None:
            self.port = int(port)
        elif os.getenv("REDIS_PORT"):
            self.port = int(os.getenv("REDIS_PORT"))
        else:
            self.port = 6380 if ssl else 6379
            self.logger.warning("REDIS_PORT not set, defaulting to %d", self.port)

        self.db = db
        self.ssl = ssl
        self.tracer = trace.get_tracer(__name__)

        use_cluster_env = os.getenv("REDIS_USE_CLUSTER")
        if use_cluster is not None:
            self.use_cluster = use_cluster
        elif use_cluster_env is not None:
            self.use_cluster = use_cluster_env.lower() in {"1", "true", "yes", "on"}
        else:
            self.use_cluster = False

        if not self.host:
            raise ValueError(
                "Redis host must be provided either as argument or environment variable."
            )
        if ":" in self.host:
            host_part, _, port_part = self.host.rpartition(":")
            if port_part.isdigit():
                self.host = host_part
                self.port = int(port_part)

        # AAD credential is only resolved when no access key is configured
        self.credential = credential
        if not self.access_key and self.credential is None:
            from utils.azure_auth import get_credential

            self.credential = get_credential()
        self.scope = scope or os.getenv("REDIS_SCOPE") or "https://redis.azure.com/.default"
        self.user_name = user_name or os.getenv("REDIS_USER_NAME") or "user"
        self.token_expiry = 0

        self._create_client()
        if not self.access_key:
            t = threading.Thread(target=self._refresh_loop, daemon=True)
            t.start()

    def _redis_span(self, name: str, op: str | None = None):
        return self.tracer.start_as_current_span(
            name,
            kind=SpanKind.CLIENT,
            attributes={
                SpanAttr.PEER_SERVICE.value: PeerService.AZURE_MANAGED_REDIS,
                SpanAttr.SERVER_ADDRESS.value: self.host,
                SpanAttr.SERVER_PORT.value: self.port,
                SpanAttr.DB_SYSTEM.value: "redis",
                **({SpanAttr.DB_OPERATION.value: op} if op else {}),
            },
        )

    def _execute_with_retry(
        self, command_name: str, operation: Callable[[], T], retries: int = 2
    ) -> T:
        """Execute a Redis operation with retry and reconfiguration."""
        last_exc: Exception | None = None
        for attempt in range(retries + 1):
            try:
                return operation()
            except AuthenticationError as auth_err:
                last_exc = auth_err
                self.logger.info(
                    "Redis authentication error on %s, refreshing credentials", command_name
                )
                self._create_client()
            except MovedError as moved_err:
                last_exc = moved_err
                self.logger.warning(
                    "Redis MOVED error on %s: %s. Enabling cluster mode and reconnecting.",
                    command_name,
                    moved_err,
                )
                self.use_cluster = True
                self._create_client()
            except (RedisConnectionError, TimeoutError, RedisClusterException, OSError) as err:
                last_exc = err
                self.logger.warning(
                    "Redis error on %s (attempt %d/%d): %s",
                    command_name,
                    attempt + 1,
                    retries + 1,
                    err,
                )
                if attempt >= retries:
                    break
                self._create_client()
            except RedisError as err:
                last_exc = err
                self.logger.error("Redis command %s failed: %s", command_name, err)
                break

        if last_exc:
            raise last_exc
        raise RedisError(f"Redis command {command_name} failed without exception")

    def _create_client(self):
        """(Re)create the Redis client, refreshing the AAD token if needed."""
        common_kwargs = {
            "host": self.host,
            "port": self.port,
            "ssl": self.ssl,
            "decode_responses": True,
            "socket_keepalive": True,
            "health_check_interval": 30,
            "socket_connect_timeout": 0.5,
            "socket_timeout": 2.0,
            "client_name": "handoff-router",
        }

        if self.access_key:
            auth_kwargs = {"password": self.access_key}
        else:
            token = self.credential.get_token(self.scope)
            self.token_expiry = token.expires_on
            auth_kwargs = {"username": self.user_name, "password": token.token}

        if self.use_cluster:
            try:
                self.redis_client = RedisCluster(
                    **common_kwargs, **auth_kwargs, require_full_coverage=False
                )
                self.logger.debug("Redis connection initialized in cluster mode.")
                return
            except RedisClusterException as exc:
                self.logger.warning(
                    "Redis cluster initialization failed (falling back to standalone): %s", exc
                )
                self.use_cluster = False

        self.redis_client = redis.Redis(**common_kwargs, db=self.db, **auth_kwargs)
        self.logger.debug("Redis connection initialized in standalone mode.")

    def _refresh_loop(self):
        """Background thread: refresh the AAD token shortly before it expires."""
        while True:
            wait = max(self.token_expiry - int(time.time()) - 60, 1)
            time.sleep(wait)
            try:
                self.logger.debug("Refreshing Redis AAD token in background...")
                self._create_client()
            except Exception as e:
                self.logger.error("Failed to refresh Redis token: %s", e)
                time.sleep(5)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        def _ping():
            with self._redis_span("Redis.PING", "PING"):
                return bool(self.redis_client.ping())

        return self._execute_with_retry("PING", _ping)

    def hash_get_all(self, key: str) -> dict[str, str]:
        def _hgetall():
            with self._redis_span("Redis.HGETALL", "HGETALL"):
                return dict(self.redis_client.hgetall(key))

        return self._execute_with_retry("HGETALL", _hgetall)

    def execute_transaction(self, commands: list[tuple[str, tuple[Any, ...]]]) -> list[Any]:
        """
        Run write commands in one MULTI/EXEC block.

        Args:
            commands: (client method, args) pairs, e.g. ("hset", (key, field, value))

        All keys must share a hash slot in cluster mode. The block is retried
        as a whole, so the commands must be idempotent (HSET, HDEL, DEL).
        """
        if not commands:
            return []

        def _multi():
            with self._redis_span("Redis.MULTI", "MULTI"):
                with self.redis_client.pipeline(transaction=True) as pipe:
                    for name, args in commands:
                        getattr(pipe, name)(*args)
                    return pipe.execute()

        return self._execute_with_retry("MULTI", _multi)

    def lock(self, name: str, timeout: float, blocking_timeout: float | None = None) -> Any:
        """
        Return a redis-py Lock (acquire/release are blocking calls).

        The token is not thread-local: acquire and release may run on
        different executor threads.
        """
        return self.redis_client.lock(
            name, timeout=timeout, blocking_timeout=blocking_timeout, thread_local=False
        )

    # ------------------------------------------------------------------
    # Async wrappers (default executor)
    # ------------------------------------------------------------------

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def ping_async(self) -> bool:
        return await self._run(self.ping)

    async def hash_get_all_async(self, key: str) -> dict[str, str]:
        return await self._run(self.hash_get_all, key)

    async def execute_transaction_async(self, commands: list[tuple[str, tuple[Any, ...]]]) -> list[Any]:
        return await self._run(self.execute_transaction, commands)

    def close(self) -> None:
        try:
            self.redis_client.close()
        except RedisError as e:
            self.logger.warning("Error closing Redis client: %s", e)
