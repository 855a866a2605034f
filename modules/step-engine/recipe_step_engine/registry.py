"""Tool registry: registration, resolution and instance caching."""

import asyncio
import contextlib
import inspect
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from .config import RegistryConfig
from .errors import DuplicateToolError
from .errors import ToolDisabledError
from .errors import ToolNotFoundError
from .tools import Tool

logger = logging.getLogger(__name__)

ToolFactory = Callable[[str], Tool | Awaitable[Tool]]
ToolKey = tuple[str, str]


@dataclass
class ToolMetadata:
    """Descriptive data attached to a registration."""

    category: str | None = None
    tags: list[str] = field(default_factory=list)
    description: str | None = None
    version: str | None = None
    enabled: bool = True
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolRegistration:
    """A (tool_type, name) entry mapping to its factory."""

    tool_type: str
    name: str
    factory: ToolFactory
    metadata: ToolMetadata = field(default_factory=ToolMetadata)
    registered_at: float = field(default_factory=time.time)

    @property
    def key(self) -> ToolKey:
        return (self.tool_type, self.name)


@dataclass
class CachedToolInstance:
    """A live tool instance and its usage bookkeeping (registry clock units)."""

    instance: Tool
    created_at: float
    last_used: float
    ref_count: int = 0
    access_count: int = 0


@dataclass
class PendingConstruction:
    """An instance being built for one key and the resolves waiting on it."""

    future: asyncio.Future[Tool]
    waiters: int = 0
    orphaned: bool = False


@dataclass
class ToolSearchCriteria:
    """Filters for ``ToolRegistry.search``. Unset fields do not filter."""

    tool_type: str | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)  # All must match
    name: str | None = None  # Case-insensitive substring
    description: str | None = None  # Case-insensitive substring
    enabled_only: bool = False


class ToolRegistry:
    """Indexes tool factories and hands out shared, reference-counted instances.

    The registry is an explicit object: construct one per process (or per
    test) and pass it to the executor. Instances are cached per
    (tool_type, name); the cache is bounded by ``max_cache_size`` with LRU
    eviction of idle entries, and ``sweep`` evicts entries idle for longer than
    ``cache_ttl``. An evicted instance is cleaned up exactly once.

    Bookkeeping uses plain counters; every mutation between two awaits is
    atomic on the event loop.
    """

    def __init__(self, config: RegistryConfig | None = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or RegistryConfig()
        self._clock = clock
        self._registrations: dict[ToolKey, ToolRegistration] = {}
        self._cache: OrderedDict[ToolKey, CachedToolInstance] = OrderedDict()
        # Instances handed out but not cached: reuse disabled, unregistered while in use, or cache overflow
        self._detached: dict[int, CachedToolInstance] = {}
        self._pending: dict[ToolKey, PendingConstruction] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._sweep_task: asyncio.Task[None] | None = None
        self._stats = {"hits": 0, "misses": 0, "created": 0, "evictions": 0, "cleanup_failures": 0}

    # Registration

    def register(
        self,
        tool_type: str,
        name: str,
        factory: ToolFactory,
        metadata: ToolMetadata | None = None,
    ) -> ToolRegistration:
        """Register a factory. Fails on an existing (tool_type, name) pair."""
        key = (tool_type, name)
        if key in self._registrations:
            raise DuplicateToolError(tool_type, name)
        registration = ToolRegistration(
            tool_type=tool_type,
            name=name,
            factory=factory,
            metadata=metadata or ToolMetadata(),
            registered_at=time.time(),
        )
        self._registrations[key] = registration
        logger.debug(f"Registered tool {name} ({tool_type})")
        return registration

    async def unregister(self, tool_type: str, name: str) -> bool:
        """Drop a registration.

        An idle cached instance is cleaned up immediately; one still in use is
        detached and cleaned up when its last reference is released.
        """
        key = (tool_type, name)
        if self._registrations.pop(key, None) is None:
            return False

        entry = self._cache.pop(key, None)
        if entry is not None:
            if entry.ref_count > 0:
                self._detached[id(entry.instance)] = entry
            else:
                await self._cleanup_entry(entry)
        logger.debug(f"Unregistered tool {name} ({tool_type})")
        return True

    def get_registration(self, tool_type: str, name: str) -> ToolRegistration | None:
        return self._registrations.get((tool_type, name))

    def is_registered(self, tool_type: str, name: str) -> bool:
        return (tool_type, name) in self._registrations

    def get_registered_types(self) -> list[str]:
        return sorted({tool_type for tool_type, _ in self._registrations})

    def get_categories(self) -> list[str]:
        return sorted({r.metadata.category for r in self._registrations.values() if r.metadata.category})

    def search(self, criteria: ToolSearchCriteria | None = None, **filters: Any) -> list[ToolRegistration]:
        """Find registrations matching every given filter, sorted by name then type."""
        criteria = criteria or ToolSearchCriteria(**filters)
        name_query = criteria.name.lower() if criteria.name else None
        description_query = criteria.description.lower() if criteria.description else None

        matches = []
        for registration in self._registrations.values():
            metadata = registration.metadata
            if criteria.tool_type and registration.tool_type != criteria.tool_type:
                continue
            if criteria.category and metadata.category != criteria.category:
                continue
            if criteria.tags and not all(tag in metadata.tags for tag in criteria.tags):
                continue
            if name_query and name_query not in registration.name.lower():
                continue
            if description_query and description_query not in (metadata.description or "").lower():
                continue
            if criteria.enabled_only and not metadata.enabled:
                continue
            matches.append(registration)
        return sorted(matches, key=lambda r: (r.name, r.tool_type))

    # Resolution

    async def resolve(self, tool_type: str, name: str) -> Tool:
        """Return an initialized instance and take a reference on it.

        Every successful ``resolve`` must be paired with a ``release``.
        """
        key = (tool_type, name)
        registration = self._registrations.get(key)
        if registration is None:
            raise ToolNotFoundError(tool_type, name)
        if not registration.metadata.enabled:
            raise ToolDisabledError(tool_type, name)

        if self.config.enable_instance_reuse:
            entry = self._cache.get(key)
            if entry is not None:
                if entry.instance.is_cleaned_up:
                    self._cache.pop(key)
                elif entry.ref_count == 0 and self._is_expired(entry):
                    self._cache.pop(key)
                    await self._cleanup_entry(entry)
                else:
                    self._touch(key, entry)
                    self._stats["hits"] += 1
                    return entry.instance

        self._stats["misses"] += 1
        if not self.config.enable_instance_reuse:
            instance = await self._construct(registration)
            await self._take_reference(key, instance)
            return instance

        # Concurrent resolves of the same key share one construction
        pending = self._pending.get(key)
        if pending is None or pending.future.done():
            pending = PendingConstruction(asyncio.ensure_future(self._construct(registration)))
            self._pending[key] = pending
        pending.waiters += 1
        try:
            instance = await asyncio.shield(pending.future)
        except asyncio.CancelledError:
            if pending.waiters == 1:
                # No resolve is left to take the instance once it is built
                pending.future.add_done_callback(lambda _: self._adopt_orphan(key, pending))
            raise
        finally:
            pending.waiters -= 1
            if self._pending.get(key) is pending and pending.future.done():
                del self._pending[key]

        await self._take_reference(key, instance)
        return instance

    async def release(self, tool_type: str, name: str, instance: Tool) -> None:
        """Drop a reference taken by ``resolve``."""
        key = (tool_type, name)
        now = self._clock()

        entry = self._cache.get(key)
        if entry is not None and entry.instance is instance:
            entry.ref_count = max(0, entry.ref_count - 1)
            entry.last_used = now
            return

        detached = self._detached.get(id(instance))
        if detached is not None and detached.instance is instance:
            detached.ref_count -= 1
            detached.last_used = now
            if detached.ref_count <= 0:
                del self._detached[id(instance)]
                await self._cleanup_entry(detached)
            return

        logger.debug(f"Ignoring release of untracked instance {instance!r}")

    async def _construct(self, registration: ToolRegistration) -> Tool:
        instance = registration.factory(registration.name)
        if inspect.isawaitable(instance):
            instance = await instance
        await instance.initialize()
        self._stats["created"] += 1
        logger.debug(f"Created tool instance {registration.name} ({registration.tool_type})")
        return instance

    def _adopt_orphan(self, key: ToolKey, pending: PendingConstruction) -> None:
        if pending.waiters > 0 or pending.orphaned:
            return
        pending.orphaned = True
        if self._pending.get(key) is pending:
            del self._pending[key]
        future = pending.future
        if future.cancelled() or future.exception() is not None:
            return
        task = asyncio.ensure_future(self._park(key, future.result()))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _park(self, key: ToolKey, instance: Tool) -> None:
        """Hand an unclaimed instance to the cache idle, or clean it up if it cannot be kept."""
        await self._take_reference(key, instance)
        await self.release(key[0], key[1], instance)

    def _add_reference(self, key: ToolKey, instance: Tool) -> bool:
        """Take a reference on an already tracked instance. Returns False when untracked."""
        entry = self._cache.get(key)
        if entry is not None and entry.instance is instance:
            self._touch(key, entry)
            return True

        detached = self._detached.get(id(instance))
        if detached is not None and detached.instance is instance:
            detached.ref_count += 1
            detached.access_count += 1
            detached.last_used = self._clock()
            return True
        return False

    async def _take_reference(self, key: ToolKey, instance: Tool) -> None:
        if self._add_reference(key, instance):
            return

        now = self._clock()
        new_entry = CachedToolInstance(instance=instance, created_at=now, last_used=now, ref_count=1, access_count=1)
        if not self.config.enable_instance_reuse or key not in self._registrations:
            self._detached[id(instance)] = new_entry
            return

        # Eviction awaits cleanup, so the cache is re-read after every await
        while True:
            if self._add_reference(key, instance):
                return
            if key in self._cache:
                # The slot belongs to another instance of this tool
                self._detached[id(instance)] = new_entry
                return
            if len(self._cache) < self.config.max_cache_size:
                self._cache[key] = new_entry
                return
            victim_key = next((k for k, e in self._cache.items() if e.ref_count == 0), None)
            if victim_key is None:
                logger.debug(f"Tool cache full of in-use instances, not caching {key[1]} ({key[0]})")
                self._detached[id(instance)] = new_entry
                return
            victim = self._cache.pop(victim_key)
            logger.debug(f"Evicting least recently used tool {victim_key[1]} ({victim_key[0]})")
            await self._cleanup_entry(victim)

    def _touch(self, key: ToolKey, entry: CachedToolInstance) -> None:
        entry.ref_count += 1
        entry.access_count += 1
        entry.last_used = self._clock()
        self._cache.move_to_end(key)

    # Eviction

    def _is_expired(self, entry: CachedToolInstance) -> bool:
        return self._clock() - entry.last_used > self.config.cache_ttl

    async def sweep(self) -> int:
        """Evict idle entries older than the TTL. Returns the number evicted."""
        expired = [key for key, entry in self._cache.items() if entry.ref_count == 0 and self._is_expired(entry)]
        for key in expired:
            entry = self._cache.pop(key)
            await self._cleanup_entry(entry)
        if expired:
            logger.debug(f"Swept {len(expired)} expired tool instance(s)")
        return len(expired)

    async def _cleanup_entry(self, entry: CachedToolInstance) -> None:
        self._stats["evictions"] += 1
        try:
            await entry.instance.cleanup()
        except Exception as e:
            self._stats["cleanup_failures"] += 1
            logger.warning(f"Cleanup failed for tool {entry.instance!r}: {e}", exc_info=True)

    def start(self) -> None:
        """Start the periodic background sweep on the running loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Tool cache sweep failed: {e}", exc_info=True)

    async def close(self) -> None:
        """Stop the background sweep and clean up every instance the registry owns."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        entries = [*self._cache.values(), *self._detached.values()]
        self._cache.clear()
        self._detached.clear()
        for entry in entries:
            await self._cleanup_entry(entry)

    async def __aenter__(self) -> "ToolRegistry":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Introspection

    def get_cached_instance(self, tool_type: str, name: str) -> CachedToolInstance | None:
        return self._cache.get((tool_type, name))

    def get_stats(self) -> dict[str, Any]:
        """Counters describing registrations and cache usage."""
        return {
            "registrations": len(self._registrations),
            "cached_instances": len(self._cache),
            "detached_instances": len(self._detached),
            "active_references": sum(e.ref_count for e in [*self._cache.values(), *self._detached.values()]),
            "sweeping": self._sweep_task is not None and not self._sweep_task.done(),
            **self._stats,
        }
