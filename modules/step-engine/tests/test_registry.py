"""Tests for the tool registry and its instance cache."""

import asyncio

import pytest

from recipe_step_engine.config import RegistryConfig
from recipe_step_engine.errors import DuplicateToolError
from recipe_step_engine.errors import ToolDisabledError
from recipe_step_engine.errors import ToolNotFoundError
from recipe_step_engine.registry import ToolMetadata
from recipe_step_engine.registry import ToolRegistry
from recipe_step_engine.registry import ToolSearchCriteria
from recipe_step_engine.tools import Tool
from recipe_step_engine.tools import ToolExecutionResult


class CountingTool(Tool):
    """Tool recording lifecycle calls."""

    def __init__(self, name: str, tool_type: str = "action"):
        super().__init__(tool_type, name)
        self.initialize_calls = 0
        self.cleanup_calls = 0

    async def on_initialize(self):
        self.initialize_calls += 1

    async def on_execute(self, step, context):
        return ToolExecutionResult()

    async def on_cleanup(self):
        self.cleanup_calls += 1


class FailingCleanupTool(CountingTool):
    async def on_cleanup(self):
        await super().on_cleanup()
        raise RuntimeError("cleanup exploded")


class SlowCleanupTool(CountingTool):
    """Tool whose cleanup yields to the event loop."""

    async def on_cleanup(self):
        await asyncio.sleep(0.01)
        await super().on_cleanup()


class GatedTool(CountingTool):
    """Tool whose initialization waits for an event."""

    def __init__(self, name: str, gate: asyncio.Event):
        super().__init__(name)
        self.gate = gate

    async def on_initialize(self):
        await self.gate.wait()
        await super().on_initialize()


class Factory:
    """Factory keeping every instance it creates."""

    def __init__(self, tool_cls=CountingTool, delay: float = 0):
        self.tool_cls = tool_cls
        self.delay = delay
        self.created: list[CountingTool] = []

    def __call__(self, name: str):
        if self.delay:
            return self._create_later(name)
        return self._create(name)

    def _create(self, name: str) -> CountingTool:
        tool = self.tool_cls(name)
        self.created.append(tool)
        return tool

    async def _create_later(self, name: str) -> CountingTool:
        await asyncio.sleep(self.delay)
        return self._create(name)


class TestRegistration:
    """Registering, unregistering and searching."""

    def test_register_and_lookup(self, registry: ToolRegistry):
        registration = registry.register("action", "npm-install", Factory())
        assert registration.key == ("action", "npm-install")
        assert registry.is_registered("action", "npm-install")
        assert registry.get_registration("action", "npm-install") is registration
        assert registry.get_registered_types() == ["action"]

    def test_duplicate_registration(self, registry: ToolRegistry):
        registry.register("action", "npm-install", Factory())
        with pytest.raises(DuplicateToolError) as exc_info:
            registry.register("action", "npm-install", Factory())
        assert exc_info.value.tool_name == "npm-install"

    def test_same_name_different_type(self, registry: ToolRegistry):
        registry.register("action", "format", Factory())
        registry.register("codemod", "format", Factory())
        assert registry.get_registered_types() == ["action", "codemod"]

    @pytest.mark.asyncio
    async def test_unregister(self, registry: ToolRegistry):
        registry.register("action", "npm-install", Factory())
        assert await registry.unregister("action", "npm-install") is True
        assert await registry.unregister("action", "npm-install") is False
        assert not registry.is_registered("action", "npm-install")

    def test_search(self, registry: ToolRegistry):
        registry.register(
            "action", "npm-install", Factory(), ToolMetadata(category="node", tags=["deps"], description="Install deps")
        )
        registry.register("action", "eslint-fix", Factory(), ToolMetadata(category="lint", tags=["deps", "style"]))
        registry.register("template", "react", Factory(), ToolMetadata(category="node", enabled=False))

        assert [r.name for r in registry.search(category="node")] == ["npm-install", "react"]
        assert [r.name for r in registry.search(tags=["deps"])] == ["eslint-fix", "npm-install"]
        assert [r.name for r in registry.search(name="ESLINT")] == ["eslint-fix"]
        assert [r.name for r in registry.search(description="install")] == ["npm-install"]
        assert [r.name for r in registry.search(ToolSearchCriteria(tool_type="template"))] == ["react"]
        assert [r.name for r in registry.search(category="node", enabled_only=True)] == ["npm-install"]
        assert registry.get_categories() == ["lint", "node"]


class TestResolution:
    """Resolving tools and sharing instances."""

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry: ToolRegistry):
        with pytest.raises(ToolNotFoundError):
            await registry.resolve("action", "missing")

    @pytest.mark.asyncio
    async def test_disabled_tool(self, registry: ToolRegistry):
        registry.register("action", "off", Factory(), ToolMetadata(enabled=False))
        with pytest.raises(ToolDisabledError):
            await registry.resolve("action", "off")

    @pytest.mark.asyncio
    async def test_resolve_initializes_once(self, registry: ToolRegistry):
        factory = Factory()
        registry.register("action", "npm-install", factory)

        tool = await registry.resolve("action", "npm-install")

        assert tool.is_initialized
        assert tool.initialize_calls == 1

    @pytest.mark.asyncio
    async def test_two_resolves_share_instance(self, registry: ToolRegistry):
        factory = Factory()
        registry.register("action", "npm-install", factory)

        first = await registry.resolve("action", "npm-install")
        second = await registry.resolve("action", "npm-install")

        assert first is second
        assert len(factory.created) == 1
        assert registry.get_cached_instance("action", "npm-install").ref_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_resolves_construct_once(self, registry: ToolRegistry):
        factory = Factory(delay=0.01)
        registry.register("action", "slow", factory)

        tools = await asyncio.gather(*(registry.resolve("action", "slow") for _ in range(5)))

        assert len(factory.created) == 1
        assert all(tool is tools[0] for tool in tools)
        assert registry.get_cached_instance("action", "slow").ref_count == 5

    @pytest.mark.asyncio
    async def test_release_decrements(self, registry: ToolRegistry):
        registry.register("action", "npm-install", Factory())
        tool = await registry.resolve("action", "npm-install")
        await registry.resolve("action", "npm-install")

        await registry.release("action", "npm-install", tool)
        assert registry.get_cached_instance("action", "npm-install").ref_count == 1
        await registry.release("action", "npm-install", tool)
        assert registry.get_cached_instance("action", "npm-install").ref_count == 0

    @pytest.mark.asyncio
    async def test_reuse_disabled(self):
        registry = ToolRegistry(RegistryConfig(enable_instance_reuse=False))
        factory = Factory()
        registry.register("action", "npm-install", factory)

        first = await registry.resolve("action", "npm-install")
        second = await registry.resolve("action", "npm-install")
        assert first is not second
        assert registry.get_cached_instance("action", "npm-install") is None

        await registry.release("action", "npm-install", first)
        assert first.cleanup_calls == 1
        assert second.cleanup_calls == 0


    @pytest.mark.asyncio
    async def test_shared_construction_counts_every_holder_while_evicting(self):
        registry = ToolRegistry(RegistryConfig(max_cache_size=1))
        old_factory = Factory(SlowCleanupTool)
        registry.register("action", "old", old_factory)
        registry.register("action", "k", Factory(delay=0.01))
        old = await registry.resolve("action", "old")
        await registry.release("action", "old", old)

        first, second = await asyncio.gather(registry.resolve("action", "k"), registry.resolve("action", "k"))

        assert first is second
        assert old.cleanup_calls == 1
        assert registry.get_cached_instance("action", "k").ref_count == 2

        await registry.release("action", "k", first)
        assert registry.get_cached_instance("action", "k").ref_count == 1
        assert not first.is_cleaned_up

    @pytest.mark.asyncio
    async def test_cancelled_resolve_leaves_instance_idle_in_cache(self, registry: ToolRegistry):
        gate = asyncio.Event()
        created = []

        def factory(name):
            tool = GatedTool(name, gate)
            created.append(tool)
            return tool

        registry.register("action", "gated", factory)
        task = asyncio.create_task(registry.resolve("action", "gated"))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        gate.set()
        for _ in range(100):
            if registry.get_cached_instance("action", "gated") is not None:
                break
            await asyncio.sleep(0.01)

        entry = registry.get_cached_instance("action", "gated")
        assert entry.instance is created[0]
        assert entry.ref_count == 0

        await registry.close()
        assert created[0].cleanup_calls == 1

    @pytest.mark.asyncio
    async def test_cancelled_resolve_does_not_affect_other_waiters(self, registry: ToolRegistry):
        gate = asyncio.Event()
        created = []

        def factory(name):
            tool = GatedTool(name, gate)
            created.append(tool)
            return tool

        registry.register("action", "gated", factory)
        cancelled = asyncio.create_task(registry.resolve("action", "gated"))
        waiting = asyncio.create_task(registry.resolve("action", "gated"))
        await asyncio.sleep(0.01)
        cancelled.cancel()
        gate.set()

        tool = await waiting
        with pytest.raises(asyncio.CancelledError):
            await cancelled
        await asyncio.sleep(0.01)

        assert len(created) == 1
        assert tool is created[0]
        assert registry.get_cached_instance("action", "gated").ref_count == 1

    @pytest.mark.asyncio
    async def test_unclaimed_instance_cleaned_up_when_cache_is_full(self):
        registry = ToolRegistry(RegistryConfig(max_cache_size=1))
        registry.register("action", "busy", Factory())
        busy = await registry.resolve("action", "busy")
        gate = asyncio.Event()
        created = []

        def factory(name):
            tool = GatedTool(name, gate)
            created.append(tool)
            return tool

        registry.register("action", "gated", factory)
        task = asyncio.create_task(registry.resolve("action", "gated"))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        gate.set()
        for _ in range(100):
            if created[0].is_cleaned_up:
                break
            await asyncio.sleep(0.01)

        assert created[0].cleanup_calls == 1
        assert not busy.is_cleaned_up
        assert registry.get_stats()["detached_instances"] == 0


class TestEviction:
    """TTL sweep and LRU bounds."""

    @pytest.mark.asyncio
    async def test_ttl_sweep_cleans_up_exactly_once(self, clock):
        registry = ToolRegistry(RegistryConfig(cache_ttl=60), clock=clock)
        factory = Factory()
        registry.register("action", "npm-install", factory)

        first = await registry.resolve("action", "npm-install")
        second = await registry.resolve("action", "npm-install")
        assert registry.get_cached_instance("action", "npm-install").ref_count == 2
        await registry.release("action", "npm-install", first)
        await registry.release("action", "npm-install", second)

        clock.advance(61)
        assert await registry.sweep() == 1
        assert await registry.sweep() == 0

        assert factory.created[0].cleanup_calls == 1
        assert registry.get_cached_instance("action", "npm-install") is None
        assert registry.get_stats()["evictions"] == 1

    @pytest.mark.asyncio
    async def test_sweep_keeps_in_use_instances(self, clock):
        registry = ToolRegistry(RegistryConfig(cache_ttl=60), clock=clock)
        registry.register("action", "npm-install", Factory())
        tool = await registry.resolve("action", "npm-install")

        clock.advance(600)
        assert await registry.sweep() == 0
        assert not tool.is_cleaned_up

    @pytest.mark.asyncio
    async def test_sweep_keeps_fresh_instances(self, clock):
        registry = ToolRegistry(RegistryConfig(cache_ttl=60), clock=clock)
        registry.register("action", "npm-install", Factory())
        tool = await registry.resolve("action", "npm-install")
        await registry.release("action", "npm-install", tool)

        clock.advance(30)
        assert await registry.sweep() == 0

    @pytest.mark.asyncio
    async def test_expired_entry_replaced_on_resolve(self, clock):
        registry = ToolRegistry(RegistryConfig(cache_ttl=60), clock=clock)
        factory = Factory()
        registry.register("action", "npm-install", factory)
        old = await registry.resolve("action", "npm-install")
        await registry.release("action", "npm-install", old)

        clock.advance(120)
        new = await registry.resolve("action", "npm-install")

        assert new is not old
        assert old.cleanup_calls == 1

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        registry = ToolRegistry(RegistryConfig(max_cache_size=2))
        factories = {name: Factory() for name in ("a", "b", "c")}
        for name, factory in factories.items():
            registry.register("action", name, factory)

        a = await registry.resolve("action", "a")
        await registry.release("action", "a", a)
        b = await registry.resolve("action", "b")
        await registry.release("action", "b", b)
        # Touch "a" so "b" becomes least recently used
        a = await registry.resolve("action", "a")
        await registry.release("action", "a", a)
        await registry.resolve("action", "c")

        assert registry.get_cached_instance("action", "b") is None
        assert factories["b"].created[0].cleanup_calls == 1
        assert registry.get_cached_instance("action", "a") is not None
        assert registry.get_stats()["cached_instances"] == 2

    @pytest.mark.asyncio
    async def test_full_cache_of_in_use_instances(self):
        registry = ToolRegistry(RegistryConfig(max_cache_size=1))
        registry.register("action", "a", Factory())
        registry.register("action", "b", Factory())

        a = await registry.resolve("action", "a")
        b = await registry.resolve("action", "b")

        assert not a.is_cleaned_up
        assert registry.get_cached_instance("action", "b") is None
        assert registry.get_stats()["detached_instances"] == 1

        await registry.release("action", "b", b)
        assert b.cleanup_calls == 1

    @pytest.mark.asyncio
    async def test_unregister_in_use_defers_cleanup(self, registry: ToolRegistry):
        registry.register("action", "npm-install", Factory())
        tool = await registry.resolve("action", "npm-install")

        await registry.unregister("action", "npm-install")
        assert tool.cleanup_calls == 0

        await registry.release("action", "npm-install", tool)
        assert tool.cleanup_calls == 1

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_logged_not_raised(self, registry: ToolRegistry):
        registry.register("action", "flaky", Factory(FailingCleanupTool))
        tool = await registry.resolve("action", "flaky")
        await registry.release("action", "flaky", tool)

        await registry.close()

        assert tool.cleanup_calls == 1
        assert registry.get_stats()["cleanup_failures"] == 1


class TestLifecycle:
    """Background sweep and shutdown."""

    @pytest.mark.asyncio
    async def test_context_manager_starts_and_closes(self):
        factory = Factory()
        async with ToolRegistry() as registry:
            registry.register("action", "npm-install", factory)
            await registry.resolve("action", "npm-install")
            assert registry.get_stats()["sweeping"] is True

        assert registry.get_stats()["sweeping"] is False
        assert registry.get_stats()["cached_instances"] == 0
        assert factory.created[0].cleanup_calls == 1

    @pytest.mark.asyncio
    async def test_background_sweep(self, clock):
        registry = ToolRegistry(RegistryConfig(cache_ttl=60, sweep_interval=0.01), clock=clock)
        factory = Factory()
        registry.register("action", "npm-install", factory)
        tool = await registry.resolve("action", "npm-install")
        await registry.release("action", "npm-install", tool)
        clock.advance(120)

        registry.start()
        for _ in range(100):
            if tool.is_cleaned_up:
                break
            await asyncio.sleep(0.01)
        await registry.close()

        assert tool.cleanup_calls == 1
