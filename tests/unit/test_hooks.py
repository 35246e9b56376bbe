"""
Unit tests for lifecycle hooks.

Tests cover:
- Origin tags and deduplication
- Merging and cloning chains
- Sequential execution of sync and async hooks
"""

import asyncio

import pytest

from polydoc.schema.hooks import HookRegistry, origin_of


class TestHookRegistry:
    """Tests for HookRegistry."""

    def test_same_function_registered_once(self):
        """Registering one function twice keeps a single hook."""
        hooks = HookRegistry()

        def hook(doc):
            pass

        first = hooks.add("pre", "save", hook)
        second = hooks.add("pre", "save", hook)

        assert first is second
        assert len(hooks) == 1

    def test_origin_is_stable_per_function(self):
        """A function keeps its origin tag across registries."""
        def hook(doc):
            pass

        assert origin_of(hook) == origin_of(hook)
        assert HookRegistry().add("pre", "save", hook).origin == origin_of(hook)

    def test_explicit_origin(self):
        """Different functions with one explicit origin dedup."""
        hooks = HookRegistry()
        hooks.add("post", "save", lambda doc: None, origin="audit")
        hooks.add("post", "save", lambda doc: None, origin="audit")

        assert len(hooks.get("post", "save")) == 1

    def test_invalid_phase_raises(self):
        """Unknown phases are rejected."""
        with pytest.raises(ValueError, match="Invalid hook phase"):
            HookRegistry().add("during", "save", lambda doc: None)

    def test_non_callable_raises(self):
        """Hooks must be callable."""
        with pytest.raises(ValueError, match="must be callable"):
            HookRegistry().add("pre", "save", "not a function")

    def test_merge_skips_known_origins(self):
        """merge() appends only unseen origins, preserving order."""
        def a(doc):
            pass

        def b(doc):
            pass

        left = HookRegistry()
        left.add("pre", "save", a)
        right = HookRegistry()
        right.add("pre", "save", a)
        right.add("pre", "save", b)

        left.merge(right)

        assert [h.fn for h in left.get("pre", "save")] == [a, b]

    def test_clone_is_independent(self):
        """Adding to a clone leaves the original unchanged."""
        hooks = HookRegistry()
        hooks.add("pre", "save", lambda doc: None)
        copy = hooks.clone()
        copy.add("pre", "validate", lambda doc: None)

        assert len(hooks) == 1
        assert len(copy) == 2

    def test_to_dict(self):
        """to_dict lists hook names per phase and operation."""
        def stamp(doc):
            pass

        hooks = HookRegistry()
        hooks.add("pre", "save", stamp)

        assert hooks.to_dict() == {"pre:save": [stamp.__qualname__]}


class TestHookExecution:
    """Tests for running hook chains."""

    @pytest.mark.asyncio
    async def test_runs_in_order(self):
        """Hooks run in registration order."""
        calls = []
        hooks = HookRegistry()
        hooks.add("pre", "save", lambda doc: calls.append("one"))
        hooks.add("pre", "save", lambda doc: calls.append("two"))

        await hooks.run("pre", "save", object())

        assert calls == ["one", "two"]

    @pytest.mark.asyncio
    async def test_async_hooks_run_sequentially(self):
        """An async hook finishes before the next one starts."""
        events = []

        async def slow(doc):
            events.append("slow:start")
            await asyncio.sleep(0.01)
            events.append("slow:end")

        def fast(doc):
            events.append("fast")

        hooks = HookRegistry()
        hooks.add("pre", "save", slow)
        hooks.add("pre", "save", fast)

        await hooks.run("pre", "save", object())

        assert events == ["slow:start", "slow:end", "fast"]

    @pytest.mark.asyncio
    async def test_failure_aborts_chain(self):
        """A failing hook stops the remaining hooks."""
        calls = []

        def boom(doc):
            raise RuntimeError("boom")

        hooks = HookRegistry()
        hooks.add("pre", "save", boom)
        hooks.add("pre", "save", lambda doc: calls.append("after"))

        with pytest.raises(RuntimeError, match="boom"):
            await hooks.run("pre", "save", object())

        assert calls == []

    @pytest.mark.asyncio
    async def test_empty_chain(self):
        """Running an empty chain is a no-op."""
        await HookRegistry().run("post", "find", object())
