"""
Lifecycle hooks for schemas.

Hooks are registered per operation (``validate``, ``save``, ``find``, ...)
and phase (``pre`` / ``post``). Every hook carries an origin tag assigned at
registration time; composing or cloning schemas copies hooks together with
their tags, and a registry never holds two hooks with the same tag for the
same phase and operation.

Invariants:
    - Registering the same function object twice yields the same origin tag
    - merge() appends only hooks whose origin tag is not already present
    - run() executes hooks sequentially; a failing hook aborts the chain

How to change safely:
    - Never derive origin tags from anything that changes on clone
"""

from __future__ import annotations

import inspect
import logging
import uuid
import weakref
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

PHASES = ("pre", "post")

# Origin tags handed out per function object
_origins: weakref.WeakKeyDictionary[Any, str] = weakref.WeakKeyDictionary()


def origin_of(fn: Callable[..., Any]) -> str:
    """Return the stable origin tag for a hook function."""
    try:
        tag = _origins.get(fn)
        if tag is None:
            tag = f"hook:{uuid.uuid4().hex}"
            _origins[fn] = tag
        return tag
    except TypeError:
        # not weak-referenceable (e.g. a builtin); tag is per registration
        return f"hook:{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Hook:
    """A registered lifecycle hook.

    Attributes:
        origin: Tag identifying where the hook was first registered
        fn: Callable receiving the target (document or query); may be async
        phase: "pre" or "post"
        op: Operation name
    """

    origin: str
    fn: Callable[[Any], Any]
    phase: str
    op: str


class HookRegistry:
    """Ordered, deduplicated hook chains keyed by (phase, operation)."""

    def __init__(self) -> None:
        self._chains: dict[tuple[str, str], list[Hook]] = {}

    def add(
        self,
        phase: str,
        op: str,
        fn: Callable[[Any], Any],
        origin: str | None = None,
    ) -> Hook:
        """Register a hook.

        Args:
            phase: "pre" or "post"
            op: Operation name
            fn: Hook callable
            origin: Explicit origin tag (derived from ``fn`` if omitted)

        Returns:
            The registered hook (or the existing one with the same origin)

        Raises:
            ValueError: If phase is unknown or fn is not callable
        """
        if phase not in PHASES:
            raise ValueError(f"Invalid hook phase '{phase}'. Valid phases: {list(PHASES)}")
        if not callable(fn):
            raise ValueError(f"Hook for '{op}' must be callable, got {type(fn).__name__}")

        hook = Hook(origin=origin or origin_of(fn), fn=fn, phase=phase, op=op)
        chain = self._chains.setdefault((phase, op), [])
        for existing in chain:
            if existing.origin == hook.origin:
                return existing
        chain.append(hook)
        return hook

    def merge(self, other: HookRegistry) -> None:
        """Append other's hooks after ours, skipping origins we already hold."""
        for key, hooks in other._chains.items():
            chain = self._chains.setdefault(key, [])
            seen = {h.origin for h in chain}
            for hook in hooks:
                if hook.origin not in seen:
                    chain.append(hook)
                    seen.add(hook.origin)

    def clone(self) -> HookRegistry:
        """Copy chains; hooks (and their origin tags) are shared."""
        copy = HookRegistry()
        copy._chains = {key: list(hooks) for key, hooks in self._chains.items()}
        return copy

    def get(self, phase: str, op: str) -> list[Hook]:
        return list(self._chains.get((phase, op), ()))

    def __iter__(self) -> Iterator[Hook]:
        for hooks in self._chains.values():
            yield from hooks

    def __len__(self) -> int:
        return sum(len(hooks) for hooks in self._chains.values())

    async def run(self, phase: str, op: str, target: Any) -> None:
        """Execute the chain for (phase, op) against ``target``.

        Hooks run one at a time in registration order. Awaitable results are
        awaited before the next hook starts. Any exception propagates and
        the remaining hooks are skipped.
        """
        for hook in self._chains.get((phase, op), ()):
            result = hook.fn(target)
            if inspect.isawaitable(result):
                await result

    def to_dict(self) -> dict[str, list[str]]:
        """Hook origins per ``phase:op`` (for fingerprinting and describe)."""
        return {
            f"{phase}:{op}": [getattr(h.fn, "__qualname__", repr(h.fn)) for h in hooks]
            for (phase, op), hooks in sorted(self._chains.items())
        }
