"""Registry of task kinds keyed by name.

Each task kind registers a zero-argument factory; ``create()`` builds a
fresh pipeline instance per run, so no state leaks between runs.
"""

from __future__ import annotations

from collections.abc import Callable
import logging

from llm_tasks.contracts import Pipeline

logger = logging.getLogger(__name__)

PipelineFactory = Callable[[], Pipeline]


class TaskRegistry:
    """Mapping from task name to pipeline factory."""

    def __init__(self) -> None:
        """Create an empty registry."""
        self._factories: dict[str, PipelineFactory] = {}

    def register(self, name: str, factory: PipelineFactory) -> None:
        """Register *factory* under *name*, replacing any earlier entry.

        Raises:
            ValueError: If *name* is empty or whitespace-only.
        """
        key = name.strip()
        if not key:
            msg = "task name must not be empty"
            raise ValueError(msg)
        if key in self._factories:
            logger.warning("Replacing factory for task %r", key)
        self._factories[key] = factory

    def names(self) -> list[str]:
        """Return registered task names in sorted order."""
        return sorted(self._factories)

    def create(self, name: str) -> Pipeline:
        """Build a new pipeline instance for *name*.

        Raises:
            KeyError: If no factory is registered under *name*.
        """
        try:
            factory = self._factories[name.strip()]
        except KeyError:
            available = ", ".join(self.names()) or "none"
            msg = f"unknown task {name!r} (available: {available})"
            raise KeyError(msg) from None
        return factory()

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.strip() in self._factories

    def __len__(self) -> int:
        return len(self._factories)
