"""Tests for the task registry."""

from __future__ import annotations

import logging

from llm_tasks.contracts import Pipeline
from llm_tasks.registry import TaskRegistry
import pytest

from tests.conftest import FakePipeline


@pytest.mark.unit
class TestTaskRegistry:
    """TaskRegistry maps names to pipeline factories."""

    def test_create_returns_fresh_instances(self) -> None:
        """Every create() call builds a new pipeline."""
        registry = TaskRegistry()
        registry.register("fake", FakePipeline)

        first = registry.create("fake")
        second = registry.create("fake")

        assert isinstance(first, Pipeline)
        assert first is not second

    def test_names_are_sorted(self) -> None:
        registry = TaskRegistry()
        registry.register("sort", FakePipeline)
        registry.register("commit-message", FakePipeline)

        assert registry.names() == ["commit-message", "sort"]
        assert len(registry) == 2
        assert "sort" in registry
        assert "absent" not in registry
        assert 3 not in registry

    def test_names_are_stripped(self) -> None:
        registry = TaskRegistry()
        registry.register("  sort ", FakePipeline)

        assert registry.names() == ["sort"]
        assert isinstance(registry.create(" sort"), FakePipeline)

    def test_unknown_name_lists_available(self) -> None:
        registry = TaskRegistry()
        registry.register("sort", FakePipeline)

        with pytest.raises(KeyError, match=r"unknown task 'nope' \(available: sort\)"):
            registry.create("nope")

    def test_unknown_name_on_empty_registry(self) -> None:
        with pytest.raises(KeyError, match="available: none"):
            TaskRegistry().create("sort")

    @pytest.mark.parametrize("name", ["", "   "])
    def test_empty_name_rejected(self, name: str) -> None:
        with pytest.raises(ValueError, match="must not be empty"):
            TaskRegistry().register(name, FakePipeline)

    def test_replacing_a_factory_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        registry = TaskRegistry()
        registry.register("sort", FakePipeline)

        with caplog.at_level(logging.WARNING, logger="llm_tasks.registry"):
            registry.register("sort", lambda: FakePipeline(user_prompt="other"))

        assert "Replacing factory for task 'sort'" in caplog.text
        assert len(registry) == 1
