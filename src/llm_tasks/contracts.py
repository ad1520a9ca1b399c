"""Protocols implemented by tasks and LLM transports.

A task kind is any object satisfying ``Pipeline``: four async stages run by
the ``Runner``. Tasks whose gathered input is a list of independent units
can additionally satisfy ``BatchablePipeline`` to be driven by
``run_batches``. Concrete task kinds are independent implementations, not
subclasses of a shared base.
"""

from __future__ import annotations

from collections.abc import Sequence
import functools
from typing import Any, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ConfigDict, ValidationError

from llm_tasks.models import ApplyReport, LLMRequest, LLMResponse, VerifyResult

_ModelT = TypeVar("_ModelT", bound=BaseModel)


@runtime_checkable
class Pipeline(Protocol):
    """Gather/Prompt/Verify/Apply contract for one task kind.

    The engine treats the gathered and verified payloads as opaque. A
    pipeline may keep task-local mutable state between stages; the engine
    never inspects it.
    """

    name: str

    async def gather(self) -> Any: ...  # noqa: D102

    async def prompt(self, gathered: Any) -> LLMRequest: ...  # noqa: D102

    async def verify(  # noqa: D102
        self, gathered: Any, response: LLMResponse
    ) -> VerifyResult: ...

    async def apply(self, verified: Any) -> ApplyReport: ...  # noqa: D102


@runtime_checkable
class BatchablePipeline(Pipeline, Protocol):
    """A pipeline whose gathered output is a sequence of independent units.

    ``clone()`` returns an independent copy sharing only read-only
    collaborators. ``preload(units)`` makes the next ``gather()`` return
    exactly *units*, skipping Gather's own side effects.
    """

    completion_tokens: int

    def clone(self) -> BatchablePipeline: ...  # noqa: D102

    def preload(self, units: Sequence[Any]) -> None: ...  # noqa: D102

    def set_completion_tokens(self, tokens: int) -> None: ...  # noqa: D102

    def unit_id(self, unit: Any) -> str: ...  # noqa: D102


@runtime_checkable
class LLMClient(Protocol):
    """Single request/response call to the remote text-generation service.

    Implementations raise ``TransportError`` on failure and
    ``LengthLimitedError`` when the output cap left no usable text.
    """

    async def chat(self, request: LLMRequest) -> LLMResponse: ...  # noqa: D102


@functools.cache
def _forbid_extra(model: type[_ModelT]) -> type[_ModelT]:
    """Return *model*, or a cached subclass of it that forbids unknown fields."""
    if model.model_config.get("extra") == "forbid":
        return model

    class _StrictModel(model):  # type: ignore[valid-type,misc]
        model_config = ConfigDict(**{**model.model_config, "extra": "forbid"})

    _StrictModel.__name__ = model.__name__
    _StrictModel.__qualname__ = model.__qualname__
    return _StrictModel


def decode_strict_json(raw: str, model: type[_ModelT]) -> _ModelT:
    """Parse *raw* JSON into *model*, rejecting unknown fields.

    Helper for ``verify`` implementations that demand an exact response
    shape. The model's own ``extra`` setting is overridden to ``forbid``.

    Args:
        raw: Raw response text.
        model: Target Pydantic model class.

    Returns:
        The validated model instance.

    Raises:
        ValueError: If *raw* is not valid JSON for *model* or carries
            unknown fields.
    """
    try:
        return _forbid_extra(model).model_validate_json(raw.strip())
    except ValidationError as exc:
        msg = f"response does not match {model.__name__}: {exc.error_count()} error(s): {exc}"
        raise ValueError(msg) from exc
