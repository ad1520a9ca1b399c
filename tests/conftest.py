"""Shared fakes and fixtures for the llm_tasks test suite."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from typing import Any

from llm_tasks.errors import LengthLimitedError, TransportError
from llm_tasks.models import (
    ApplyReport,
    LLMRequest,
    LLMResponse,
    RefineReason,
    RunnerConfig,
    VerifyResult,
)
from llm_tasks.runner import Runner
import pytest

# ---------------------------------------------------------------------------
# Fake LLM clients
# ---------------------------------------------------------------------------


class FakeClient:
    """Scripted LLM client.

    Each ``chat()`` call consumes the next script item: a string becomes the
    response text, an ``LLMResponse`` is returned as is, and an exception is
    raised. An exhausted script raises ``TransportError``.
    """

    def __init__(
        self,
        script: Sequence[str | LLMResponse | BaseException] = (),
        *,
        delay: float = 0.0,
    ) -> None:
        self._script = list(script)
        self._delay = delay
        self.requests: list[LLMRequest] = []

    async def chat(self, request: LLMRequest) -> LLMResponse:
        self.requests.append(request)
        if self._delay:
            await asyncio.sleep(self._delay)
        if not self._script:
            msg = "no more responses"
            raise TransportError(msg)
        item = self._script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return LLMResponse(raw_text=item, finish_reason="stop")
        return item


class CapacityClient:
    """LLM client whose output size depends on the units in the prompt.

    Every prompt line is a unit; answering it costs ``costs[unit]`` tokens
    (``default_cost`` otherwise). When the total exceeds the request's
    ``max_tokens`` the answer is cut short with ``finish_reason="length"``,
    or, with ``raise_on_length=True``, a ``LengthLimitedError`` is raised.
    Units listed in ``garbage`` get an unparseable answer.
    """

    def __init__(
        self,
        costs: dict[str, int] | None = None,
        *,
        default_cost: int = 100,
        raise_on_length: bool = False,
        garbage: set[str] | None = None,
        fail_at_tokens: dict[int, BaseException] | None = None,
    ) -> None:
        self.costs = costs or {}
        self.default_cost = default_cost
        self.raise_on_length = raise_on_length
        self.garbage = garbage or set()
        self.fail_at_tokens = fail_at_tokens or {}
        self.requests: list[LLMRequest] = []

    @staticmethod
    def units_of(request: LLMRequest) -> list[str]:
        """Units named in the base part of *request*'s user prompt."""
        base = request.user_prompt.split("\n\nREFINE:")[0]
        return [line for line in base.split("\n") if line]

    @property
    def calls(self) -> list[list[str]]:
        """Units sent on every call, in call order."""
        return [self.units_of(r) for r in self.requests]

    @property
    def budgets(self) -> list[int]:
        """``max_tokens`` sent on every call, in call order."""
        return [r.max_tokens for r in self.requests]

    async def chat(self, request: LLMRequest) -> LLMResponse:
        self.requests.append(request)
        if request.max_tokens in self.fail_at_tokens:
            raise self.fail_at_tokens[request.max_tokens]
        units = self.units_of(request)
        needed = sum(self.costs.get(unit, self.default_cost) for unit in units)
        answer = "\n".join(f"ok:{unit}" for unit in units)
        if needed > request.max_tokens:
            if self.raise_on_length:
                msg = "chat completion returned empty message at output token limit"
                raise LengthLimitedError(msg)
            return LLMResponse(raw_text=answer[: len(answer) // 2], finish_reason="length")
        if any(unit in self.garbage for unit in units):
            return LLMResponse(raw_text="<<garbage>>", finish_reason="stop")
        return LLMResponse(raw_text=answer, finish_reason="stop")


# ---------------------------------------------------------------------------
# Fake pipelines
# ---------------------------------------------------------------------------


class FakePipeline:
    """Single-run pipeline whose Verify behavior is injected."""

    name = "fake"

    def __init__(
        self,
        verify: Callable[[LLMResponse], VerifyResult] | None = None,
        *,
        user_prompt: str = "classify these items",
        gather_error: BaseException | None = None,
        prompt_error: BaseException | None = None,
        apply_error: BaseException | None = None,
        report: ApplyReport | None = None,
    ) -> None:
        self._verify = verify or (lambda response: VerifyResult.accept(response.raw_text))
        self._user_prompt = user_prompt
        self._gather_error = gather_error
        self._prompt_error = prompt_error
        self._apply_error = apply_error
        self._report = report or ApplyReport(summary="ok", num_actions=1)
        self.gather_calls = 0
        self.prompt_calls = 0
        self.verified_responses: list[str] = []
        self.applied: list[Any] = []

    async def gather(self) -> Any:
        self.gather_calls += 1
        if self._gather_error is not None:
            raise self._gather_error
        return [1, 2, 3]

    async def prompt(self, gathered: Any) -> LLMRequest:
        self.prompt_calls += 1
        if self._prompt_error is not None:
            raise self._prompt_error
        return LLMRequest(
            system_prompt="You are a careful assistant.",
            user_prompt=self._user_prompt,
            max_tokens=256,
            model="test-model",
        )

    async def verify(self, gathered: Any, response: LLMResponse) -> VerifyResult:
        self.verified_responses.append(response.raw_text)
        return self._verify(response)

    async def apply(self, verified: Any) -> ApplyReport:
        self.applied.append(verified)
        if self._apply_error is not None:
            raise self._apply_error
        return self._report


class FakeBatchPipeline:
    """Batchable pipeline over string units.

    Prompts list one unit per line; Verify expects one ``ok:<unit>`` line
    per unit and rejects truncated responses as ``length-limited``. Every
    clone shares ``ledger`` (applied batches) with its prototype.
    """

    name = "batch-fake"

    def __init__(
        self,
        units: Sequence[str],
        *,
        completion_tokens: int = 512,
        live_units: set[str] | None = None,
        ledger: list[list[str]] | None = None,
    ) -> None:
        self._units = list(units)
        self._preloaded: list[str] | None = None
        self.completion_tokens = completion_tokens
        self.live_units = live_units or set()
        self.ledger: list[list[str]] = ledger if ledger is not None else []

    def clone(self) -> FakeBatchPipeline:
        return type(self)(
            self._units,
            completion_tokens=self.completion_tokens,
            live_units=self.live_units,
            ledger=self.ledger,
        )

    def preload(self, units: Sequence[str]) -> None:
        self._preloaded = list(units)

    def set_completion_tokens(self, tokens: int) -> None:
        if tokens > 0:
            self.completion_tokens = tokens

    def unit_id(self, unit: Any) -> str:
        return f"unit:{unit}"

    async def gather(self) -> list[str]:
        if self._preloaded is not None:
            units, self._preloaded = self._preloaded, None
            return units
        return list(self._units)

    async def prompt(self, gathered: Any) -> LLMRequest:
        return LLMRequest(
            system_prompt="Answer ok:<unit> for every line.",
            user_prompt="\n".join(gathered),
            max_tokens=self.completion_tokens,
            model="test-model",
        )

    async def verify(self, gathered: Any, response: LLMResponse) -> VerifyResult:
        if response.truncated:
            return VerifyResult.reject(
                "Your answer was cut off; answer more briefly.",
                RefineReason.LENGTH_LIMITED,
            )
        expected = [f"ok:{unit}" for unit in gathered]
        if response.raw_text.split("\n") != expected:
            return VerifyResult.reject(
                "Answer exactly one ok:<unit> line per unit.",
                RefineReason.COUNT_MISMATCH,
            )
        return VerifyResult.accept(list(gathered))

    async def apply(self, verified: Any) -> ApplyReport:
        self.ledger.append(list(verified))
        return ApplyReport(
            dry_run=not any(unit in self.live_units for unit in verified),
            summary=f"{len(verified)} unit(s)",
            num_actions=len(verified),
        )


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def make_runner(client: Any, **overrides: Any) -> Runner:
    """Build a Runner with a short per-attempt timeout.

    Args:
        client: LLM client fake.
        **overrides: ``RunnerConfig`` field overrides.

    Returns:
        A configured Runner.
    """
    defaults: dict[str, Any] = {"max_attempts": 3, "timeout_seconds": 5.0}
    defaults.update(overrides)
    return Runner(client, RunnerConfig(**defaults))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def pkg_logger() -> Any:
    """Yield the ``llm_tasks`` logger and restore its handlers afterwards."""
    import logging

    logger = logging.getLogger("llm_tasks")
    saved_handlers = list(logger.handlers)
    saved_level = logger.level
    yield logger
    for handler in list(logger.handlers):
        if handler not in saved_handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(saved_level)
