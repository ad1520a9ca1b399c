"""Core data models for the llm-tasks engine.

Defines the shared Pydantic models and enums passed between pipelines, the
runner, the batch executor, and LLM clients. Task-specific payloads
(gathered input, verified output) are opaque to the engine and typed as
``Any``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

LENGTH_FINISH_REASON = "length"
"""Finish reason reported by the remote service when output hit the token cap."""


class RefineReason(StrEnum):
    """Machine-stable tags explaining why Verify rejected a response."""

    INVALID_STRUCTURE = "invalid-structure"
    MISSING_SECTION = "missing-section"
    COUNT_MISMATCH = "count-mismatch"
    LOW_CONFIDENCE = "low-confidence"
    EMPTY_RESPONSE = "empty-response"
    DISALLOWED_FORMATTING = "disallowed-formatting"
    LENGTH_LIMITED = "length-limited"


class LLMRequest(BaseModel):
    """A single request to the remote text-generation service.

    Zero or empty values for ``max_tokens``, ``temperature`` and ``model``
    mean "use the client default".

    Attributes:
        system_prompt: System instructions.
        user_prompt: User instructions, including any appended refine blocks.
        max_tokens: Output token cap.
        temperature: Sampling temperature.
        model: Model identifier.
        json_schema: Optional structured-output JSON schema.
        schema_name: Name reported alongside ``json_schema``.
    """

    model_config = ConfigDict(frozen=True)

    system_prompt: str = ""
    user_prompt: str = ""
    max_tokens: int = 0
    temperature: float = 0.0
    model: str = ""
    json_schema: dict[str, Any] | None = None
    schema_name: str = "response"


class LLMResponse(BaseModel):
    """Raw response text plus the structural finish reason."""

    model_config = ConfigDict(frozen=True)

    raw_text: str = ""
    finish_reason: str | None = None

    @property
    def truncated(self) -> bool:
        """Whether the response stopped because it hit the output token cap."""
        return (self.finish_reason or "").strip().lower() == LENGTH_FINISH_REASON


class RefineRequest(BaseModel):
    """Guidance returned by Verify when it rejects a response.

    Attributes:
        prompt_delta: Text appended to the next attempt's user prompt.
        reason: Short machine-stable tag, usually a ``RefineReason`` value.
    """

    model_config = ConfigDict(frozen=True)

    prompt_delta: str
    reason: str = ""


class VerifyResult(BaseModel):
    """Outcome of ``Pipeline.verify``.

    ``accepted=True`` carries the verified output. A rejection either carries
    a ``RefineRequest`` (retry with guidance) or nothing (no safe retry).
    """

    model_config = ConfigDict(frozen=True)

    accepted: bool
    verified: Any = None
    refine: RefineRequest | None = None

    @classmethod
    def accept(cls, verified: Any) -> VerifyResult:
        """Build an accepting result carrying *verified*."""
        return cls(accepted=True, verified=verified)

    @classmethod
    def reject(cls, prompt_delta: str, reason: str = "") -> VerifyResult:
        """Build a rejection with refine guidance."""
        return cls(
            accepted=False,
            refine=RefineRequest(prompt_delta=prompt_delta, reason=reason),
        )

    @classmethod
    def reject_without_guidance(cls) -> VerifyResult:
        """Build a rejection the runner must not retry."""
        return cls(accepted=False)


class ApplyReport(BaseModel):
    """Summary of what a pipeline's Apply step did.

    Attributes:
        dry_run: Whether changes were only simulated.
        summary: Human-readable summary.
        num_actions: Number of actions taken (or planned, in a dry run).
        omitted: Identities of units a batch run could not recover.
    """

    model_config = ConfigDict(frozen=True)

    dry_run: bool = False
    summary: str = ""
    num_actions: int = Field(default=0, ge=0)
    omitted: list[str] = []


class AttemptRecord(BaseModel):
    """Diagnostic record of one Prompt -> chat -> Verify cycle.

    ``response`` is ``None`` when the remote call itself failed.
    """

    model_config = ConfigDict(frozen=True)

    attempt: int
    request: LLMRequest
    response: LLMResponse | None = None
    refine: RefineRequest | None = None
    accepted: bool = False


class RunnerConfig(BaseModel):
    """Attempt and timeout budgets for ``Runner``.

    Attributes:
        max_attempts: Attempt ceiling; values below 1 are treated as 1.
        timeout_seconds: Timeout applied to each remote call separately.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = 3
    timeout_seconds: float = 60.0

    @field_validator("timeout_seconds")
    @classmethod
    def _timeout_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            msg = "timeout_seconds must be > 0"
            raise ValueError(msg)
        return v

    @property
    def effective_attempts(self) -> int:
        """Attempt ceiling actually used by the runner (always >= 1)."""
        return max(1, self.max_attempts)


DEFAULT_BATCH_SIZE = 1
DEFAULT_FALLBACK_TOKEN_BUDGETS: tuple[int, ...] = (768, 1024, 1280, 1536, 1792)


class BatchConfig(BaseModel):
    """Batch size and escalation budgets for ``run_batches``.

    Attributes:
        batch_size: Units per batch; values below 1 fall back to 1.
        fallback_token_budgets: Strictly ascending output-token budgets tried
            after a length-limited failure.
    """

    model_config = ConfigDict(frozen=True)

    batch_size: int = DEFAULT_BATCH_SIZE
    fallback_token_budgets: tuple[int, ...] = DEFAULT_FALLBACK_TOKEN_BUDGETS

    @field_validator("batch_size")
    @classmethod
    def _clamp_batch_size(cls, v: int) -> int:
        return v if v > 0 else DEFAULT_BATCH_SIZE

    @field_validator("fallback_token_budgets")
    @classmethod
    def _budgets_must_ascend(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        if any(budget <= 0 for budget in v):
            msg = "fallback_token_budgets must be positive"
            raise ValueError(msg)
        if any(later <= earlier for earlier, later in zip(v, v[1:], strict=False)):
            msg = f"fallback_token_budgets must be strictly ascending, got {list(v)}"
            raise ValueError(msg)
        return v
