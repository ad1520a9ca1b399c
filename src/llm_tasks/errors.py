"""Error taxonomy for the llm-tasks engine.

Every failure raised by the runner or the batch executor is a
``PipelineError`` carrying the stage it failed in, optional structured
diagnostics, and, where available, the per-attempt transcript. Callers
decide how to react based on the concrete subclass.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from llm_tasks.models import AttemptRecord


class PipelineError(Exception):
    """Pipeline failure with diagnostic context.

    Attributes:
        stage: Label of the stage that failed.
        diagnostics: Structured context for postmortem debugging.
        attempts: Attempt records collected before the failure.
    """

    stage = "pipeline"

    def __init__(
        self,
        message: str,
        *,
        diagnostics: dict[str, Any] | None = None,
        attempts: list[AttemptRecord] | None = None,
    ) -> None:
        """Initialize with a message, diagnostics, and attempt transcript.

        Args:
            message: Human-readable error description.
            diagnostics: Structured context (request excerpts, unit ids, ...).
            attempts: Attempt records of the failing run, oldest first.
        """
        super().__init__(message)
        self.diagnostics: dict[str, Any] = dict(diagnostics or {})
        self.attempts: list[AttemptRecord] = list(attempts or [])

    @property
    def last_attempt(self) -> AttemptRecord | None:
        """The most recent attempt record, if any were collected."""
        return self.attempts[-1] if self.attempts else None


class GatherError(PipelineError):
    """Gather failed; upstream data is unavailable. Never retried."""

    stage = "gather"


class PromptError(PipelineError):
    """Prompt construction failed."""

    stage = "prompt"


class TransportError(PipelineError):
    """The remote call failed or timed out."""

    stage = "llm chat"


class LengthLimitedError(TransportError):
    """The remote service stopped at its output token cap with no usable text.

    Recoverable only by the batch executor, which splits the batch or
    raises the token budget.
    """


class VerifyError(PipelineError):
    """Verify itself raised; a defect distinct from a rejected response."""

    stage = "verify"


class RejectionWithoutGuidanceError(PipelineError):
    """Verify rejected the response without telling the runner how to fix it."""

    stage = "verify"


class AttemptsExhaustedError(PipelineError):
    """Every attempt was rejected with guidance and none was accepted."""

    stage = "attempts"


class ApplyError(PipelineError):
    """Apply failed after acceptance. Never retried."""

    stage = "apply"


class BatchError(PipelineError):
    """A batch could not be processed by the batch executor."""

    stage = "batch"


class LengthExhaustedError(BatchError):
    """A batch stayed length-limited after every split and token escalation."""
