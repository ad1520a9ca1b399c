"""Runner: bounded attempt/refine loop for a single pipeline.

``Runner.run()`` gathers once, then repeats Prompt -> remote call -> Verify
up to the configured attempt ceiling. Every rejection that carries refine
guidance is appended, in order, to all later prompts. The first accepted
output is handed to Apply exactly once. Every failure is raised as a
``PipelineError`` subclass naming the failing stage; exhaustion carries a
rendered transcript of every attempt, since remote failures cannot be
reproduced locally.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from llm_tasks.errors import (
    ApplyError,
    AttemptsExhaustedError,
    GatherError,
    PromptError,
    RejectionWithoutGuidanceError,
    TransportError,
    VerifyError,
)
from llm_tasks.models import (
    ApplyReport,
    AttemptRecord,
    LLMRequest,
    LLMResponse,
    RunnerConfig,
)

if TYPE_CHECKING:
    from llm_tasks.contracts import LLMClient, Pipeline

logger = logging.getLogger(__name__)

REFINE_HEADER = "REFINE:"

_SYSTEM_EXCERPT = 1000
_USER_EXCERPT = 1200
_RESPONSE_EXCERPT = 1200
_REFINE_EXCERPT = 600
_ERROR_EXCERPT = 500


# ---------------------------------------------------------------------------
# Prompt and transcript helpers
# ---------------------------------------------------------------------------


def truncate(text: str, limit: int) -> str:
    """Cut *text* to *limit* characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit] + "…"


def indent_block(block: str) -> str:
    """Indent every line of *block* by four spaces; empty blocks read ``<empty>``."""
    if not block:
        return "    <empty>"
    return "\n".join(f"    {line}" for line in block.split("\n"))


def format_refine(delta: str) -> str:
    """Render one refine delta as a delimited ``REFINE:`` block."""
    trimmed = delta.strip()
    return f"{REFINE_HEADER}\n{trimmed or '<empty>'}"


def append_refine(user_prompt: str, refine_blocks: list[str]) -> str:
    """Append all *refine_blocks*, oldest first, after *user_prompt*.

    Args:
        user_prompt: Base user prompt freshly produced by the pipeline.
        refine_blocks: Formatted refine blocks in chronological order.

    Returns:
        The combined user prompt.
    """
    section = "\n\n".join(refine_blocks)
    base = user_prompt.rstrip("\n")
    if not base:
        return section
    return f"{base}\n\n{section}"


def render_transcript(attempts: list[AttemptRecord]) -> str:
    """Render attempt records as a human-readable, length-bounded transcript.

    Each attempt lists model, token budget, temperature, the system and
    user prompts, the response, any refine suggestion with its reason, and
    whether the attempt was accepted.

    Args:
        attempts: Attempt records, oldest first.

    Returns:
        The transcript text (no trailing newline).
    """
    if not attempts:
        return "no attempts recorded"

    lines: list[str] = []
    for record in attempts:
        request = record.request
        lines.append(f"Attempt {record.attempt}:")
        lines.append(f"  Model: {request.model or '<default>'}")
        lines.append(
            f"  MaxTokens: {request.max_tokens} Temp: {request.temperature:.2f}"
        )
        lines.append("  System Prompt:")
        lines.append(indent_block(truncate(request.system_prompt, _SYSTEM_EXCERPT)))
        lines.append("  User Prompt:")
        lines.append(indent_block(truncate(request.user_prompt, _USER_EXCERPT)))
        lines.append("  Response:")
        if record.response is None:
            lines.append("    <no response>")
        else:
            lines.append(
                indent_block(truncate(record.response.raw_text, _RESPONSE_EXCERPT))
            )
            if record.response.finish_reason:
                lines.append(f"  Finish Reason: {record.response.finish_reason}")
        if record.refine is not None:
            lines.append("  Refine Suggestion:")
            lines.append(
                indent_block(truncate(record.refine.prompt_delta, _REFINE_EXCERPT))
            )
            lines.append(f"  Refine Reason: {record.refine.reason}")
        lines.append(f"  Status: {'accepted' if record.accepted else 'rejected'}")
        lines.append("")
    return "\n".join(lines).rstrip("\n")


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class Runner:
    """Drives one pipeline to an applied result or a descriptive failure.

    The runner keeps no state between ``run()`` calls; concurrent runs on
    independently constructed pipelines are safe.

    Attributes:
        client: LLM transport used for every attempt.
        config: Attempt ceiling and per-attempt timeout.
    """

    def __init__(self, client: LLMClient, config: RunnerConfig | None = None) -> None:
        """Initialize the runner.

        Args:
            client: LLM transport implementing ``chat()``.
            config: Attempt/timeout budgets; defaults to ``RunnerConfig()``.
        """
        self.client = client
        self.config = config if config is not None else RunnerConfig()

    async def run(self, pipeline: Pipeline) -> ApplyReport:
        """Run *pipeline* through Gather, bounded attempts, and Apply.

        Args:
            pipeline: The task instance to drive. Owned by the caller.

        Returns:
            The ``ApplyReport`` returned by the pipeline's ``apply()``.

        Raises:
            GatherError: If ``gather()`` fails (never retried).
            PromptError: If ``prompt()`` fails.
            TransportError: If the remote call fails or times out.
            VerifyError: If ``verify()`` raises.
            RejectionWithoutGuidanceError: If ``verify()`` rejects without
                a refine request.
            AttemptsExhaustedError: If no attempt was accepted.
            ApplyError: If ``apply()`` fails.
        """
        name = pipeline.name
        try:
            gathered = await pipeline.gather()
        except Exception as exc:
            msg = f"gather: {truncate(str(exc), _ERROR_EXCERPT)}"
            raise GatherError(msg) from exc

        max_attempts = self.config.effective_attempts
        attempts: list[AttemptRecord] = []
        refine_blocks: list[str] = []
        verified: Any = None

        for attempt in range(1, max_attempts + 1):
            try:
                request = await pipeline.prompt(gathered)
            except Exception as exc:
                msg = f"prompt: {truncate(str(exc), _ERROR_EXCERPT)}"
                raise PromptError(msg, attempts=attempts) from exc

            if refine_blocks:
                request = request.model_copy(
                    update={"user_prompt": append_refine(request.user_prompt, refine_blocks)}
                )

            logger.info(
                "%s: attempt %d/%d (model=%s, max_tokens=%d)",
                name,
                attempt,
                max_attempts,
                request.model or "<default>",
                request.max_tokens,
            )
            response = await self._chat(request, attempt, attempts)

            try:
                outcome = await pipeline.verify(gathered, response)
            except Exception as exc:
                attempts.append(
                    AttemptRecord(attempt=attempt, request=request, response=response)
                )
                msg = f"verify: {truncate(str(exc), _ERROR_EXCERPT)}"
                raise VerifyError(msg, attempts=attempts) from exc

            if outcome.accepted:
                attempts.append(
                    AttemptRecord(
                        attempt=attempt,
                        request=request,
                        response=response,
                        accepted=True,
                    )
                )
                verified = outcome.verified
                logger.info("%s: attempt %d accepted", name, attempt)
                break

            if outcome.refine is None:
                attempts.append(
                    AttemptRecord(attempt=attempt, request=request, response=response)
                )
                msg = (
                    "verify rejected result and no refine request provided\n"
                    f"{render_transcript(attempts)}"
                )
                raise RejectionWithoutGuidanceError(msg, attempts=attempts)

            attempts.append(
                AttemptRecord(
                    attempt=attempt,
                    request=request,
                    response=response,
                    refine=outcome.refine,
                )
            )
            logger.warning(
                "%s: attempt %d/%d rejected (%s)",
                name,
                attempt,
                max_attempts,
                outcome.refine.reason or "no reason",
            )
            refine_blocks.append(format_refine(outcome.refine.prompt_delta))
        else:
            msg = (
                f"exhausted {max_attempts} attempt(s) without acceptance\n"
                f"{render_transcript(attempts)}"
            )
            raise AttemptsExhaustedError(msg, attempts=attempts)

        try:
            report = await pipeline.apply(verified)
        except Exception as exc:
            msg = f"apply: {truncate(str(exc), _ERROR_EXCERPT)}"
            raise ApplyError(msg, attempts=attempts) from exc

        logger.info(
            "%s: applied %d action(s)%s",
            name,
            report.num_actions,
            " (dry run)" if report.dry_run else "",
        )
        return report

    async def _chat(
        self,
        request: LLMRequest,
        attempt: int,
        attempts: list[AttemptRecord],
    ) -> LLMResponse:
        """Issue one remote call under a fresh per-attempt timeout.

        A failed call is recorded in *attempts* before the error is raised.
        """
        timeout = self.config.timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                return await self.client.chat(request)
        except TimeoutError as exc:
            attempts.append(AttemptRecord(attempt=attempt, request=request))
            msg = f"llm chat: attempt {attempt} timed out after {timeout:g}s"
            raise TransportError(msg, attempts=attempts) from exc
        except TransportError as exc:
            attempts.append(AttemptRecord(attempt=attempt, request=request))
            exc.attempts = list(attempts)
            raise
        except Exception as exc:
            attempts.append(AttemptRecord(attempt=attempt, request=request))
            msg = f"llm chat: {truncate(str(exc), _ERROR_EXCERPT)}"
            raise TransportError(msg, attempts=attempts) from exc


def run_sync(runner: Runner, pipeline: Pipeline) -> ApplyReport:
    """Synchronous wrapper around ``Runner.run()`` via ``asyncio.run()``.

    Args:
        runner: Configured runner.
        pipeline: Pipeline to drive.

    Returns:
        The pipeline's ``ApplyReport``.
    """
    return asyncio.run(runner.run(pipeline))
