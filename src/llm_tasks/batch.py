"""Batch executor: adaptive splitting and token escalation over unit lists.

``run_batches()`` runs a batchable pipeline over many independent units that
each need exactly one output. The remote service silently truncates overlong
structured output, which Verify can only observe as a malformed response, so
truncation is classified structurally (finish reason / typed transport
error) and handled here instead of in the refine loop:

1. A length-limited batch with more than one unit is split in half and each
   half is processed recursively, left half first.
2. If splitting does not apply, or every unit of both halves was omitted,
   the whole batch is retried with ascending output-token budgets. Halves
   that were applied are never re-run.
3. If every budget is exhausted the batch fails with a diagnostic payload
   describing the request, the truncated response, and the unit identities.

Everything runs sequentially; at most one remote call is in flight.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
import json
import logging
from typing import TYPE_CHECKING, Any, TypeVar

from llm_tasks.errors import (
    AttemptsExhaustedError,
    BatchError,
    GatherError,
    LengthExhaustedError,
    LengthLimitedError,
    PipelineError,
    RejectionWithoutGuidanceError,
    VerifyError,
)
from llm_tasks.models import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_FALLBACK_TOKEN_BUDGETS,
    ApplyReport,
    BatchConfig,
    RefineReason,
)
from llm_tasks.runner import truncate

if TYPE_CHECKING:
    from llm_tasks.contracts import BatchablePipeline
    from llm_tasks.runner import Runner

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

_SYSTEM_EXCERPT = 400
_USER_EXCERPT = 600
_RESPONSE_EXCERPT = 600

# Failures raised after Verify has seen a response.
_VERIFY_OUTCOME_ERRORS = (
    AttemptsExhaustedError,
    RejectionWithoutGuidanceError,
    VerifyError,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def chunk_units(units: Sequence[_T], size: int) -> list[list[_T]]:
    """Partition *units* into contiguous batches of at most *size* items.

    Args:
        units: Gathered units, in order.
        size: Maximum batch size; values below 1 are treated as 1.

    Returns:
        List of non-empty batches (empty when *units* is empty).
    """
    size = size if size > 0 else DEFAULT_BATCH_SIZE
    return [list(units[start : start + size]) for start in range(0, len(units), size)]


def _join_summaries(summaries: Iterable[str]) -> str:
    return "; ".join(s.strip() for s in summaries if s.strip())


def merge_reports(left: ApplyReport, right: ApplyReport) -> ApplyReport:
    """Merge two half-batch reports: sum actions, AND dry-run, join summaries."""
    return ApplyReport(
        dry_run=left.dry_run and right.dry_run,
        summary=_join_summaries([left.summary, right.summary]),
        num_actions=left.num_actions + right.num_actions,
        omitted=[*left.omitted, *right.omitted],
    )


def is_length_limited(exc: BaseException) -> bool:
    """Whether *exc* means the remote output hit its token ceiling.

    True for a ``LengthLimitedError`` from the transport, or for a Verify
    outcome (exhausted attempts, rejection without guidance, or Verify
    raising) whose last response reported a ``length`` finish reason.
    Exhausted attempts also count when the last refine reason was
    ``length-limited``.
    """
    if isinstance(exc, LengthLimitedError):
        return True
    if not isinstance(exc, _VERIFY_OUTCOME_ERRORS):
        return False
    last = exc.last_attempt
    if last is None:
        return False
    if last.response is not None and last.response.truncated:
        return True
    return (
        isinstance(exc, AttemptsExhaustedError)
        and last.refine is not None
        and last.refine.reason == RefineReason.LENGTH_LIMITED
    )


def _excerpt(text: str, limit: int) -> str:
    return truncate(text.strip(), limit)


def failure_context(
    exc: PipelineError,
    stage: str,
    unit_ids: list[str],
) -> dict[str, Any]:
    """Build the postmortem payload for a failed batch.

    Args:
        exc: The runner failure being annotated.
        stage: Label such as ``initial``, ``fallback-1024`` or ``final``.
        unit_ids: Identities of the units in the failing batch.

    Returns:
        JSON-serializable dict with stage, request, response and units.
    """
    last = exc.last_attempt
    request: dict[str, Any] | None = None
    response = ""
    if last is not None:
        request = {
            "model": last.request.model,
            "max_tokens": last.request.max_tokens,
            "system_prompt": _excerpt(last.request.system_prompt, _SYSTEM_EXCERPT),
            "user_prompt": _excerpt(last.request.user_prompt, _USER_EXCERPT),
        }
        if last.response is not None:
            response = _excerpt(last.response.raw_text, _RESPONSE_EXCERPT)
    return {
        "stage": stage,
        "request": request,
        "response": response,
        "units": unit_ids,
    }


def _annotate(
    exc: PipelineError,
    stage: str,
    prototype: BatchablePipeline,
    batch: list[Any],
    error_cls: type[BatchError] = BatchError,
) -> BatchError:
    context = failure_context(exc, stage, _unit_ids(prototype, batch))
    msg = f"{exc}; context={json.dumps(context, ensure_ascii=False)}"
    return error_cls(msg, diagnostics=context, attempts=exc.attempts)


def _unit_ids(prototype: BatchablePipeline, batch: list[Any]) -> list[str]:
    """Identities of *batch*'s units; pipeline failures become ``BatchError``."""
    try:
        return [prototype.unit_id(u) for u in batch]
    except Exception as exc:
        msg = f"unit id: {truncate(str(exc), 500)}"
        raise BatchError(msg, diagnostics={"stage": "unit-id"}) from exc


def _prepare(
    prototype: BatchablePipeline,
    batch: list[Any],
    tokens: int,
) -> BatchablePipeline:
    """Clone *prototype* with *batch* preloaded and *tokens* as output budget.

    Raises:
        BatchError: If cloning, preloading, or setting the budget fails.
    """
    try:
        task = prototype.clone()
        task.preload(batch)
        task.set_completion_tokens(tokens)
    except Exception as exc:
        msg = f"prepare batch of {len(batch)} unit(s): {truncate(str(exc), 500)}"
        raise BatchError(
            msg, diagnostics={"stage": "prepare", "max_tokens": tokens}
        ) from exc
    return task


# ---------------------------------------------------------------------------
# Per-batch processing
# ---------------------------------------------------------------------------


async def _process_half(
    runner: Runner,
    prototype: BatchablePipeline,
    half: list[Any],
    budgets: tuple[int, ...],
) -> ApplyReport:
    """Process one half of a split batch, reporting its units as omitted on exhaustion."""
    try:
        return await _process_batch(runner, prototype, half, budgets)
    except LengthExhaustedError:
        omitted = _unit_ids(prototype, half)
        logger.warning(
            "%s: omitting %d unit(s) still length-limited after escalation: %s",
            prototype.name,
            len(omitted),
            ", ".join(omitted),
        )
        return ApplyReport(dry_run=True, num_actions=0, omitted=omitted)


async def _process_batch(
    runner: Runner,
    prototype: BatchablePipeline,
    batch: list[Any],
    budgets: tuple[int, ...],
) -> ApplyReport:
    """Run one batch, splitting and escalating on length-limited failures.

    Raises:
        BatchError: If a failure is not length-limited.
        LengthExhaustedError: If every split and token budget stayed
            length-limited.
    """
    initial_tokens = prototype.completion_tokens
    task = _prepare(prototype, batch, initial_tokens)
    try:
        return await runner.run(task)
    except PipelineError as exc:
        if not is_length_limited(exc):
            raise _annotate(exc, "initial", prototype, batch) from exc
        last_failure = exc

    logger.warning(
        "%s: batch of %d unit(s) length-limited at %d tokens",
        prototype.name,
        len(batch),
        initial_tokens,
    )

    if len(batch) > 1:
        mid = len(batch) // 2
        logger.info(
            "%s: splitting batch of %d into %d + %d",
            prototype.name,
            len(batch),
            mid,
            len(batch) - mid,
        )
        left = await _process_half(runner, prototype, batch[:mid], budgets)
        right = await _process_half(runner, prototype, batch[mid:], budgets)
        merged = merge_reports(left, right)
        # A half that ran Apply is never re-run, even with zero actions.
        if len(merged.omitted) < len(batch):
            return merged
        logger.warning(
            "%s: every unit of both halves was omitted; escalating token budget",
            prototype.name,
        )

    for tokens in (budget for budget in budgets if budget > initial_tokens):
        logger.info(
            "%s: retrying batch of %d unit(s) with %d tokens",
            prototype.name,
            len(batch),
            tokens,
        )
        task = _prepare(prototype, batch, tokens)
        try:
            return await runner.run(task)
        except PipelineError as exc:
            if not is_length_limited(exc):
                raise _annotate(exc, f"fallback-{tokens}", prototype, batch) from exc
            last_failure = exc

    raise _annotate(
        last_failure, "final", prototype, batch, LengthExhaustedError
    ) from last_failure


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def run_batches(
    runner: Runner,
    prototype: BatchablePipeline,
    batch_size: int = DEFAULT_BATCH_SIZE,
    *,
    fallback_token_budgets: Sequence[int] = DEFAULT_FALLBACK_TOKEN_BUDGETS,
) -> ApplyReport:
    """Run *prototype* over its gathered units in independent batches.

    The inventory is gathered once on a clone of *prototype*. Each batch
    runs on its own clone with the units preloaded. Reports are aggregated:
    actions summed, dry-run ANDed (``True`` when there are no batches),
    summaries joined with ``"; "``, omitted units concatenated.

    Args:
        runner: Runner used for every batch.
        prototype: Batchable pipeline; never run directly.
        batch_size: Units per batch; values below 1 fall back to 1.
        fallback_token_budgets: Strictly ascending escalation budgets.

    Returns:
        The aggregated ``ApplyReport``.

    Raises:
        GatherError: If the inventory cannot be gathered or is not a
            sequence of units.
        BatchError: If any batch fails unrecoverably; the message starts
            with ``batch <n>:``.
    """
    settings = BatchConfig(
        batch_size=batch_size,
        fallback_token_budgets=tuple(fallback_token_budgets),
    )

    try:
        gathered = await prototype.clone().gather()
    except Exception as exc:
        msg = f"gather inventory: {truncate(str(exc), 500)}"
        raise GatherError(msg) from exc
    if isinstance(gathered, str | bytes) or not isinstance(gathered, Sequence):
        msg = f"gather inventory: expected a sequence of units, got {type(gathered).__name__}"
        raise GatherError(msg)

    batches = chunk_units(gathered, settings.batch_size)
    logger.info(
        "%s: %d unit(s) in %d batch(es) of up to %d",
        prototype.name,
        len(gathered),
        len(batches),
        settings.batch_size,
    )

    reports: list[ApplyReport] = []
    for index, batch in enumerate(batches, start=1):
        try:
            report = await _process_batch(
                runner, prototype, batch, settings.fallback_token_budgets
            )
        except BatchError as exc:
            msg = f"batch {index}: {exc}"
            raise type(exc)(
                msg,
                diagnostics={**exc.diagnostics, "batch": index},
                attempts=exc.attempts,
            ) from exc
        reports.append(report)

    total = sum(r.num_actions for r in reports)
    omitted = [unit for r in reports for unit in r.omitted]
    if omitted:
        logger.warning("%s: %d unit(s) omitted", prototype.name, len(omitted))
    return ApplyReport(
        dry_run=all(r.dry_run for r in reports),
        summary=_join_summaries(r.summary for r in reports),
        num_actions=total,
        omitted=omitted,
    )
