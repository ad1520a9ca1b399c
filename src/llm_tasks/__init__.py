"""llm-tasks: verified, structured artifacts from non-deterministic LLM calls.

A task kind implements the ``Pipeline`` protocol (Gather, Prompt, Verify,
Apply). ``Runner`` drives one pipeline through bounded attempt/refine
cycles; ``run_batches`` drives a batchable pipeline over many independent
units, splitting batches and raising output-token budgets when responses
are truncated.
"""

from llm_tasks.batch import run_batches
from llm_tasks.client import ChatCompletionsClient
from llm_tasks.contracts import BatchablePipeline, LLMClient, Pipeline, decode_strict_json
from llm_tasks.errors import (
    ApplyError,
    AttemptsExhaustedError,
    BatchError,
    GatherError,
    LengthExhaustedError,
    LengthLimitedError,
    PipelineError,
    PromptError,
    RejectionWithoutGuidanceError,
    TransportError,
    VerifyError,
)
from llm_tasks.models import (
    ApplyReport,
    AttemptRecord,
    BatchConfig,
    LLMRequest,
    LLMResponse,
    RefineReason,
    RefineRequest,
    RunnerConfig,
    VerifyResult,
)
from llm_tasks.registry import TaskRegistry
from llm_tasks.runner import Runner, run_sync

__all__ = [
    "ApplyError",
    "ApplyReport",
    "AttemptRecord",
    "AttemptsExhaustedError",
    "BatchConfig",
    "BatchError",
    "BatchablePipeline",
    "ChatCompletionsClient",
    "GatherError",
    "LLMClient",
    "LLMRequest",
    "LLMResponse",
    "LengthExhaustedError",
    "LengthLimitedError",
    "Pipeline",
    "PipelineError",
    "PromptError",
    "RefineReason",
    "RefineRequest",
    "RejectionWithoutGuidanceError",
    "Runner",
    "RunnerConfig",
    "TaskRegistry",
    "TransportError",
    "VerifyError",
    "VerifyResult",
    "decode_strict_json",
    "run_batches",
    "run_sync",
]
