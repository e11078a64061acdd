from typing import TypedDict, Annotated, List, Dict, Any, Optional, Literal
from langgraph.graph import StateGraph, END
from pydantic import BaseModel, Field
import asyncio
import operator
import time
import uuid
import structlog

from loregate.domain.context.memory.working_memory import WorkingMemory, WorkingMemoryConfig
from loregate.domain.generation.generator import GenerationRequest, GenerationResponse, TextGenerator
from loregate.domain.models.constraints import ConstraintSet
from loregate.domain.models.snapshot import StateSnapshot
from loregate.domain.prompt.cache import CachedPrompt, KvCacheConfig
from loregate.domain.prompt.prefix_stability import PrefixStabilityError, PrefixStabilityValidator
from loregate.domain.prompt.prompt_assembler import PromptAssembler
from loregate.domain.validation.output_parser import OutputParser
from loregate.domain.validation.parsed_output import ParsedOutput
from loregate.domain.validation.schema import STRUCTURED_OUTPUT_SCHEMA
from loregate.domain.validation.validation_gate import GateResult, ValidationContext, ValidationGate
from loregate.infrastructure.observability import metrics as metric_names
from loregate.infrastructure.observability.logging import PipelineLogger
from loregate.infrastructure.observability.metrics import MetricsCollector
from .inference_result import InferenceResult, InferenceResultWithRetries
from .retry_policy import RetryPolicy


# Nodes visited per attempt, plus headroom for the final transitions
NODES_PER_ATTEMPT = 5


class PipelineConfig(BaseModel):
    """Settings for one dialogue pipeline"""
    npc_name: Optional[str] = None
    use_structured_output: bool = False
    fallback_to_heuristic: bool = True
    prefix_key: Optional[str] = Field(None, description="Prefix stability key; defaults to the snapshot's npc_id")
    kv_cache: KvCacheConfig = Field(default_factory=KvCacheConfig.disabled)
    working_memory: Optional[WorkingMemoryConfig] = None

    @classmethod
    def default(cls) -> "PipelineConfig":
        return cls()

    @classmethod
    def structured(cls) -> "PipelineConfig":
        return cls(use_structured_output=True, fallback_to_heuristic=True)


class PipelineState(TypedDict):
    """State for the retry workflow graph"""
    snapshot: StateSnapshot
    context: ValidationContext
    attempt_number: int
    escalated_constraints: ConstraintSet
    retry_feedback: Optional[str]
    attempt_snapshot: Optional[StateSnapshot]
    prompt: Optional[CachedPrompt]
    attempt_started: float
    run_started: float
    generation: Optional[GenerationResponse]
    parsed: Optional[ParsedOutput]
    gate_result: Optional[GateResult]
    attempts: Annotated[List[InferenceResult], operator.add]
    node_trace: Annotated[List[str], operator.add]
    error: Optional[str]


class DialoguePipeline:
    """Generate, parse, validate and retry until a response passes or the budget runs out.

    The loop is a langgraph workflow:

        assemble -> generate -> parse -> validate -> finalize
                       |                    |
                       +---- escalate <-----+

    Generation is the only await point. Cancelling ``run`` discards the
    in-flight attempt and propagates the cancellation.
    """

    def __init__(
        self,
        generator: TextGenerator,
        store=None,
        config: Optional[PipelineConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        prompt_assembler: Optional[PromptAssembler] = None,
        output_parser: Optional[OutputParser] = None,
        validation_gate: Optional[ValidationGate] = None,
        prefix_validator: Optional[PrefixStabilityValidator] = None,
        metrics: Optional[MetricsCollector] = None,
        logger=None
    ):
        if generator is None:
            raise ValueError("generator is required")

        self.generator = generator
        self.store = store
        self.config = config or PipelineConfig()
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = logger or structlog.get_logger(__name__)
        self.prompt_assembler = prompt_assembler or PromptAssembler(logger=self.logger)
        self.output_parser = output_parser or OutputParser(logger=self.logger)
        self.validation_gate = validation_gate or ValidationGate(logger=self.logger)
        self.metrics = metrics or MetricsCollector(logger=self.logger)
        self.pipeline_logger = PipelineLogger(logger=self.logger)

        if prefix_validator is None and self.config.kv_cache.validate_prefix_stability:
            prefix_validator = PrefixStabilityValidator(logger=self.logger)
        self.prefix_validator = prefix_validator

        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the retry workflow graph"""

        workflow = StateGraph(PipelineState)

        workflow.add_node("assemble", self.assemble_node)
        workflow.add_node("generate", self.generate_node)
        workflow.add_node("parse", self.parse_node)
        workflow.add_node("validate", self.validate_node)
        workflow.add_node("escalate", self.escalate_node)
        workflow.add_node("finalize", self.finalize_node)

        workflow.set_entry_point("assemble")

        workflow.add_edge("assemble", "generate")

        workflow.add_conditional_edges(
            "generate",
            self.check_generation,
            {
                "success": "parse",
                "error": "escalate",
                "stop": "finalize"
            }
        )

        workflow.add_edge("parse", "validate")

        workflow.add_conditional_edges(
            "validate",
            self.route_after_validation,
            {
                "passed": "finalize",
                "retry": "escalate",
                "stop": "finalize"
            }
        )

        workflow.add_edge("escalate", "assemble")
        workflow.add_edge("finalize", END)

        return workflow.compile()

    async def run(
        self,
        snapshot: StateSnapshot,
        context: Optional[ValidationContext] = None,
        interaction_id: Optional[str] = None
    ) -> InferenceResultWithRetries:
        """Run the retry loop for one interaction.

        Log events emitted during the run carry the NPC id and the interaction
        id, generated when not given.
        """

        if snapshot is None:
            raise ValueError("snapshot is required")

        context = context or ValidationContext.from_snapshot(snapshot, self.store)
        if context.store is None and self.store is not None:
            context = context.model_copy(update={"store": self.store})

        started = time.monotonic()
        initial_state: PipelineState = {
            "snapshot": snapshot,
            "context": context,
            "attempt_number": 0,
            "escalated_constraints": ConstraintSet(),
            "retry_feedback": None,
            "attempt_snapshot": None,
            "prompt": None,
            "attempt_started": started,
            "run_started": started,
            "generation": None,
            "parsed": None,
            "gate_result": None,
            "attempts": [],
            "node_trace": [],
            "error": None
        }

        interaction_id = interaction_id or str(uuid.uuid4())
        with structlog.contextvars.bound_contextvars(npc_id=snapshot.npc_id, interaction_id=interaction_id):
            final_state = await self.workflow.ainvoke(
                initial_state,
                config={"recursion_limit": self.retry_policy.max_attempts * NODES_PER_ATTEMPT + NODES_PER_ATTEMPT}
            )

        total_elapsed_ms = (time.monotonic() - started) * 1000
        attempts = final_state["attempts"]
        result = InferenceResultWithRetries(
            final_result=attempts[-1],
            all_attempts=attempts,
            total_elapsed_ms=total_elapsed_ms
        )

        self.metrics.increment_counter(metric_names.SUCCESSES if result.success else metric_names.FAILURES)
        self.metrics.record_latency("pipeline", total_elapsed_ms)
        self.logger.info(
            "Dialogue pipeline finished",
            success=result.success,
            attempts=result.attempt_count,
            total_elapsed_ms=round(total_elapsed_ms, 2)
        )

        return result

    def assemble_node(self, state: PipelineState) -> Dict[str, Any]:
        """Build the attempt snapshot and render its prompt"""

        attempt_number = state["attempt_number"]
        escalated = state["escalated_constraints"]
        base = state["snapshot"].with_attempt(attempt_number)
        attempt_snapshot = base.with_constraints(base.constraints.merged(escalated))

        kv_cache = self.config.kv_cache
        with WorkingMemory(base, self._working_memory_config()) as working_memory:
            if kv_cache.enable_caching:
                prompt = self.prompt_assembler.assemble_with_cache_info(
                    working_memory, self.config.npc_name, state["retry_feedback"], kv_cache, escalated
                )
            else:
                assembled = self.prompt_assembler.assemble(
                    working_memory, self.config.npc_name, state["retry_feedback"], escalated
                )
                prompt = CachedPrompt(
                    static_prefix="",
                    dynamic_suffix=assembled.text,
                    boundary=kv_cache.boundary,
                    chars_per_token=self.prompt_assembler.config.chars_per_token,
                    was_truncated=assembled.was_truncated,
                    assembled_prompt=assembled
                )

        if kv_cache.enable_caching and kv_cache.validate_prefix_stability and self.prefix_validator is not None:
            key = self.config.prefix_key or attempt_snapshot.npc_id
            if key:
                # Drift is reported; it never aborts the attempt
                try:
                    violation = self.prefix_validator.check(key, prompt.static_prefix, prompt.boundary)
                except PrefixStabilityError as e:
                    violation = e.violation
                if violation is not None:
                    self.metrics.increment_counter(metric_names.PREFIX_VIOLATIONS)
                    self.pipeline_logger.log_prefix_violation(key, prompt.boundary.name, violation.check_number)

        self.metrics.increment_counter(metric_names.ATTEMPTS)
        self.pipeline_logger.log_attempt_started(attempt_snapshot.npc_id, attempt_number, prompt.total_char_count)

        return {
            "attempt_snapshot": attempt_snapshot,
            "prompt": prompt,
            "attempt_started": time.monotonic(),
            "generation": None,
            "parsed": None,
            "gate_result": None,
            "error": None,
            "node_trace": ["assemble"]
        }

    async def generate_node(self, state: PipelineState) -> Dict[str, Any]:
        """Call the generator; transport errors become a failed attempt"""

        prompt = state["prompt"]
        attempt_snapshot = state["attempt_snapshot"]
        kv_cache = self.config.kv_cache

        request = GenerationRequest(
            prompt=prompt.full_prompt,
            static_prefix=prompt.static_prefix if kv_cache.enable_caching else None,
            dynamic_suffix=prompt.dynamic_suffix if kv_cache.enable_caching else None,
            cache_prompt=kv_cache.enable_caching,
            n_keep=(kv_cache.n_keep_tokens or prompt.estimated_static_tokens) if kv_cache.enable_caching else None,
            json_schema=STRUCTURED_OUTPUT_SCHEMA if self.config.use_structured_output else None,
            npc_name=self.config.npc_name,
            attempt_number=state["attempt_number"]
        )

        generation_started = time.monotonic()
        try:
            response = await self.generator.generate(request)
        except Exception as e:
            elapsed_ms = self._elapsed_ms(state["attempt_started"])
            self.logger.warning(
                "Generation failed",
                attempt_number=state["attempt_number"],
                error=str(e),
                error_type=type(e).__name__
            )
            self.metrics.increment_counter(metric_names.GENERATION_ERRORS)
            result = InferenceResult.failed_error(f"{type(e).__name__}: {e}", attempt_snapshot, elapsed_ms)
            self._log_attempt_finished(result)
            return {"error": str(e), "attempts": [result], "node_trace": ["generate"]}

        self.metrics.record_latency("generation", self._elapsed_ms(generation_started))
        return {"generation": response, "node_trace": ["generate"]}

    def parse_node(self, state: PipelineState) -> Dict[str, Any]:
        generation = state["generation"]

        if self.config.use_structured_output:
            parsed = self.output_parser.parse_structured(
                generation.text, generation.truncated, self.config.fallback_to_heuristic
            )
            if "structured_fallback" in parsed.metadata:
                self.metrics.increment_counter(metric_names.STRUCTURED_PARSE_FAILURES)
                self.metrics.increment_counter(metric_names.HEURISTIC_FALLBACKS)
            elif not parsed.success and "structured" not in parsed.metadata:
                self.metrics.increment_counter(metric_names.STRUCTURED_PARSE_FAILURES)
        else:
            parsed = self.output_parser.parse(generation.text, generation.truncated)

        return {"parsed": parsed, "node_trace": ["parse"]}

    def validate_node(self, state: PipelineState) -> Dict[str, Any]:
        """Run the gate and record the attempt"""

        parsed = state["parsed"]
        generation = state["generation"]
        attempt_snapshot = state["attempt_snapshot"]
        context = state["context"]

        base_constraints = context.constraints if context.constraints is not None else state["snapshot"].constraints
        attempt_context = context.model_copy(update={
            "constraints": base_constraints.merged(state["escalated_constraints"]),
            "snapshot": attempt_snapshot
        })

        gate_result = self.validation_gate.validate(parsed, attempt_context)
        elapsed_ms = self._elapsed_ms(state["attempt_started"])

        if gate_result.passed:
            result = InferenceResult.succeeded(
                gate_result.validated_output.dialogue_text,
                attempt_snapshot,
                elapsed_ms,
                generation.token_usage,
                parsed_output=gate_result.validated_output,
                gate_result=gate_result
            )
        else:
            self.metrics.increment_counter(metric_names.VALIDATION_FAILURES)
            if gate_result.has_critical_failure:
                self.metrics.increment_counter(metric_names.CRITICAL_FAILURES)

            response = parsed.dialogue_text if parsed.success else generation.text
            result = InferenceResult.failed_validation(
                response,
                gate_result.outcome,
                gate_result.failures,
                attempt_snapshot,
                elapsed_ms,
                generation.token_usage,
                parsed_output=parsed,
                gate_result=gate_result
            )

        self.pipeline_logger.log_gate_result(
            attempt_snapshot.npc_id,
            gate_result.passed,
            [str(f) for f in gate_result.failures],
            gate_result.has_critical_failure
        )
        self._log_attempt_finished(result)

        return {"gate_result": gate_result, "attempts": [result], "node_trace": ["validate"]}

    async def escalate_node(self, state: PipelineState) -> Dict[str, Any]:
        """Strengthen constraints and write feedback for the next attempt"""

        previous = state["attempts"][-1]
        attempt_number = state["attempt_number"]
        context = state["context"]
        base_constraints = context.constraints if context.constraints is not None else state["snapshot"].constraints

        added = self.retry_policy.generate_retry_constraints(
            previous.failures,
            attempt_number,
            base_constraints.merged(state["escalated_constraints"])
        )
        feedback = self.retry_policy.generate_retry_feedback(previous)

        if added.has_constraints:
            self.pipeline_logger.log_escalation(
                state["snapshot"].npc_id, attempt_number, [c.id for c in added]
            )

        self.metrics.increment_counter(metric_names.RETRIES)

        if self.retry_policy.retry_delay_seconds > 0:
            await asyncio.sleep(self.retry_policy.retry_delay_seconds)

        return {
            "attempt_number": attempt_number + 1,
            "escalated_constraints": state["escalated_constraints"].merged(added),
            "retry_feedback": feedback,
            "node_trace": ["escalate"]
        }

    def finalize_node(self, state: PipelineState) -> Dict[str, Any]:
        return {"node_trace": ["finalize"]}

    def check_generation(self, state: PipelineState) -> Literal["success", "error", "stop"]:
        if not state.get("error"):
            return "success"

        route = "error" if self._can_retry(state) else "stop"
        self.pipeline_logger.log_workflow_transition(
            state["snapshot"].npc_id, "generate", "escalate" if route == "error" else "finalize"
        )
        return route

    def route_after_validation(self, state: PipelineState) -> Literal["passed", "retry", "stop"]:
        gate_result = state["gate_result"]

        if gate_result.passed:
            return "passed"

        # Critical failures are not retried with the same approach
        if gate_result.has_critical_failure:
            self.logger.warning("Critical validation failure, not retrying", attempt_number=state["attempt_number"])
            return "stop"

        route = "retry" if self._can_retry(state) else "stop"
        self.pipeline_logger.log_workflow_transition(
            state["snapshot"].npc_id, "validate", "escalate" if route == "retry" else "finalize"
        )
        return route

    def _can_retry(self, state: PipelineState) -> bool:
        if state["attempt_number"] + 1 >= self.retry_policy.max_attempts:
            return False

        elapsed_seconds = time.monotonic() - state["run_started"]
        if elapsed_seconds >= self.retry_policy.max_total_seconds:
            self.logger.info(
                "Retry time budget exhausted",
                elapsed_seconds=round(elapsed_seconds, 3),
                budget_seconds=self.retry_policy.max_total_seconds
            )
            return False

        return True

    def _working_memory_config(self) -> WorkingMemoryConfig:
        return self.config.working_memory or self.prompt_assembler.create_working_memory_config()

    def _log_attempt_finished(self, result: InferenceResult) -> None:
        self.pipeline_logger.log_attempt_finished(
            result.snapshot.npc_id if result.snapshot else None,
            result.attempt_number,
            result.success,
            result.outcome.value,
            round(result.elapsed_ms, 2),
            error=result.error_message
        )

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return (time.monotonic() - started) * 1000
