import asyncio
import json
import pytest
import structlog
from structlog.testing import capture_logs

from loregate.domain.generation.generator import GenerationRequest, GenerationResponse
from loregate.domain.models.constraints import Constraint, ConstraintSet
from loregate.domain.orchestration.dialogue_pipeline import DialoguePipeline, PipelineConfig
from loregate.domain.orchestration.retry_policy import RetryPolicy
from loregate.domain.prompt.cache import KvCacheConfig, StaticPrefixBoundary
from loregate.domain.prompt.prefix_stability import PrefixStabilityValidator
from loregate.domain.validation.constraint_checker import ValidationOutcome
from loregate.domain.validation.schema import STRUCTURED_OUTPUT_SCHEMA
from loregate.domain.validation.validation_gate import ValidationFailureReason
from loregate.infrastructure.observability import metrics as metric_names


class HangingGenerator:
    def __init__(self):
        self.started = asyncio.Event()

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        self.started.set()
        await asyncio.sleep(10)
        return GenerationResponse(text="Too late.")


@pytest.fixture
def guarded_snapshot(snapshot):
    return snapshot.with_constraints(ConstraintSet(constraints=[
        Constraint.prohibition("NoSecretPlan", "Never mention the secret plan", None, "secret plan")
    ]))


async def test_first_attempt_success(snapshot, scripted_generator):
    generator = scripted_generator("Move along, citizen.")
    pipeline = DialoguePipeline(generator, config=PipelineConfig(npc_name="Guard"))

    result = await pipeline.run(snapshot)

    assert result.success
    assert result.attempt_count == 1
    assert result.dialogue_text == "Move along, citizen."
    assert result.final_result.outcome == ValidationOutcome.VALID
    assert result.total_token_usage().total_tokens == 15
    request = generator.requests[0]
    assert "Player: What news from the castle?" in request.prompt
    assert request.prompt.endswith("\nGuard:")
    assert not request.cache_prompt
    assert request.json_schema is None


async def test_retry_escalates_violated_prohibition(guarded_snapshot, scripted_generator):
    generator = scripted_generator("I know the secret plan for tonight.", "Nothing to report.")
    pipeline = DialoguePipeline(generator)

    result = await pipeline.run(guarded_snapshot)

    assert result.success
    assert result.attempt_count == 2
    first, final = result.all_attempts
    assert first.failures[0].reason == ValidationFailureReason.PROHIBITION_VIOLATED
    assert final.attempt_number == 1

    retry_prompt = generator.requests[1].prompt
    assert "[RETRY ATTEMPT 2]" in retry_prompt
    assert 'Do not say or imply: "secret plan' in retry_prompt
    assert "RetryEscalation_NoSecretPlan_0" in [c.id for c in final.snapshot.constraints]
    # The caller's snapshot is untouched
    assert len(guarded_snapshot.constraints) == 1


async def test_critical_failure_aborts_without_retry(snapshot, store, scripted_generator):
    generator = scripted_generator("The king is not dead.", "Unused.")
    pipeline = DialoguePipeline(generator, store=store)

    result = await pipeline.run(snapshot)

    assert not result.success
    assert result.attempt_count == 1
    assert result.final_result.has_critical_failure
    assert result.final_result.outcome == ValidationOutcome.CANONICAL_VIOLATION
    assert result.dialogue_text is None
    assert len(generator.responses) == 1


async def test_retries_exhausted(guarded_snapshot, scripted_generator):
    generator = scripted_generator(
        "The secret plan is simple.", "Still the secret plan.", "Fine, the secret plan again."
    )
    pipeline = DialoguePipeline(generator, retry_policy=RetryPolicy(max_retries=2))

    result = await pipeline.run(guarded_snapshot)

    assert not result.success
    assert result.attempt_count == 3
    assert [a.attempt_number for a in result.all_attempts] == [0, 1, 2]
    assert result.final_result.response == "Fine, the secret plan again."
    escalated = [c.id for c in result.final_result.snapshot.constraints if c.id.startswith("RetryEscalation")]
    assert escalated == ["RetryEscalation_NoSecretPlan_0", "RetryEscalation_NoSecretPlan_1"]


async def test_no_retry_policy_makes_single_attempt(guarded_snapshot, scripted_generator):
    generator = scripted_generator("The secret plan is simple.")
    pipeline = DialoguePipeline(generator, retry_policy=RetryPolicy.no_retry())

    result = await pipeline.run(guarded_snapshot)

    assert result.attempt_count == 1
    assert not result.success


async def test_time_budget_stops_retries(guarded_snapshot, scripted_generator):
    generator = scripted_generator("The secret plan is simple.", "Unused.")
    pipeline = DialoguePipeline(generator, retry_policy=RetryPolicy(max_total_seconds=0))

    result = await pipeline.run(guarded_snapshot)

    assert result.attempt_count == 1


async def test_generator_error_is_recorded_and_retried(snapshot, scripted_generator):
    generator = scripted_generator(RuntimeError("connection reset"), "Move along.")
    pipeline = DialoguePipeline(generator)

    result = await pipeline.run(snapshot)

    assert result.success
    assert result.attempt_count == 2
    failed = result.all_attempts[0]
    assert failed.outcome == ValidationOutcome.GENERATION_ERROR
    assert failed.error_message == "RuntimeError: connection reset"
    assert pipeline.metrics.get_counter(metric_names.GENERATION_ERRORS) == 1


async def test_parse_failure_is_retried_without_escalation(snapshot, scripted_generator):
    generator = scripted_generator("Example answer: I will help you.", "I will help you.")
    pipeline = DialoguePipeline(generator)

    result = await pipeline.run(snapshot)

    assert result.success
    first = result.all_attempts[0]
    assert first.outcome == ValidationOutcome.INVALID_FORMAT
    assert first.failures[0].reason == ValidationFailureReason.INVALID_FORMAT
    assert not result.final_result.snapshot.constraints.has_constraints
    assert "meta-text" in generator.requests[1].prompt


async def test_cancellation_propagates(snapshot):
    generator = HangingGenerator()
    pipeline = DialoguePipeline(generator)

    task = asyncio.create_task(pipeline.run(snapshot))
    await generator.started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task


async def test_run_requires_snapshot(scripted_generator):
    with pytest.raises(ValueError):
        await DialoguePipeline(scripted_generator()).run(None)


def test_generator_is_required():
    with pytest.raises(ValueError):
        DialoguePipeline(None)


async def test_cached_prompt_is_split_and_stable(snapshot, scripted_generator):
    generator = scripted_generator("Move along.", "Go home.")
    config = PipelineConfig(kv_cache=KvCacheConfig.default())
    pipeline = DialoguePipeline(generator, config=config)

    await pipeline.run(snapshot)
    await pipeline.run(snapshot.model_copy(update={"player_input": "Where is the inn?"}))

    first, second = generator.requests
    assert first.cache_prompt
    assert first.static_prefix == second.static_prefix
    assert first.static_prefix + first.dynamic_suffix == first.prompt
    assert first.n_keep > 0
    assert not pipeline.prefix_validator.has_violations


async def test_prefix_violation_is_reported_not_raised(snapshot, scripted_generator):
    validator = PrefixStabilityValidator(raise_on_violation=True)
    validator.check("guard_01", "System: something else", StaticPrefixBoundary.AFTER_CANONICAL_FACTS)
    pipeline = DialoguePipeline(
        scripted_generator("Move along."),
        config=PipelineConfig(kv_cache=KvCacheConfig.default()),
        prefix_validator=validator
    )

    result = await pipeline.run(snapshot)

    assert result.success
    assert validator.violation_count == 1
    assert pipeline.metrics.get_counter(metric_names.PREFIX_VIOLATIONS) == 1


async def test_escalation_keeps_prefix_stable_after_constraints(guarded_snapshot, scripted_generator):
    generator = scripted_generator("The secret plan is simple.", "Move along.")
    validator = PrefixStabilityValidator(raise_on_violation=True)
    kv_cache = KvCacheConfig(
        enable_caching=True,
        boundary=StaticPrefixBoundary.AFTER_CONSTRAINTS,
        validate_prefix_stability=True
    )
    pipeline = DialoguePipeline(generator, config=PipelineConfig(kv_cache=kv_cache), prefix_validator=validator)

    result = await pipeline.run(guarded_snapshot)

    assert result.success
    assert result.attempt_count == 2
    assert not validator.has_violations
    first, retry = generator.requests
    assert first.static_prefix == retry.static_prefix
    assert "NEVER: Never mention the secret plan" in retry.static_prefix
    assert 'Do not say or imply: "secret plan' in retry.dynamic_suffix
    assert retry.static_prefix + retry.dynamic_suffix == retry.prompt


async def test_structured_output_mutations_are_approved(snapshot, scripted_generator):
    document = {
        "dialogueText": "Stay out of trouble.",
        "proposedMutations": [{"type": "AppendEpisodic", "content": "Warned the player"}],
        "worldIntents": [{"intentType": "watch_player", "priority": 1}]
    }
    generator = scripted_generator(json.dumps(document))
    pipeline = DialoguePipeline(generator, config=PipelineConfig.structured())

    result = await pipeline.run(snapshot)

    assert result.success
    assert generator.requests[0].json_schema == STRUCTURED_OUTPUT_SCHEMA
    assert [m.content for m in result.approved_mutations] == ["Warned the player"]
    assert [i.intent_type for i in result.approved_intents] == ["watch_player"]


async def test_structured_fallback_is_counted(snapshot, scripted_generator):
    pipeline = DialoguePipeline(scripted_generator("Stay out of trouble."), config=PipelineConfig.structured())

    result = await pipeline.run(snapshot)

    assert result.success
    assert result.final_result.parsed_output.metadata["structured_fallback"] == "invalid_json"
    assert pipeline.metrics.get_counter(metric_names.HEURISTIC_FALLBACKS) == 1


async def test_metrics_and_logs(guarded_snapshot, scripted_generator):
    generator = scripted_generator("The secret plan is simple.", "Move along.")

    with capture_logs() as logs:
        pipeline = DialoguePipeline(generator)
        await pipeline.run(guarded_snapshot)

    metrics = pipeline.metrics
    assert metrics.get_counter(metric_names.ATTEMPTS) == 2
    assert metrics.get_counter(metric_names.RETRIES) == 1
    assert metrics.get_counter(metric_names.VALIDATION_FAILURES) == 1
    assert metrics.get_counter(metric_names.SUCCESSES) == 1
    assert metrics.get_metrics_summary()["latency.pipeline"]["count"] == 1

    events = [entry["event"] for entry in logs]
    assert events.count("attempt_started") == 2
    assert "constraint_escalation" in events
    finished = [entry for entry in logs if entry["event"] == "attempt_finished"]
    assert [entry["success"] for entry in finished] == [False, True]


async def test_prefix_violation_is_counted(snapshot, scripted_generator):
    validator = PrefixStabilityValidator()
    validator.check("guard_01", "System: something else", StaticPrefixBoundary.AFTER_CANONICAL_FACTS)
    pipeline = DialoguePipeline(
        scripted_generator("Move along."),
        config=PipelineConfig(kv_cache=KvCacheConfig.default()),
        prefix_validator=validator
    )

    with capture_logs() as logs:
        result = await pipeline.run(snapshot)

    assert result.success
    assert pipeline.metrics.get_counter(metric_names.PREFIX_VIOLATIONS) == 1
    assert any(entry["event"] == "prefix_violation" for entry in logs)


async def test_run_binds_interaction_context(snapshot):
    seen = []

    class ContextRecordingGenerator:
        async def generate(self, request: GenerationRequest) -> GenerationResponse:
            seen.append(structlog.contextvars.get_contextvars())
            return GenerationResponse(text="Move along.")

    pipeline = DialoguePipeline(ContextRecordingGenerator())

    await pipeline.run(snapshot, interaction_id="turn-7")
    await pipeline.run(snapshot)

    assert seen[0]["npc_id"] == "guard_01"
    assert seen[0]["interaction_id"] == "turn-7"
    assert seen[1]["interaction_id"] != "turn-7"
    assert "interaction_id" not in structlog.contextvars.get_contextvars()
