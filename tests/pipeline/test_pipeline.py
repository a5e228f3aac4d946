"""Tests for stages, the pipeline runner and mapping compilation."""

import pytest

from mapflow.core.errors import ConfigError, TransformationError, ValidationError
from mapflow.mapping.models import Column, Mapping, Schema, UniversalType
from mapflow.pipeline import (
    AggregationStage,
    EnrichmentStage,
    FunctionStage,
    Phase,
    PipelineAborted,
    PipelineBuilder,
    PipelineContext,
    RequiredFieldsStage,
    SanitizationStage,
    SchemaValidationStage,
    TransformationPipeline,
    compile_mapping,
)
from mapflow.validation import SchemaValidator


def double(record):
    return {**record, "n": record["n"] * 2}


def explode(record):
    raise TransformationError("stage blew up")


# ------------------------------------------------------------------ #
# Stages
# ------------------------------------------------------------------ #


class TestStages:
    @pytest.mark.asyncio
    async def test_sanitization(self):
        """Strings are trimmed, None dropped and keys lowercased on request."""
        stage = SanitizationStage(trim_strings=True, drop_none=True, lowercase_keys=True)
        out = await stage.execute({"Name": "  Ada ", "Gone": None, "Tags": [" a ", None]}, PipelineContext())
        assert out == {"name": "Ada", "tags": ["a"]}

    @pytest.mark.asyncio
    async def test_sanitization_defaults_pass_through(self):
        """A stage with no options returns the record unchanged."""
        record = {"Name": "  Ada ", "Gone": None}
        assert await SanitizationStage().execute(record, PipelineContext()) == record
        assert SanitizationStage.from_names(["dropNone"]).drop_none

    @pytest.mark.asyncio
    async def test_aggregation(self):
        """Aggregations read list items and write targets."""
        stage = AggregationStage(
            [
                {"type": "sum", "sourceField": "items", "targetField": "total", "itemField": "price"},
                {"type": "count", "sourceField": "items", "targetField": "count"},
                {"type": "max", "sourceField": "missing", "targetField": "top"},
            ]
        )
        out = await stage.execute({"items": [{"price": 10}, {"price": 20.5}]}, PipelineContext())
        assert out["total"] == pytest.approx(30.5)
        assert out["count"] == 2
        assert out["top"] is None

    def test_aggregation_rejects_unknown_type(self):
        """Unknown aggregation types fail at construction."""
        with pytest.raises(ValueError):
            AggregationStage([{"type": "median", "sourceField": "a", "targetField": "b"}])

    @pytest.mark.asyncio
    async def test_required_fields(self):
        """Missing or empty fields raise ValidationError."""
        stage = RequiredFieldsStage(["a", "b.c"])
        with pytest.raises(ValidationError) as exc_info:
            await stage.execute({"a": "", "b": {"c": 1}}, PipelineContext())
        assert exc_info.value.field == "a"

    @pytest.mark.asyncio
    async def test_enrichment(self):
        """Enrichment adds static, id, timestamp and metadata fields."""
        ctx = PipelineContext()
        stage = EnrichmentStage(
            [
                {"type": "static", "targetField": "source", "value": "crm"},
                {"type": "id", "targetField": "rowId", "prefix": "row"},
                {"type": "timestamp", "targetField": "at"},
                {"type": "metadata", "targetField": "meta", "metadata": {"v": 1}},
            ]
        )
        out = await stage.execute({"a": 1}, ctx)
        assert out["source"] == "crm"
        assert out["rowId"].startswith("row_")
        assert out["meta"]["contextId"] == ctx.id
        assert out["meta"]["v"] == 1
        assert "at" in out

    @pytest.mark.asyncio
    async def test_stage_metrics(self):
        """run() counts executions and failures."""
        stage = FunctionStage("boom", explode)
        with pytest.raises(TransformationError):
            await stage.run({}, PipelineContext())
        assert stage.metrics.to_dict()["failures"] == 1
        assert stage.metrics.executions == 1


# ------------------------------------------------------------------ #
# Pipeline
# ------------------------------------------------------------------ #


class TestTransformationPipeline:
    def test_phase_order_enforced(self):
        """A stage may not precede an earlier phase."""
        with pytest.raises(ConfigError):
            TransformationPipeline(
                "bad",
                [FunctionStage("v", double, phase=Phase.VALIDATION), FunctionStage("t", double)],
            )
        with pytest.raises(ConfigError):
            TransformationPipeline("empty", [])

    @pytest.mark.asyncio
    async def test_runs_stages_in_order(self, emitter, recorder):
        """Stages chain their outputs and emit lifecycle events."""
        pipeline = TransformationPipeline(
            "p", [FunctionStage("a", double), FunctionStage("b", double)], emitter=emitter
        )
        assert await pipeline.process({"n": 1}) == {"n": 4}
        assert recorder.names() == [
            "pipelineStart",
            "stageStart",
            "stageComplete",
            "stageStart",
            "stageComplete",
            "pipelineComplete",
        ]
        assert pipeline.metrics()["successes"] == 1
        assert pipeline.metrics()["stages"]["a"]["executions"] == 1

    @pytest.mark.asyncio
    async def test_fail_policy_raises_with_context(self, emitter, recorder):
        """The default fail policy raises and tags the stage and record."""
        pipeline = TransformationPipeline("p", [FunctionStage("boom", explode)], emitter=emitter)
        with pytest.raises(TransformationError) as exc_info:
            await pipeline.process({}, PipelineContext(record_index=3))
        assert exc_info.value.context.stage == "boom"
        assert exc_info.value.context.record_index == 3
        error_event = recorder.named("stageError")[0]
        assert error_event["error_type"] == "TRANSFORMATION_ERROR"
        assert recorder.named("pipelineError")

    @pytest.mark.asyncio
    async def test_skip_and_default_policies(self):
        """skip drops the record; default substitutes the stage default."""
        skipping = TransformationPipeline("s", [FunctionStage("boom", explode, on_error="skip")])
        assert await skipping.process({}) is None
        assert skipping.metrics()["skipped"] == 1

        defaulting = TransformationPipeline(
            "d", [FunctionStage("boom", explode, on_error="default", default={"fallback": True})]
        )
        assert await defaulting.process({}) == {"fallback": True}

    @pytest.mark.asyncio
    async def test_stage_returning_none_skips(self):
        """A stage returning None drops the record."""
        pipeline = TransformationPipeline("p", [FunctionStage("drop", lambda r: None), FunctionStage("b", double)])
        assert await pipeline.process({"n": 1}) is None

    @pytest.mark.asyncio
    async def test_warn_only_validation(self):
        """warn_only validation stages record a warning and continue."""
        ctx = PipelineContext()
        pipeline = TransformationPipeline(
            "p",
            [FunctionStage("t", double), RequiredFieldsStage(["email"], warn_only=True)],
        )
        assert await pipeline.process({"n": 1}, ctx) == {"n": 2}
        assert ctx.warnings[0]["stage"] == "requiredFields"
        assert ctx.errors[0]["type"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_strict_mode_overrides_skip(self):
        """Strict pipelines abort on non-retryable errors even under skip."""
        pipeline = TransformationPipeline(
            "p", [FunctionStage("boom", explode, on_error="skip")], strict_mode=True
        )
        with pytest.raises(TransformationError):
            await pipeline.process({})

    @pytest.mark.asyncio
    async def test_abort(self):
        """A stage may abort the remaining pipeline."""

        def stop(record, context):
            context.abort("enough")
            return record

        pipeline = TransformationPipeline("p", [FunctionStage("a", stop), FunctionStage("b", double)])
        with pytest.raises(PipelineAborted, match="enough"):
            await pipeline.process({"n": 1})

    @pytest.mark.asyncio
    async def test_builder_groups_phases(self):
        """The builder orders stages by phase regardless of call order."""
        pipeline = (
            PipelineBuilder("b")
            .postprocess(EnrichmentStage([{"type": "static", "targetField": "done", "value": True}]))
            .transform(FunctionStage("t", double))
            .preprocess(SanitizationStage())
            .build()
        )
        assert [s.phase for s in pipeline.stages] == [
            Phase.PREPROCESSING,
            Phase.TRANSFORMATION,
            Phase.POSTPROCESSING,
        ]
        assert await pipeline.process({"n": 2}) == {"n": 4, "done": True}


# ------------------------------------------------------------------ #
# compile_mapping
# ------------------------------------------------------------------ #


class TestCompileMapping:
    @pytest.fixture
    def target_schema(self):
        return Schema(
            name="users",
            columns=[
                Column(name="userId", type=UniversalType.INTEGER, nullable=False),
                Column(name="fullName", type=UniversalType.STRING),
            ],
        )

    @pytest.mark.asyncio
    async def test_standard_preset(self, user_mapping):
        """Standard leaves the source record alone unless sanitizers are declared."""
        pipeline = compile_mapping(Mapping.model_validate(user_mapping))
        assert [s.name for s in pipeline.stages] == ["ruleMapping"]
        assert pipeline.name == "users_1"
        out = await pipeline.process({"id": 1, "name": "  John Doe "})
        assert out == {"userId": 1, "fullName": "  JOHN DOE ", "isActive": True}

    @pytest.mark.asyncio
    async def test_declared_sanitizers(self, user_mapping):
        """Sanitizers named on the mapping run before rule mapping."""
        mapping = Mapping.model_validate({**user_mapping, "sanitizers": ["trim"]})
        pipeline = compile_mapping(mapping)
        assert [s.name for s in pipeline.stages] == ["sanitization", "ruleMapping"]
        out = await pipeline.process({"id": 1, "name": "  John Doe "})
        assert out["fullName"] == "JOHN DOE"
        assert [s.name for s in compile_mapping(mapping, preset="minimal").stages] == ["ruleMapping"]
        with pytest.raises(ConfigError, match="scrub"):
            compile_mapping(Mapping.model_validate({**user_mapping, "sanitizers": ["scrub"]}))

    @pytest.mark.asyncio
    async def test_enrichment_rules(self, user_mapping):
        """enrichmentRules add a postprocessing stage under every preset."""
        mapping = Mapping.model_validate(
            {**user_mapping, "enrichmentRules": [{"type": "static", "targetField": "source", "value": "crm"}]}
        )
        pipeline = compile_mapping(mapping, preset="minimal")
        assert pipeline.stages[-1].name == "enrichment"
        assert pipeline.stages[-1].phase == Phase.POSTPROCESSING
        out = await pipeline.process({"id": 1, "name": "a"})
        assert out["source"] == "crm"

    def test_minimal_and_unknown_presets(self, user_mapping):
        """minimal has only rule mapping; unknown presets are rejected."""
        mapping = Mapping.model_validate(user_mapping)
        assert [s.name for s in compile_mapping(mapping, preset="minimal").stages] == ["ruleMapping"]
        with pytest.raises(ConfigError):
            compile_mapping(mapping, preset="turbo")

    @pytest.mark.asyncio
    async def test_strict_preset_validates_target(self, user_mapping, target_schema):
        """strict adds required and schema validation and enables strict mode."""
        mapping = Mapping.model_validate({**user_mapping, "targetSchema": target_schema.model_dump(by_alias=True)})
        pipeline = compile_mapping(mapping, preset="strict")
        assert pipeline.strict_mode
        assert [s.name for s in pipeline.stages][-2:] == ["requiredFields", "validate:targetSchema"]
        with pytest.raises(ValidationError):
            await pipeline.process({"name": "x"})

    @pytest.mark.asyncio
    async def test_validation_and_quality_rules(self, user_mapping):
        """validationRules fail records; qualityRules only warn."""
        mapping = Mapping.model_validate(
            {
                **user_mapping,
                "validationRules": [{"field": "userId", "validate": "positive", "message": "bad id"}],
                "qualityRules": [{"type": "completeness", "field": "email", "weight": 1.0}],
            }
        )
        pipeline = compile_mapping(mapping)
        ctx = PipelineContext()
        out = await pipeline.process({"id": 5, "name": "a"}, ctx)
        assert out["userId"] == 5
        assert ctx.warnings and ctx.warnings[0]["stage"] == "dataQuality"

        with pytest.raises(ValidationError, match="bad id"):
            await pipeline.process({"id": -1, "name": "a"})

    @pytest.mark.asyncio
    async def test_aggregation_and_extra_validators(self, user_mapping):
        """Aggregations run after rule mapping; extra validators are appended."""
        mapping = Mapping.model_validate(
            {
                **user_mapping,
                "rules": [*user_mapping["rules"], {"type": "direct", "sourceField": "items", "targetField": "items"}],
                "aggregation": [{"type": "sum", "sourceField": "items", "targetField": "total"}],
            }
        )
        extra = SchemaValidator({"type": "object", "required": ["total"]}, name="hasTotal")
        pipeline = compile_mapping(mapping, validators=[extra], preset="minimal")
        assert pipeline.stages[-1].name == "validate:hasTotal"
        out = await pipeline.process({"id": 1, "name": "a", "items": [1, 2]})
        assert out["total"] == 3.0

    def test_stage_for_custom_validator(self):
        """SchemaValidationStage defaults its name from the validator."""
        stage = SchemaValidationStage(SchemaValidator({}, name="x"))
        assert stage.name == "validate:x"
        assert stage.phase == Phase.VALIDATION
