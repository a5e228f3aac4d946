"""
Staged, phase-ordered record pipeline.

Manifesto:
    A pipeline turns one source record into one target record (or drops
    it). Stages run strictly in phase order. Errors are classified once,
    reported as ``stageError`` and then resolved by, in turn, the
    validation ``warn_only`` flag, strict mode (non-retryable errors
    abort) and the stage's own error policy.

Architecture:
    ::

        record ─▶ preprocessing ─▶ transformation ─▶ validation ─▶ postprocessing ─▶ record | None
                       │                 │                 │                │
                       └──── stage raised ─▶ classify ─▶ stageError ─▶ policy
                                                                       ├ warn_only  → warning, continue
                                                                       ├ strict     → abort (raise)
                                                                       ├ fail       → raise
                                                                       ├ default    → stage.default
                                                                       └ skip       → None

Example:
    >>> pipeline = (
    ...     PipelineBuilder("users")
    ...     .preprocess(SanitizationStage())
    ...     .transform(RuleMappingStage(mapping))
    ...     .build()
    ... )
    >>> await pipeline.process({"name": "  Ada "})

Tags:
    pipeline, stages, transformation, mapflow
"""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from mapflow.core.classifier import ErrorClassifier
from mapflow.core.errors import ConfigError, MapflowError, TransformationError
from mapflow.core.events import EventEmitter
from mapflow.core.logging import get_logger
from mapflow.mapping.models import ErrorPolicy, Mapping
from mapflow.pipeline.rules import RuleEvaluator
from mapflow.pipeline.stages import (
    AggregationStage,
    EnrichmentStage,
    Phase,
    RequiredFieldsStage,
    RuleMappingStage,
    SanitizationStage,
    SchemaValidationStage,
    Stage,
)
from mapflow.pipeline.transforms import TransformLibrary
from mapflow.validation.mapping_validators import DataQualityValidator, QualityDimension, QualityRule, QualityRuleType
from mapflow.validation.validators import (
    BaseValidator,
    BusinessRule,
    BusinessRuleValidator,
    RuleSeverity,
    SchemaValidator,
)

if TYPE_CHECKING:
    from mapflow.execution.context import ExecutionContext

logger = get_logger(__name__)

PRESETS = ("minimal", "standard", "strict")


class PipelineAborted(TransformationError):
    """A stage called :meth:`PipelineContext.abort`."""


@dataclass
class PipelineContext:
    """Per-record state shared by the stages of one ``process`` call."""

    id: str = field(default_factory=lambda: f"pctx_{uuid.uuid4().hex[:12]}")
    record_index: int | None = None
    execution: ExecutionContext | None = None
    state: dict[str, Any] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    aborted: bool = False
    abort_reason: str | None = None

    def abort(self, reason: str) -> None:
        self.aborted = True
        self.abort_reason = reason

    def add_warning(self, message: str, stage: str | None = None) -> None:
        self.warnings.append({"message": message, "stage": stage})
        if self.execution is not None:
            self.execution.add_warning(message, stage)

    def add_error(self, error: BaseException, stage: str | None = None) -> None:
        self.errors.append({"message": str(error), "stage": stage, "type": type(error).__name__})

    def set_state(self, key: str, value: Any) -> None:
        self.state[key] = value

    def get_state(self, key: str, default: Any = None) -> Any:
        return self.state.get(key, default)


@dataclass
class PipelineMetrics:
    executions: int = 0
    successes: int = 0
    failures: int = 0
    skipped: int = 0
    total_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "executions": self.executions,
            "successes": self.successes,
            "failures": self.failures,
            "skipped": self.skipped,
            "totalTime": self.total_time,
            "averageTime": self.total_time / self.executions if self.executions else 0.0,
        }


class TransformationPipeline:
    """Run stages over one record at a time."""

    def __init__(
        self,
        name: str,
        stages: list[Stage],
        *,
        strict_mode: bool = False,
        classifier: ErrorClassifier | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        if not stages:
            raise ConfigError(f"Pipeline {name} requires at least one stage")
        for previous, current in zip(stages, stages[1:], strict=False):
            if current.phase.order < previous.phase.order:
                raise ConfigError(
                    f"Stage {current.name} ({current.phase.value}) cannot follow "
                    f"{previous.name} ({previous.phase.value})"
                )
        self.name = name
        self.stages = list(stages)
        self.strict_mode = strict_mode
        self.classifier = classifier or ErrorClassifier()
        self.emitter = emitter or EventEmitter(source=f"pipeline:{name}")
        self._metrics = PipelineMetrics()

    async def process(self, record: Any, context: PipelineContext | None = None) -> Any:
        """Run every stage. Returns the output record, or None if skipped."""
        ctx = context or PipelineContext()
        started = time.perf_counter()
        self._metrics.executions += 1
        self.emitter.emit("pipelineStart", pipeline=self.name, context_id=ctx.id, record_index=ctx.record_index)

        current = record
        try:
            for stage in self.stages:
                if ctx.execution is not None:
                    ctx.execution.token.raise_if_cancelled()
                if ctx.aborted:
                    raise PipelineAborted(ctx.abort_reason or "Pipeline aborted").with_context(stage=stage.name)

                current, skipped = await self._run_stage(stage, current, ctx)
                if skipped:
                    self._metrics.skipped += 1
                    self._finish(ctx, started, skipped=True)
                    return None
        except Exception as e:
            self._metrics.failures += 1
            elapsed = time.perf_counter() - started
            self._metrics.total_time += elapsed
            self.emitter.emit(
                "pipelineError",
                pipeline=self.name,
                context_id=ctx.id,
                record_index=ctx.record_index,
                error=str(e),
                execution_time=elapsed,
            )
            if isinstance(e, MapflowError) and ctx.record_index is not None and e.context.record_index is None:
                e.with_context(record_index=ctx.record_index)
            raise

        self._metrics.successes += 1
        self._finish(ctx, started, skipped=False)
        return current

    def _finish(self, ctx: PipelineContext, started: float, *, skipped: bool) -> None:
        elapsed = time.perf_counter() - started
        self._metrics.total_time += elapsed
        self.emitter.emit(
            "pipelineComplete",
            pipeline=self.name,
            context_id=ctx.id,
            record_index=ctx.record_index,
            skipped=skipped,
            execution_time=elapsed,
        )

    async def _run_stage(self, stage: Stage, record: Any, ctx: PipelineContext) -> tuple[Any, bool]:
        self.emitter.emit("stageStart", pipeline=self.name, stage=stage.name, phase=stage.phase.value)
        started = time.perf_counter()
        try:
            if ctx.execution is not None:
                result = await ctx.execution.profile_stage(stage.name, lambda: stage.run(record, ctx))
            else:
                result = await stage.run(record, ctx)
        except Exception as e:
            return self._handle_stage_error(stage, record, ctx, e)

        self.emitter.emit(
            "stageComplete",
            pipeline=self.name,
            stage=stage.name,
            phase=stage.phase.value,
            execution_time=time.perf_counter() - started,
        )
        if result is None:
            return None, True
        return result, False

    def _handle_stage_error(
        self, stage: Stage, record: Any, ctx: PipelineContext, error: Exception
    ) -> tuple[Any, bool]:
        if isinstance(error, MapflowError):
            error.with_context(stage=stage.name)
        classification = self.classifier.classify(error, {"stage": stage.name, "pipeline": self.name})
        ctx.add_error(error, stage.name)
        self.emitter.emit(
            "stageError",
            pipeline=self.name,
            stage=stage.name,
            phase=stage.phase.value,
            error=str(error),
            error_type=classification.type.value,
            severity=classification.severity.value,
            retryable=classification.is_retryable,
        )
        logger.debug(
            "pipeline.stage_error",
            pipeline=self.name,
            stage=stage.name,
            error_type=classification.type.value,
            error=str(error),
        )

        if stage.phase == Phase.VALIDATION and stage.warn_only:
            ctx.add_warning(str(error), stage.name)
            return record, False
        if self.strict_mode and not classification.is_retryable:
            raise error
        if stage.on_error == ErrorPolicy.FAIL:
            raise error
        if stage.on_error == ErrorPolicy.DEFAULT:
            return copy.deepcopy(stage.default), stage.default is None
        return None, True

    def metrics(self) -> dict[str, Any]:
        return {
            "name": self.name,
            **self._metrics.to_dict(),
            "stages": {s.name: s.metrics.to_dict() for s in self.stages},
        }

    def __repr__(self) -> str:
        return f"TransformationPipeline(name={self.name!r}, stages={len(self.stages)})"


class PipelineBuilder:
    """Fluent construction; stages are grouped by phase on ``build``."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._stages: dict[Phase, list[Stage]] = {phase: [] for phase in Phase}
        self._strict = False
        self._emitter: EventEmitter | None = None
        self._classifier: ErrorClassifier | None = None

    def _add(self, phase: Phase, stage: Stage) -> PipelineBuilder:
        stage.phase = phase
        self._stages[phase].append(stage)
        return self

    def preprocess(self, stage: Stage) -> PipelineBuilder:
        return self._add(Phase.PREPROCESSING, stage)

    def transform(self, stage: Stage) -> PipelineBuilder:
        return self._add(Phase.TRANSFORMATION, stage)

    def validate(self, stage: Stage) -> PipelineBuilder:
        return self._add(Phase.VALIDATION, stage)

    def postprocess(self, stage: Stage) -> PipelineBuilder:
        return self._add(Phase.POSTPROCESSING, stage)

    def strict(self, enabled: bool = True) -> PipelineBuilder:
        self._strict = enabled
        return self

    def with_emitter(self, emitter: EventEmitter) -> PipelineBuilder:
        self._emitter = emitter
        return self

    def with_classifier(self, classifier: ErrorClassifier) -> PipelineBuilder:
        self._classifier = classifier
        return self

    def build(self) -> TransformationPipeline:
        stages = [stage for phase in Phase for stage in self._stages[phase]]
        return TransformationPipeline(
            self.name,
            stages,
            strict_mode=self._strict,
            classifier=self._classifier,
            emitter=self._emitter,
        )


def _business_rule(index: int, raw: dict[str, Any]) -> BusinessRule:
    return BusinessRule(
        name=raw.get("name") or f"validationRule{index}",
        validate=raw.get("validate") or raw.get("type"),
        field=raw.get("field"),
        condition=raw.get("condition"),
        message=raw.get("message"),
        severity=RuleSeverity(raw.get("severity", "error")),
        enabled=raw.get("enabled", True),
    )


def _quality_rule(index: int, raw: dict[str, Any]) -> QualityRule:
    rule_type = QualityRuleType(raw.get("type", "completeness"))
    return QualityRule(
        name=raw.get("name") or f"qualityRule{index}",
        dimension=QualityDimension(raw.get("dimension", "completeness")),
        type=rule_type,
        field=raw.get("field"),
        weight=float(raw.get("weight", 0.1)),
        pattern=raw.get("pattern"),
        min=raw.get("min"),
        max=raw.get("max"),
        compare_fields=raw.get("compareFields"),
        max_age_days=raw.get("maxAgeDays"),
    )


def compile_mapping(
    mapping: Mapping,
    *,
    transforms: TransformLibrary | None = None,
    validators: list[BaseValidator] | None = None,
    preset: str | None = None,
    classifier: ErrorClassifier | None = None,
    emitter: EventEmitter | None = None,
    strict_mode: bool | None = None,
) -> TransformationPipeline:
    """Build the pipeline for ``mapping``.

    Presets:
        minimal   rule mapping only
        standard  declared sanitizers, rule mapping, required target fields
        strict    standard plus target-schema validation, strict mode

    ``aggregation``, ``validationRules``, ``qualityRules`` and
    ``enrichmentRules`` on the mapping add their stages under every preset.
    Quality scoring only warns.
    """
    preset = preset or mapping.preset or "standard"
    if preset not in PRESETS:
        raise ConfigError(f"Unknown pipeline preset: {preset}")

    strict = mapping.strict_mode if strict_mode is None else strict_mode
    if preset == "strict":
        strict = True

    evaluator = RuleEvaluator(transforms=transforms, lookup_tables=mapping.lookup_tables, classifier=classifier)
    builder = PipelineBuilder(mapping.cache_key).strict(strict)
    if emitter is not None:
        builder.with_emitter(emitter)
    if classifier is not None:
        builder.with_classifier(classifier)

    if preset != "minimal" and mapping.sanitizers:
        try:
            builder.preprocess(SanitizationStage.from_names(mapping.sanitizers))
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
    builder.transform(RuleMappingStage(mapping, evaluator))
    if mapping.aggregation:
        builder.transform(AggregationStage(mapping.aggregation))

    if preset != "minimal" and mapping.target_schema is not None:
        required = mapping.target_schema.required_fields
        if required:
            builder.validate(RequiredFieldsStage(required))
    if preset == "strict" and mapping.target_schema is not None:
        schema_validator = SchemaValidator(
            mapping.target_schema.to_json_schema(), strict_mode=True, name="targetSchema"
        )
        builder.validate(SchemaValidationStage(schema_validator))
    if mapping.validation_rules:
        builder.validate(SchemaValidationStage(
            BusinessRuleValidator([_business_rule(i, r) for i, r in enumerate(mapping.validation_rules)]),
            name="validationRules",
        ))
    if mapping.quality_rules:
        builder.validate(SchemaValidationStage(
            DataQualityValidator(
                [_quality_rule(i, r) for i, r in enumerate(mapping.quality_rules)],
                threshold=mapping.quality_threshold,
            ),
            name="dataQuality",
            warn_only=True,
        ))
    for validator in validators or []:
        builder.validate(SchemaValidationStage(validator))
    if mapping.enrichment_rules:
        builder.postprocess(EnrichmentStage(mapping.enrichment_rules))

    pipeline = builder.build()
    logger.debug(
        "pipeline.compiled",
        mapping_id=mapping.id,
        version=mapping.version,
        preset=preset,
        stages=[s.name for s in pipeline.stages],
        strict=strict,
    )
    return pipeline


__all__ = [
    "PRESETS",
    "PipelineAborted",
    "PipelineContext",
    "PipelineMetrics",
    "TransformationPipeline",
    "PipelineBuilder",
    "compile_mapping",
]
