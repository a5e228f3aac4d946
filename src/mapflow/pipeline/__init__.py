"""
Record transformation: transforms, rule evaluation, stages and pipelines.
"""

from mapflow.pipeline.pipeline import (
    PRESETS,
    PipelineAborted,
    PipelineBuilder,
    PipelineContext,
    TransformationPipeline,
    compile_mapping,
)
from mapflow.pipeline.rules import RuleEvaluator, map_record
from mapflow.pipeline.stages import (
    AggregationStage,
    EnrichmentStage,
    FunctionStage,
    Phase,
    RequiredFieldsStage,
    RuleMappingStage,
    SanitizationStage,
    SchemaValidationStage,
    Stage,
)
from mapflow.pipeline.transforms import TransformLibrary

__all__ = [
    "PRESETS",
    "PipelineAborted",
    "PipelineBuilder",
    "PipelineContext",
    "TransformationPipeline",
    "compile_mapping",
    "RuleEvaluator",
    "map_record",
    "AggregationStage",
    "EnrichmentStage",
    "FunctionStage",
    "Phase",
    "RequiredFieldsStage",
    "RuleMappingStage",
    "SanitizationStage",
    "SchemaValidationStage",
    "Stage",
    "TransformLibrary",
]
