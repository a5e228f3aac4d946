"""
Validation framework: registries, result cache and events.

Manifesto:
    Callers describe *what* to check (a schema, a type, business rules, a
    custom callable, named validators) and the framework assembles the
    validators, runs them, caches the result and reports what happened.

Architecture:
    validate(data, schema=, type=, rules=, custom=, validators=)
        │
        ├─ cache lookup  fingerprint(data, options)   FIFO, bounded
        ├─ build validators (registered names resolved here)
        ├─ one validator → run it; several → CompositeValidator(mode)
        └─ emit validationComplete / validationError

Tags:
    validation, cache, events, mapflow
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from mapflow.core.events import EventEmitter
from mapflow.core.hashing import fingerprint
from mapflow.core.logging import get_logger
from mapflow.validation.result import ValidationResult
from mapflow.validation.validators import (
    BaseValidator,
    BusinessRule,
    BusinessRuleValidator,
    CompositeMode,
    CompositeValidator,
    CustomValidator,
    SchemaValidator,
    TypeValidator,
)

logger = get_logger(__name__)


@dataclass
class FrameworkMetrics:
    total_validations: int = 0
    successful_validations: int = 0
    failed_validations: int = 0
    cache_hits: int = 0
    cache_misses: int = 0

    def to_dict(self) -> dict[str, Any]:
        total = self.total_validations
        lookups = self.cache_hits + self.cache_misses
        return {
            "totalValidations": total,
            "successfulValidations": self.successful_validations,
            "failedValidations": self.failed_validations,
            "cacheHits": self.cache_hits,
            "cacheMisses": self.cache_misses,
            "successRate": (self.successful_validations / total) * 100 if total else 0.0,
            "cacheHitRate": (self.cache_hits / lookups) * 100 if lookups else 0.0,
        }


class ValidationFramework:
    """Registry-backed validation entry point.

    Example:
        >>> framework = ValidationFramework()
        >>> framework.register_schema("user", {"type": "object", "required": ["id"]})
        >>> result = await framework.validate({"name": "x"}, schema="user")
        >>> result.valid
        False
    """

    def __init__(
        self,
        *,
        cache_size: int = 1000,
        enable_cache: bool = True,
        emitter: EventEmitter | None = None,
    ) -> None:
        self.cache_size = cache_size
        self.enable_cache = enable_cache
        self.emitter = emitter or EventEmitter(source="validation")
        self._validators: dict[str, BaseValidator] = {}
        self._schemas: dict[str, dict[str, Any]] = {}
        self._rules: dict[str, list[BusinessRule]] = {}
        self._cache: OrderedDict[str, ValidationResult] = OrderedDict()
        self._metrics = FrameworkMetrics()

    # ── Registries ───────────────────────────────────────────────────

    def register_validator(self, name: str, validator: BaseValidator | Callable[..., Any]) -> None:
        """Register a validator instance, or a callable wrapped as a CustomValidator."""
        if not isinstance(validator, BaseValidator):
            validator = CustomValidator(validator, name=name)
        self._validators[name] = validator
        logger.debug("validation.validator_registered", name=name)

    def register_schema(self, name: str, schema: dict[str, Any]) -> None:
        self._schemas[name] = schema

    def register_rules(self, name: str, rules: list[BusinessRule]) -> None:
        self._rules[name] = list(rules)

    def get_validator(self, name: str) -> BaseValidator | None:
        return self._validators.get(name)

    def create_schema_validator(self, schema: str | dict[str, Any], **options: Any) -> SchemaValidator:
        """Build a SchemaValidator from a schema dict or a registered schema name."""
        if isinstance(schema, str):
            if schema not in self._schemas:
                raise KeyError(f"Schema not found: {schema}")
            schema = self._schemas[schema]
        return SchemaValidator(schema, **options)

    def create_rule_validator(
        self, rules: str | list[BusinessRule] | BusinessRule, **options: Any
    ) -> BusinessRuleValidator:
        """Build a BusinessRuleValidator from rules or a registered rule-set name."""
        if isinstance(rules, str):
            if rules not in self._rules:
                raise KeyError(f"Rules not found: {rules}")
            rules = self._rules[rules]
        return BusinessRuleValidator(rules, **options)

    # ── Validation ───────────────────────────────────────────────────

    async def validate(
        self,
        data: Any,
        *,
        schema: str | dict[str, Any] | None = None,
        type: str | list[str] | None = None,
        rules: str | list[BusinessRule] | BusinessRule | None = None,
        custom: Callable[..., Any] | None = None,
        validators: list[str | BaseValidator] | None = None,
        mode: CompositeMode | str = CompositeMode.ALL,
        stop_on_error: bool = False,
        strict_mode: bool = False,
        coerce_types: bool = False,
        use_cache: bool = True,
        context: dict[str, Any] | None = None,
    ) -> ValidationResult:
        started = time.perf_counter()
        self._metrics.total_validations += 1

        cache_key = None
        if self.enable_cache and use_cache:
            cache_key = self._cache_key(data, schema, type, rules, validators, mode, strict_mode)
            cached = self._cache.get(cache_key)
            if cached is not None:
                self._metrics.cache_hits += 1
                self._count(cached)
                return cached
            self._metrics.cache_misses += 1

        try:
            chain = self._build(schema, type, rules, custom, validators, strict_mode, coerce_types)
            if not chain:
                result = ValidationResult()
            elif len(chain) == 1:
                result = await chain[0].validate(data, context)
            else:
                composite = CompositeValidator(chain, mode=mode, stop_on_error=stop_on_error)
                result = await composite.validate(data, context)
        except Exception as e:
            elapsed = time.perf_counter() - started
            self._metrics.failed_validations += 1
            logger.error("validation.error", error=str(e))
            self.emitter.emit("validationError", error=str(e), execution_time=elapsed)
            raise

        if cache_key is not None:
            self._store(cache_key, result)

        self._count(result)
        elapsed = time.perf_counter() - started
        self.emitter.emit(
            "validationComplete",
            valid=result.valid,
            execution_time=elapsed,
            error_count=len(result.errors),
            warning_count=len(result.warnings),
        )
        return result

    async def validate_batch(self, items: list[Any], **options: Any) -> list[dict[str, Any]]:
        """Validate each item; a raising item yields an entry with ``error``."""
        base_context = dict(options.pop("context", None) or {})
        out: list[dict[str, Any]] = []
        for index, item in enumerate(items):
            context = {**base_context, "batchIndex": index, "batchSize": len(items)}
            try:
                result = await self.validate(item, context=context, **options)
                out.append({"index": index, "result": result})
            except Exception as e:
                out.append({"index": index, "result": None, "error": str(e)})
        return out

    def _build(
        self,
        schema: str | dict[str, Any] | None,
        type_: str | list[str] | None,
        rules: str | list[BusinessRule] | BusinessRule | None,
        custom: Callable[..., Any] | None,
        validators: list[str | BaseValidator] | None,
        strict_mode: bool,
        coerce_types: bool,
    ) -> list[BaseValidator]:
        chain: list[BaseValidator] = []
        if schema is not None:
            chain.append(self.create_schema_validator(schema, strict_mode=strict_mode, coerce_types=coerce_types))
        if type_ is not None:
            chain.append(TypeValidator(type_))
        if rules is not None:
            chain.append(self.create_rule_validator(rules))
        if custom is not None:
            chain.append(CustomValidator(custom))
        for entry in validators or []:
            if isinstance(entry, BaseValidator):
                chain.append(entry)
                continue
            found = self._validators.get(entry)
            if found is None:
                logger.warning("validation.unknown_validator", name=entry)
                continue
            chain.append(found)
        return chain

    # ── Cache ────────────────────────────────────────────────────────

    @staticmethod
    def _cache_key(data: Any, *options: Any) -> str:
        def describe(value: Any) -> Any:
            if isinstance(value, BaseValidator):
                return f"{type(value).__name__}:{value.name}:{id(value)}"
            if isinstance(value, BusinessRule):
                return f"rule:{value.name}:{id(value)}"
            if isinstance(value, list):
                return [describe(v) for v in value]
            return value

        return fingerprint(data, [describe(o) for o in options])

    def _store(self, key: str, result: ValidationResult) -> None:
        if len(self._cache) >= self.cache_size:
            self._cache.popitem(last=False)
        self._cache[key] = result

    def _count(self, result: ValidationResult) -> None:
        if result.valid:
            self._metrics.successful_validations += 1
        else:
            self._metrics.failed_validations += 1

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cache_size_current(self) -> int:
        return len(self._cache)

    def metrics(self) -> dict[str, Any]:
        return {**self._metrics.to_dict(), "cacheSize": len(self._cache)}

    def reset_metrics(self) -> None:
        self._metrics = FrameworkMetrics()


__all__ = ["FrameworkMetrics", "ValidationFramework"]
