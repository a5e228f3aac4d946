"""Tests for the transform library and rule evaluation."""

import pytest

from mapflow.core.errors import FormulaError, TransformationError
from mapflow.mapping.models import Mapping, Rule, RuleType
from mapflow.mapping.paths import MISSING
from mapflow.pipeline.rules import RuleEvaluator, map_record
from mapflow.pipeline.transforms import TransformLibrary, format_date, lookup_value, parse_date, to_boolean, to_number


# ------------------------------------------------------------------ #
# Transforms
# ------------------------------------------------------------------ #


class TestCoercions:
    def test_to_number(self):
        """Numeric strings keep int-ness; garbage raises."""
        assert to_number("42") == 42
        assert isinstance(to_number("42"), int)
        assert to_number("4.5") == 4.5
        assert to_number(True) == 1
        assert to_number(None) is None
        with pytest.raises(TransformationError):
            to_number("abc")

    def test_to_boolean(self):
        """Common spellings map to booleans."""
        assert to_boolean("yes") is True
        assert to_boolean("off") is False
        assert to_boolean(0) is False
        with pytest.raises(TransformationError):
            to_boolean("maybe")

    def test_dates(self):
        """Several input layouts parse; tokens format."""
        assert parse_date("03/15/2024").day == 15
        assert parse_date("15-03-2024").month == 3
        assert parse_date("20240315").year == 2024
        assert format_date("2024-03-05T10:20:30", "DD/MM/YYYY HH:mm:ss") == "05/03/2024 10:20:30"
        assert format_date(None) is None
        with pytest.raises(TransformationError):
            parse_date("not a date")

    def test_lookup_value(self):
        """Dict and row-list tables both resolve keys."""
        assert lookup_value({"1": "one"}, 1) == "one"
        rows = [{"code": "US", "label": "United States"}]
        assert lookup_value(rows, "US", "code", "label") == "United States"
        assert lookup_value(rows, "FR", "code", "label") is None
        with pytest.raises(TransformationError):
            lookup_value("table", "x")


class TestTransformLibrary:
    @pytest.fixture
    def library(self):
        return TransformLibrary(lookup_tables={"countries": {"US": "United States"}})

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "name,value,params,expected",
        [
            ("uppercase", "abc", {}, "ABC"),
            ("upper", "abc", {}, "ABC"),
            ("trim", "  x ", {}, "x"),
            ("capitalize", "hELLO", {}, "Hello"),
            ("titleCase", "ada  lovelace", {}, "Ada Lovelace"),
            ("camelCase", "hello world", {}, "helloWorld"),
            ("snakeCase", "helloWorld", {}, "hello_world"),
            ("padLeft", "7", {"length": 3, "char": "0"}, "007"),
            ("truncate", "abcdef", {"length": 3}, "abc..."),
            ("substring", "abcdef", {"start": 1, "length": 2}, "bc"),
            ("replace", "a-b-c", {"search": "-", "replacement": "+"}, "a+b+c"),
            ("toString", True, {}, "true"),
            ("toInteger", "12", {}, 12),
            ("round", "2.456", {"decimals": 2}, 2.46),
            ("split", "a,b", {}, ["a", "b"]),
            ("join", ["a", "b"], {"separator": "-"}, "a-b"),
            ("default", "", {"value": "n/a"}, "n/a"),
            ("fromJson", '{"a": 1}', {}, {"a": 1}),
            ("lookup", "US", {"table": "countries"}, "United States"),
            ("lookup", "XX", {"table": "countries", "default": "?"}, "?"),
            ("uppercase", None, {}, None),
        ],
    )
    async def test_builtins(self, library, name, value, params, expected):
        """Built-in transformers produce the documented values."""
        assert await library.apply(name, value, params) == expected

    @pytest.mark.asyncio
    async def test_formula_transform_reads_record(self, library):
        """The formula transform sees the record and ``value``."""
        result = await library.apply("formula", 2, {"expression": "value * qty"}, {"qty": 5})
        assert result == 10

    @pytest.mark.asyncio
    async def test_unknown_and_failing(self, library):
        """Unknown names and raising transformers become TransformationError."""
        with pytest.raises(TransformationError, match="Unknown transform"):
            await library.apply("nope", 1)
        library.register("explode", lambda v: 1 / 0)
        with pytest.raises(TransformationError, match="Transform explode failed"):
            await library.apply("explode", 1)

    @pytest.mark.asyncio
    async def test_register_async_transformer(self, library):
        """Registered coroutine transformers are awaited."""

        async def reverse(value):
            return value[::-1]

        library.register("reverse", reverse)
        assert library.has("reverse")
        assert "reverse" in library.names
        assert await library.apply("reverse", "abc") == "cba"
        with pytest.raises(TypeError):
            library.register("bad", "not callable")


# ------------------------------------------------------------------ #
# Rules
# ------------------------------------------------------------------ #


class TestRuleEvaluator:
    @pytest.fixture
    def evaluator(self):
        return RuleEvaluator(lookup_tables={"status": {"A": "active", "I": "inactive"}})

    @pytest.mark.asyncio
    async def test_rule_types(self, evaluator):
        """Every rule type computes its value."""
        record = {
            "first": "Ada",
            "last": "Lovelace",
            "csv": "a,b,c",
            "code": "A",
            "price": 10,
            "qty": 3,
            "age": 20,
        }
        rules = [
            (Rule(type=RuleType.DIRECT, sourceField="first", targetField="x"), "Ada"),
            (Rule(type=RuleType.CONCAT, sourceFields=["first", "last"], targetField="x"), "Ada Lovelace"),
            (Rule(type=RuleType.SPLIT, sourceField="csv", index=1, targetField="x"), "b"),
            (Rule(type=RuleType.SPLIT, sourceField="csv", index=7, targetField="x"), None),
            (Rule(type=RuleType.LOOKUP, sourceField="code", lookupTable="status", targetField="x"), "active"),
            (Rule(type=RuleType.FORMULA, formula="p * q", inputs={"p": "price", "q": "qty"}, targetField="x"), 30),
            (
                Rule(
                    type=RuleType.CONDITIONAL,
                    sourceField="age",
                    operator=">=",
                    compareValue=18,
                    thenValue="adult",
                    elseValue="minor",
                    targetField="x",
                ),
                "adult",
            ),
        ]
        for rule, expected in rules:
            assert await evaluator.apply(rule, record) == expected, rule.type

    @pytest.mark.asyncio
    async def test_condition_false_produces_nothing(self, evaluator):
        """A false guard yields MISSING."""
        rule = Rule(sourceField="a", targetField="b", condition={"field": "a", "operator": ">", "value": 5})
        assert await evaluator.apply(rule, {"a": 1}) is MISSING

    @pytest.mark.asyncio
    async def test_error_policies(self, evaluator):
        """skip omits, default substitutes, fail raises."""
        base = {"type": "transform", "sourceField": "v", "targetField": "n", "transform": "toNumber"}
        record = {"v": "abc"}
        assert await evaluator.apply(Rule.model_validate(base), record) is MISSING
        default_rule = Rule.model_validate({**base, "onError": "default", "defaultValue": 0})
        assert await evaluator.apply(default_rule, record) == 0
        with pytest.raises(TransformationError) as exc_info:
            await evaluator.apply(Rule.model_validate({**base, "onError": "fail"}), record)
        assert exc_info.value.context.rule == "transform:n"

    @pytest.mark.asyncio
    async def test_formula_error_keeps_type(self, evaluator):
        """Formula failures under fail policy surface as FormulaError."""
        rule = Rule(type=RuleType.FORMULA, formula="a / b", targetField="x", onError="fail")
        with pytest.raises(FormulaError):
            await evaluator.apply(rule, {"a": 1, "b": 0})

    @pytest.mark.asyncio
    async def test_retryable_rule_marks_error(self, evaluator):
        """A retryable rule produces a retryable TransformationError."""
        rule = Rule.model_validate(
            {"type": "transform", "sourceField": "v", "targetField": "n", "transform": "toNumber",
             "onError": "fail", "retryable": True}
        )
        with pytest.raises(TransformationError) as exc_info:
            await evaluator.apply(rule, {"v": "x"})
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_default_and_required(self, evaluator):
        """None falls back to defaultValue; required rules raise without one."""
        assert await evaluator.apply(Rule(sourceField="a", targetField="b", defaultValue="d"), {}) == "d"
        with pytest.raises(TransformationError, match="Required field b"):
            await evaluator.apply(Rule(sourceField="a", targetField="b", required=True), {})


class TestMapRecord:
    @pytest.mark.asyncio
    async def test_user_mapping(self, user_mapping):
        """Rules fill targets and defaults fill the rest."""
        mapping = Mapping.model_validate(user_mapping)
        out = await map_record(mapping, {"id": 1, "name": "John Doe"})
        assert out == {"userId": 1, "fullName": "JOHN DOE", "isActive": True}

    @pytest.mark.asyncio
    async def test_first_rule_per_target_wins(self):
        """The highest-priority producing rule owns the target field."""
        mapping = Mapping(
            id="m",
            rules=[
                Rule(name="fallback", sourceField="nick", targetField="name", priority=10),
                Rule(name="primary", sourceField="full", targetField="name", priority=1,
                     condition={"field": "full", "operator": "isNotNull"}),
            ],
        )
        assert await map_record(mapping, {"full": "Ada L", "nick": "ada"}) == {"name": "Ada L"}
        assert await map_record(mapping, {"nick": "ada"}) == {"name": "ada"}

    @pytest.mark.asyncio
    async def test_nested_targets_and_defaults_do_not_override(self):
        """Dotted targets build nested dicts; defaults never replace values."""
        mapping = Mapping(
            id="m",
            rules=[Rule(sourceField="city", targetField="address.city")],
            defaultValues={"address.city": "Nowhere", "address.zip": "00000"},
        )
        out = await map_record(mapping, {"city": "Paris"})
        assert out == {"address": {"city": "Paris", "zip": "00000"}}

    @pytest.mark.asyncio
    async def test_non_dict_record_rejected(self, user_mapping):
        """Records must be objects."""
        with pytest.raises(TransformationError):
            await map_record(Mapping.model_validate(user_mapping), ["not", "a", "dict"])
