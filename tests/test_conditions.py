"""Tests for the edge condition evaluator."""
import pytest

from context.scope import VariableScope
from core.errors import ConditionSyntaxError
from utils.conditions import ConditionEvaluator, compile_expression, evaluate
from utils.templating import get_nested_value, interpolate, stringify


class TestGetNestedValue:
    def test_flat_key(self):
        assert get_nested_value({"name": "Alice"}, "name") == "Alice"

    def test_nested_key(self):
        data = {"order": {"status": "shipped", "items": 3}}
        assert get_nested_value(data, "order.status") == "shipped"
        assert get_nested_value(data, "order.items") == 3

    def test_list_index(self):
        assert get_nested_value({"rows": [{"id": 7}]}, "rows.0.id") == 7

    def test_missing_nested_key(self):
        assert get_nested_value({"a": {"b": 1}}, "a.c") is None


class TestTemplating:
    def test_stringify(self):
        assert stringify(None) == ""
        assert stringify(True) == "true"
        assert stringify(18.0) == "18"
        assert stringify({"a": 1}) == '{"a": 1}'

    def test_interpolate_missing_renders_empty(self):
        assert interpolate("Hi {{ name }}{{missing}}!", {"name": "Maria"}.get) == "Hi Maria!"


class TestExpressions:
    @pytest.fixture
    def ev(self):
        return ConditionEvaluator()

    def test_numeric_comparison(self, ev):
        assert ev.evaluate("{{age}} >= 18", {"age": "20"})
        assert not ev.evaluate("{{age}} >= 18", {"age": "10"})
        assert ev.evaluate("age < 18", {"age": 10})

    def test_missing_variable_never_satisfies_ordering(self, ev):
        assert not ev.evaluate("{{age}} >= 18", {})
        assert not ev.evaluate("{{age}} < 18", {})

    def test_equality_numeric_or_text(self, ev):
        assert ev.evaluate("{{count}} == 3", {"count": "3.0"})
        assert ev.evaluate("status == 'open'", {"status": "open"})
        assert ev.evaluate('status != "closed"', {"status": "open"})

    def test_boolean_connectives(self, ev):
        scope = {"age": 30, "vip": "true", "country": "BR"}
        assert ev.evaluate("age > 18 && vip", scope)
        assert ev.evaluate("age > 50 || country == 'BR'", scope)
        assert ev.evaluate("not (age > 50) and vip == true", scope)
        assert not ev.evaluate("!vip", scope)

    def test_precedence_and_binds_tighter(self, ev):
        assert ev.evaluate("true || false && false", {})
        assert not ev.evaluate("(true || false) && false", {})

    def test_negative_numbers(self, ev):
        assert ev.evaluate("balance < -10", {"balance": "-25"})

    def test_string_literal_interpolates(self, ev):
        assert ev.evaluate("greeting == 'hi {{name}}'", {"greeting": "hi Ana", "name": "Ana"})

    def test_dotted_path_into_api_result(self, ev):
        scope = VariableScope(None, {"crm": {"tier": "gold", "orders": [{"total": 120}]}})
        assert ev.evaluate("crm.tier == 'gold'", scope)
        assert ev.evaluate("{{crm.orders.0.total}} > 100", scope)

    def test_truthiness_of_bare_variables(self, ev):
        assert not ev.evaluate("flag", {"flag": "no"})
        assert not ev.evaluate("flag", {"flag": "0"})
        assert not ev.evaluate("flag", {})
        assert ev.evaluate("flag", {"flag": "yes"})


class TestStructured:
    def test_operators(self):
        ev = ConditionEvaluator()
        scope = {"age": 21, "plan": "pro", "tags": "vip,beta"}
        assert ev.evaluate({"variable": "age", "operator": "gte", "value": 18}, scope)
        assert ev.evaluate({"field": "plan", "operator": "in", "value": ["pro", "team"]}, scope)
        assert ev.evaluate({"variable": "tags", "operator": "contains", "value": "beta"}, scope)
        assert ev.evaluate({"variable": "plan", "operator": "regex", "value": "^p"}, scope)
        assert ev.evaluate({"variable": "missing", "operator": "not_exists"}, scope)
        assert not ev.evaluate({"variable": "missing", "operator": "gt", "value": 1}, scope)

    def test_expression_key(self):
        assert evaluate({"expression": "{{n}} > 1"}, {"n": 2})

    def test_unknown_operator_is_false(self):
        assert not evaluate({"variable": "a", "operator": "between", "value": 1}, {"a": 1})


class TestEmptyAndMalformed:
    def test_empty_conditions_are_true(self):
        ev = ConditionEvaluator()
        assert ev.check(None, {})
        assert ev.check("", {})
        assert ev.check("   ", {})
        assert ev.check({}, {})

    @pytest.mark.parametrize("expr", ["{{age}} >=", "(a == 1", "a == 1)", "a $ b", "&& a"])
    def test_malformed_raises_in_strict_mode(self, expr):
        with pytest.raises(ConditionSyntaxError):
            ConditionEvaluator().check(expr, {"a": 1})

    def test_malformed_evaluates_false(self):
        assert evaluate("{{age}} >=", {"age": 40}) is False

    def test_validate_reports_problem(self):
        assert ConditionEvaluator.validate("a == 1") is None
        assert "missing ')'" in ConditionEvaluator.validate("(a == 1")

    def test_compiled_ast_is_cached(self):
        assert compile_expression("x == 1") is compile_expression("x == 1")


class TestNesting:
    def test_excess_nesting_is_a_syntax_error(self):
        nested = "(" * 400 + "x" + ")" * 400
        with pytest.raises(ConditionSyntaxError) as exc:
            ConditionEvaluator().check(nested, {"x": "1"})
        assert exc.value.reason == "expression nested too deeply"
        assert evaluate(nested, {"x": "1"}) is False
        assert "nested too deeply" in ConditionEvaluator.validate(nested)

    def test_repeated_negation_is_bounded(self):
        assert evaluate("!" * 400 + "x", {"x": "1"}) is False
        assert evaluate("!!x", {"x": "1"}) is True

    def test_moderate_nesting_still_parses(self):
        assert evaluate("(" * 20 + "x == 1" + ")" * 20, {"x": 1}) is True

    def test_long_chains_evaluate(self):
        chain = " && ".join(["x == 1"] * 2000)
        assert evaluate(chain, {"x": 1}) is True
        assert evaluate(" || ".join(["x == 2"] * 2000 + ["x == 1"]), {"x": 1}) is True
