"""Tests for the condition node evaluator."""
import pytest
from models.schemas import ConditionData, ConditionOperator
from utils.conditions import compare, evaluate_condition


def _cond(operator: str, value, variable: str = "v") -> ConditionData:
    return ConditionData(variable=variable, operator=operator, value=value)


class TestEquals:
    def test_exact_match(self):
        assert evaluate_condition(_cond("equals", "yes"), {"v": "yes"})

    def test_case_sensitive(self):
        assert not evaluate_condition(_cond("equals", "yes"), {"v": "Yes"})

    def test_numeric_literal_compared_as_string(self):
        assert evaluate_condition(_cond("equals", 18), {"v": "18"})
        assert not evaluate_condition(_cond("equals", 18), {"v": "18.0"})


class TestContains:
    def test_substring(self):
        assert evaluate_condition(_cond("contains", "pay"), {"v": "I want to pay now"})

    def test_not_contained(self):
        assert not evaluate_condition(_cond("contains", "refund"), {"v": "I want to pay"})

    def test_empty_needle_always_contained(self):
        assert evaluate_condition(_cond("contains", ""), {"v": "anything"})


class TestNumeric:
    def test_gt(self):
        assert evaluate_condition(_cond("gt", "18"), {"v": "20"})
        assert not evaluate_condition(_cond("gt", "18"), {"v": "18"})

    def test_lt(self):
        assert evaluate_condition(_cond("lt", "10"), {"v": "9.5"})
        assert not evaluate_condition(_cond("lt", "10"), {"v": "10"})

    def test_non_numeric_actual_is_false(self):
        assert not evaluate_condition(_cond("gt", "18"), {"v": "abc"})
        assert not evaluate_condition(_cond("lt", "18"), {"v": "abc"})

    def test_non_numeric_literal_is_false(self):
        assert not evaluate_condition(_cond("gt", "old"), {"v": "20"})

    def test_nan_is_false(self):
        assert not evaluate_condition(_cond("gt", "1"), {"v": "nan"})
        assert not evaluate_condition(_cond("lt", "1"), {"v": "nan"})

    @pytest.mark.parametrize("value", [
        "", " ", "abc", "twenty", "20 years", "18+", "inf", "-inf", "Infinity",
        "NaN", "nan", "1_000", " 20 ", "20\n", "1e3", "0x1F", "1,000", "²", "①",
        "\u0662\u0660", "\uff12\uff10", "--5", "+", ".", "1.2.3",
    ])
    def test_non_numeric_always_false(self, value):
        for literal in ("-1000000", "18", "1000000"):
            assert not evaluate_condition(_cond("gt", literal), {"v": value})
            assert not evaluate_condition(_cond("lt", literal), {"v": value})

    @pytest.mark.parametrize("value,expected", [
        ("20", True), ("+20", True), ("18.5", True), (".5", False), ("-3", False), ("007", False),
    ])
    def test_plain_decimals_compared(self, value, expected):
        assert evaluate_condition(_cond("gt", "18"), {"v": value}) is expected


class TestUnbound:
    def test_missing_variable_compares_as_empty(self):
        assert not evaluate_condition(_cond("equals", "x"), {})
        assert evaluate_condition(_cond("equals", ""), {})

    def test_missing_variable_numeric_is_false(self):
        assert not evaluate_condition(_cond("gt", "0"), {})


class TestCompare:
    @pytest.mark.parametrize("operator,actual,expected,result", [
        (ConditionOperator.EQUALS, "a", "a", True),
        (ConditionOperator.CONTAINS, "abc", "b", True),
        (ConditionOperator.GT, "3", "2", True),
        (ConditionOperator.LT, "3", "2", False),
    ])
    def test_operator_table(self, operator, actual, expected, result):
        assert compare(operator, actual, expected) is result

    def test_never_raises(self):
        assert compare(ConditionOperator.GT, None, "x") is False
