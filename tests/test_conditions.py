from __future__ import annotations

import pytest

from caseflow.conditions import describe, evaluate, failing, missing_values
from caseflow.schemas import Condition, ConditionOperator


def _cond(field: str, operator: ConditionOperator | str, value=None) -> Condition:
    return Condition(field=field, operator=operator, value=value)


class TestEquals:
    def test_matching_value(self):
        assert evaluate(_cond("flag", ConditionOperator.EQUALS, True), {"flag": True})

    def test_missing_field_fails(self):
        assert not evaluate(_cond("flag", ConditionOperator.EQUALS, True), {})

    def test_bool_is_not_int(self):
        assert not evaluate(_cond("flag", ConditionOperator.EQUALS, True), {"flag": 1})
        assert not evaluate(_cond("count", ConditionOperator.EQUALS, 1), {"count": True})

    def test_string_true_is_not_bool(self):
        assert not evaluate(_cond("flag", ConditionOperator.EQUALS, True), {"flag": "true"})

    def test_none_metadata(self):
        assert not evaluate(_cond("flag", ConditionOperator.EQUALS, True), None)


class TestNotEquals:
    def test_different_value(self):
        assert evaluate(_cond("stage", ConditionOperator.NOT_EQUALS, "closed"), {"stage": "open"})

    def test_same_value(self):
        assert not evaluate(_cond("stage", ConditionOperator.NOT_EQUALS, "closed"), {"stage": "closed"})

    def test_absent_field_is_not_equal(self):
        assert evaluate(_cond("stage", ConditionOperator.NOT_EQUALS, "closed"), {})


class TestContains:
    def test_list_membership(self):
        assert evaluate(_cond("tags", ConditionOperator.CONTAINS, "urgent"), {"tags": ["urgent", "new"]})

    def test_missing_element(self):
        assert not evaluate(_cond("tags", ConditionOperator.CONTAINS, "urgent"), {"tags": ["new"]})

    def test_non_list_value_fails(self):
        assert not evaluate(_cond("tags", ConditionOperator.CONTAINS, "urg"), {"tags": "urgent"})


class TestExists:
    @pytest.mark.parametrize("value", ["x", 0, False, [], ""])
    def test_present_values_exist(self, value):
        assert evaluate(_cond("field", ConditionOperator.EXISTS), {"field": value})

    def test_none_does_not_exist(self):
        assert not evaluate(_cond("field", ConditionOperator.EXISTS), {"field": None})
        assert evaluate(_cond("field", ConditionOperator.NOT_EXISTS), {"field": None})

    def test_absent_field(self):
        assert not evaluate(_cond("field", ConditionOperator.EXISTS), {})
        assert evaluate(_cond("field", ConditionOperator.NOT_EXISTS), {})


@pytest.mark.parametrize("metadata", [{}, {"field": True}, {"field": "anything"}, None])
@pytest.mark.parametrize("value", [True, None, "anything"])
def test_unknown_operator_fails_closed(metadata, value):
    assert not evaluate(_cond("field", "greater_than", value), metadata)


def test_failing_reports_every_failed_condition_in_order():
    conditions = (
        _cond("a", ConditionOperator.EQUALS, True),
        _cond("b", ConditionOperator.EXISTS),
        _cond("c", ConditionOperator.EQUALS, True),
    )
    assert failing(conditions, {"b": 1}) == [conditions[0], conditions[2]]


def test_describe_renders_field_operator_value():
    assert describe(_cond("riskAssessmentCompleted", ConditionOperator.EQUALS, True)) == (
        "riskAssessmentCompleted equals True"
    )
    assert describe(_cond("x", "weird", 3)) == "x weird 3"


def test_missing_values_treats_none_and_empty_string_as_missing():
    data = {"a": "x", "b": None, "c": "", "d": 0}
    assert missing_values(["a", "b", "c", "d", "e"], data) == ["b", "c", "e"]
