"""Unit tests for business rule evaluation."""

from __future__ import annotations

import pytest

from services.rules import DEFAULT_STOP_ACTIONS, evaluate


REFERRAL_RULE = {
    "conditions": {"any": [
        {"field": "referral_triggers", "op": "len_gt", "value": 0},
        {"field": "tiv", "op": "gt", "value": 10000000},
    ]},
    "actions": ["flag_for_review", "requires_referral"],
    "reason": "Referral to senior underwriter required",
}


class TestDefaults:

    @pytest.mark.parametrize("output", [None, {}, {"x": 1}, "text", [1, 2]])
    def test_absent_rule_continues(self, output):
        result = evaluate(None, output, {"anything": True})
        assert result.should_continue is True
        assert result.suggested_actions == []
        assert result.rule_applied is False

    def test_rule_without_conditions_continues(self):
        result = evaluate({"actions": ["stop"]}, {"x": 1})
        assert result.should_continue is True
        assert result.suggested_actions == []

    @pytest.mark.parametrize("rule", [
        "{not json",
        42,
        ["a", "b"],
        {"conditions": {"field": "x", "op": "no_such_op"}, "actions": ["stop"]},
        {"conditions": {"all": "not-a-list"}, "actions": ["stop"]},
        {"conditions": {"field": "x", "op": "eq", "value": 1}, "actions": "stop"},
        {"conditions": "x == 1", "actions": ["stop"]},
    ])
    def test_malformed_rule_degrades_to_continue(self, rule, caplog):
        result = evaluate(rule, {"x": 1})
        assert result.should_continue is True
        assert result.suggested_actions == []
        assert "Rule evaluation failed" in caplog.text

    def test_default_stop_actions(self):
        assert set(DEFAULT_STOP_ACTIONS) == {"stop", "requires_referral"}


class TestMatching:

    def test_match_surfaces_actions_and_stops_on_marker(self):
        result = evaluate(REFERRAL_RULE, {"referral_triggers": ["tiv_limit"]})
        assert result.matched is True
        assert result.suggested_actions == ["flag_for_review", "requires_referral"]
        assert result.should_continue is False
        assert result.reason == "Referral to senior underwriter required"

    def test_match_without_stop_marker_continues(self):
        rule = {"conditions": {"field": "priority", "op": "eq", "value": "urgent"}, "actions": ["notify_agents"]}
        result = evaluate(rule, {"priority": "urgent"})
        assert result.matched is True
        assert result.should_continue is True
        assert result.suggested_actions == ["notify_agents"]

    def test_no_match_continues(self):
        result = evaluate(REFERRAL_RULE, {"referral_triggers": []}, {"tiv": 8500000})
        assert result.matched is False
        assert result.rule_applied is True
        assert result.should_continue is True

    def test_context_fields_visible_to_conditions(self):
        result = evaluate(REFERRAL_RULE, {"referral_triggers": []}, {"tiv": 15000000})
        assert result.should_continue is False

    def test_output_overrides_context(self):
        rule = {"conditions": {"field": "score", "op": "gte", "value": 80}, "actions": ["stop"]}
        assert evaluate(rule, {"score": 10}, {"score": 90}).should_continue is True

    def test_rule_as_json_string(self):
        rule = '{"conditions": {"field": "x", "op": "eq", "value": 1}, "actions": ["stop"]}'
        assert evaluate(rule, {"x": 1}).should_continue is False

    def test_configured_stop_actions(self):
        rule = {"conditions": {"field": "x", "op": "exists"}, "actions": ["halt"]}
        assert evaluate(rule, {"x": 1}).should_continue is True
        result = evaluate(rule, {"x": 1}, stop_actions=["halt"])
        assert result.should_continue is False
        assert result.reason == "Stopped by rule action: halt"

    def test_non_string_reason_is_stringified(self):
        rule = {"conditions": {"field": "x", "op": "exists"}, "actions": ["stop"], "reason": 42}
        assert evaluate(rule, {"x": 1}).reason == "42"


class TestConditions:

    @pytest.mark.parametrize("condition,data,expected", [
        ({"field": "a.b", "op": "eq", "value": 2}, {"a": {"b": 2}}, True),
        ({"field": "items.1", "op": "eq", "value": "y"}, {"items": ["x", "y"]}, True),
        ({"field": "a", "op": "ne", "value": 1}, {"a": 2}, True),
        ({"field": "a", "op": "lt", "value": 1}, {"a": "text"}, False),
        ({"field": "a", "op": "in", "value": ["x", "y"]}, {"a": "x"}, True),
        ({"field": "a", "op": "not_in", "value": ["x"]}, {"a": "z"}, True),
        ({"field": "tags", "op": "contains", "value": "vip"}, {"tags": ["vip"]}, True),
        ({"field": "name", "op": "starts_with", "value": "Apex"}, {"name": "Apex Ltd"}, True),
        ({"field": "missing", "op": "not_exists"}, {}, True),
        ({"field": "missing", "op": "eq", "value": None}, {}, False),
        ({"field": "flag", "op": "truthy"}, {"flag": 0}, False),
        ({"field": "files", "op": "len_gte", "value": 2}, {"files": [1, 2]}, True),
        ({"field": "a"}, {"a": 1}, False),
        ({"not": {"field": "a", "op": "eq", "value": 1}}, {"a": 2}, True),
        ({"all": [{"field": "a", "op": "gt", "value": 1}, {"field": "b", "op": "eq", "value": 2}]},
         {"a": 5, "b": 2}, True),
        ({"has_attachments": True, "priority": "urgent"}, {"has_attachments": True, "priority": "urgent"}, True),
        ({"has_attachments": True, "priority": "urgent"}, {"has_attachments": True, "priority": "low"}, False),
    ])
    def test_condition(self, condition, data, expected):
        rule = {"conditions": condition, "actions": ["mark"]}
        assert evaluate(rule, data).matched is expected

    def test_whole_output_reachable_as_output(self):
        rule = {"conditions": {"field": "output.0", "op": "eq", "value": "x"}, "actions": ["mark"]}
        assert evaluate(rule, ["x"]).matched is True
