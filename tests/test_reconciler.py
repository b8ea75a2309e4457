"""Tests for rule reconciliation against an in-memory rule table."""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import FailingRuleTable

from header_modifier.rules import (
    FilterRule,
    GlobalCondition,
    HeaderAction,
    MemoryRuleTable,
    RuleReconciler,
    ServiceError,
    compile_rules,
    compute_delta,
    validate,
)


def rules_for(domains="", value="123", mode="include_subdomains"):
    config = validate([{"key": "X-Test", "value": value}], domains, mode)
    return compile_rules(config)


class TestComputeDelta:
    """Pure diffing of desired against installed rules."""

    def test_identical_sets_are_empty(self):
        rules = rules_for("a.com\nb.com")
        delta = compute_delta(rules, rules)
        assert delta.empty
        assert delta.to_remove == set()
        assert delta.to_add == []

    def test_install_from_nothing(self):
        rules = rules_for("a.com\nb.com")
        delta = compute_delta(rules, [])
        assert delta.to_remove == set()
        assert delta.to_add == rules

    def test_remove_everything(self):
        delta = compute_delta([], rules_for("a.com\nb.com"))
        assert delta.to_remove == {1, 2}
        assert delta.to_add == []

    def test_changed_rule_is_replaced(self):
        installed = rules_for("a.com\nb.com", value="old")
        desired = rules_for("a.com\nb.com", value="new")
        delta = compute_delta(desired, installed)
        assert delta.to_remove == {1, 2}
        assert delta.to_add == desired

    def test_only_differing_ids_touched(self):
        installed = rules_for("a.com\nb.com")
        desired = rules_for("a.com\nc.com")
        delta = compute_delta(desired, installed)
        assert delta.to_remove == {2}
        assert [r.id for r in delta.to_add] == [2]

    def test_shrinking_rule_set(self):
        delta = compute_delta(rules_for("a.com"), rules_for("a.com\nb.com\nc.com"))
        assert delta.to_remove == {2, 3}
        assert delta.to_add == []

    def test_foreign_rule_removed(self):
        foreign = FilterRule(
            id=99, priority=1, header_actions=(HeaderAction("X", "y"),), condition=GlobalCondition()
        )
        delta = compute_delta(rules_for(), [foreign])
        assert delta.to_remove == {99}
        assert [r.id for r in delta.to_add] == [1]


class TestRuleReconciler:
    """Applying deltas to the rule table."""

    def test_install_then_noop(self):
        async def scenario():
            table = MemoryRuleTable()
            reconciler = RuleReconciler(table)
            desired = rules_for("a.com\nb.com")

            first = await reconciler.reconcile(desired)
            second = await reconciler.reconcile(desired)
            return table, first, second, desired

        table, first, second, desired = asyncio.run(scenario())
        assert not first.empty
        assert second.empty
        assert table.apply_count == 1
        assert asyncio.run(table.list_installed_rules()) == desired

    def test_empty_delta_makes_no_call(self):
        table = MemoryRuleTable(rules_for("a.com"))
        delta = asyncio.run(RuleReconciler(table).reconcile(rules_for("a.com")))
        assert delta.empty
        assert table.apply_count == 0

    def test_single_apply_call_per_change(self):
        table = MemoryRuleTable(rules_for("a.com\nb.com\nc.com"))
        asyncio.run(RuleReconciler(table).reconcile(rules_for("x.com")))
        assert table.apply_count == 1
        installed = asyncio.run(table.list_installed_rules())
        assert [r.condition.host for r in installed] == ["x.com"]

    def test_clear(self):
        table = MemoryRuleTable(rules_for("a.com\nb.com"))
        asyncio.run(RuleReconciler(table).clear())
        assert asyncio.run(table.list_installed_rules()) == []

    def test_failure_propagates_and_leaves_table(self):
        installed = rules_for("a.com")
        table = FailingRuleTable(installed)
        with pytest.raises(ServiceError, match="quota exceeded"):
            asyncio.run(RuleReconciler(table).reconcile(rules_for("b.com")))
        assert table.attempts == 1
        assert asyncio.run(table.list_installed_rules()) == installed

    def test_failure_not_retried(self):
        table = FailingRuleTable()
        with pytest.raises(ServiceError):
            asyncio.run(RuleReconciler(table).reconcile(rules_for()))
        assert table.attempts == 1
