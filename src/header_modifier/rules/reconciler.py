"""Rule reconciler - applies the minimal delta between desired and installed rules.

Rules are paired by id and compared by their serialized form (priority,
action, condition). Rules are always regenerated from the canonical
configuration, so structural equality is sufficient.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from .. import logging as hm_logging
from .compiler import serialize_rule
from .services import RuleTable
from .types import FilterRule

logger = logging.getLogger(__name__)


@dataclass
class RuleDelta:
    """Rule ids to remove and rules to add, applied as one atomic call."""

    to_remove: set[int] = field(default_factory=set)
    to_add: list[FilterRule] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.to_remove and not self.to_add


def compute_delta(
    desired: Sequence[FilterRule], installed: Sequence[FilterRule]
) -> RuleDelta:
    """Diff desired rules against installed rules.

    - to_remove: installed ids absent from desired, or present but changed
    - to_add: desired rules absent from installed, or present but changed
    """
    desired_by_id = {rule.id: rule for rule in desired}
    installed_by_id = {rule.id: rule for rule in installed}

    to_remove = set()
    for rule in installed:
        wanted = desired_by_id.get(rule.id)
        if wanted is None or serialize_rule(wanted) != serialize_rule(rule):
            to_remove.add(rule.id)

    to_add = []
    for rule in desired:
        current = installed_by_id.get(rule.id)
        if current is None or serialize_rule(current) != serialize_rule(rule):
            to_add.append(rule)

    return RuleDelta(to_remove=to_remove, to_add=to_add)


class RuleReconciler:
    """Brings the rule table in line with a desired rule set.

    Example:
        reconciler = RuleReconciler(rule_table)
        delta = await reconciler.reconcile(compile_rules(config))
        if delta.empty:
            ...  # nothing was written
    """

    def __init__(self, rule_table: RuleTable):
        self.rule_table = rule_table

    async def reconcile(self, desired: Sequence[FilterRule]) -> RuleDelta:
        """Apply the delta needed to reach `desired`.

        No call is made to the rule table when nothing changed. Failures of
        the apply call propagate unchanged and are not retried.
        """
        installed = await self.rule_table.list_installed_rules()
        delta = compute_delta(desired, installed)

        if delta.empty:
            logger.debug(f"Rules up to date ({len(installed)} installed)")
            return delta

        await self.rule_table.apply_delta(delta.to_remove, delta.to_add)

        added_ids = [rule.id for rule in delta.to_add]
        logger.info(
            f"Rules updated: removed={sorted(delta.to_remove)} added={added_ids}"
        )
        hm_logging.log_event(
            event="rules_applied",
            removed=sorted(delta.to_remove),
            added=added_ids,
            installed=len(desired),
        )
        return delta

    async def clear(self) -> RuleDelta:
        """Remove every installed rule."""
        return await self.reconcile([])
