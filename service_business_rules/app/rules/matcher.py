"""
Trigger matcher: picks the active rules a change event fires.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from shared.errors import ConfigurationError, MatchingError
from shared.logging import get_logger
from .conditions import ConditionEvaluator
from .models import ChangeEvent, EventOperation, Rule, TRIGGER_FOR_OPERATION, TriggerType


@dataclass
class RuleMatch:
    """A rule selected for an event, or one that could not be evaluated."""
    rule: Rule
    error: Optional[MatchingError] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class MatchResult:
    """Matched rules for one event in firing order."""
    matches: List[RuleMatch] = field(default_factory=list)

    @property
    def candidates(self) -> List[Rule]:
        return [m.rule for m in self.matches if not m.failed]

    @property
    def failures(self) -> List[RuleMatch]:
        return [m for m in self.matches if m.failed]


class TriggerMatcher:
    """Matches change events against rule triggers and conditions."""

    def __init__(self):
        self.logger = get_logger("business_rules.trigger_matcher")

    def match(self, event: ChangeEvent, rules: Sequence[Rule]) -> List[Rule]:
        """Return the rules whose trigger and conditions accept the event."""
        result = self.match_with_failures(event, rules)
        for failure in result.failures:
            self.logger.warning(
                "Rule could not be evaluated",
                rule_id=failure.rule.id,
                error_code=failure.error.code,
                error=failure.error.message
            )
        return result.candidates

    def match_with_failures(self, event: ChangeEvent, rules: Sequence[Rule]) -> MatchResult:
        """Match every rule, keeping per-rule matching errors alongside the candidates.

        A rule that raises while being matched never affects the others.
        Results are ordered by rule creation time, then id.
        """
        matches: List[RuleMatch] = []
        for rule in sorted(rules, key=lambda r: r.sort_key):
            try:
                if self.rule_matches(rule, event):
                    matches.append(RuleMatch(rule=rule))
            except MatchingError as e:
                matches.append(RuleMatch(rule=rule, error=e))
            except Exception as e:
                self.logger.exception("Unexpected error while matching rule", rule_id=rule.id)
                error = MatchingError(
                    f"Rule {rule.id} could not be evaluated: {type(e).__name__}: {e}",
                    details={"rule_id": rule.id, "cause": type(e).__name__}
                )
                matches.append(RuleMatch(rule=rule, error=error))

        self.logger.debug(
            "Rules matched",
            event_id=event.event_id,
            considered=len(rules),
            candidates=len([m for m in matches if not m.failed]),
            failures=len([m for m in matches if m.failed])
        )
        return MatchResult(matches=matches)

    def rule_matches(self, rule: Rule, event: ChangeEvent) -> bool:
        """Check a single rule; raises MatchingError for malformed rules."""
        if not rule.is_active:
            return False
        if rule.school_id != event.tenant_id:
            return False

        trigger_type = self._trigger_type(rule)
        if TRIGGER_FOR_OPERATION[EventOperation(event.operation)] != trigger_type:
            return False

        if trigger_type != TriggerType.TIME_BASED:
            if not rule.trigger_table:
                raise ConfigurationError(
                    f"Rule {rule.id} has trigger {trigger_type.value} but no trigger_table",
                    details={"rule_id": rule.id, "trigger_type": trigger_type.value}
                )
            if rule.trigger_table != event.table:
                return False

        evaluator = ConditionEvaluator(rule.field_types)
        try:
            return evaluator.evaluate(rule.trigger_conditions, event.condition_record)
        except MatchingError as e:
            e.details.setdefault("rule_id", rule.id)
            raise

    def _trigger_type(self, rule: Rule) -> TriggerType:
        try:
            return TriggerType(rule.trigger_type)
        except ValueError:
            raise ConfigurationError(
                f"Rule {rule.id} has unknown trigger type {rule.trigger_type!r}",
                details={"rule_id": rule.id, "trigger_type": rule.trigger_type}
            )
