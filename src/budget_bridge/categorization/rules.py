"""
Cleanup rule lifecycle and matching.

Only APPROVED rules are ever applied. Suggestions from the categorization
provider are stored PENDING and wait for a human decision.
"""

import logging
from dataclasses import replace
from typing import Optional

from ..errors import BudgetBridgeError
from ..ports import RuleSuggestion
from ..schemas.rules import CleanupRule, PatternType, RuleStatus
from ..schemas.transaction import utcnow
from ..state_store import StateStore

logger = logging.getLogger(__name__)


class RuleNotFoundError(BudgetBridgeError):
    """No rule with the given id."""

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Cleanup rule not found: {rule_id}")


class RuleBook:
    """Approved/pending cleanup rules backed by the state store."""

    def __init__(self, store: StateStore):
        self.store = store

    def approved_rules(self) -> list[CleanupRule]:
        """Approved rules, most specific first."""
        rules = self.store.list_rules(RuleStatus.APPROVED)
        return sorted(rules, key=lambda r: r.sort_key, reverse=True)

    def pending_rules(self) -> list[CleanupRule]:
        return self.store.list_rules(RuleStatus.PENDING)

    def match(self, text: str) -> Optional[CleanupRule]:
        """First approved rule matching ``text``; its usage is counted."""
        if not text:
            return None
        for rule in self.approved_rules():
            if rule.matches(text):
                self.store.increment_rule_usage(rule.id)
                logger.debug("Rule %s (%s) matched", rule.id, rule.pattern_type.value)
                return rule
        return None

    def create_rule(
        self,
        pattern: str,
        pattern_type: PatternType,
        replacement: str,
        category: str | None = None,
    ) -> CleanupRule:
        """Create an approved human rule."""
        if not pattern or not replacement:
            raise ValueError("Rule pattern and replacement must not be empty")
        rule = CleanupRule.from_human(pattern, pattern_type, replacement, category)
        self.store.save_rule(rule)
        logger.info("Created rule %s: %s '%s' -> '%s'", rule.id, pattern_type.value, pattern, replacement)
        return rule

    def suggest(self, suggestion: RuleSuggestion, category: str | None = None) -> CleanupRule:
        """
        Store a provider suggestion as PENDING.

        A pending rule with the same pattern and type is reused rather than
        duplicated; its confidence is raised if the new suggestion is stronger.
        """
        existing = self.store.find_pending_rule(suggestion.pattern, suggestion.pattern_type)
        if existing:
            if suggestion.confidence > existing.confidence:
                existing = replace(
                    existing, confidence=suggestion.confidence, updated_at=utcnow()
                )
                self.store.save_rule(existing)
            return existing

        rule = CleanupRule.from_suggestion(
            pattern=suggestion.pattern,
            pattern_type=suggestion.pattern_type,
            replacement=suggestion.replacement,
            confidence=suggestion.confidence,
            category=suggestion.category or category,
            explanation=suggestion.explanation,
        )
        self.store.save_rule(rule)
        logger.info("Stored pending rule suggestion %s", rule.id)
        return rule

    def _get(self, rule_id: str) -> CleanupRule:
        rule = self.store.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def approve(
        self,
        rule_id: str,
        replacement: str | None = None,
        category: str | None = None,
    ) -> CleanupRule:
        """Approve a rule, optionally correcting its replacement or category."""
        rule = self._get(rule_id)
        if replacement:
            rule = replace(rule, replacement=replacement)
        if category:
            rule = replace(rule, category=category)
        rule = rule.with_status(RuleStatus.APPROVED)
        self.store.save_rule(rule)
        logger.info("Approved rule %s", rule_id)
        return rule

    def reject(self, rule_id: str) -> CleanupRule:
        rule = self._get(rule_id).with_status(RuleStatus.REJECTED)
        self.store.save_rule(rule)
        logger.info("Rejected rule %s", rule_id)
        return rule

    def provide_feedback(self, rule_id: str, was_successful: bool) -> CleanupRule:
        """Fold a success/failure observation into the rule's success rate."""
        rule = self._get(rule_id).with_feedback(was_successful)
        self.store.save_rule(rule)
        return rule
