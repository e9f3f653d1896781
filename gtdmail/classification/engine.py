"""
Rule engine: deterministic GTD classification.

Given the active rules, classify() works in four steps:
1. Every valid rule is tested; a rule matches when ALL its conditions hold
2. The highest-priority match wins; ties go to the smaller rule id
3. The winner's category and priority seed the result, then its actions
   run in the order declared
4. No match falls back to UNCLASSIFIED / MEDIUM / NOT_STARTED, confidence 0

Invalid rules (bad regex, no conditions, unknown action values) are found
when the engine is built. They never match, and every classification
notes that they were skipped.

The engine holds no per-message state, so classify_batch is just classify
per message and the engine can be shared freely.

Usage:
    from gtdmail.classification.engine import RuleEngine

    engine = RuleEngine(rules)
    result = engine.classify(email)
    result.metadata.category, result.confidence, result.reasoning
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from gtdmail.classification.conditions import CompiledCondition, compile_condition
from gtdmail.classification.schemas import (
    ActionStatus,
    CategoryRule,
    ClassificationMetadata,
    ClassificationResult,
    Email,
    EmailCategory,
    Priority,
    RuleAction,
)
from gtdmail.classification.scoring import ConfidencePolicy
from gtdmail.errors import InvalidClassificationRequest, RuleConfigurationError

logger = logging.getLogger(__name__)

NO_MATCH_REASON = "No rule matched; using default classification (UNCLASSIFIED, MEDIUM)"

# "+3d" or "+12h": due relative to the message date.
_RELATIVE_DUE = re.compile(r"^\+(?P<amount>\d+)(?P<unit>[dh])$")


def rule_sort_key(rule: CategoryRule) -> tuple:
    """
    Precedence order: highest priority first, then smallest id.

    All-digit ids compare numerically ("2" before "10") and sort before
    other ids, which compare lexicographically.
    """
    rule_id = rule.id
    id_key = (0, int(rule_id), "") if rule_id.isdigit() else (1, 0, rule_id)
    return (-rule.priority.rank, id_key)


@dataclass(frozen=True)
class _CompiledRule:
    rule: CategoryRule
    conditions: tuple[CompiledCondition, ...]

    def matches(self, email: Email) -> bool:
        return all(condition.matches(email) for condition in self.conditions)


class RuleEngine:
    """Classifies emails against a fixed, ordered rule set."""

    def __init__(self, rules: Iterable[CategoryRule], policy: Optional[ConfidencePolicy] = None):
        self._policy = policy or ConfidencePolicy()
        self._rules: list[_CompiledRule] = []
        self._invalid: dict[str, str] = {}

        active = [rule for rule in rules if rule.is_active]
        for rule in sorted(active, key=rule_sort_key):
            try:
                self._rules.append(self._compile(rule))
            except RuleConfigurationError as e:
                self._invalid[rule.id] = f'Rule "{rule.name}" ({rule.id}) skipped: {e}'
                logger.warning(
                    "rule_engine.rule_invalid",
                    extra={"action": "rule_engine.rule_invalid", "rule_id": rule.id, "error": str(e)},
                )

        logger.info(
            "rule_engine.initialized",
            extra={
                "action": "rule_engine.initialized",
                "active_rules": len(self._rules),
                "invalid_rules": len(self._invalid),
            },
        )

    @property
    def rules(self) -> list[CategoryRule]:
        """Valid active rules, in precedence order."""
        return [compiled.rule for compiled in self._rules]

    @property
    def invalid_rules(self) -> dict[str, str]:
        return dict(self._invalid)

    # =========================================================================
    # CLASSIFICATION
    # =========================================================================

    def classify(self, email: Email, now: Optional[datetime] = None) -> ClassificationResult:
        if email is None:
            raise InvalidClassificationRequest("An email is required for classification")
        now = now or datetime.now(timezone.utc)

        reasoning = list(self._invalid.values())
        matched = [compiled for compiled in self._rules if compiled.matches(email)]

        if not matched:
            reasoning.append(NO_MATCH_REASON)
            return ClassificationResult(
                metadata=ClassificationMetadata(
                    category=EmailCategory.UNCLASSIFIED,
                    priority=Priority.MEDIUM,
                    action_status=ActionStatus.NOT_STARTED,
                    confidence=0.0,
                    last_updated=now,
                    last_updated_by="system",
                ),
                confidence=0.0,
                reasoning=reasoning,
            )

        # Rules are already in precedence order.
        winner = matched[0]
        rule = winner.rule
        confidence = self._policy.score(c.operator for c in winner.conditions)

        reasoning.append(f'Matched rule "{rule.name}" ({rule.id}) with priority {rule.priority.value}')
        reasoning.extend(f"Condition met: {c.describe()}" for c in winner.conditions)
        reasoning.extend(
            f'Rule "{other.rule.name}" ({other.rule.id}) also matched but was outranked'
            for other in matched[1:]
        )

        metadata = ClassificationMetadata(
            category=rule.category,
            priority=rule.priority,
            action_status=ActionStatus.NOT_STARTED,
            confidence=confidence,
            last_updated=now,
            last_updated_by="system",
        )
        for action in rule.actions:
            metadata = _apply_action(metadata, action, email, now)
            reasoning.append(f"Action: {action.type} -> {_describe_value(action.value)}")

        return ClassificationResult(
            metadata=metadata,
            confidence=confidence,
            reasoning=reasoning,
            rule_id=rule.id,
        )

    def classify_batch(self, emails: Iterable[Email], now: Optional[datetime] = None) -> list[ClassificationResult]:
        """Classify each email independently, in input order."""
        return [self.classify(email, now=now) for email in emails]

    # =========================================================================
    # RULE COMPILATION
    # =========================================================================

    @staticmethod
    def _compile(rule: CategoryRule) -> _CompiledRule:
        if not rule.conditions:
            raise RuleConfigurationError("rule has no conditions", rule.id)
        try:
            conditions = tuple(compile_condition(condition) for condition in rule.conditions)
        except RuleConfigurationError as e:
            raise RuleConfigurationError(str(e), rule.id) from e
        for action in rule.actions:
            _check_action(action, rule.id)
        return _CompiledRule(rule=rule, conditions=conditions)


def _check_action(action: RuleAction, rule_id: str) -> None:
    value = action.value
    try:
        if action.type == "setCategory":
            EmailCategory(value)
        elif action.type == "setPriority":
            Priority(value)
        elif action.type == "setDueDate":
            if not isinstance(value, datetime) and not _RELATIVE_DUE.match(str(value)):
                datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        elif action.type in ("addLabel", "removeLabel"):
            if not _as_list(value):
                raise ValueError("no label given")
    except ValueError as e:
        raise RuleConfigurationError(f"{action.type}: invalid value {value!r}", rule_id) from e


def _apply_action(
    metadata: ClassificationMetadata, action: RuleAction, email: Email, now: datetime
) -> ClassificationMetadata:
    value = action.value
    if action.type == "setCategory":
        return metadata.model_copy(update={"category": EmailCategory(value)})
    if action.type == "setPriority":
        return metadata.model_copy(update={"priority": Priority(value)})
    if action.type == "addLabel":
        labels = list(metadata.labels)
        labels.extend(label for label in _as_list(value) if label not in labels)
        return metadata.model_copy(update={"labels": labels})
    if action.type == "removeLabel":
        removed = set(_as_list(value))
        labels = [label for label in metadata.labels if label not in removed]
        return metadata.model_copy(update={"labels": labels})
    if action.type == "setDueDate":
        return metadata.model_copy(update={"due_date": _due_date(value, email, now)})
    if action.type == "setProject":
        return metadata.model_copy(update={"project": str(value)})
    if action.type == "setContext":
        return metadata.model_copy(update={"context": str(value)})
    return metadata


def _due_date(value, email: Email, now: datetime) -> datetime:
    if isinstance(value, datetime):
        due = value
    else:
        match = _RELATIVE_DUE.match(str(value))
        if match:
            base = email.date or now
            amount = int(match.group("amount"))
            delta = timedelta(days=amount) if match.group("unit") == "d" else timedelta(hours=amount)
            due = base + delta
        else:
            due = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return due if due.tzinfo else due.replace(tzinfo=timezone.utc)


def _as_list(value) -> list[str]:
    values = value if isinstance(value, list) else [value]
    return [str(v) for v in values if v is not None and str(v)]


def _describe_value(value) -> str:
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)
