"""
Rule condition matching.

Matching is table-driven rather than a tree of if/else branches:
- a projector per field turns an Email into the values a condition tests
- a comparator per operator decides whether one value satisfies it

A condition holds when ANY projected value satisfies the comparator. That
is how "sender" matches on either the address or the display name, and
how "labels" matches on membership.

Conditions are compiled once, when the engine loads its rules. Anything
wrong with a condition (a bad regex, an ordering operator on a text field,
an unparseable date) surfaces as RuleConfigurationError at compile time,
never during classification.

Usage:
    condition = compile_condition(RuleCondition(field="subject", operator="contains", value="Invoice"))
    condition.matches(email)   # -> True / False
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from gtdmail.classification.schemas import Email, RuleCondition
from gtdmail.errors import RuleConfigurationError

TextProjector = Callable[[Email], list[str]]
OrderedProjector = Callable[[Email], Optional[Union[datetime, int]]]
Comparator = Callable[[str, Any], bool]


def _recipient_values(email: Email) -> list[str]:
    addresses = [a.email for a in (*email.to, *email.cc, *email.bcc) if a.email]
    # The joined form lets one condition span several recipients.
    return [", ".join(addresses), *addresses]


TEXT_PROJECTORS: dict[str, TextProjector] = {
    "subject": lambda email: [email.subject],
    "body": lambda email: [email.content or email.snippet],
    "sender": lambda email: [email.sender.email, email.sender.name],
    "recipients": _recipient_values,
    "labels": lambda email: list(email.labels),
    "date": lambda email: [email.date.isoformat()] if email.date else [],
    "attachments": lambda email: [a.filename for a in email.attachments],
}

# Fields that support greaterThan / lessThan, and how to read them.
ORDERED_PROJECTORS: dict[str, OrderedProjector] = {
    "date": lambda email: _aware(email.date) if email.date else None,
    "attachments": lambda email: len(email.attachments),
}

STRING_COMPARATORS: dict[str, Comparator] = {
    "contains": lambda value, expected: expected in value,
    "equals": lambda value, expected: value == expected,
    "startsWith": lambda value, expected: value.startswith(expected),
    "endsWith": lambda value, expected: value.endswith(expected),
    "regex": lambda value, pattern: pattern.search(value) is not None,
}

ORDERED_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "greaterThan": lambda value, expected: value > expected,
    "lessThan": lambda value, expected: value < expected,
}

# Labels are a set: "contains" means the set contains the value.
OPERATOR_OVERRIDES: dict[tuple[str, str], str] = {
    ("labels", "contains"): "equals",
}


@dataclass(frozen=True)
class CompiledCondition:
    condition: RuleCondition
    operator: str
    expected: tuple[Any, ...]

    def matches(self, email: Email) -> bool:
        if self.operator in ORDERED_COMPARATORS:
            value = ORDERED_PROJECTORS[self.condition.field](email)
            if value is None:
                return False
            compare = ORDERED_COMPARATORS[self.operator]
            return any(compare(value, expected) for expected in self.expected)

        compare = STRING_COMPARATORS[self.operator]
        return any(
            compare(value, expected)
            for value in TEXT_PROJECTORS[self.condition.field](email)
            for expected in self.expected
        )

    def describe(self) -> str:
        return describe_condition(self.condition)


def describe_condition(condition: RuleCondition) -> str:
    value = condition.value
    if isinstance(value, datetime):
        value = value.isoformat()
    return f'{condition.field} {condition.operator} "{value}"'


def compile_condition(condition: RuleCondition) -> CompiledCondition:
    """Validate a condition and pre-parse its comparison value(s)."""
    field = condition.field
    operator = OPERATOR_OVERRIDES.get((field, condition.operator), condition.operator)
    if condition.value is None:
        values = []
    else:
        values = condition.value if isinstance(condition.value, list) else [condition.value]
    if not values:
        raise RuleConfigurationError(f"{describe_condition(condition)}: no value to compare against")

    if operator in ORDERED_COMPARATORS:
        if field not in ORDERED_PROJECTORS:
            raise RuleConfigurationError(
                f"{describe_condition(condition)}: {operator} only applies to "
                f"{', '.join(sorted(ORDERED_PROJECTORS))}"
            )
        parse = _parse_date_value if field == "date" else _parse_count_value
        expected = tuple(parse(value, condition) for value in values)
    elif operator == "regex":
        expected = tuple(_compile_pattern(value, condition) for value in values)
    else:
        expected = tuple(str(value) for value in values)

    return CompiledCondition(condition=condition, operator=operator, expected=expected)


def _compile_pattern(value: Any, condition: RuleCondition) -> re.Pattern:
    try:
        return re.compile(str(value))
    except re.error as e:
        raise RuleConfigurationError(f"{describe_condition(condition)}: invalid regex: {e}") from e


def _parse_date_value(value: Any, condition: RuleCondition) -> datetime:
    if isinstance(value, datetime):
        return _aware(value)
    try:
        return _aware(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError as e:
        raise RuleConfigurationError(f"{describe_condition(condition)}: not an ISO date") from e


def _parse_count_value(value: Any, condition: RuleCondition) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise RuleConfigurationError(f"{describe_condition(condition)}: not a count") from e


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
