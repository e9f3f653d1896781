"""
Rule configuration loaded from a YAML file.

Rules are written and edited outside this package; the engine only reads
them. A rule entry that does not validate is skipped and logged, the same
way the engine skips a rule whose regex does not compile.

Usage:
    from gtdmail.classification.rules import YamlRuleStore
    store = YamlRuleStore("config/rules.yaml")
    engine = RuleEngine(store.list_rules())
"""

import logging
from pathlib import Path
from typing import Protocol

import yaml
from pydantic import ValidationError

from gtdmail.classification.schemas import CategoryRule

logger = logging.getLogger(__name__)


class RuleStore(Protocol):
    def list_rules(self) -> list[CategoryRule]: ...


class YamlRuleStore:
    """
    Loads CategoryRules from the `rules:` list of a YAML file.

    Rule ids are unique; a later entry reusing an id is skipped.
    """

    def __init__(self, yaml_path: str):
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(
                f"Rule config not found: {yaml_path}. "
                f"Create it from the template in config/rules.yaml."
            )

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        self.path = path
        self.errors: dict[str, str] = {}
        self._rules: list[CategoryRule] = []

        entries = data.get("rules", []) if isinstance(data, dict) else []
        if not isinstance(entries, list):
            entries = []

        seen: set[str] = set()
        for index, entry in enumerate(entries):
            key = str(entry.get("id", f"#{index}")) if isinstance(entry, dict) else f"#{index}"
            try:
                rule = CategoryRule.model_validate(entry)
            except ValidationError as e:
                self._skip(key, f"invalid rule: {e.error_count()} validation error(s)")
                continue
            if rule.id in seen:
                self._skip(key, "duplicate rule id")
                continue
            seen.add(rule.id)
            self._rules.append(rule)

        logger.info(
            "rule_config.loaded",
            extra={
                "action": "rule_config.loaded",
                "path": str(path),
                "rule_count": len(self._rules),
                "active_count": sum(1 for r in self._rules if r.is_active),
                "skipped_count": len(self.errors),
            },
        )

    def _skip(self, key: str, reason: str) -> None:
        self.errors[key] = reason
        logger.warning(
            "rule_config.rule_skipped",
            extra={"action": "rule_config.rule_skipped", "rule_id": key, "reason": reason},
        )

    def list_rules(self) -> list[CategoryRule]:
        return list(self._rules)

    def get_rule(self, rule_id: str):
        for rule in self._rules:
            if rule.id == rule_id:
                return rule
        return None
