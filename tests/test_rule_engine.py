"""Tests for rule matching, precedence, confidence and actions."""

from datetime import datetime, timedelta, timezone

import pytest

from gtdmail.classification.engine import NO_MATCH_REASON, RuleEngine, rule_sort_key
from gtdmail.classification.schemas import (
    ActionStatus,
    CategoryRule,
    Email,
    EmailCategory,
    Priority,
)
from gtdmail.classification.scoring import ConfidencePolicy
from gtdmail.errors import InvalidClassificationRequest
from gtdmail.logging.config import setup_logging
from gtdmail.mail.schemas import EmailAddress, EmailMetadata, EmailRecipients

NOW = datetime(2025, 1, 14, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def init_logging():
    setup_logging("debug")


def make_rule(rule_id="1", conditions=None, **overrides) -> CategoryRule:
    data = {
        "id": rule_id,
        "name": f"Rule {rule_id}",
        "category": "ACTIONABLE",
        "priority": "MEDIUM",
        "conditions": conditions
        if conditions is not None
        else [{"field": "subject", "operator": "contains", "value": "Invoice"}],
        "actions": [],
    }
    data.update(overrides)
    return CategoryRule.model_validate(data)


def make_email(**overrides) -> Email:
    data = {
        "id": "e1",
        "subject": "Invoice #42 for January",
        "from": {"name": "Billing Team", "email": "billing@vendor.com"},
        "to": [{"name": "Me", "email": "me@example.com"}],
        "cc": [{"name": "", "email": "accounts@example.com"}],
        "date": "2025-01-10T08:00:00Z",
        "content": "Please find the invoice attached. To unsubscribe click here.",
        "labels": ["INBOX", "IMPORTANT"],
        "attachments": [{"filename": "invoice-42.pdf", "contentType": "application/pdf", "size": 1200}],
    }
    data.update(overrides)
    return Email.model_validate(data)


class TestNoMatch:
    def test_default_classification(self):
        rule = make_rule(conditions=[{"field": "subject", "operator": "equals", "value": "nope"}])
        result = RuleEngine([rule]).classify(make_email(), now=NOW)
        assert result.metadata.category == EmailCategory.UNCLASSIFIED
        assert result.metadata.priority == Priority.MEDIUM
        assert result.metadata.action_status == ActionStatus.NOT_STARTED
        assert result.metadata.last_updated_by == "system"
        assert result.metadata.last_updated == NOW
        assert result.confidence == 0.0
        assert result.rule_id is None
        assert result.reasoning == [NO_MATCH_REASON]

    def test_empty_rule_set(self):
        result = RuleEngine([]).classify(make_email())
        assert result.metadata.category == EmailCategory.UNCLASSIFIED
        assert result.reasoning == [NO_MATCH_REASON]

    def test_inactive_rule_ignored(self):
        engine = RuleEngine([make_rule(is_active=False)])
        assert engine.rules == []
        assert engine.classify(make_email()).rule_id is None

    def test_none_email_rejected(self):
        with pytest.raises(InvalidClassificationRequest):
            RuleEngine([make_rule()]).classify(None)


class TestPrecedence:
    def test_higher_priority_wins_over_smaller_id(self):
        engine = RuleEngine([
            make_rule("2", priority="LOW", category="REFERENCE"),
            make_rule("10", priority="HIGH", category="ACTIONABLE"),
        ])
        result = engine.classify(make_email())
        assert result.rule_id == "10"
        assert result.metadata.category == EmailCategory.ACTIONABLE
        assert result.metadata.priority == Priority.HIGH

    def test_equal_priority_smaller_numeric_id_wins(self):
        engine = RuleEngine([
            make_rule("10", category="ACTIONABLE"),
            make_rule("2", category="REFERENCE"),
        ])
        result = engine.classify(make_email())
        assert result.rule_id == "2"
        assert result.metadata.category == EmailCategory.REFERENCE

    def test_numeric_ids_sort_before_text_ids(self):
        rules = [make_rule("invoices"), make_rule("b"), make_rule("3"), make_rule("20")]
        assert [r.id for r in sorted(rules, key=rule_sort_key)] == ["3", "20", "b", "invoices"]

    def test_outranked_matches_are_reported(self):
        engine = RuleEngine([make_rule("1", priority="HIGH", name="Winner"), make_rule("2", name="Loser")])
        result = engine.classify(make_email())
        assert 'Rule "Loser" (2) also matched but was outranked' in result.reasoning

    def test_rule_order_in_input_does_not_matter(self):
        rules = [
            make_rule("5", priority="LOW"),
            make_rule("3", priority="URGENT"),
            make_rule("4", priority="URGENT"),
        ]
        first = RuleEngine(rules).classify(make_email(), now=NOW)
        second = RuleEngine(list(reversed(rules))).classify(make_email(), now=NOW)
        assert first.rule_id == second.rule_id == "3"
        assert first.model_dump() == second.model_dump()

    def test_repeat_classification_is_identical(self):
        engine = RuleEngine([make_rule("1", actions=[{"type": "addLabel", "value": "finance"}])])
        email = make_email()
        assert engine.classify(email, now=NOW) == engine.classify(email, now=NOW)


class TestConditions:
    def match(self, condition, **email_overrides) -> bool:
        engine = RuleEngine([make_rule(conditions=[condition])])
        return engine.classify(make_email(**email_overrides)).rule_id == "1"

    def test_string_matching_is_case_sensitive(self):
        assert self.match({"field": "subject", "operator": "contains", "value": "Invoice"})
        assert not self.match({"field": "subject", "operator": "contains", "value": "invoice"})

    def test_case_insensitive_regex(self):
        assert self.match({"field": "subject", "operator": "regex", "value": "(?i)INVOICE"})

    def test_starts_and_ends_with(self):
        assert self.match({"field": "subject", "operator": "startsWith", "value": "Invoice #"})
        assert self.match({"field": "subject", "operator": "endsWith", "value": "January"})

    def test_sender_matches_address_or_name(self):
        assert self.match({"field": "sender", "operator": "endsWith", "value": "@vendor.com"})
        assert self.match({"field": "sender", "operator": "equals", "value": "Billing Team"})

    def test_recipients_cover_to_and_cc(self):
        assert self.match({"field": "recipients", "operator": "equals", "value": "accounts@example.com"})
        assert self.match({"field": "recipients", "operator": "contains", "value": "me@example.com, accounts@"})

    def test_body_falls_back_to_snippet(self):
        condition = {"field": "body", "operator": "contains", "value": "weekly digest"}
        assert self.match(condition, content="", snippet="Your weekly digest")
        assert not self.match(condition)

    def test_labels_contains_means_membership(self):
        assert self.match({"field": "labels", "operator": "contains", "value": "IMPORTANT"})
        assert not self.match({"field": "labels", "operator": "contains", "value": "IMPORT"})

    def test_any_of_list_value(self):
        assert self.match({"field": "labels", "operator": "contains", "value": ["SPAM", "INBOX"]})

    def test_attachment_count(self):
        assert self.match({"field": "attachments", "operator": "greaterThan", "value": 0})
        assert not self.match({"field": "attachments", "operator": "greaterThan", "value": 0}, attachments=[])
        assert self.match({"field": "attachments", "operator": "lessThan", "value": 2})

    def test_attachment_filename(self):
        assert self.match({"field": "attachments", "operator": "endsWith", "value": ".pdf"})

    def test_date_comparisons(self):
        assert self.match({"field": "date", "operator": "greaterThan", "value": "2025-01-01"})
        assert not self.match({"field": "date", "operator": "lessThan", "value": "2025-01-10T09:00:00+01:00"})
        assert not self.match({"field": "date", "operator": "greaterThan", "value": "2025-01-01"}, date=None)


class TestInvalidRules:
    def test_bad_regex_is_skipped_and_noted(self):
        engine = RuleEngine([
            make_rule("1", name="Broken", conditions=[{"field": "subject", "operator": "regex", "value": "(unclosed"}]),
            make_rule("2", name="Fine"),
        ])
        assert [r.id for r in engine.rules] == ["2"]
        assert "1" in engine.invalid_rules

        result = engine.classify(make_email())
        assert result.rule_id == "2"
        assert result.reasoning[0].startswith('Rule "Broken" (1) skipped:')
        assert "invalid regex" in result.reasoning[0]

    def test_invalid_rules_noted_on_fallback_too(self):
        engine = RuleEngine([make_rule("1", conditions=[])])
        result = engine.classify(make_email())
        assert result.reasoning[-1] == NO_MATCH_REASON
        assert "no conditions" in result.reasoning[0]

    @pytest.mark.parametrize(
        "condition",
        [
            {"field": "subject", "operator": "greaterThan", "value": "a"},
            {"field": "date", "operator": "lessThan", "value": "yesterday"},
            {"field": "attachments", "operator": "greaterThan", "value": "many"},
            {"field": "subject", "operator": "contains", "value": None},
            {"field": "subject", "operator": "contains", "value": []},
        ],
    )
    def test_invalid_conditions(self, condition):
        engine = RuleEngine([make_rule(conditions=[condition])])
        assert engine.rules == []
        assert list(engine.invalid_rules) == ["1"]

    @pytest.mark.parametrize(
        "action",
        [
            {"type": "setCategory", "value": "SOMEDAY"},
            {"type": "setPriority", "value": "CRITICAL"},
            {"type": "setDueDate", "value": "next week"},
            {"type": "addLabel", "value": ""},
        ],
    )
    def test_invalid_actions(self, action):
        engine = RuleEngine([make_rule(actions=[action])])
        assert engine.rules == []


class TestConfidence:
    def test_single_conditions(self):
        def confidence(operator, value):
            rule = make_rule(conditions=[{"field": "subject", "operator": operator, "value": value}])
            return RuleEngine([rule]).classify(make_email()).confidence

        assert confidence("equals", "Invoice #42 for January") == 0.7
        assert confidence("startsWith", "Invoice") == 0.56
        assert confidence("contains", "Invoice") == 0.42
        assert confidence("regex", "Invoice") == 0.35

    def test_more_evidence_raises_confidence(self):
        one = make_rule(conditions=[{"field": "subject", "operator": "regex", "value": "Invoice"}])
        two = make_rule(conditions=[
            {"field": "subject", "operator": "regex", "value": "Invoice"},
            {"field": "attachments", "operator": "greaterThan", "value": 0},
        ])
        low = RuleEngine([one]).classify(make_email()).confidence
        high = RuleEngine([two]).classify(make_email()).confidence
        assert low < high < 1.0
        assert high == 0.714

    def test_confidence_copied_into_metadata(self):
        result = RuleEngine([make_rule()]).classify(make_email())
        assert result.metadata.confidence == result.confidence

    def test_policy_scores_stay_in_bounds(self):
        policy = ConfidencePolicy()
        assert policy.score([]) == 0.0
        assert 0.0 < policy.score(["equals"] * 50) <= 1.0
        assert policy.score(["unknownOperator"]) == 0.35

    def test_policy_rejects_out_of_range_weights(self):
        with pytest.raises(ValueError):
            ConfidencePolicy(operator_weights={"equals": 1.5})


class TestActions:
    def test_category_and_priority_seed_then_actions_override(self):
        rule = make_rule(
            category="TO_READ",
            priority="LOW",
            actions=[
                {"type": "setCategory", "value": "REFERENCE"},
                {"type": "setPriority", "value": "HIGH"},
            ],
        )
        result = RuleEngine([rule]).classify(make_email())
        assert result.metadata.category == EmailCategory.REFERENCE
        assert result.metadata.priority == Priority.HIGH

    def test_labels_added_in_order_without_duplicates(self):
        rule = make_rule(actions=[
            {"type": "addLabel", "value": ["finance", "receipts"]},
            {"type": "addLabel", "value": "finance"},
            {"type": "removeLabel", "value": "receipts"},
            {"type": "addLabel", "value": "paid"},
        ])
        result = RuleEngine([rule]).classify(make_email())
        assert result.metadata.labels == ["finance", "paid"]

    def test_relative_due_date_from_email_date(self):
        rule = make_rule(actions=[{"type": "setDueDate", "value": "+2d"}])
        result = RuleEngine([rule]).classify(make_email(), now=NOW)
        assert result.metadata.due_date == datetime(2025, 1, 12, 8, 0, tzinfo=timezone.utc)

    def test_relative_due_date_without_email_date(self):
        rule = make_rule(actions=[{"type": "setDueDate", "value": "+4h"}])
        result = RuleEngine([rule]).classify(make_email(date=None), now=NOW)
        assert result.metadata.due_date == NOW + timedelta(hours=4)

    def test_absolute_due_date(self):
        rule = make_rule(actions=[{"type": "setDueDate", "value": "2025-02-01T17:00:00Z"}])
        result = RuleEngine([rule]).classify(make_email())
        assert result.metadata.due_date == datetime(2025, 2, 1, 17, 0, tzinfo=timezone.utc)

    def test_project_and_context(self):
        rule = make_rule(actions=[
            {"type": "setProject", "value": "Finances"},
            {"type": "setContext", "value": "@computer"},
        ])
        metadata = RuleEngine([rule]).classify(make_email()).metadata
        assert metadata.project == "Finances"
        assert metadata.context == "@computer"

    def test_reasoning_lists_rule_conditions_and_actions(self):
        rule = make_rule(
            "7",
            name="Invoices",
            priority="HIGH",
            conditions=[{"field": "subject", "operator": "contains", "value": "Invoice"}],
            actions=[{"type": "addLabel", "value": ["finance", "receipts"]}],
        )
        result = RuleEngine([rule]).classify(make_email())
        assert result.reasoning == [
            'Matched rule "Invoices" (7) with priority HIGH',
            'Condition met: subject contains "Invoice"',
            "Action: addLabel -> finance, receipts",
        ]


class TestEmailInput:
    def test_from_metadata(self):
        metadata = EmailMetadata(
            id="m1",
            subject="Hello",
            sender=EmailAddress(name="Ann", email="ann@x.com"),
            recipients=EmailRecipients(to=[EmailAddress(email="me@x.com")]),
            labels=["INBOX"],
            has_attachments=True,
            preview_text="Body text",
            snippet="Body",
        )
        email = Email.from_metadata(metadata)
        assert email.sender.email == "ann@x.com"
        assert email.content == "Body text"
        assert len(email.attachments) == 1
        assert email.date == metadata.date

    def test_batch_keeps_input_order(self):
        engine = RuleEngine([make_rule()])
        results = engine.classify_batch([make_email(id="a", subject="nothing"), make_email(id="b")])
        assert [r.rule_id for r in results] == [None, "1"]
