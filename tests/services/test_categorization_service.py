"""
Tests for TransactionCategorizationService.

Covers:
- Rule-based suggestions and confidence tiers
- Frequency suggestions from similar categorized transactions
- Auto-apply at VERY_HIGH only
- Suggestion storage (replaced on every run, one row per category, capped, organization-scoped)
- Bulk runs, manual application and removal
"""

from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from smefin_kernel.domain.categorization import CategorizationConfidence
from smefin_kernel.domain.results import BulkOutcome
from smefin_kernel.exceptions import CategoryNotFoundError, TransactionNotFoundError
from smefin_kernel.models import CategorizationRuleModel, TransactionCategorySuggestionModel
from smefin_kernel.services.categorization_rule_service import CategorizationRuleService
from smefin_kernel.services.categorization_service import TransactionCategorizationService


@pytest.fixture
def service(session, clock):
    return TransactionCategorizationService(session, clock)


@pytest.fixture
def rules(session, clock):
    return CategorizationRuleService(session, clock)


@pytest.fixture
def fuel(make_category):
    return make_category("Fuel")


@pytest.fixture
def utilities(make_category):
    return make_category("Utilities")


class TestRuleSuggestions:

    def test_petrol_example_is_medium_and_not_applied(self, service, rules, org_id, fuel, make_transaction):
        rules.create_rule(org_id, {
            "category_id": fuel.id,
            "name": "Fuel",
            "rule_type": "KEYWORD_MATCH",
            "conditions": {"keywords": ["fuel", "petrol"]},
            "confidence": "VERY_HIGH",
        })
        tx = make_transaction("Total Petrol Station")

        result = service.categorize_transaction(tx.id, org_id, auto_apply=True)

        best = result.best_suggestion
        assert best.category_id == fuel.id
        assert best.score == 50.0
        # The score tier wins over the rule's declared confidence.
        assert best.confidence == CategorizationConfidence.MEDIUM
        assert best.rule_name == "Fuel"
        assert not result.is_auto_applied
        assert tx.category_id is None

    def test_very_high_match_auto_applies(self, service, rules, org_id, utilities, make_transaction):
        rules.create_rule(org_id, {
            "category_id": utilities.id,
            "name": "ZESCO",
            "rule_type": "COUNTERPARTY_MATCH",
            "conditions": {"counterparty_patterns": ["zesco"]},
        })
        tx = make_transaction("Prepaid units", counterparty_name="ZESCO Ltd")

        result = service.categorize_transaction(tx.id, org_id, auto_apply=True)

        assert result.best_suggestion.confidence == CategorizationConfidence.VERY_HIGH
        assert result.is_auto_applied
        assert tx.category_id == utilities.id

    def test_no_auto_apply_unless_requested(self, service, rules, org_id, utilities, make_transaction):
        rules.create_rule(org_id, {
            "category_id": utilities.id,
            "name": "ZESCO",
            "rule_type": "COUNTERPARTY_MATCH",
            "conditions": {"counterparty_patterns": ["zesco"]},
        })
        tx = make_transaction("Prepaid units", counterparty_name="ZESCO Ltd")

        result = service.categorize_transaction(tx.id, org_id)

        assert not result.is_auto_applied
        assert tx.category_id is None

    def test_inactive_rules_and_deleted_categories_ignored(
        self, service, rules, org_id, fuel, make_category, make_transaction, clock
    ):
        old = make_category("Old fuel")
        rules.create_rule(org_id, {
            "category_id": fuel.id, "name": "Off", "rule_type": "KEYWORD_MATCH",
            "conditions": {"keywords": ["fuel"]}, "is_active": False,
        })
        rules.create_rule(org_id, {
            "category_id": old.id, "name": "Gone", "rule_type": "KEYWORD_MATCH",
            "conditions": {"keywords": ["fuel"]},
        })
        old.deleted_at = clock.now()
        tx = make_transaction("fuel")

        result = service.categorize_transaction(tx.id, org_id)

        assert result.suggestions == ()
        assert result.best_suggestion is None

    def test_unparseable_stored_rule_skipped(
        self, session, service, org_id, fuel, make_transaction, captured_logs
    ):
        session.add(CategorizationRuleModel(
            organization_id=org_id, category_id=fuel.id, name="Broken",
            rule_type="KEYWORD_MATCH", conditions={"keywords": []},
            confidence="MEDIUM", priority=0, is_active=True, match_count=0,
        ))
        session.flush()
        tx = make_transaction("fuel")

        result = service.categorize_transaction(tx.id, org_id)

        assert result.suggestions == ()
        assert any(r["message"] == "categorization_rule_unparseable" for r in captured_logs())

    def test_unknown_transaction(self, service, org_id):
        with pytest.raises(TransactionNotFoundError):
            service.categorize_transaction(uuid4(), org_id)

    def test_deleted_transaction_invisible(self, service, org_id, make_transaction, clock):
        tx = make_transaction("fuel")
        tx.deleted_at = clock.now()
        with pytest.raises(TransactionNotFoundError):
            service.categorize_transaction(tx.id, org_id)


class TestFrequencySuggestions:

    def test_similar_transactions_vote(self, service, org_id, fuel, utilities, make_transaction):
        for _ in range(3):
            make_transaction("PUMA ENERGY LUSAKA 0042", category=fuel)
        make_transaction("PUMA ENERGY LUSAKA 0042", category=utilities)
        tx = make_transaction("PUMA ENERGY LUSAKA 0042 card")

        result = service.categorize_transaction(tx.id, org_id)

        by_category = {s.category_id: s for s in result.suggestions}
        assert by_category[fuel.id].confidence == CategorizationConfidence.HIGH
        assert by_category[fuel.id].score == 60.0
        assert by_category[fuel.id].reason == "Found 3 similar transactions"
        assert by_category[utilities.id].confidence == CategorizationConfidence.LOW
        assert result.best_suggestion.category_id == fuel.id

    def test_reference_match(self, service, org_id, fuel, make_transaction):
        make_transaction("something", category=fuel, reference="INV-2024-77")
        make_transaction("else", category=fuel, reference="INV-2024-77")
        tx = make_transaction(None, reference="INV-2024-77")

        result = service.categorize_transaction(tx.id, org_id)

        assert result.best_suggestion.category_id == fuel.id
        assert result.best_suggestion.confidence == CategorizationConfidence.MEDIUM

    def test_no_text_no_frequency(self, service, org_id, fuel, make_transaction):
        make_transaction(None, category=fuel)
        tx = make_transaction(None)
        assert service.categorize_transaction(tx.id, org_id).suggestions == ()


class TestStoredSuggestions:

    def test_replaced_on_every_run_and_capped(
        self, service, rules, org_id, make_category, make_transaction
    ):
        for i in range(7):
            category = make_category(f"Cat {i}")
            rules.create_rule(org_id, {
                "category_id": category.id, "name": f"Rule {i}",
                "rule_type": "AMOUNT_RANGE", "conditions": {"amount_min": i},
            })
        tx = make_transaction("anything", amount="100")

        service.categorize_transaction(tx.id, org_id)
        service.categorize_transaction(tx.id, org_id)

        stored = service.get_suggestions(tx.id, org_id)
        assert len(stored) == 5
        assert all(s.is_accepted is None for s in stored)

    def test_one_row_per_category_best_kept(
        self, service, rules, org_id, fuel, make_transaction, requester
    ):
        """Several matches for one category are stored once, as the best-ranked."""
        rules.create_rule(org_id, {
            "category_id": fuel.id, "name": "Fuel words", "rule_type": "KEYWORD_MATCH",
            "conditions": {"keywords": ["fuel", "petrol"]},
        })
        puma = rules.create_rule(org_id, {
            "category_id": fuel.id, "name": "Puma", "rule_type": "COUNTERPARTY_MATCH",
            "conditions": {"counterparty_patterns": ["puma"]},
        })
        make_transaction("Puma fuel", category=fuel)
        tx = make_transaction("Puma fuel", counterparty_name="Puma Energy")

        result = service.categorize_transaction(tx.id, org_id)

        assert len(result.suggestions) == 3
        stored = service.get_suggestions(tx.id, org_id)
        assert len(stored) == 1
        assert stored[0].category_id == fuel.id
        assert stored[0].rule_id == puma.id
        assert stored[0].confidence == CategorizationConfidence.VERY_HIGH

        service.apply_category(tx.id, fuel.id, org_id, user_id=requester.id)
        assert [s.is_accepted for s in service.get_suggestions(tx.id, org_id)] == [True]

    def test_duplicate_category_row_rejected(
        self, session, service, rules, org_id, fuel, make_transaction
    ):
        rules.create_rule(org_id, {
            "category_id": fuel.id, "name": "Fuel", "rule_type": "KEYWORD_MATCH",
            "conditions": {"keywords": ["fuel"]},
        })
        tx = make_transaction("fuel")
        service.categorize_transaction(tx.id, org_id)
        [existing] = service.get_suggestions(tx.id, org_id)

        with pytest.raises(IntegrityError):
            with session.begin_nested():
                session.add(TransactionCategorySuggestionModel(
                    organization_id=org_id,
                    transaction_id=tx.id,
                    category_id=fuel.id,
                    confidence=existing.confidence.value,
                    score=existing.score,
                ))
                session.flush()

    def test_rows_carry_organization(
        self, session, service, rules, org_id, fuel, make_transaction
    ):
        rules.create_rule(org_id, {
            "category_id": fuel.id, "name": "Fuel", "rule_type": "KEYWORD_MATCH",
            "conditions": {"keywords": ["fuel"]},
        })
        tx = make_transaction("fuel")
        service.categorize_transaction(tx.id, org_id)

        rows = session.execute(
            select(TransactionCategorySuggestionModel)
            .where(TransactionCategorySuggestionModel.transaction_id == tx.id)
        ).scalars().all()
        assert [r.organization_id for r in rows] == [org_id]

    def test_other_organization_cannot_read_suggestions(
        self, service, rules, org_id, other_org_id, fuel, make_transaction
    ):
        rules.create_rule(org_id, {
            "category_id": fuel.id, "name": "Fuel", "rule_type": "KEYWORD_MATCH",
            "conditions": {"keywords": ["fuel"]},
        })
        tx = make_transaction("fuel")
        service.categorize_transaction(tx.id, org_id)

        with pytest.raises(TransactionNotFoundError):
            service.get_suggestions(tx.id, other_org_id)

    def test_rule_match_statistics(self, service, rules, org_id, fuel, make_transaction):
        rule = rules.create_rule(org_id, {
            "category_id": fuel.id, "name": "Fuel", "rule_type": "KEYWORD_MATCH",
            "conditions": {"keywords": ["fuel"]},
        })
        service.categorize_transaction(make_transaction("fuel").id, org_id)
        service.categorize_transaction(make_transaction("more fuel").id, org_id)

        assert rules.get_rule(rule.id, org_id).match_count == 2


class TestBulk:

    def test_categorize_transactions_per_item(self, service, org_id, make_transaction):
        tx = make_transaction("fuel")
        missing = uuid4()

        result = service.categorize_transactions([tx.id, missing], org_id)

        assert [i.outcome for i in result.items] == [BulkOutcome.SUCCESS, BulkOutcome.SKIPPED]
        assert result.outcome_for(missing).code == "TRANSACTION_NOT_FOUND"

    def test_bulk_uncategorized(self, service, rules, org_id, utilities, fuel, make_transaction):
        rules.create_rule(org_id, {
            "category_id": utilities.id, "name": "ZESCO",
            "rule_type": "COUNTERPARTY_MATCH",
            "conditions": {"counterparty_patterns": ["zesco"]},
        })
        make_transaction("already", category=fuel)
        make_transaction("units", counterparty_name="ZESCO")
        make_transaction("units again", counterparty_name="ZESCO")
        make_transaction("groceries")

        summary = service.bulk_categorize_uncategorized(org_id, auto_apply=True)

        assert summary.processed == 3
        assert summary.categorized == 2
        assert summary.results.success_count == 3


class TestManualApplication:

    def test_apply_accepts_matching_pending_suggestion(
        self, service, rules, org_id, fuel, make_transaction, requester
    ):
        rules.create_rule(org_id, {
            "category_id": fuel.id, "name": "Fuel", "rule_type": "KEYWORD_MATCH",
            "conditions": {"keywords": ["fuel"]},
        })
        tx = make_transaction("fuel")
        service.categorize_transaction(tx.id, org_id)

        service.apply_category(tx.id, fuel.id, org_id, user_id=requester.id)

        assert tx.category_id == fuel.id
        stored = service.get_suggestions(tx.id, org_id)
        assert stored[0].is_accepted is True
        assert stored[0].accepted_by_id == requester.id

    def test_apply_unknown_category(self, service, org_id, make_transaction):
        tx = make_transaction("fuel")
        with pytest.raises(CategoryNotFoundError):
            service.apply_category(tx.id, uuid4(), org_id)

    def test_bulk_apply(self, service, org_id, fuel, make_transaction):
        first, second = make_transaction("a"), make_transaction("b")
        missing = uuid4()

        result = service.bulk_apply_category([first.id, missing, second.id], fuel.id, org_id)

        assert [i.outcome for i in result.items] == [
            BulkOutcome.SUCCESS, BulkOutcome.SKIPPED, BulkOutcome.SUCCESS,
        ]
        assert first.category_id == fuel.id
        assert second.category_id == fuel.id

    def test_bulk_apply_validates_category_first(self, service, org_id, make_transaction):
        with pytest.raises(CategoryNotFoundError):
            service.bulk_apply_category([make_transaction("a").id], uuid4(), org_id)

    def test_remove_rejects_accepted_suggestion(
        self, service, rules, org_id, fuel, make_transaction, requester
    ):
        rules.create_rule(org_id, {
            "category_id": fuel.id, "name": "Fuel", "rule_type": "KEYWORD_MATCH",
            "conditions": {"keywords": ["fuel"]},
        })
        tx = make_transaction("fuel")
        service.categorize_transaction(tx.id, org_id)
        service.apply_category(tx.id, fuel.id, org_id, user_id=requester.id)

        service.remove_category(tx.id, org_id, user_id=requester.id)

        assert tx.category_id is None
        assert service.get_suggestions(tx.id, org_id)[0].is_accepted is False
