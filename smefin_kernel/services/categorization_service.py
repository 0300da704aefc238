"""
smefin_kernel.services.categorization_service -- Transaction categorization.

Responsibility:
    Suggest categories for bank transactions by evaluating the
    organization's categorization rules and a frequency heuristic over
    similar, already categorized transactions; store the top suggestions;
    optionally auto-apply the best one; apply and remove categories by hand.

Architecture position:
    Kernel > Services.  Scoring and ranking live in
    ``smefin_engines.categorization``; this service loads facts and
    persists outcomes.

Invariants enforced:
    - Suggestions for a transaction are replaced wholesale on every
      evaluation (delete, then insert the top N).
    - Auto-apply fires only when the best suggestion reaches the configured
      tier (VERY_HIGH).
    - Rule match statistics and suggestion storage are best effort: each
      runs in a SAVEPOINT and a database failure there is logged, not raised.
    - Soft-deleted transactions are invisible.

Failure modes:
    - TransactionNotFoundError for unknown or deleted transactions.
    - CategoryNotFoundError when applying a category outside the org.
"""

from __future__ import annotations

from typing import Sequence
from uuid import UUID

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from smefin_config import get_active_config
from smefin_engines.categorization import (
    FrequencyPolicy,
    confidence_for_score,
    distinct_by_category,
    evaluate_rule,
    frequency_suggestions,
    rank_suggestions,
    should_auto_apply,
)
from smefin_kernel.domain.categorization import (
    CategorizationConfidence,
    CategorizationResult,
    CategorizationRuleType,
    CategorySuggestion,
    SimilarTransaction,
    StoredSuggestion,
    UncategorizedRunSummary,
    parse_rule_conditions,
)
from smefin_kernel.domain.clock import Clock
from smefin_kernel.domain.results import BulkItemResult, BulkOutcome, BulkResult
from smefin_kernel.exceptions import (
    CategoryNotFoundError,
    InvalidRuleConditionsError,
    NotFoundError,
    SmeFinError,
    TransactionNotFoundError,
)
from smefin_kernel.logging_config import get_logger
from smefin_kernel.models.categorization import (
    CategorizationRuleModel,
    TransactionCategorySuggestionModel,
)
from smefin_kernel.models.category import CategoryModel
from smefin_kernel.models.organization import TransactionModel
from smefin_kernel.services.base import BaseService

logger = get_logger("services.categorization")


class TransactionCategorizationService(BaseService):
    """Rule-based and frequency-based category suggestions."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        settings = get_active_config().categorization
        self.settings = settings
        self.frequency_policy = FrequencyPolicy(
            score_per_match=settings.frequency.score_per_match,
            high_threshold=settings.frequency.high_threshold,
            medium_threshold=settings.frequency.medium_threshold,
        )
        self.auto_apply_confidence = CategorizationConfidence(
            settings.auto_apply_confidence
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def categorize_transaction(
        self,
        transaction_id: UUID,
        organization_id: UUID,
        auto_apply: bool = False,
    ) -> CategorizationResult:
        transaction = self._load_transaction(transaction_id, organization_id)
        facts = transaction.to_facts()

        rule_suggestions: list[CategorySuggestion] = []
        matched_rule_ids: list[UUID] = []
        for rule in self._active_rules(organization_id):
            try:
                conditions = parse_rule_conditions(
                    CategorizationRuleType(rule.rule_type), rule.conditions
                )
            except InvalidRuleConditionsError:
                logger.warning(
                    "categorization_rule_unparseable",
                    extra={"rule_id": str(rule.id), "rule_type": rule.rule_type},
                )
                continue
            match = evaluate_rule(conditions, facts, rule_name=rule.name)
            if not match.is_match:
                continue
            matched_rule_ids.append(rule.id)
            rule_suggestions.append(
                CategorySuggestion(
                    category_id=rule.category_id,
                    category_name=rule.category.name,
                    confidence=confidence_for_score(match.score),
                    score=match.score,
                    reason=match.reason,
                    rule_id=rule.id,
                    rule_name=rule.name,
                )
            )

        ranked = rank_suggestions(
            rule_suggestions + self._frequency_suggestions(transaction)
        )
        best = ranked[0] if ranked else None
        applied = auto_apply and should_auto_apply(best, self.auto_apply_confidence)
        if applied:
            transaction.category_id = best.category_id
            transaction.updated_at = self.clock.now()
            self.session.flush()

        if matched_rule_ids:
            self._record_rule_matches(matched_rule_ids)
        self._store_suggestions(transaction.id, organization_id, ranked)

        logger.info(
            "transaction_categorized",
            extra={
                "organization_id": str(organization_id),
                "transaction_id": str(transaction_id),
                "suggestion_count": len(ranked),
                "rules_matched": len(matched_rule_ids),
                "best_category_id": str(best.category_id) if best else None,
                "best_confidence": best.confidence.value if best else None,
                "auto_applied": applied,
            },
        )
        return CategorizationResult(
            transaction_id=transaction.id,
            suggestions=tuple(ranked),
            best_suggestion=best,
            is_auto_applied=applied,
        )

    def _load_transaction(
        self, transaction_id: UUID, organization_id: UUID
    ) -> TransactionModel:
        transaction = self.session.execute(
            select(TransactionModel).where(
                TransactionModel.id == transaction_id,
                TransactionModel.organization_id == organization_id,
                TransactionModel.deleted_at.is_(None),
            )
        ).unique().scalar_one_or_none()
        if transaction is None:
            raise TransactionNotFoundError(str(transaction_id))
        return transaction

    def _active_rules(self, organization_id: UUID) -> list[CategorizationRuleModel]:
        return list(
            self.session.execute(
                select(CategorizationRuleModel)
                .join(CategoryModel, CategoryModel.id == CategorizationRuleModel.category_id)
                .where(
                    CategorizationRuleModel.organization_id == organization_id,
                    CategorizationRuleModel.is_active.is_(True),
                    CategoryModel.deleted_at.is_(None),
                )
                .order_by(
                    CategorizationRuleModel.priority.desc(),
                    CategorizationRuleModel.created_at.asc(),
                    CategorizationRuleModel.id,
                )
            ).unique().scalars()
        )

    def _frequency_suggestions(
        self, transaction: TransactionModel
    ) -> list[CategorySuggestion]:
        criteria = []
        if transaction.reference:
            criteria.append(
                TransactionModel.reference.icontains(transaction.reference, autoescape=True)
            )
        if transaction.description:
            prefix = transaction.description[: self.settings.description_prefix_length]
            criteria.append(
                TransactionModel.description.icontains(prefix, autoescape=True)
            )
        if not criteria:
            return []

        try:
            rows = self.session.execute(
                select(TransactionModel.id, TransactionModel.category_id, CategoryModel.name)
                .join(CategoryModel, CategoryModel.id == TransactionModel.category_id)
                .where(
                    TransactionModel.organization_id == transaction.organization_id,
                    TransactionModel.id != transaction.id,
                    TransactionModel.deleted_at.is_(None),
                    CategoryModel.deleted_at.is_(None),
                    or_(*criteria),
                )
                .order_by(TransactionModel.transaction_date.desc(), TransactionModel.id)
                .limit(self.settings.similar_transaction_limit)
            ).all()
        except SQLAlchemyError:
            logger.warning(
                "categorization_frequency_lookup_failed",
                extra={"transaction_id": str(transaction.id)},
                exc_info=True,
            )
            return []

        similar = [
            SimilarTransaction(transaction_id=tid, category_id=cid, category_name=name)
            for tid, cid, name in rows
        ]
        return frequency_suggestions(similar, self.frequency_policy)

    def _record_rule_matches(self, rule_ids: list[UUID]) -> None:
        now = self.clock.now()
        try:
            with self.session.begin_nested():
                self.session.execute(
                    update(CategorizationRuleModel)
                    .where(CategorizationRuleModel.id.in_(rule_ids))
                    .values(
                        match_count=CategorizationRuleModel.match_count + 1,
                        last_matched_at=now,
                    )
                    .execution_options(synchronize_session="fetch")
                )
        except SQLAlchemyError:
            logger.warning(
                "categorization_rule_match_stats_failed",
                extra={"rule_ids": [str(r) for r in rule_ids]},
                exc_info=True,
            )

    def _store_suggestions(
        self,
        transaction_id: UUID,
        organization_id: UUID,
        ranked: Sequence[CategorySuggestion],
    ) -> None:
        """Replace the stored suggestions with the best one per category, capped."""
        now = self.clock.now()
        try:
            with self.session.begin_nested():
                self.session.execute(
                    delete(TransactionCategorySuggestionModel).where(
                        TransactionCategorySuggestionModel.transaction_id == transaction_id,
                        TransactionCategorySuggestionModel.organization_id == organization_id,
                    )
                )
                limit = self.settings.suggestion_store_limit
                for suggestion in distinct_by_category(ranked)[:limit]:
                    self.session.add(
                        TransactionCategorySuggestionModel(
                            organization_id=organization_id,
                            transaction_id=transaction_id,
                            category_id=suggestion.category_id,
                            rule_id=suggestion.rule_id,
                            confidence=suggestion.confidence.value,
                            score=suggestion.score,
                            reason=suggestion.reason,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                self.session.flush()
        except SQLAlchemyError:
            logger.warning(
                "categorization_suggestion_store_failed",
                extra={"transaction_id": str(transaction_id)},
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Bulk evaluation
    # ------------------------------------------------------------------

    def categorize_transactions(
        self,
        transaction_ids: Sequence[UUID],
        organization_id: UUID,
        auto_apply: bool = False,
    ) -> BulkResult:
        items: list[BulkItemResult] = []
        for transaction_id in transaction_ids:
            try:
                with self.session.begin_nested():
                    result = self.categorize_transaction(
                        transaction_id, organization_id, auto_apply
                    )
            except NotFoundError as exc:
                items.append(BulkItemResult(
                    item_id=transaction_id, outcome=BulkOutcome.SKIPPED,
                    reason=str(exc), code=exc.code,
                ))
            except SmeFinError as exc:
                items.append(BulkItemResult(
                    item_id=transaction_id, outcome=BulkOutcome.FAILED,
                    reason=str(exc), code=exc.code,
                ))
            else:
                items.append(BulkItemResult(
                    item_id=transaction_id, outcome=BulkOutcome.SUCCESS, payload=result,
                ))
        return BulkResult(items=tuple(items))

    def bulk_categorize_uncategorized(
        self,
        organization_id: UUID,
        transaction_ids: Sequence[UUID] | None = None,
        auto_apply: bool = False,
    ) -> UncategorizedRunSummary:
        """Categorize the given transactions, or the newest uncategorized batch."""
        if transaction_ids is None:
            transaction_ids = list(
                self.session.execute(
                    select(TransactionModel.id)
                    .where(
                        TransactionModel.organization_id == organization_id,
                        TransactionModel.category_id.is_(None),
                        TransactionModel.deleted_at.is_(None),
                    )
                    .order_by(TransactionModel.transaction_date.desc(), TransactionModel.id)
                    .limit(self.settings.bulk_batch_size)
                ).scalars()
            )

        results = self.categorize_transactions(transaction_ids, organization_id, auto_apply)
        categorized = sum(1 for item in results.succeeded if item.payload.is_auto_applied)

        logger.info(
            "bulk_categorization_completed",
            extra={
                "organization_id": str(organization_id),
                "processed": len(transaction_ids),
                "categorized": categorized,
                "failed": len(results.failed),
            },
        )
        return UncategorizedRunSummary(
            processed=len(transaction_ids),
            categorized=categorized,
            results=results,
        )

    # ------------------------------------------------------------------
    # Manual application
    # ------------------------------------------------------------------

    def _require_category(self, category_id: UUID, organization_id: UUID) -> CategoryModel:
        category = self.session.execute(
            select(CategoryModel).where(
                CategoryModel.id == category_id,
                CategoryModel.organization_id == organization_id,
                CategoryModel.deleted_at.is_(None),
            )
        ).scalar_one_or_none()
        if category is None:
            raise CategoryNotFoundError(str(category_id))
        return category

    def apply_category(
        self,
        transaction_id: UUID,
        category_id: UUID,
        organization_id: UUID,
        user_id: UUID | None = None,
    ) -> None:
        """Set the category.  With a user, matching pending suggestions are accepted."""
        self._require_category(category_id, organization_id)
        transaction = self._load_transaction(transaction_id, organization_id)
        now = self.clock.now()
        transaction.category_id = category_id
        transaction.updated_at = now

        if user_id is not None:
            self.session.execute(
                update(TransactionCategorySuggestionModel)
                .where(
                    TransactionCategorySuggestionModel.transaction_id == transaction_id,
                    TransactionCategorySuggestionModel.organization_id == organization_id,
                    TransactionCategorySuggestionModel.category_id == category_id,
                    TransactionCategorySuggestionModel.is_accepted.is_(None),
                )
                .values(is_accepted=True, accepted_at=now, accepted_by_id=user_id)
                .execution_options(synchronize_session="fetch")
            )
        self.session.flush()

        logger.info(
            "transaction_category_applied",
            extra={
                "organization_id": str(organization_id),
                "transaction_id": str(transaction_id),
                "category_id": str(category_id),
                "user_id": str(user_id) if user_id else None,
            },
        )

    def bulk_apply_category(
        self,
        transaction_ids: Sequence[UUID],
        category_id: UUID,
        organization_id: UUID,
        user_id: UUID | None = None,
    ) -> BulkResult:
        self._require_category(category_id, organization_id)
        items: list[BulkItemResult] = []
        for transaction_id in transaction_ids:
            try:
                with self.session.begin_nested():
                    self.apply_category(transaction_id, category_id, organization_id, user_id)
            except NotFoundError as exc:
                items.append(BulkItemResult(
                    item_id=transaction_id, outcome=BulkOutcome.SKIPPED,
                    reason=str(exc), code=exc.code,
                ))
            except SmeFinError as exc:
                items.append(BulkItemResult(
                    item_id=transaction_id, outcome=BulkOutcome.FAILED,
                    reason=str(exc), code=exc.code,
                ))
            else:
                items.append(BulkItemResult(item_id=transaction_id, outcome=BulkOutcome.SUCCESS))
        return BulkResult(items=tuple(items))

    def remove_category(
        self,
        transaction_id: UUID,
        organization_id: UUID,
        user_id: UUID | None = None,
    ) -> None:
        """Clear the category.  With a user, accepted suggestions become rejected."""
        transaction = self._load_transaction(transaction_id, organization_id)
        transaction.category_id = None
        transaction.updated_at = self.clock.now()

        if user_id is not None:
            self.session.execute(
                update(TransactionCategorySuggestionModel)
                .where(
                    TransactionCategorySuggestionModel.transaction_id == transaction_id,
                    TransactionCategorySuggestionModel.organization_id == organization_id,
                    TransactionCategorySuggestionModel.is_accepted.is_(True),
                )
                .values(is_accepted=False)
                .execution_options(synchronize_session="fetch")
            )
        self.session.flush()

        logger.info(
            "transaction_category_removed",
            extra={
                "organization_id": str(organization_id),
                "transaction_id": str(transaction_id),
                "user_id": str(user_id) if user_id else None,
            },
        )

    def get_suggestions(
        self, transaction_id: UUID, organization_id: UUID
    ) -> list[StoredSuggestion]:
        """Stored suggestions, best first."""
        self._load_transaction(transaction_id, organization_id)
        stored = [
            m.to_dto()
            for m in self.session.execute(
                select(TransactionCategorySuggestionModel)
                .where(
                    TransactionCategorySuggestionModel.transaction_id == transaction_id,
                    TransactionCategorySuggestionModel.organization_id == organization_id,
                )
                .order_by(TransactionCategorySuggestionModel.created_at)
            ).scalars()
        ]
        return sorted(stored, key=lambda s: (s.confidence.rank, s.score), reverse=True)
