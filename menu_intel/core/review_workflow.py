"""
Review Workflow Module

pending -> approved | rejected gate for AI-generated menu content. A
transition is a compare-and-set on the record's status, so concurrent
reviewers cannot both win. Approval is the only path by which generated
content reaches live menu items.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from menu_intel.errors import InvalidRequest, InvalidTransition, MenuIntelError, NotFound
from menu_intel.models import (
    DescriptionEnhancement, ItemOutcome, ItemStatus, MenuItem, MenuItemSuggestion, OptimizedMenuItem,
    RecordKind, ReviewEvent, ReviewStatus, new_id, utc_now
)
from menu_intel.data_pipeline.storage import MenuRepository, kind_name

logger = logging.getLogger(__name__)

REVIEWABLE_KINDS = (RecordKind.OPTIMIZATION, RecordKind.SUGGESTION, RecordKind.DESCRIPTION)

# Kinds whose approval rewrites an existing menu item
ITEM_UPDATE_KINDS = (RecordKind.OPTIMIZATION, RecordKind.DESCRIPTION)

ReviewRecord = Union[OptimizedMenuItem, MenuItemSuggestion, DescriptionEnhancement]


@dataclass
class ReviewDecision:
    """One reviewer verdict"""
    record_id: str
    decision: ReviewStatus
    kind: RecordKind = RecordKind.OPTIMIZATION
    reviewer: Optional[str] = None
    feedback: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'ReviewDecision':
        record_id = data.get('record_id') or data.get('optimization_id') or data.get('id')
        if not record_id:
            raise InvalidRequest("Review decision is missing a record id")
        try:
            decision = ReviewStatus(str(data.get('decision', data.get('status', ''))).lower())
            kind = RecordKind(data.get('kind', RecordKind.OPTIMIZATION.value))
        except ValueError as e:
            raise InvalidRequest(f"Invalid review decision for {record_id}: {e}")
        return cls(
            record_id=record_id,
            decision=decision,
            kind=kind,
            reviewer=data.get('reviewer'),
            feedback=data.get('feedback'),
        )


@dataclass
class ReviewManifest:
    """Per-record outcome of a batch of review decisions"""
    outcomes: List[ItemOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[str]:
        return [o.item_id for o in self.outcomes if o.status is ItemStatus.SUCCESS]

    @property
    def failed(self) -> List[str]:
        return [o.item_id for o in self.outcomes if o.status is ItemStatus.FAILED]

    @property
    def partial(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)


class ReviewWorkflow:
    """Applies review decisions to optimizations, suggestions and description rewrites"""

    def __init__(self, repository: MenuRepository):
        self.repository = repository

    def transition(self, kind: RecordKind, record_id: str, decision: ReviewStatus,
                   reviewer: Optional[str] = None, feedback: Optional[str] = None) -> ReviewRecord:
        """
        Move a pending record to approved or rejected.

        Args:
            kind: RecordKind.OPTIMIZATION, SUGGESTION or DESCRIPTION
            record_id: Optimization, suggestion or description enhancement id
            decision: APPROVED or REJECTED
            reviewer: Who made the call
            feedback: Optional reviewer note

        Returns:
            The updated record

        Raises:
            NotFound: record (or the menu item it rewrites) is missing
            InvalidTransition: record is no longer pending
        """
        kind = RecordKind(kind)
        decision = ReviewStatus(decision)
        if kind not in REVIEWABLE_KINDS:
            raise InvalidRequest(f"{kind_name(kind)} records are not reviewable")

        current = self._load(kind, record_id)
        if not decision.is_terminal:
            raise InvalidTransition(record_id, current.status.value, decision.value)

        if kind in ITEM_UPDATE_KINDS and decision is ReviewStatus.APPROVED:
            if self.repository.get_item(current.item_id) is None:
                raise NotFound(f"Menu item {current.item_id} for {kind_name(kind)} {record_id} not found")

        reviewed_at = utc_now()
        updated = self.repository.storage.compare_and_set(
            kind,
            record_id,
            'status',
            ReviewStatus.PENDING.value,
            {
                'status': decision.value,
                'reviewed_at': reviewed_at,
                'reviewed_by': reviewer,
                'feedback': feedback,
            },
        )
        if updated is None:
            latest = self._load(kind, record_id)
            raise InvalidTransition(record_id, latest.status.value, decision.value)

        record = self._from_dict(kind, updated)
        if decision is ReviewStatus.APPROVED:
            try:
                self._materialize(kind, record)
            except NotFound:
                self._reopen(kind, record_id, decision)
                raise

        self.repository.save_event(ReviewEvent(
            event_id=new_id(),
            record_kind=kind_name(kind),
            record_id=record_id,
            restaurant_id=updated.get('restaurant_id', ''),
            from_status=ReviewStatus.PENDING.value,
            to_status=decision.value,
            reviewer=reviewer,
            feedback=feedback,
            at=reviewed_at,
        ))
        logger.info(f"{kind_name(kind)} {record_id} {decision.value} by {reviewer or 'unknown reviewer'}")
        return record

    def _materialize(self, kind: RecordKind, record: ReviewRecord) -> MenuItem:
        if kind is RecordKind.OPTIMIZATION:
            return self.materialize_optimization(record)
        if kind is RecordKind.DESCRIPTION:
            return self.materialize_description(record)
        return self.materialize_suggestion(record)

    def _reopen(self, kind: RecordKind, record_id: str, decision: ReviewStatus):
        """Put a record back to pending after its approval could not be applied"""
        reopened = self.repository.storage.compare_and_set(
            kind,
            record_id,
            'status',
            decision.value,
            {'status': ReviewStatus.PENDING.value, 'reviewed_at': None, 'reviewed_by': None, 'feedback': None},
        )
        if reopened is None:
            logger.error(f"Could not reopen {kind_name(kind)} {record_id} after a failed approval")
        else:
            logger.warning(f"Menu item vanished during approval; {kind_name(kind)} {record_id} is pending again")

    def materialize_optimization(self, optimization: OptimizedMenuItem) -> MenuItem:
        """Write an approved optimization's name and description onto the live item"""
        if optimization.status is not ReviewStatus.APPROVED:
            raise InvalidTransition(optimization.optimization_id, optimization.status.value, 'materialized')

        updated = self.repository.storage.update(
            RecordKind.MENU_ITEM,
            optimization.item_id,
            {
                'name': optimization.optimized_name,
                'description': optimization.optimized_description,
                'updated_at': utc_now(),
            },
        )
        logger.info(f"Applied optimization {optimization.optimization_id} to item {optimization.item_id}")
        return MenuItem.from_dict(updated)

    def materialize_description(self, enhancement: DescriptionEnhancement) -> MenuItem:
        """Replace the live item's description with an approved rewrite"""
        if enhancement.status is not ReviewStatus.APPROVED:
            raise InvalidTransition(enhancement.enhancement_id, enhancement.status.value, 'materialized')

        updated = self.repository.storage.update(
            RecordKind.MENU_ITEM,
            enhancement.item_id,
            {'description': enhancement.enhanced_description, 'updated_at': utc_now()},
        )
        logger.info(f"Applied description {enhancement.enhancement_id} to item {enhancement.item_id}")
        return MenuItem.from_dict(updated)

    def materialize_suggestion(self, suggestion: MenuItemSuggestion) -> MenuItem:
        """Create a live, AI-generated menu item from an approved suggestion"""
        if suggestion.status is not ReviewStatus.APPROVED:
            raise InvalidTransition(suggestion.suggestion_id, suggestion.status.value, 'materialized')

        item = MenuItem(
            item_id=new_id(),
            restaurant_id=suggestion.restaurant_id,
            name=suggestion.name,
            description=suggestion.description,
            price=suggestion.estimated_price,
            category=suggestion.category,
            ingredients=list(suggestion.suggested_ingredients),
            dietary_tags=list(suggestion.dietary_tags),
            is_active=True,
            is_ai_generated=True,
        )
        self.repository.save_item(item)
        logger.info(f"Created menu item {item.item_id} from suggestion {suggestion.suggestion_id}")
        return item

    def review_decisions(self, decisions: List[Union[ReviewDecision, Dict]]) -> ReviewManifest:
        """Apply a batch of decisions; each failure is reported, not raised"""
        manifest = ReviewManifest()

        for entry in decisions:
            try:
                decision = entry if isinstance(entry, ReviewDecision) else ReviewDecision.from_dict(entry)
            except InvalidRequest as e:
                record_id = str(entry.get('record_id', '')) if isinstance(entry, dict) else ''
                manifest.outcomes.append(ItemOutcome(record_id, ItemStatus.FAILED, reason=str(e)))
                continue

            try:
                self.transition(
                    decision.kind, decision.record_id, decision.decision,
                    reviewer=decision.reviewer, feedback=decision.feedback,
                )
            except MenuIntelError as e:
                logger.warning(f"Review of {decision.record_id} failed: {e}")
                manifest.outcomes.append(ItemOutcome(
                    decision.record_id, ItemStatus.FAILED, reason=f"{e.__class__.__name__}: {e}"
                ))
                continue

            manifest.outcomes.append(ItemOutcome(
                decision.record_id, ItemStatus.SUCCESS, record_id=decision.record_id
            ))

        return manifest

    def list_by_status(self, kind: RecordKind, restaurant_id: Optional[str] = None,
                       status: Optional[ReviewStatus] = ReviewStatus.PENDING) -> List[ReviewRecord]:
        kind = RecordKind(kind)
        if kind is RecordKind.OPTIMIZATION:
            return self.repository.list_optimizations(restaurant_id, status)
        if kind is RecordKind.SUGGESTION:
            return self.repository.list_suggestions(restaurant_id, status)
        if kind is RecordKind.DESCRIPTION:
            return self.repository.list_descriptions(restaurant_id, status)
        raise InvalidRequest(f"{kind_name(kind)} records are not reviewable")

    def _load(self, kind: RecordKind, record_id: str) -> ReviewRecord:
        if kind is RecordKind.OPTIMIZATION:
            record = self.repository.get_optimization(record_id)
        elif kind is RecordKind.DESCRIPTION:
            record = self.repository.get_description(record_id)
        else:
            record = self.repository.get_suggestion(record_id)
        if record is None:
            raise NotFound(f"{kind_name(kind)} {record_id} not found")
        return record

    @staticmethod
    def _from_dict(kind: RecordKind, data: Dict) -> ReviewRecord:
        if kind is RecordKind.OPTIMIZATION:
            return OptimizedMenuItem.from_dict(data)
        if kind is RecordKind.DESCRIPTION:
            return DescriptionEnhancement.from_dict(data)
        return MenuItemSuggestion.from_dict(data)
