"""
Pipeline Coordinator Module

Caller-facing batch operations. Each call enriches a restaurant once, fans
per-item generation out to a bounded thread pool and persists completed
items as pending review. Per-item failures land in the outcome manifest.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union

import requests

from menu_intel.errors import MenuIntelError
from menu_intel.models import (
    DescriptionEnhancement, ItemOutcome, ItemStatus, MenuItem, MenuItemSuggestion, OptimizedMenuItem,
    ReviewStatus, new_id
)
from menu_intel.config import load_settings
from utils.unicode_handler import normalize_name
from menu_intel.data_pipeline.storage import InMemoryStorage, MenuRepository, Storage
from menu_intel.data_pipeline.database import DatabaseManager, PostgresStorage
from menu_intel.core.taste_enrichment import TasteGraphEnrichment
from menu_intel.core.scoring_engine import DashboardPage, RecomputeReport, ScoringEngine, ScoringPolicy
from menu_intel.core.review_workflow import ReviewDecision, ReviewManifest, ReviewWorkflow
from menu_intel.content.orchestrator import (
    ContentOrchestrator, OptimizationOptions, SuggestionConstraints
)
from menu_intel.content.prompt_engine import PromptEngine
from menu_intel.content.providers import build_providers

logger = logging.getLogger(__name__)

DEADLINE_EXCEEDED = "deadline exceeded"

PipelineRecord = Union[OptimizedMenuItem, MenuItemSuggestion, DescriptionEnhancement]


@dataclass
class PipelineResult:
    """Persisted records plus one outcome line per requested item"""
    restaurant_id: str
    snapshot_id: Optional[str] = None
    records: List[PipelineRecord] = field(default_factory=list)
    outcomes: List[ItemOutcome] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def count(self, status: ItemStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    @property
    def partial(self) -> bool:
        return self.count(ItemStatus.SUCCESS) < len(self.outcomes)


def create_storage(settings: Dict) -> Storage:
    """Storage backend named by settings['storage']['backend']"""
    config = settings['storage']
    backend = config.get('backend', 'memory')
    if backend == 'memory':
        return InMemoryStorage()
    if backend == 'postgres':
        storage = PostgresStorage(DatabaseManager(), table=config.get('table', 'menu_intel_records'))
        storage.create_schema()
        return storage
    raise MenuIntelError(f"Unknown storage backend: {backend}")


class PipelineCoordinator:
    """Runs optimization, suggestion and description batches end to end."""

    def __init__(self, repository: MenuRepository, enrichment: TasteGraphEnrichment,
                 orchestrator: ContentOrchestrator, scoring: ScoringEngine,
                 review: Optional[ReviewWorkflow] = None, concurrency: int = 5,
                 deadline: Optional[float] = None, min_rating: float = 4.0,
                 suggestion_count: int = 5, trending_dish_limit: int = 10):
        """
        Initialize the coordinator.

        Args:
            repository: Record access
            enrichment: Taste-graph layer
            orchestrator: Content generation with provider fallback
            scoring: Score computation and dashboards
            review: Review state machine
            concurrency: Maximum concurrent per-item generations
            deadline: Default seconds allowed per batch; None waits for all items
            min_rating: Minimum rating for similar restaurants
            suggestion_count: Default number of new item suggestions
            trending_dish_limit: Specialty dishes offered as suggestion seeds
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.repository = repository
        self.enrichment = enrichment
        self.orchestrator = orchestrator
        self.scoring = scoring
        self.review = review or ReviewWorkflow(repository)
        self.concurrency = concurrency
        self.deadline = deadline
        self.min_rating = min_rating
        self.suggestion_count = suggestion_count
        self.trending_dish_limit = trending_dish_limit

    @classmethod
    def from_settings(cls, settings: Optional[Dict] = None, storage: Optional[Storage] = None,
                      session: Optional[requests.Session] = None) -> 'PipelineCoordinator':
        """Wire every component from loaded settings"""
        settings = settings or load_settings()
        repository = MenuRepository(storage or create_storage(settings))

        providers = build_providers(settings, session)
        if not providers:
            logger.warning("No content providers configured; generation calls will fail")

        prompts = settings['prompts']
        pipeline = settings['pipeline']
        return cls(
            repository,
            TasteGraphEnrichment.from_settings(settings, session),
            ContentOrchestrator(providers, PromptEngine(prompts['version'], prompts['directory'])),
            ScoringEngine(repository, ScoringPolicy.from_yaml(settings['scoring_policy'])),
            concurrency=pipeline['concurrency'],
            deadline=pipeline['deadline'],
            min_rating=pipeline['min_rating'],
            suggestion_count=pipeline['suggestion_count'],
            trending_dish_limit=pipeline['trending_dish_limit'],
        )

    def optimize_existing_items(self, restaurant_id: str, item_ids: Optional[List[str]] = None,
                                options: Optional[OptimizationOptions] = None,
                                deadline: Optional[float] = None) -> PipelineResult:
        """
        Propose optimized names and descriptions for a restaurant's items.

        Args:
            restaurant_id: Restaurant whose menu is optimized
            item_ids: Items to optimize; all active items when None
            options: Style, audience and segment selection
            deadline: Seconds allowed; unfinished items are reported as skipped

        Returns:
            PipelineResult whose records are pending OptimizedMenuItems
        """
        restaurant = self.repository.get_restaurant(restaurant_id)
        active_items = self.repository.list_items(restaurant_id, active_only=True)
        result = PipelineResult(restaurant_id=restaurant_id)
        items = self._select_items(active_items, item_ids, result)

        if not items:
            result.warnings.append("no items to optimize")
            return result

        profile = self.enrichment.enrich(restaurant, min_rating=self.min_rating)
        self.repository.save_profile(profile)
        result.snapshot_id = profile.snapshot_id
        result.warnings.extend(profile.warnings)

        medians = self.scoring.category_medians(active_items)

        def optimize_one(item: MenuItem):
            generated = self.orchestrator.optimize_item(item, profile, restaurant, options)
            score = self.scoring.compute_scores(
                item,
                profile,
                category_median_price=medians.get(item.category),
                price_level=restaurant.price_level,
                cuisine=restaurant.cuisine,
            )
            return generated, score

        logger.info(f"Optimizing {len(items)} items for {restaurant_id} (concurrency {self.concurrency})")
        completed = self._run_concurrently(items, optimize_one, deadline)

        for item in items:
            status, payload = completed[item.item_id]
            if status is not ItemStatus.SUCCESS:
                result.outcomes.append(ItemOutcome(item.item_id, status, reason=payload))
                continue

            generated, score = payload
            proposal = generated.value
            optimization = OptimizedMenuItem(
                optimization_id=new_id(),
                item_id=item.item_id,
                restaurant_id=restaurant_id,
                original_name=item.name,
                optimized_name=proposal.optimized_name,
                original_description=item.description,
                optimized_description=proposal.optimized_description,
                optimization_reason=proposal.reason,
                demographic_insights=list(proposal.demographic_insights),
                scores=score.scores(),
                audit=generated.audit,
                snapshot_id=profile.snapshot_id,
                status=ReviewStatus.PENDING,
            )
            self.repository.save_optimization(optimization)
            result.records.append(optimization)
            result.outcomes.append(ItemOutcome(
                item.item_id, ItemStatus.SUCCESS, record_id=optimization.optimization_id
            ))

        logger.info(
            f"Optimization batch for {restaurant_id}: {result.count(ItemStatus.SUCCESS)} pending, "
            f"{result.count(ItemStatus.FAILED)} failed, {result.count(ItemStatus.SKIPPED)} skipped"
        )
        return result

    def suggest_new_items(self, restaurant_id: str, constraints: Optional[SuggestionConstraints] = None,
                          deadline: Optional[float] = None) -> PipelineResult:
        """
        Generate new item ideas seeded by specialty dishes of similar restaurants.

        Suggestions whose normalized name matches an active item, or an
        earlier suggestion in the same batch, are skipped.

        Raises:
            GenerationFailed: every provider failed
        """
        restaurant = self.repository.get_restaurant(restaurant_id)
        constraints = constraints or SuggestionConstraints(count=self.suggestion_count)
        existing = self.repository.list_items(restaurant_id, active_only=True)
        result = PipelineResult(restaurant_id=restaurant_id)

        profile = self.enrichment.enrich(restaurant, min_rating=self.min_rating)
        self.repository.save_profile(profile)
        result.snapshot_id = profile.snapshot_id
        result.warnings.extend(profile.warnings)

        dishes = list(profile.specialty_dishes[:self.trending_dish_limit])
        if not dishes:
            result.warnings.append("no specialty dishes found; suggestions use restaurant context only")

        completed = self._run_concurrently(
            [restaurant],
            lambda r: self.orchestrator.generate_item_suggestions(r, dishes, existing, constraints),
            deadline,
            key=lambda r: r.restaurant_id,
            isolate=False,
        )
        status, payload = completed[restaurant_id]
        if status is not ItemStatus.SUCCESS:
            result.warnings.append(payload)
            return result

        taken = {normalize_name(item.name) for item in existing}
        for suggestion in payload:
            key = normalize_name(suggestion.name)
            if key in taken:
                result.outcomes.append(ItemOutcome(
                    suggestion.suggestion_id, ItemStatus.SKIPPED,
                    reason=f"duplicate of an existing item name: {suggestion.name}",
                ))
                continue
            taken.add(key)

            suggestion.snapshot_id = profile.snapshot_id
            suggestion.status = ReviewStatus.PENDING
            self.repository.save_suggestion(suggestion)
            result.records.append(suggestion)
            result.outcomes.append(ItemOutcome(
                suggestion.suggestion_id, ItemStatus.SUCCESS, record_id=suggestion.suggestion_id
            ))

        logger.info(f"Stored {len(result.records)} suggestions for {restaurant_id}")
        return result

    def enhance_descriptions(self, restaurant_id: str, item_ids: Optional[List[str]] = None,
                             category: Optional[str] = None, style: Optional[str] = None,
                             target_audience: Optional[str] = None,
                             deadline: Optional[float] = None) -> PipelineResult:
        """
        Rewrite item descriptions and store them as pending review.

        Items that already have a pending rewrite are skipped. An approved
        rewrite replaces the live description; the name is never touched.

        Args:
            restaurant_id: Restaurant whose menu is rewritten
            item_ids: Items to rewrite; all active items when None
            category: Only rewrite items in this category
            style: Writing style passed to the prompt
            target_audience: Audience passed to the prompt
            deadline: Seconds allowed; unfinished items are reported as skipped
        """
        restaurant = self.repository.get_restaurant(restaurant_id)
        active_items = self.repository.list_items(restaurant_id, active_only=True)
        result = PipelineResult(restaurant_id=restaurant_id)

        awaiting = {
            e.item_id for e in self.repository.list_descriptions(restaurant_id, ReviewStatus.PENDING)
        }
        items = []
        for item in self._select_items(active_items, item_ids, result):
            if category and normalize_name(item.category) != normalize_name(category):
                if item_ids is not None:
                    result.outcomes.append(ItemOutcome(
                        item.item_id, ItemStatus.SKIPPED, reason=f"not in category {category}"
                    ))
                continue
            if item.item_id in awaiting:
                result.outcomes.append(ItemOutcome(
                    item.item_id, ItemStatus.SKIPPED, reason="a rewritten description is already pending review"
                ))
                continue
            items.append(item)

        if not items:
            result.warnings.append("no items to rewrite")
            return result

        profile = self.enrichment.enrich(restaurant, min_rating=self.min_rating)
        self.repository.save_profile(profile)
        result.snapshot_id = profile.snapshot_id
        result.warnings.extend(profile.warnings)

        logger.info(f"Rewriting {len(items)} descriptions for {restaurant_id}")
        completed = self._run_concurrently(
            items,
            lambda item: self.orchestrator.enhance_description(
                item, profile, target_audience=target_audience, style=style
            ),
            deadline,
        )

        for item in items:
            status, payload = completed[item.item_id]
            if status is not ItemStatus.SUCCESS:
                result.outcomes.append(ItemOutcome(item.item_id, status, reason=payload))
                continue

            enhancement = DescriptionEnhancement(
                enhancement_id=new_id(),
                item_id=item.item_id,
                restaurant_id=restaurant_id,
                original_description=item.description,
                enhanced_description=payload.value,
                style=style,
                target_audience=target_audience,
                audit=payload.audit,
                snapshot_id=profile.snapshot_id,
                status=ReviewStatus.PENDING,
            )
            self.repository.save_description(enhancement)
            result.records.append(enhancement)
            result.outcomes.append(ItemOutcome(
                item.item_id, ItemStatus.SUCCESS, record_id=enhancement.enhancement_id
            ))

        logger.info(
            f"Description batch for {restaurant_id}: {result.count(ItemStatus.SUCCESS)} pending, "
            f"{result.count(ItemStatus.FAILED)} failed, {result.count(ItemStatus.SKIPPED)} skipped"
        )
        return result

    @staticmethod
    def _select_items(active_items: List[MenuItem], item_ids: Optional[List[str]],
                      result: PipelineResult) -> List[MenuItem]:
        """Requested items in request order; unknown or inactive ids are recorded as skipped"""
        if item_ids is None:
            return list(active_items)

        by_id = {item.item_id: item for item in active_items}
        items = []
        for item_id in dict.fromkeys(item_ids):
            if item_id in by_id:
                items.append(by_id[item_id])
            else:
                result.outcomes.append(ItemOutcome(
                    item_id, ItemStatus.SKIPPED, reason="not an active item of this restaurant"
                ))
        return items

    def _run_concurrently(self, entries: List, work: Callable, deadline: Optional[float],
                          key: Callable = lambda item: item.item_id,
                          isolate: bool = True) -> Dict[str, Tuple[ItemStatus, object]]:
        """
        Run work(entry) on the thread pool, bounded by the deadline.

        Returns a map from entry key to (status, value or failure reason).
        With isolate=False a failing entry re-raises instead of being recorded.
        """
        timeout = deadline if deadline is not None else self.deadline
        executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix='menu-intel')
        futures = {executor.submit(work, entry): entry for entry in entries}
        try:
            _, not_done = wait(futures, timeout=timeout)
        finally:
            # In-flight calls are abandoned, not awaited
            executor.shutdown(wait=False, cancel_futures=True)

        completed = {}
        for future, entry in futures.items():
            entry_key = key(entry)
            if future in not_done:
                logger.warning(f"{entry_key}: {DEADLINE_EXCEEDED}")
                completed[entry_key] = (ItemStatus.SKIPPED, DEADLINE_EXCEEDED)
                continue
            try:
                completed[entry_key] = (ItemStatus.SUCCESS, future.result())
            except MenuIntelError as e:
                if not isolate:
                    raise
                logger.error(f"{entry_key} failed: {e}")
                completed[entry_key] = (ItemStatus.FAILED, f"{e.__class__.__name__}: {e}")
            except Exception as e:
                if not isolate:
                    raise
                logger.exception(f"{entry_key} failed unexpectedly")
                completed[entry_key] = (ItemStatus.FAILED, f"{e.__class__.__name__}: {e}")
        return completed

    # Delegated operations

    def review_optimizations(self, decisions: List[Union[ReviewDecision, Dict]]) -> ReviewManifest:
        return self.review.review_decisions(decisions)

    def recompute_all(self, timestamp: Optional[str] = None) -> RecomputeReport:
        return self.scoring.recompute_all(timestamp)

    def get_dashboard_data(self, restaurant_id: str, timeframe: Optional[str] = None,
                           page: int = 1, limit: int = 10) -> DashboardPage:
        return self.scoring.get_dashboard_data(restaurant_id, timeframe, page, limit)
