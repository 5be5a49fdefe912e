"""
Scoring Engine Module

Per-item popularity, profitability and recommendation scores, their trend
series, restaurant dashboard rollups and the scheduled recompute.
"""

import re
import threading
import logging
from collections import Counter
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import yaml
from sklearn.metrics.pairwise import cosine_similarity

from menu_intel.errors import ConfigurationError, InvalidRequest
from menu_intel.models import (
    DemographicsSnapshot, MenuItem, ScoreRecord, SpecialtyDish, TasteProfile, TrendPoint, utc_now
)
from menu_intel.data_pipeline.storage import MenuRepository
from utils.unicode_handler import normalize_name

logger = logging.getLogger(__name__)

METRICS = ('popularity', 'profitability', 'recommendation')

TIMEFRAMES = {
    '7d': timedelta(days=7),
    '30d': timedelta(days=30),
    '90d': timedelta(days=90),
    '1y': timedelta(days=365),
    'all': None,
}

DEFAULT_BASE_COSTS = {
    'appetizers': 3, 'salads': 4, 'soups': 3, 'sandwiches': 5, 'burgers': 6,
    'pizza': 4, 'pasta': 4, 'seafood': 12, 'steaks': 15, 'chicken': 7,
    'pork': 8, 'beef': 10, 'vegetarian': 4, 'desserts': 3, 'beverages': 1,
}

DEFAULT_PRICE_RANGES = {1: (5, 15), 2: (12, 25), 3: (20, 40), 4: (35, 80)}


@dataclass
class ScoringPolicy:
    """Tunable weights and tables behind every score"""
    neutral_popularity: float = 50.0
    specialty_match_boost: float = 20.0
    profitability_model: str = 'margin_and_price_position'
    margin_weight: float = 0.6
    price_position_weight: float = 0.4
    default_base_cost: float = 5.0
    ingredient_cost: float = 0.5
    base_costs: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_BASE_COSTS))
    price_ranges: Dict[int, Tuple[float, float]] = field(default_factory=lambda: dict(DEFAULT_PRICE_RANGES))
    default_price_range: Tuple[float, float] = (10, 30)
    neutral_affinity: float = 50.0
    interest_weight: float = 0.5
    recommendation_weights: Dict[str, float] = field(
        default_factory=lambda: {'popularity': 0.4, 'profitability': 0.3, 'affinity': 0.3}
    )
    default_timeframe: str = '30d'
    max_page_size: int = 100

    @classmethod
    def from_yaml(cls, policy_file: str = 'config/scoring.yaml') -> 'ScoringPolicy':
        """Load policy, falling back to built-in defaults for anything missing"""
        path = Path(policy_file)
        if not path.exists():
            logger.warning(f"{policy_file} not found, using default scoring policy")
            return cls()

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        popularity = data.get('popularity', {})
        profitability = data.get('profitability', {})
        recommendation = data.get('recommendation', {})
        dashboard = data.get('dashboard', {})
        defaults = cls()

        policy = cls(
            neutral_popularity=float(popularity.get('neutral_score', defaults.neutral_popularity)),
            specialty_match_boost=float(popularity.get('specialty_match_boost', defaults.specialty_match_boost)),
            profitability_model=profitability.get('model', defaults.profitability_model),
            margin_weight=float(profitability.get('margin_weight', defaults.margin_weight)),
            price_position_weight=float(profitability.get('price_position_weight', defaults.price_position_weight)),
            default_base_cost=float(profitability.get('default_base_cost', defaults.default_base_cost)),
            ingredient_cost=float(profitability.get('ingredient_cost', defaults.ingredient_cost)),
            base_costs={
                str(k).lower(): float(v)
                for k, v in profitability.get('base_costs', defaults.base_costs).items()
            },
            price_ranges={
                int(k): (float(v[0]), float(v[1]))
                for k, v in profitability.get('price_ranges', defaults.price_ranges).items()
            },
            default_price_range=tuple(profitability.get('default_price_range', defaults.default_price_range)),
            neutral_affinity=float(recommendation.get('neutral_affinity', defaults.neutral_affinity)),
            interest_weight=float(recommendation.get('interest_weight', defaults.interest_weight)),
            recommendation_weights={
                k: float(v) for k, v in recommendation.get('weights', defaults.recommendation_weights).items()
            },
            default_timeframe=dashboard.get('default_timeframe', defaults.default_timeframe),
            max_page_size=int(dashboard.get('max_page_size', defaults.max_page_size)),
        )
        policy.validate()
        return policy

    def validate(self):
        weights = self.recommendation_weights
        if set(weights) != {'popularity', 'profitability', 'affinity'}:
            raise ConfigurationError("recommendation weights must name popularity, profitability and affinity")
        if any(w < 0 for w in weights.values()) or sum(weights.values()) <= 0:
            raise ConfigurationError("recommendation weights must be non-negative and not all zero")
        if self.margin_weight < 0 or self.price_position_weight < 0 or \
                self.margin_weight + self.price_position_weight <= 0:
            raise ConfigurationError("profitability weights must be non-negative and not all zero")
        if self.default_timeframe not in TIMEFRAMES:
            raise ConfigurationError(f"Unknown default timeframe: {self.default_timeframe}")

    def price_range(self, price_level: Optional[int]) -> Tuple[float, float]:
        return self.price_ranges.get(price_level, self.default_price_range)


class ProfitabilityModel:
    """Pluggable profitability scoring"""

    def score(self, item: MenuItem, policy: ScoringPolicy,
              category_median_price: Optional[float] = None,
              price_level: Optional[int] = None) -> float:
        raise NotImplementedError


class MarginPriceModel(ProfitabilityModel):
    """Gross margin against an ingredient-cost proxy, plus price position"""

    def estimate_food_cost(self, item: MenuItem, policy: ScoringPolicy) -> float:
        base_cost = policy.base_costs.get((item.category or '').lower(), policy.default_base_cost)
        return base_cost + policy.ingredient_cost * len(item.ingredients)

    def score(self, item: MenuItem, policy: ScoringPolicy,
              category_median_price: Optional[float] = None,
              price_level: Optional[int] = None) -> float:
        if item.price <= 0:
            return 0.0

        food_cost = self.estimate_food_cost(item, policy)
        margin = (item.price - food_cost) / item.price
        margin_score = float(np.clip(margin, 0, 1)) * 100

        if category_median_price and category_median_price > 0:
            # Median price scores 50, twice the median or more scores 100
            position_score = float(np.clip(50 * item.price / category_median_price, 0, 100))
        else:
            low, high = policy.price_range(price_level)
            position_score = float(np.clip((item.price - low) / (high - low), 0, 1)) * 100

        total_weight = policy.margin_weight + policy.price_position_weight
        return (policy.margin_weight * margin_score + policy.price_position_weight * position_score) / total_weight


PROFITABILITY_MODELS = {
    'margin_and_price_position': MarginPriceModel,
}


def _tokens(values: Iterable[str]) -> List[str]:
    tokens = []
    for value in values:
        tokens.extend(t for t in re.findall(r'[^\W_]+', normalize_name(value)) if len(t) > 2)
    return tokens


def match_specialty_dish(item: MenuItem, dishes: Sequence[SpecialtyDish]) -> Optional[SpecialtyDish]:
    """Exact normalized-name match first, then whole-word containment"""
    name = normalize_name(item.name)
    if not name:
        return None
    for dish in dishes:
        if dish.dish_name == name:
            return dish
    padded = f" {name} "
    for dish in dishes:
        if f" {dish.dish_name} " in padded or f" {name} " in f" {dish.dish_name} ":
            return dish
    return None


@dataclass
class RankedItem:
    item_id: str
    name: str
    category: str
    price: float
    popularity_score: float
    profitability_score: float
    recommendation_score: float
    composite_score: float


@dataclass
class DashboardSnapshot:
    """Restaurant-level rollup of item scores"""
    restaurant_id: str
    timeframe: str
    total_menu_items: int
    scored_items: int
    average_popularity_score: float
    average_profitability_score: float
    average_recommendation_score: float
    top_performing_items: List[RankedItem]
    low_performing_items: List[RankedItem]
    category_breakdown: List[Dict]
    monthly_trends: List[Dict]
    recent_trends: List[Dict]
    generated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class DashboardPage:
    """One page of the dashboard rankings plus the unpaged rollups"""
    restaurant_id: str
    timeframe: str
    page: int
    limit: int
    total_menu_items: int
    average_popularity_score: float
    average_profitability_score: float
    average_recommendation_score: float
    top_performing_items: List[RankedItem]
    low_performing_items: List[RankedItem]
    total_top_items: int
    total_low_items: int
    has_next_page: bool
    has_previous_page: bool
    category_breakdown: List[Dict]
    monthly_trends: List[Dict]
    recent_trends: List[Dict]
    generated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class RecomputeReport:
    started_at: str
    finished_at: Optional[str] = None
    restaurants_processed: int = 0
    items_scored: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['succeeded'] = self.succeeded
        return data


class ScoringEngine:
    """Computes, stores and aggregates menu item scores."""

    def __init__(self, repository: MenuRepository, policy: Optional[ScoringPolicy] = None,
                 profitability_model: Optional[ProfitabilityModel] = None):
        """
        Initialize the scoring engine.

        Args:
            repository: Record access
            policy: Weights and tables; defaults when omitted
            profitability_model: Overrides the model named by the policy
        """
        self.repository = repository
        self.policy = policy or ScoringPolicy()
        if profitability_model is None:
            model_class = PROFITABILITY_MODELS.get(self.policy.profitability_model)
            if model_class is None:
                raise ConfigurationError(f"Unknown profitability model: {self.policy.profitability_model}")
            profitability_model = model_class()
        self.profitability_model = profitability_model
        # Serializes read-append-write of trend series
        self._lock = threading.RLock()

    # Scores

    def compute_scores(self, item: MenuItem, enrichment: Optional[TasteProfile],
                       prior_trend: Sequence[TrendPoint] = (),
                       category_median_price: Optional[float] = None,
                       price_level: Optional[int] = None,
                       cuisine: Optional[str] = None,
                       timestamp: Optional[str] = None) -> ScoreRecord:
        """
        Score one item.

        Args:
            item: Menu item to score
            enrichment: Latest taste profile for the restaurant, if any
            prior_trend: Existing trend series; returned record extends it
            category_median_price: Median price of the item's category on this menu
            price_level: Restaurant price level (1-4)
            cuisine: Restaurant cuisine, used for demographic affinity
            timestamp: ISO time of the new trend points

        Returns:
            ScoreRecord with all scores in [0, 100]
        """
        popularity = self.popularity_score(item, enrichment)
        profitability = float(np.clip(
            self.profitability_model.score(item, self.policy, category_median_price, price_level), 0, 100
        ))
        affinity = self.demographic_affinity(item, enrichment.demographics if enrichment else None, cuisine)

        weights = self.policy.recommendation_weights
        recommendation = (
            weights['popularity'] * popularity +
            weights['profitability'] * profitability +
            weights['affinity'] * affinity
        ) / sum(weights.values())

        scores = {
            'popularity': round(float(np.clip(popularity, 0, 100)), 2),
            'profitability': round(profitability, 2),
            'recommendation': round(float(np.clip(recommendation, 0, 100)), 2),
        }

        at = timestamp or utc_now()
        trend = tuple(prior_trend) + tuple(TrendPoint(date=at, metric=m, value=scores[m]) for m in METRICS)

        return ScoreRecord(
            item_id=item.item_id,
            restaurant_id=item.restaurant_id,
            popularity_score=scores['popularity'],
            profitability_score=scores['profitability'],
            recommendation_score=scores['recommendation'],
            trends=trend,
            last_updated=at,
        )

    def popularity_score(self, item: MenuItem, enrichment: Optional[TasteProfile]) -> float:
        """Taste-graph popularity percentile on a 0-100 scale"""
        if enrichment is None:
            return self.policy.neutral_popularity

        dish = match_specialty_dish(item, enrichment.specialty_dishes)
        if dish is not None:
            share = dish.restaurant_count / max(enrichment.similar_restaurant_count, 1)
            score = dish.popularity * 100 + self.policy.specialty_match_boost * min(share, 1.0)
            return float(np.clip(score, 0, 100))

        if enrichment.restaurant_popularity is not None:
            return float(np.clip(enrichment.restaurant_popularity * 100, 0, 100))

        return self.policy.neutral_popularity

    def demographic_affinity(self, item: MenuItem, demographics: Optional[DemographicsSnapshot],
                             cuisine: Optional[str] = None) -> float:
        """Cosine similarity between item tags and audience preferences, 0-100"""
        if demographics is None or demographics.is_empty:
            return self.policy.neutral_affinity

        item_counts = Counter(_tokens(
            list(item.dietary_tags) + list(item.ingredients) + [item.category, item.name, cuisine or '']
        ))

        audience_weights: Dict[str, float] = {}
        for group in demographics.age_groups:
            for token in _tokens(group.preferences):
                audience_weights[token] = audience_weights.get(token, 0.0) + group.percentage / 100
        for token in _tokens(demographics.interests):
            audience_weights[token] = audience_weights.get(token, 0.0) + self.policy.interest_weight

        if not item_counts or not audience_weights:
            return self.policy.neutral_affinity

        vocabulary = sorted(set(item_counts) | set(audience_weights))
        item_vector = np.array([item_counts.get(t, 0) for t in vocabulary], dtype=float).reshape(1, -1)
        audience_vector = np.array([audience_weights.get(t, 0.0) for t in vocabulary], dtype=float).reshape(1, -1)

        similarity = cosine_similarity(item_vector, audience_vector)[0][0]
        return float(np.clip(similarity, 0, 1)) * 100

    # Recompute

    def recompute_restaurant(self, restaurant_id: str, item_ids: Optional[List[str]] = None,
                             timestamp: Optional[str] = None) -> List[ScoreRecord]:
        """
        Rescore a restaurant's active items, appending one trend point per metric.

        Args:
            restaurant_id: Restaurant to rescore
            item_ids: Only these items (incremental recompute); all when None
            timestamp: ISO time for the appended trend points
        """
        restaurant = self.repository.get_restaurant(restaurant_id)
        profile = self.repository.latest_profile(restaurant_id)
        items = self.repository.list_items(restaurant_id, active_only=True)
        medians = self.category_medians(items)

        if item_ids is not None:
            wanted = set(item_ids)
            items = [item for item in items if item.item_id in wanted]

        at = timestamp or utc_now()
        records = []
        for item in items:
            with self._lock:
                prior = self.repository.get_score(item.item_id)
                record = self.compute_scores(
                    item,
                    profile,
                    prior.trends if prior else (),
                    category_median_price=medians.get(item.category),
                    price_level=restaurant.price_level,
                    cuisine=restaurant.cuisine,
                    timestamp=at,
                )
                self.repository.save_score(record)
            records.append(record)

        logger.info(f"Rescored {len(records)} items for restaurant {restaurant_id}")
        return records

    def recompute_all(self, timestamp: Optional[str] = None) -> RecomputeReport:
        """Rescore every restaurant; a failing restaurant is reported and skipped"""
        report = RecomputeReport(started_at=utc_now())
        at = timestamp or report.started_at

        for restaurant in self.repository.list_restaurants():
            try:
                records = self.recompute_restaurant(restaurant.restaurant_id, timestamp=at)
            except Exception as e:
                logger.error(f"Recompute failed for restaurant {restaurant.restaurant_id}: {e}")
                report.failures.append({
                    'restaurant_id': restaurant.restaurant_id,
                    'error': f"{e.__class__.__name__}: {e}",
                })
                continue
            report.restaurants_processed += 1
            report.items_scored += len(records)

        report.finished_at = utc_now()
        logger.info(
            f"Recompute finished: {report.restaurants_processed} restaurants, "
            f"{report.items_scored} items, {len(report.failures)} failures"
        )
        return report

    @staticmethod
    def category_medians(items: List[MenuItem]) -> Dict[str, float]:
        if not items:
            return {}
        df = pd.DataFrame([{'category': item.category, 'price': item.price} for item in items])
        return {category: float(median) for category, median in df.groupby('category')['price'].median().items()}

    # Dashboard

    def aggregate_dashboard(self, restaurant_id: str, timeframe: Optional[str] = None) -> DashboardSnapshot:
        """
        Restaurant rollup: averages, full rankings, category breakdown,
        monthly trend and recent trend points.

        Rankings are by recommendation score; ties go to the lower item id.
        """
        timeframe = timeframe or self.policy.default_timeframe
        if timeframe not in TIMEFRAMES:
            raise InvalidRequest(f"Unknown timeframe '{timeframe}', expected one of {', '.join(TIMEFRAMES)}")

        self.repository.get_restaurant(restaurant_id)
        items = self.repository.list_items(restaurant_id, active_only=True)
        records = self.repository.list_scores(restaurant_id)

        items_df = pd.DataFrame(
            [{'item_id': i.item_id, 'name': i.name, 'category': i.category, 'price': i.price} for i in items],
            columns=['item_id', 'name', 'category', 'price'],
        )
        scores_df = pd.DataFrame(
            [{
                'item_id': r.item_id,
                'popularity_score': r.popularity_score,
                'profitability_score': r.profitability_score,
                'recommendation_score': r.recommendation_score,
                'composite_score': round(r.composite, 2),
            } for r in records],
            columns=['item_id', 'popularity_score', 'profitability_score',
                     'recommendation_score', 'composite_score'],
        )
        scored = items_df.merge(scores_df, on='item_id', how='inner')

        top = scored.sort_values(['recommendation_score', 'item_id'], ascending=[False, True], kind='mergesort')
        low = scored.sort_values(['recommendation_score', 'item_id'], ascending=[True, True], kind='mergesort')

        live_ids = set(scored['item_id'])
        trend_df = pd.DataFrame(
            [{'item_id': r.item_id, 'date': p.date, 'metric': p.metric, 'value': p.value}
             for r in records if r.item_id in live_ids for p in r.trends],
            columns=['item_id', 'date', 'metric', 'value'],
        )

        return DashboardSnapshot(
            restaurant_id=restaurant_id,
            timeframe=timeframe,
            total_menu_items=len(items),
            scored_items=len(scored),
            average_popularity_score=self._mean(scored['popularity_score']),
            average_profitability_score=self._mean(scored['profitability_score']),
            average_recommendation_score=self._mean(scored['recommendation_score']),
            top_performing_items=self._ranked(top),
            low_performing_items=self._ranked(low),
            category_breakdown=self._category_breakdown(items_df, scores_df),
            monthly_trends=self._monthly_trends(trend_df),
            recent_trends=self._recent_trends(trend_df, TIMEFRAMES[timeframe]),
        )

    def get_dashboard_data(self, restaurant_id: str, timeframe: Optional[str] = None,
                           page: int = 1, limit: int = 10) -> DashboardPage:
        """Paginated dashboard; both rankings share the same page window"""
        if not isinstance(page, int) or page < 1:
            raise InvalidRequest("page must be a positive integer")
        if not isinstance(limit, int) or limit < 1 or limit > self.policy.max_page_size:
            raise InvalidRequest(f"limit must be between 1 and {self.policy.max_page_size}")

        snapshot = self.aggregate_dashboard(restaurant_id, timeframe)
        start = (page - 1) * limit
        end = start + limit
        total_top = len(snapshot.top_performing_items)
        total_low = len(snapshot.low_performing_items)

        return DashboardPage(
            restaurant_id=restaurant_id,
            timeframe=snapshot.timeframe,
            page=page,
            limit=limit,
            total_menu_items=snapshot.total_menu_items,
            average_popularity_score=snapshot.average_popularity_score,
            average_profitability_score=snapshot.average_profitability_score,
            average_recommendation_score=snapshot.average_recommendation_score,
            top_performing_items=snapshot.top_performing_items[start:end],
            low_performing_items=snapshot.low_performing_items[start:end],
            total_top_items=total_top,
            total_low_items=total_low,
            has_next_page=end < max(total_top, total_low),
            has_previous_page=page > 1,
            category_breakdown=snapshot.category_breakdown,
            monthly_trends=snapshot.monthly_trends,
            recent_trends=snapshot.recent_trends,
            generated_at=snapshot.generated_at,
        )

    @staticmethod
    def _mean(series: pd.Series) -> float:
        return round(float(series.mean()), 2) if len(series) else 0.0

    @staticmethod
    def _ranked(df: pd.DataFrame) -> List[RankedItem]:
        return [
            RankedItem(
                item_id=row['item_id'],
                name=row['name'],
                category=row['category'],
                price=float(row['price']),
                popularity_score=float(row['popularity_score']),
                profitability_score=float(row['profitability_score']),
                recommendation_score=float(row['recommendation_score']),
                composite_score=float(row['composite_score']),
            )
            for row in df.to_dict('records')
        ]

    @staticmethod
    def _category_breakdown(items_df: pd.DataFrame, scores_df: pd.DataFrame) -> List[Dict]:
        if items_df.empty:
            return []
        merged = items_df.merge(scores_df[['item_id', 'composite_score']], on='item_id', how='left')
        grouped = merged.groupby('category').agg(
            item_count=('item_id', 'count'),
            average_score=('composite_score', 'mean'),
        ).reset_index()
        grouped['average_score'] = grouped['average_score'].fillna(0.0).round(2)
        grouped = grouped.sort_values(['average_score', 'category'], ascending=[False, True], kind='mergesort')
        return [
            {
                'category': row['category'],
                'item_count': int(row['item_count']),
                'average_score': float(row['average_score']),
            }
            for row in grouped.to_dict('records')
        ]

    @staticmethod
    def _monthly_trends(trend_df: pd.DataFrame) -> List[Dict]:
        if trend_df.empty:
            return []
        df = trend_df.copy()
        df['month'] = pd.to_datetime(df['date'], utc=True, format='ISO8601').dt.strftime('%Y-%m')
        pivot = df.pivot_table(index='month', columns='metric', values='value', aggfunc='mean')
        pivot = pivot.reindex(columns=list(METRICS)).fillna(0.0).sort_index()
        return [
            {
                'month': month,
                'average_popularity': round(float(row['popularity']), 2),
                'average_profitability': round(float(row['profitability']), 2),
                'average_recommendation': round(float(row['recommendation']), 2),
            }
            for month, row in pivot.iterrows()
        ]

    @staticmethod
    def _recent_trends(trend_df: pd.DataFrame, window: Optional[timedelta]) -> List[Dict]:
        if trend_df.empty:
            return []
        df = trend_df.copy()
        df['timestamp'] = pd.to_datetime(df['date'], utc=True, format='ISO8601')
        if window is not None:
            cutoff = pd.Timestamp(datetime.now(timezone.utc) - window)
            df = df[df['timestamp'] >= cutoff]
        df = df.sort_values(['timestamp', 'item_id', 'metric'], kind='mergesort')
        return [
            {'item_id': row['item_id'], 'date': row['date'], 'metric': row['metric'], 'value': float(row['value'])}
            for row in df.to_dict('records')
        ]
