"""
Data models for the menu intelligence pipeline

Records are plain dataclasses. Enrichment snapshots are frozen: a re-fetch
produces a new snapshot instead of updating one in place.
"""

import uuid
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string"""
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def _pick(cls, data: Dict) -> Dict:
    """Keep only keys that are fields of the dataclass"""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def _plain(value: Any) -> Any:
    """Convert enums and tuples into JSON-friendly values"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


class ReviewStatus(str, Enum):
    """Lifecycle of AI-generated content awaiting human review"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not ReviewStatus.PENDING


class RecordKind(str, Enum):
    """Record collections held by the storage layer"""
    RESTAURANT = "restaurant"
    MENU_ITEM = "menu_item"
    OPTIMIZATION = "optimized_menu_item"
    SUGGESTION = "menu_item_suggestion"
    DESCRIPTION = "description_enhancement"
    SCORE = "score_record"
    TASTE_PROFILE = "taste_profile"
    REVIEW_EVENT = "review_event"


class ItemStatus(str, Enum):
    """Per-item outcome of a batch operation"""
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class SerializableMixin:
    """to_dict/from_dict for flat dataclasses"""

    def to_dict(self) -> Dict:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict):
        return cls(**_pick(cls, data))


@dataclass
class Restaurant(SerializableMixin):
    """A restaurant and its link to the taste graph"""
    restaurant_id: str
    name: str
    city: str = ""
    state: str = ""
    entity_id: Optional[str] = None  # taste-graph entity id
    price_level: Optional[int] = None  # 1=budget .. 4=luxury
    cuisine: str = ""
    popularity: Optional[float] = None  # 0-1 percentile
    genre_tags: List[str] = field(default_factory=list)

    @property
    def location(self) -> str:
        return ', '.join(part for part in (self.city, self.state) if part)


@dataclass
class MenuItem(SerializableMixin):
    """A dish on a restaurant's menu"""
    item_id: str
    restaurant_id: str
    name: str
    description: str = ""
    price: float = 0.0
    category: str = ""
    ingredients: List[str] = field(default_factory=list)
    dietary_tags: List[str] = field(default_factory=list)
    is_active: bool = True
    is_ai_generated: bool = False
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


@dataclass(frozen=True)
class CandidateEntity(SerializableMixin):
    """A taste-graph search hit for a restaurant"""
    entity_id: str
    name: str
    address: str = ""
    price_level: int = 0
    relevance: float = 0.0
    popularity: float = 0.0
    tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SimilarRestaurant(SerializableMixin):
    entity_id: str
    name: str
    address: str = ""
    business_rating: float = 0.0
    price_level: int = 0
    popularity: float = 0.0
    specialty_dishes: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict) -> 'SimilarRestaurant':
        values = _pick(cls, data)
        values['specialty_dishes'] = tuple(values.get('specialty_dishes', ()))
        return cls(**values)


@dataclass(frozen=True)
class SpecialtyDish(SerializableMixin):
    """A dish recurring across similar restaurants"""
    dish_name: str  # normalized, lower case
    display_name: str
    tag_id: str
    restaurant_count: int
    popularity: float


@dataclass(frozen=True)
class SimilarRestaurantSet:
    """Similar-restaurant fetch result plus the derived specialty-dish table"""
    entity_id: str
    restaurants: Tuple[SimilarRestaurant, ...]
    specialty_dishes: Tuple[SpecialtyDish, ...]
    min_rating_filter: float
    query_context: Dict[str, Any]
    retrieved_at: str = field(default_factory=utc_now)
    warnings: Tuple[str, ...] = ()

    def to_dict(self) -> Dict:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict) -> 'SimilarRestaurantSet':
        return cls(
            entity_id=data['entity_id'],
            restaurants=tuple(SimilarRestaurant.from_dict(r) for r in data.get('restaurants', [])),
            specialty_dishes=tuple(SpecialtyDish.from_dict(d) for d in data.get('specialty_dishes', [])),
            min_rating_filter=data.get('min_rating_filter', 0.0),
            query_context=data.get('query_context', {}),
            retrieved_at=data.get('retrieved_at', utc_now()),
            warnings=tuple(data.get('warnings', ())),
        )


@dataclass(frozen=True)
class AgeGroup(SerializableMixin):
    age_range: str
    percentage: float
    preferences: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict) -> 'AgeGroup':
        values = _pick(cls, data)
        values['preferences'] = tuple(values.get('preferences', ()))
        return cls(**values)


@dataclass(frozen=True)
class DiningPattern(SerializableMixin):
    pattern: str
    frequency: float
    time_of_day: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict) -> 'DiningPattern':
        values = _pick(cls, data)
        values['time_of_day'] = tuple(values.get('time_of_day', ()))
        return cls(**values)


@dataclass(frozen=True)
class DemographicsSnapshot:
    """Audience breakdown for a taste-graph entity"""
    entity_id: str
    age_groups: Tuple[AgeGroup, ...] = ()
    interests: Tuple[str, ...] = ()
    dining_patterns: Tuple[DiningPattern, ...] = ()
    query_context: Dict[str, Any] = field(default_factory=dict)
    retrieved_at: str = field(default_factory=utc_now)
    warnings: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.age_groups or self.interests or self.dining_patterns)

    def dominant_segments(self, count: int = 2) -> List[AgeGroup]:
        """Largest age groups first; ties keep upstream order"""
        return sorted(self.age_groups, key=lambda g: -g.percentage)[:count]

    def to_dict(self) -> Dict:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict) -> 'DemographicsSnapshot':
        return cls(
            entity_id=data['entity_id'],
            age_groups=tuple(AgeGroup.from_dict(g) for g in data.get('age_groups', [])),
            interests=tuple(data.get('interests', ())),
            dining_patterns=tuple(DiningPattern.from_dict(p) for p in data.get('dining_patterns', [])),
            query_context=data.get('query_context', {}),
            retrieved_at=data.get('retrieved_at', utc_now()),
            warnings=tuple(data.get('warnings', ())),
        )


@dataclass(frozen=True)
class TasteProfile:
    """Enrichment snapshot for one restaurant, reused across a single run"""
    snapshot_id: str
    restaurant_id: str
    entity_id: Optional[str]
    similar: Optional[SimilarRestaurantSet]
    demographics: Optional[DemographicsSnapshot]
    restaurant_popularity: Optional[float] = None
    query_context: Dict[str, Any] = field(default_factory=dict)
    retrieved_at: str = field(default_factory=utc_now)
    warnings: Tuple[str, ...] = ()

    @property
    def specialty_dishes(self) -> Tuple[SpecialtyDish, ...]:
        return self.similar.specialty_dishes if self.similar else ()

    @property
    def similar_restaurant_count(self) -> int:
        return len(self.similar.restaurants) if self.similar else 0

    def to_dict(self) -> Dict:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict) -> 'TasteProfile':
        similar = data.get('similar')
        demographics = data.get('demographics')
        return cls(
            snapshot_id=data['snapshot_id'],
            restaurant_id=data['restaurant_id'],
            entity_id=data.get('entity_id'),
            similar=SimilarRestaurantSet.from_dict(similar) if similar else None,
            demographics=DemographicsSnapshot.from_dict(demographics) if demographics else None,
            restaurant_popularity=data.get('restaurant_popularity'),
            query_context=data.get('query_context', {}),
            retrieved_at=data.get('retrieved_at', utc_now()),
            warnings=tuple(data.get('warnings', ())),
        )


@dataclass(frozen=True)
class TrendPoint(SerializableMixin):
    date: str
    metric: str
    value: float


@dataclass(frozen=True)
class ScoreRecord:
    """Scores for one menu item; the trend series only ever grows"""
    item_id: str
    restaurant_id: str
    popularity_score: float
    profitability_score: float
    recommendation_score: float
    trends: Tuple[TrendPoint, ...] = ()
    last_updated: str = field(default_factory=utc_now)

    @property
    def composite(self) -> float:
        return (self.popularity_score + self.profitability_score + self.recommendation_score) / 3

    def scores(self) -> Dict[str, float]:
        return {
            'popularity': self.popularity_score,
            'profitability': self.profitability_score,
            'recommendation': self.recommendation_score,
        }

    def to_dict(self) -> Dict:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict) -> 'ScoreRecord':
        values = _pick(cls, data)
        values['trends'] = tuple(TrendPoint.from_dict(t) for t in data.get('trends', []))
        return cls(**values)


@dataclass(frozen=True)
class GenerationAudit:
    """Which provider and prompt produced a piece of generated content"""
    provider: str
    model: str
    capability: str
    prompt_version: str
    prompt_template: str
    attempts: Tuple[Tuple[str, str], ...] = ()  # failed (provider, reason) before success
    generated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional['GenerationAudit']:
        if not data:
            return None
        values = _pick(cls, data)
        values['attempts'] = tuple(tuple(a) for a in data.get('attempts', []))
        return cls(**values)


@dataclass
class OptimizedMenuItem:
    """An AI-proposed rewrite of an existing menu item"""
    optimization_id: str
    item_id: str
    restaurant_id: str
    original_name: str
    optimized_name: str
    original_description: str
    optimized_description: str
    optimization_reason: str
    demographic_insights: List[str] = field(default_factory=list)
    scores: Dict[str, float] = field(default_factory=dict)
    audit: Optional[GenerationAudit] = None
    snapshot_id: Optional[str] = None
    status: ReviewStatus = ReviewStatus.PENDING
    created_at: str = field(default_factory=utc_now)
    reviewed_at: Optional[str] = None
    reviewed_by: Optional[str] = None
    feedback: Optional[str] = None

    def to_dict(self) -> Dict:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict) -> 'OptimizedMenuItem':
        values = _pick(cls, data)
        values['status'] = ReviewStatus(values.get('status', ReviewStatus.PENDING))
        values['audit'] = GenerationAudit.from_dict(values.get('audit'))
        return cls(**values)


@dataclass
class MenuItemSuggestion:
    """A wholly new menu item idea"""
    suggestion_id: str
    restaurant_id: str
    name: str
    description: str
    estimated_price: float
    category: str = ""
    suggested_ingredients: List[str] = field(default_factory=list)
    dietary_tags: List[str] = field(default_factory=list)
    inspiration_source: str = ""
    based_on_specialty_dish: Optional[str] = None
    audit: Optional[GenerationAudit] = None
    snapshot_id: Optional[str] = None
    status: ReviewStatus = ReviewStatus.PENDING
    created_at: str = field(default_factory=utc_now)
    reviewed_at: Optional[str] = None
    reviewed_by: Optional[str] = None
    feedback: Optional[str] = None

    def to_dict(self) -> Dict:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict) -> 'MenuItemSuggestion':
        values = _pick(cls, data)
        values['status'] = ReviewStatus(values.get('status', ReviewStatus.PENDING))
        values['audit'] = GenerationAudit.from_dict(values.get('audit'))
        return cls(**values)


@dataclass
class DescriptionEnhancement:
    """An AI-rewritten description for an existing menu item"""
    enhancement_id: str
    item_id: str
    restaurant_id: str
    original_description: str
    enhanced_description: str
    style: Optional[str] = None
    target_audience: Optional[str] = None
    audit: Optional[GenerationAudit] = None
    snapshot_id: Optional[str] = None
    status: ReviewStatus = ReviewStatus.PENDING
    created_at: str = field(default_factory=utc_now)
    reviewed_at: Optional[str] = None
    reviewed_by: Optional[str] = None
    feedback: Optional[str] = None

    def to_dict(self) -> Dict:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict) -> 'DescriptionEnhancement':
        values = _pick(cls, data)
        values['status'] = ReviewStatus(values.get('status', ReviewStatus.PENDING))
        values['audit'] = GenerationAudit.from_dict(values.get('audit'))
        return cls(**values)


@dataclass
class Recommendation:
    """Items recommended to a customer segment, with explanations"""
    restaurant_id: str
    target_segment: str
    recommended_item_ids: List[str]
    explanations: Dict[str, str]
    audit: Optional[GenerationAudit] = None
    created_at: str = field(default_factory=utc_now)


@dataclass
class ReviewEvent(SerializableMixin):
    """Audit entry for one review transition"""
    event_id: str
    record_kind: str
    record_id: str
    restaurant_id: str
    from_status: str
    to_status: str
    reviewer: Optional[str] = None
    feedback: Optional[str] = None
    at: str = field(default_factory=utc_now)


@dataclass
class ItemOutcome:
    """Per-item line of a batch manifest"""
    item_id: str
    status: ItemStatus
    reason: Optional[str] = None
    record_id: Optional[str] = None
