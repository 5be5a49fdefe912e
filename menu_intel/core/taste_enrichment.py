"""
Taste Graph Enrichment Module

Fetches entity search results, similar restaurants with their specialty
dishes, and audience demographics from the taste-graph service. Every
upstream call goes through a RateLimitedClient.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from menu_intel.errors import MalformedOutput, MenuIntelError
from menu_intel.models import (
    AgeGroup, CandidateEntity, DemographicsSnapshot, DiningPattern, Restaurant,
    SimilarRestaurant, SimilarRestaurantSet, SpecialtyDish, TasteProfile, new_id, utc_now
)
from utils.rate_limiter import RateLimitedClient, TokenBucket
from utils.unicode_handler import clean_unicode_text, display_name, normalize_name

logger = logging.getLogger(__name__)

PLACE_TYPE = 'urn:entity:place'
DEMOGRAPHICS_TYPE = 'urn:demographics'
CUISINE_TAG_PREFIX = 'urn:tag:genre:place:restaurant:'
SPECIALTY_TAG_PREFIX = 'urn:tag:specialty_dish:place:'


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return default if number != number else number  # NaN


def _mapping(value: Any, what: str) -> Dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedOutput(f"Expected an object for {what}, got {type(value).__name__}")
    return value


def _sequence(value: Any, what: str) -> List:
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedOutput(f"Expected a list for {what}, got {type(value).__name__}")
    return value


def _objects(values: List) -> List[Dict]:
    return [value for value in values if isinstance(value, dict)]


def rank_specialty_dishes(restaurants: List[SimilarRestaurant],
                          raw_dishes: Dict[str, List[Dict]]) -> List[SpecialtyDish]:
    """
    Build the specialty-dish frequency table.

    Args:
        restaurants: Similar restaurants in upstream order
        raw_dishes: entity_id -> specialty_dishes entries from the upstream payload

    Returns:
        Dishes ranked by restaurant count then popularity, both descending,
        then by normalized name
    """
    table: Dict[str, Dict] = {}

    for restaurant in restaurants:
        seen_here = set()
        for dish in raw_dishes.get(restaurant.entity_id, []):
            raw_name = dish.get('name') if isinstance(dish, dict) else dish
            key = normalize_name(raw_name)
            if not key or key in seen_here:
                continue
            seen_here.add(key)

            entry = table.get(key)
            if entry is None:
                tag_id = dish.get('tag_id') if isinstance(dish, dict) else None
                entry = table[key] = {
                    'display_name': display_name(raw_name),
                    'tag_id': tag_id or SPECIALTY_TAG_PREFIX + key.replace(' ', '_'),
                    'restaurant_count': 0,
                    'popularity_total': 0.0,
                }
            entry['restaurant_count'] += 1
            entry['popularity_total'] += restaurant.popularity

    dishes = [
        SpecialtyDish(
            dish_name=key,
            display_name=entry['display_name'],
            tag_id=entry['tag_id'],
            restaurant_count=entry['restaurant_count'],
            popularity=round(entry['popularity_total'] / entry['restaurant_count'], 4),
        )
        for key, entry in table.items()
    ]
    return sorted(dishes, key=lambda d: (-d.restaurant_count, -d.popularity, d.dish_name))


class TasteGraphEnrichment:
    """Client for the taste-graph search and insights endpoints."""

    def __init__(self, client: RateLimitedClient, base_url: str = 'https://hackathon.api.qloo.com',
                 search_radius: int = 10, search_limit: int = 10, similar_count: int = 10):
        """
        Initialize the enrichment layer.

        Args:
            client: Rate-limited HTTP client carrying the API key header
            base_url: Taste-graph API root
            search_radius: Entity search radius (miles)
            search_limit: Maximum search hits kept
            similar_count: Similar restaurants requested per call
        """
        self.client = client
        self.base_url = base_url.rstrip('/')
        self.search_radius = search_radius
        self.search_limit = search_limit
        self.similar_count = similar_count

    @classmethod
    def from_settings(cls, settings: Dict, session: Optional[requests.Session] = None) -> 'TasteGraphEnrichment':
        """Build the enrichment layer and its token bucket from loaded settings"""
        config = settings['taste_graph']
        bucket = TokenBucket(rate=config['rate'], burst=config['burst'], name='taste_graph')
        headers = {'Content-Type': 'application/json'}
        if config.get('api_key'):
            headers['x-api-key'] = config['api_key']
        else:
            logger.warning("QLOO_API_KEY not set; taste-graph calls will be rejected upstream")

        client = RateLimitedClient(
            bucket,
            max_in_flight=config['max_in_flight'],
            max_retries=config['max_retries'],
            backoff_base=config['backoff_base'],
            backoff_max=config['backoff_max'],
            timeout=config['timeout'],
            session=session,
            default_headers=headers,
        )
        return cls(
            client,
            base_url=config['base_url'],
            search_radius=config['search_radius'],
            search_limit=config['search_limit'],
            similar_count=config['similar_count'],
        )

    def search_entities(self, name: str, city: str, state: str) -> List[CandidateEntity]:
        """
        Search the taste graph for a restaurant.

        Returns:
            Candidates ordered by upstream relevance; empty when nothing matched
        """
        params = {
            'query': name,
            'filter.radius': self.search_radius,
            'operator.filter.tags': 'union',
            'page': 1,
            'sort_by': 'match',
            'filter.location': f"{city}, {state}",
        }
        data = _mapping(self.client.get_json(f"{self.base_url}/search", params), 'search response')
        hits = data.get('results') or data.get('data') or []
        if isinstance(hits, dict):
            hits = hits.get('entities')
        hits = _sequence(hits, 'search results')

        candidates = []
        for hit in _objects(hits):
            entity_id = hit.get('entity_id') or hit.get('id')
            if not entity_id:
                continue
            location = _mapping(hit.get('location'), 'entity location')
            properties = _mapping(hit.get('properties'), 'entity properties')
            candidates.append(CandidateEntity(
                entity_id=entity_id,
                name=clean_unicode_text(hit.get('name')),
                address=hit.get('address') or properties.get('address') or location.get('address', ''),
                price_level=int(_as_float(hit.get('price_level') or properties.get('price_level'))),
                relevance=_as_float(hit.get('score', hit.get('relevance'))),
                popularity=_as_float(hit.get('popularity')),
                tags=tuple(self._tag_names(hit.get('tags'))),
            ))

        # sorted() is stable, equal scores keep upstream order
        candidates = sorted(candidates, key=lambda c: -c.relevance)[:self.search_limit]
        logger.info(f"Entity search for '{name}' in {city}, {state}: {len(candidates)} candidates")
        return candidates

    def find_similar(self, entity_id: str, min_rating: float, cuisine: Optional[str] = None,
                     location: Optional[str] = None) -> SimilarRestaurantSet:
        """
        Fetch restaurants similar to an entity and rank their specialty dishes.

        Args:
            entity_id: Taste-graph entity id of the source restaurant
            min_rating: Minimum external rating for returned places
            cuisine: Optional cuisine slug narrowing the genre tag
            location: Optional location query

        Returns:
            SimilarRestaurantSet including the specialty-dish table
        """
        params = {
            'filter.type': PLACE_TYPE,
            'signal.interests.entities': entity_id,
            'count': self.similar_count,
            'filter.external.tripadvisor.rating.min': min_rating,
        }
        if location:
            params['filter.location.query'] = location
        if cuisine:
            params['filter.tags'] = CUISINE_TAG_PREFIX + cuisine.strip().lower().replace(' ', '_')

        data = _mapping(self.client.get_json(f"{self.base_url}/v2/insights", params), 'insights response')
        results = _mapping(data.get('results'), 'insights results')
        entities = _sequence(results.get('entities'), 'similar entities')

        restaurants = []
        raw_dishes: Dict[str, List[Dict]] = {}
        for entity in _objects(entities):
            similar_id = entity.get('entity_id') or entity.get('id')
            if not similar_id:
                continue
            properties = _mapping(entity.get('properties'), 'entity properties')
            dishes = [
                d for d in _sequence(properties.get('specialty_dishes'), 'specialty dishes')
                if isinstance(d, (dict, str))
            ]
            raw_dishes[similar_id] = dishes
            restaurants.append(SimilarRestaurant(
                entity_id=similar_id,
                name=clean_unicode_text(entity.get('name')),
                address=properties.get('address', ''),
                business_rating=_as_float(properties.get('business_rating')),
                price_level=int(_as_float(properties.get('price_level'))),
                popularity=_as_float(entity.get('popularity')),
                specialty_dishes=tuple(
                    clean_unicode_text(d.get('name') if isinstance(d, dict) else d) for d in dishes
                ),
            ))

        specialty_dishes = rank_specialty_dishes(restaurants, raw_dishes)
        logger.info(
            f"Found {len(restaurants)} similar restaurants with "
            f"{len(specialty_dishes)} specialty dishes for {entity_id}"
        )

        return SimilarRestaurantSet(
            entity_id=entity_id,
            restaurants=tuple(restaurants),
            specialty_dishes=tuple(specialty_dishes),
            min_rating_filter=min_rating,
            query_context=dict(params),
            retrieved_at=utc_now(),
        )

    def get_demographics(self, entity_id: str) -> DemographicsSnapshot:
        """Fetch the audience breakdown for an entity."""
        params = {
            'filter.type': DEMOGRAPHICS_TYPE,
            'signal.interests.entities': entity_id,
        }
        data = _mapping(self.client.get_json(f"{self.base_url}/v2/insights", params), 'insights response')
        body = _mapping(data.get('data') or data.get('results'), 'demographics body')
        demographics = _objects(_sequence(body.get('demographics'), 'demographics'))
        insights = _objects(_sequence(body.get('insights'), 'insights'))

        age_groups = tuple(
            AgeGroup(
                age_range=str(item.get('value', '')),
                percentage=_as_float(item.get('percentage')),
                preferences=tuple(item.get('preferences') or ()),
            )
            for item in demographics
            if item.get('type') == 'age_group' or item.get('category') == 'age'
        )
        interests = tuple(
            str(item.get('value'))
            for item in demographics
            if (item.get('type') == 'interest' or item.get('category') == 'interests') and item.get('value')
        )
        dining_patterns = tuple(
            DiningPattern(
                pattern=str(item.get('value', '')),
                frequency=_as_float(item.get('frequency')),
                time_of_day=tuple(item.get('time_of_day') or ()),
            )
            for item in insights
            if item.get('type') == 'dining_pattern' or item.get('category') == 'dining'
        )

        return DemographicsSnapshot(
            entity_id=entity_id,
            age_groups=age_groups,
            interests=interests,
            dining_patterns=dining_patterns,
            query_context=params,
            retrieved_at=utc_now(),
        )

    def enrich(self, restaurant: Restaurant, min_rating: float = 4.0) -> TasteProfile:
        """
        Build a taste profile snapshot for a restaurant.

        One similar-restaurant call and one demographics call. A failure of
        either leaves that part empty and adds a warning; the caller decides
        whether to continue.
        """
        query_context = {
            'restaurant_id': restaurant.restaurant_id,
            'entity_id': restaurant.entity_id,
            'min_rating': min_rating,
            'cuisine': restaurant.cuisine,
            'location': restaurant.location,
        }

        if not restaurant.entity_id:
            logger.warning(f"Restaurant {restaurant.restaurant_id} has no taste-graph entity id")
            return TasteProfile(
                snapshot_id=new_id(),
                restaurant_id=restaurant.restaurant_id,
                entity_id=None,
                similar=None,
                demographics=None,
                restaurant_popularity=restaurant.popularity,
                query_context=query_context,
                warnings=('no_entity_id',),
            )

        warnings = []
        similar = None
        demographics = None

        try:
            similar = self.find_similar(
                restaurant.entity_id,
                min_rating,
                cuisine=restaurant.cuisine or None,
                location=restaurant.location or None,
            )
        except MenuIntelError as e:
            logger.warning(f"Similar restaurants unavailable for {restaurant.restaurant_id}: {e}")
            warnings.append(f"similar_unavailable: {e}")

        try:
            demographics = self.get_demographics(restaurant.entity_id)
        except MenuIntelError as e:
            logger.warning(f"Demographics unavailable for {restaurant.restaurant_id}: {e}")
            warnings.append(f"demographics_unavailable: {e}")

        return TasteProfile(
            snapshot_id=new_id(),
            restaurant_id=restaurant.restaurant_id,
            entity_id=restaurant.entity_id,
            similar=similar,
            demographics=demographics,
            restaurant_popularity=restaurant.popularity,
            query_context=query_context,
            warnings=tuple(warnings),
        )

    @staticmethod
    def _tag_names(tags) -> List[str]:
        names = []
        for tag in tags or []:
            if isinstance(tag, dict):
                name = tag.get('name') or tag.get('tag_id')
            else:
                name = tag
            if name:
                names.append(str(name))
        return names
