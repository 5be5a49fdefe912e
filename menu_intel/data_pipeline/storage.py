"""
Record storage for the menu intelligence pipeline

Storage is a keyed document store: every record is a JSON-compatible dict
filed under a kind (see RecordKind) and a key. MenuRepository layers the
typed load/save helpers used by the engines on top of any Storage.
"""

import copy
import threading
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Union

from menu_intel.errors import NotFound
from menu_intel.models import (
    RecordKind, ReviewStatus, Restaurant, MenuItem, TasteProfile, ScoreRecord,
    OptimizedMenuItem, MenuItemSuggestion, DescriptionEnhancement, ReviewEvent
)

logger = logging.getLogger(__name__)

Kind = Union[RecordKind, str]


def kind_name(kind: Kind) -> str:
    return kind.value if isinstance(kind, RecordKind) else str(kind)


class Storage:
    """Interface every storage backend implements"""

    def get(self, kind: Kind, key: str) -> Optional[Dict]:
        raise NotImplementedError

    def put(self, kind: Kind, key: str, record: Dict):
        """Insert or replace. Replacing keeps the record's original position."""
        raise NotImplementedError

    def update(self, kind: Kind, key: str, changes: Dict) -> Dict:
        """Shallow-merge changes into an existing record; NotFound if missing"""
        raise NotImplementedError

    def query(self, kind: Kind, restaurant_id: Optional[str] = None, **filters) -> List[Dict]:
        """Records of a kind in insertion order, filtered by top-level equality"""
        raise NotImplementedError

    def scan(self, kind: Kind) -> List[Dict]:
        return self.query(kind)

    def compare_and_set(self, kind: Kind, key: str, field: str, expected: Any,
                        changes: Dict) -> Optional[Dict]:
        """
        Apply changes only if record[field] == expected, atomically

        Returns:
            The updated record, or None if the record is missing or the
            guard did not match
        """
        raise NotImplementedError


def _matches(record: Dict, restaurant_id: Optional[str], filters: Dict) -> bool:
    if restaurant_id is not None and record.get('restaurant_id') != restaurant_id:
        return False
    return all(record.get(name) == value for name, value in filters.items())


class InMemoryStorage(Storage):
    """Thread-safe dict-backed storage"""

    def __init__(self):
        self._records: Dict[str, 'OrderedDict[str, Dict]'] = {}
        self._lock = threading.RLock()

    def _table(self, kind: Kind) -> 'OrderedDict[str, Dict]':
        return self._records.setdefault(kind_name(kind), OrderedDict())

    def get(self, kind: Kind, key: str) -> Optional[Dict]:
        with self._lock:
            record = self._table(kind).get(key)
            return copy.deepcopy(record) if record is not None else None

    def put(self, kind: Kind, key: str, record: Dict):
        with self._lock:
            self._table(kind)[key] = copy.deepcopy(record)

    def update(self, kind: Kind, key: str, changes: Dict) -> Dict:
        with self._lock:
            table = self._table(kind)
            if key not in table:
                raise NotFound(f"{kind_name(kind)} {key} not found")
            table[key].update(copy.deepcopy(changes))
            return copy.deepcopy(table[key])

    def query(self, kind: Kind, restaurant_id: Optional[str] = None, **filters) -> List[Dict]:
        with self._lock:
            return [
                copy.deepcopy(record)
                for record in self._table(kind).values()
                if _matches(record, restaurant_id, filters)
            ]

    def compare_and_set(self, kind: Kind, key: str, field: str, expected: Any,
                        changes: Dict) -> Optional[Dict]:
        with self._lock:
            record = self._table(kind).get(key)
            if record is None or record.get(field) != expected:
                return None
            record.update(copy.deepcopy(changes))
            return copy.deepcopy(record)


class MenuRepository:
    """Typed access to pipeline records"""

    def __init__(self, storage: Storage):
        self.storage = storage

    # Restaurants

    def save_restaurant(self, restaurant: Restaurant):
        self.storage.put(RecordKind.RESTAURANT, restaurant.restaurant_id, restaurant.to_dict())

    def get_restaurant(self, restaurant_id: str) -> Restaurant:
        data = self.storage.get(RecordKind.RESTAURANT, restaurant_id)
        if data is None:
            raise NotFound(f"Restaurant {restaurant_id} not found")
        return Restaurant.from_dict(data)

    def list_restaurants(self) -> List[Restaurant]:
        return [Restaurant.from_dict(d) for d in self.storage.scan(RecordKind.RESTAURANT)]

    # Menu items

    def save_item(self, item: MenuItem):
        self.storage.put(RecordKind.MENU_ITEM, item.item_id, item.to_dict())

    def get_item(self, item_id: str) -> Optional[MenuItem]:
        data = self.storage.get(RecordKind.MENU_ITEM, item_id)
        return MenuItem.from_dict(data) if data else None

    def list_items(self, restaurant_id: str, active_only: bool = False) -> List[MenuItem]:
        filters = {'is_active': True} if active_only else {}
        return [
            MenuItem.from_dict(d)
            for d in self.storage.query(RecordKind.MENU_ITEM, restaurant_id, **filters)
        ]

    # Enrichment snapshots

    def save_profile(self, profile: TasteProfile):
        self.storage.put(RecordKind.TASTE_PROFILE, profile.snapshot_id, profile.to_dict())

    def get_profile(self, snapshot_id: str) -> Optional[TasteProfile]:
        data = self.storage.get(RecordKind.TASTE_PROFILE, snapshot_id)
        return TasteProfile.from_dict(data) if data else None

    def latest_profile(self, restaurant_id: str) -> Optional[TasteProfile]:
        profiles = self.storage.query(RecordKind.TASTE_PROFILE, restaurant_id)
        return TasteProfile.from_dict(profiles[-1]) if profiles else None

    # Scores

    def save_score(self, record: ScoreRecord):
        self.storage.put(RecordKind.SCORE, record.item_id, record.to_dict())

    def get_score(self, item_id: str) -> Optional[ScoreRecord]:
        data = self.storage.get(RecordKind.SCORE, item_id)
        return ScoreRecord.from_dict(data) if data else None

    def list_scores(self, restaurant_id: str) -> List[ScoreRecord]:
        return [ScoreRecord.from_dict(d) for d in self.storage.query(RecordKind.SCORE, restaurant_id)]

    # Reviewable content

    def save_optimization(self, optimization: OptimizedMenuItem):
        self.storage.put(RecordKind.OPTIMIZATION, optimization.optimization_id, optimization.to_dict())

    def get_optimization(self, optimization_id: str) -> Optional[OptimizedMenuItem]:
        data = self.storage.get(RecordKind.OPTIMIZATION, optimization_id)
        return OptimizedMenuItem.from_dict(data) if data else None

    def list_optimizations(self, restaurant_id: Optional[str] = None,
                           status: Optional[ReviewStatus] = None) -> List[OptimizedMenuItem]:
        filters = {'status': status.value} if status else {}
        return [
            OptimizedMenuItem.from_dict(d)
            for d in self.storage.query(RecordKind.OPTIMIZATION, restaurant_id, **filters)
        ]

    def save_suggestion(self, suggestion: MenuItemSuggestion):
        self.storage.put(RecordKind.SUGGESTION, suggestion.suggestion_id, suggestion.to_dict())

    def get_suggestion(self, suggestion_id: str) -> Optional[MenuItemSuggestion]:
        data = self.storage.get(RecordKind.SUGGESTION, suggestion_id)
        return MenuItemSuggestion.from_dict(data) if data else None

    def list_suggestions(self, restaurant_id: Optional[str] = None,
                         status: Optional[ReviewStatus] = None) -> List[MenuItemSuggestion]:
        filters = {'status': status.value} if status else {}
        return [
            MenuItemSuggestion.from_dict(d)
            for d in self.storage.query(RecordKind.SUGGESTION, restaurant_id, **filters)
        ]

    def save_description(self, enhancement: DescriptionEnhancement):
        self.storage.put(RecordKind.DESCRIPTION, enhancement.enhancement_id, enhancement.to_dict())

    def get_description(self, enhancement_id: str) -> Optional[DescriptionEnhancement]:
        data = self.storage.get(RecordKind.DESCRIPTION, enhancement_id)
        return DescriptionEnhancement.from_dict(data) if data else None

    def list_descriptions(self, restaurant_id: Optional[str] = None,
                          status: Optional[ReviewStatus] = None,
                          item_id: Optional[str] = None) -> List[DescriptionEnhancement]:
        filters = {'status': status.value} if status else {}
        if item_id:
            filters['item_id'] = item_id
        return [
            DescriptionEnhancement.from_dict(d)
            for d in self.storage.query(RecordKind.DESCRIPTION, restaurant_id, **filters)
        ]

    # Review audit

    def save_event(self, event: ReviewEvent):
        self.storage.put(RecordKind.REVIEW_EVENT, event.event_id, event.to_dict())

    def list_events(self, record_id: Optional[str] = None) -> List[ReviewEvent]:
        filters = {'record_id': record_id} if record_id else {}
        return [ReviewEvent.from_dict(d) for d in self.storage.query(RecordKind.REVIEW_EVENT, **filters)]
