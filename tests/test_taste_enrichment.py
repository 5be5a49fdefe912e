"""
Tests for taste-graph enrichment and specialty-dish ranking
"""

import unittest
from unittest.mock import Mock

# Add parent directory to path
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from menu_intel.errors import MalformedOutput, TransientUpstream
from menu_intel.models import Restaurant, SimilarRestaurant, TasteProfile
from menu_intel.core.taste_enrichment import TasteGraphEnrichment, rank_specialty_dishes


def similar_payload(entities):
    return {'results': {'entities': entities}}


def place(entity_id, popularity, dishes, name=None):
    return {
        'entity_id': entity_id,
        'name': name or f"Place {entity_id}",
        'popularity': popularity,
        'properties': {
            'address': '1 Main St',
            'business_rating': 4.5,
            'price_level': 2,
            'specialty_dishes': [{'name': d} for d in dishes],
        },
    }


DEMOGRAPHICS_PAYLOAD = {
    'data': {
        'demographics': [
            {'type': 'age_group', 'value': '25-34', 'percentage': 40, 'preferences': ['spicy', 'vegan']},
            {'type': 'age_group', 'value': '35-44', 'percentage': 25, 'preferences': ['comfort food']},
            {'type': 'interest', 'value': 'street food'},
        ],
        'insights': [
            {'type': 'dining_pattern', 'value': 'late night', 'frequency': 30, 'time_of_day': ['22:00']},
        ],
    }
}


class TestSpecialtyDishRanking(unittest.TestCase):
    """Test the specialty-dish frequency table."""

    def test_shared_dish_ranks_first(self):
        """Test that a dish served by all similar restaurants ranks first."""
        restaurants = [
            SimilarRestaurant(entity_id='a', name='A', popularity=0.9),
            SimilarRestaurant(entity_id='b', name='B', popularity=0.8),
            SimilarRestaurant(entity_id='c', name='C', popularity=0.7),
        ]
        raw = {
            'a': [{'name': 'Carnitas Tacos'}, {'name': 'Elote'}],
            'b': [{'name': 'carnitas tacos'}],
            'c': [{'name': 'CARNITAS  TACOS'}, {'name': 'Churros'}],
        }

        dishes = rank_specialty_dishes(restaurants, raw)

        self.assertEqual(dishes[0].dish_name, 'carnitas tacos')
        self.assertEqual(dishes[0].restaurant_count, 3)
        self.assertAlmostEqual(dishes[0].popularity, 0.8)
        self.assertEqual(len(dishes), 3)

    def test_ties_break_by_popularity_then_name(self):
        """Test deterministic ordering for equal counts."""
        restaurants = [
            SimilarRestaurant(entity_id='a', name='A', popularity=0.5),
            SimilarRestaurant(entity_id='b', name='B', popularity=0.9),
        ]
        raw = {
            'a': [{'name': 'Zucchini Fritters'}, {'name': 'Arepas'}],
            'b': [{'name': 'Birria'}],
        }

        first = rank_specialty_dishes(restaurants, raw)
        second = rank_specialty_dishes(list(restaurants), dict(raw))

        self.assertEqual([d.dish_name for d in first], ['birria', 'arepas', 'zucchini fritters'])
        self.assertEqual(first, second)

    def test_duplicate_dish_counts_once_per_restaurant(self):
        """Test that a restaurant listing a dish twice counts once."""
        restaurants = [SimilarRestaurant(entity_id='a', name='A', popularity=0.5)]
        raw = {'a': [{'name': 'Pho'}, {'name': 'pho'}, 'PHO']}

        dishes = rank_specialty_dishes(restaurants, raw)

        self.assertEqual(len(dishes), 1)
        self.assertEqual(dishes[0].restaurant_count, 1)
        self.assertEqual(dishes[0].display_name, 'Pho')
        self.assertTrue(dishes[0].tag_id.startswith('urn:tag:specialty_dish:place:'))


class TestTasteGraphEnrichment(unittest.TestCase):
    """Test the enrichment client against a mocked HTTP client."""

    def setUp(self):
        """Set up test fixtures."""
        self.client = Mock()
        self.enrichment = TasteGraphEnrichment(self.client, base_url='https://taste.test/')
        self.restaurant = Restaurant(
            restaurant_id='r1', name='Casa Verde', city='Austin', state='TX',
            entity_id='E1', cuisine='mexican', popularity=0.6,
        )

    def test_search_entities_orders_by_relevance(self):
        """Test that search hits are ordered by relevance, keeping upstream order on ties."""
        self.client.get_json.return_value = {
            'results': [
                {'entity_id': 'x', 'name': 'X', 'score': 0.5},
                {'entity_id': 'y', 'name': 'Y', 'score': 0.9},
                {'entity_id': 'z', 'name': 'Z', 'score': 0.5},
                {'name': 'no id'},
            ]
        }

        candidates = self.enrichment.search_entities('Casa Verde', 'Austin', 'TX')

        self.assertEqual([c.entity_id for c in candidates], ['y', 'x', 'z'])
        url, params = self.client.get_json.call_args[0]
        self.assertEqual(url, 'https://taste.test/search')
        self.assertEqual(params['query'], 'Casa Verde')
        self.assertEqual(params['filter.location'], 'Austin, TX')

    def test_search_entities_empty(self):
        """Test that no hits gives an empty list."""
        self.client.get_json.return_value = {'results': []}

        self.assertEqual(self.enrichment.search_entities('Nowhere', 'Austin', 'TX'), [])

    def test_find_similar(self):
        """Test similar-restaurant parsing and the query filters."""
        self.client.get_json.return_value = similar_payload([
            place('s1', 0.9, ['Carnitas Tacos']),
            place('s2', 0.7, ['Carnitas Tacos', 'Elote']),
            place('s3', 0.8, ['carnitas tacos']),
        ])

        result = self.enrichment.find_similar('E1', 4.0, cuisine='Mexican', location='Austin, TX')

        self.assertEqual(len(result.restaurants), 3)
        self.assertEqual(result.specialty_dishes[0].dish_name, 'carnitas tacos')
        self.assertEqual(result.specialty_dishes[0].restaurant_count, 3)
        self.assertEqual(result.min_rating_filter, 4.0)

        url, params = self.client.get_json.call_args[0]
        self.assertEqual(url, 'https://taste.test/v2/insights')
        self.assertEqual(params['signal.interests.entities'], 'E1')
        self.assertEqual(params['filter.external.tripadvisor.rating.min'], 4.0)
        self.assertEqual(params['filter.tags'], 'urn:tag:genre:place:restaurant:mexican')

    def test_get_demographics(self):
        """Test demographics parsing."""
        self.client.get_json.return_value = DEMOGRAPHICS_PAYLOAD

        snapshot = self.enrichment.get_demographics('E1')

        self.assertEqual([g.age_range for g in snapshot.age_groups], ['25-34', '35-44'])
        self.assertEqual(snapshot.age_groups[0].preferences, ('spicy', 'vegan'))
        self.assertEqual(snapshot.interests, ('street food',))
        self.assertEqual(snapshot.dining_patterns[0].pattern, 'late night')
        self.assertFalse(snapshot.is_empty)

    def test_enrich_builds_snapshot(self):
        """Test a full enrichment with both calls succeeding."""
        self.client.get_json.side_effect = [
            similar_payload([place('s1', 0.9, ['Carnitas Tacos'])]),
            DEMOGRAPHICS_PAYLOAD,
        ]

        profile = self.enrichment.enrich(self.restaurant)

        self.assertEqual(profile.restaurant_id, 'r1')
        self.assertEqual(profile.entity_id, 'E1')
        self.assertEqual(profile.similar_restaurant_count, 1)
        self.assertEqual(profile.specialty_dishes[0].dish_name, 'carnitas tacos')
        self.assertEqual(profile.restaurant_popularity, 0.6)
        self.assertEqual(profile.warnings, ())
        self.assertEqual(self.client.get_json.call_count, 2)

    def test_enrich_keeps_going_when_demographics_fail(self):
        """Test that a failed demographics call leaves a warning, not an error."""
        self.client.get_json.side_effect = [
            similar_payload([place('s1', 0.9, ['Pozole'])]),
            TransientUpstream('insights returned 503', status_code=503),
        ]

        profile = self.enrichment.enrich(self.restaurant)

        self.assertIsNotNone(profile.similar)
        self.assertIsNone(profile.demographics)
        self.assertEqual(len(profile.warnings), 1)
        self.assertTrue(profile.warnings[0].startswith('demographics_unavailable'))

    def test_enrich_survives_unexpected_shapes(self):
        """Test that list-shaped or scalar bodies become warnings, not crashes."""
        self.client.get_json.side_effect = [
            {'results': [{'entity_id': 'x'}]},
            ['not', 'an', 'object'],
        ]

        profile = self.enrichment.enrich(self.restaurant)

        self.assertIsNone(profile.similar)
        self.assertIsNone(profile.demographics)
        self.assertEqual(len(profile.warnings), 2)
        self.assertTrue(profile.warnings[0].startswith('similar_unavailable'))
        self.assertTrue(profile.warnings[1].startswith('demographics_unavailable'))

    def test_unexpected_shapes_raise_malformed_output(self):
        """Test shape checks on each taste-graph call."""
        self.client.get_json.return_value = {'results': 'nope'}
        with self.assertRaises(MalformedOutput):
            self.enrichment.search_entities('Casa Verde', 'Austin', 'TX')

        self.client.get_json.return_value = similar_payload({'s1': place('s1', 0.9, [])})
        with self.assertRaises(MalformedOutput):
            self.enrichment.find_similar('E1', 4.0)

        self.client.get_json.return_value = {'data': {'demographics': {'type': 'age_group'}}}
        with self.assertRaises(MalformedOutput):
            self.enrichment.get_demographics('E1')

    def test_non_object_entries_are_skipped(self):
        """Test that stray scalars inside lists are ignored."""
        self.client.get_json.return_value = {'data': {
            'demographics': ['25-34', {'type': 'age_group', 'value': '25-34', 'percentage': 40}],
            'insights': [None],
        }}

        snapshot = self.enrichment.get_demographics('E1')

        self.assertEqual([g.age_range for g in snapshot.age_groups], ['25-34'])
        self.assertEqual(snapshot.dining_patterns, ())

    def test_enrich_without_entity_id(self):
        """Test that a restaurant without an entity id is not queried."""
        restaurant = Restaurant(restaurant_id='r2', name='Unlinked')

        profile = self.enrichment.enrich(restaurant)

        self.assertIsNone(profile.similar)
        self.assertEqual(profile.warnings, ('no_entity_id',))
        self.client.get_json.assert_not_called()

    def test_profile_round_trips_through_dict(self):
        """Test that stored snapshots load back unchanged."""
        self.client.get_json.side_effect = [
            similar_payload([place('s1', 0.9, ['Carnitas Tacos'])]),
            DEMOGRAPHICS_PAYLOAD,
        ]
        profile = self.enrichment.enrich(self.restaurant)

        self.assertEqual(TasteProfile.from_dict(profile.to_dict()), profile)


if __name__ == '__main__':
    unittest.main()
