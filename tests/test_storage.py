"""
Tests for record storage and the typed repository
"""

import unittest
from unittest.mock import MagicMock, Mock, patch

# Add parent directory to path
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from menu_intel.errors import ConfigurationError, NotFound
from menu_intel.models import (
    MenuItem, OptimizedMenuItem, RecordKind, Restaurant, ReviewStatus, ScoreRecord, TrendPoint
)
from menu_intel.data_pipeline.storage import InMemoryStorage, MenuRepository
from menu_intel.data_pipeline.database import DatabaseManager, PostgresStorage


class TestInMemoryStorage(unittest.TestCase):
    """Test the dict-backed storage."""

    def setUp(self):
        """Set up test fixtures."""
        self.storage = InMemoryStorage()

    def test_put_get_returns_copies(self):
        """Test that callers cannot mutate stored records in place."""
        record = {'restaurant_id': 'r1', 'tags': ['a']}
        self.storage.put(RecordKind.MENU_ITEM, 'i1', record)
        record['tags'].append('b')

        loaded = self.storage.get(RecordKind.MENU_ITEM, 'i1')
        loaded['tags'].append('c')

        self.assertEqual(self.storage.get(RecordKind.MENU_ITEM, 'i1')['tags'], ['a'])
        self.assertIsNone(self.storage.get(RecordKind.MENU_ITEM, 'missing'))

    def test_query_keeps_insertion_order(self):
        """Test ordering and filtering, with replaced records keeping their slot."""
        for key, restaurant in (('b', 'r1'), ('a', 'r2'), ('c', 'r1')):
            self.storage.put('thing', key, {'restaurant_id': restaurant, 'key': key, 'flag': key != 'c'})
        self.storage.put('thing', 'b', {'restaurant_id': 'r1', 'key': 'b', 'flag': False})

        self.assertEqual([r['key'] for r in self.storage.scan('thing')], ['b', 'a', 'c'])
        self.assertEqual([r['key'] for r in self.storage.query('thing', 'r1')], ['b', 'c'])
        self.assertEqual([r['key'] for r in self.storage.query('thing', flag=True)], ['a'])

    def test_update_missing_raises(self):
        """Test that updating an absent record is NotFound."""
        with self.assertRaises(NotFound):
            self.storage.update(RecordKind.MENU_ITEM, 'nope', {'name': 'x'})

    def test_compare_and_set(self):
        """Test the guarded update."""
        self.storage.put(RecordKind.OPTIMIZATION, 'o1', {'status': 'pending'})

        updated = self.storage.compare_and_set(RecordKind.OPTIMIZATION, 'o1', 'status', 'pending',
                                               {'status': 'approved'})
        again = self.storage.compare_and_set(RecordKind.OPTIMIZATION, 'o1', 'status', 'pending',
                                             {'status': 'rejected'})

        self.assertEqual(updated['status'], 'approved')
        self.assertIsNone(again)
        self.assertIsNone(self.storage.compare_and_set(RecordKind.OPTIMIZATION, 'o9', 'status', 'pending', {}))
        self.assertEqual(self.storage.get(RecordKind.OPTIMIZATION, 'o1')['status'], 'approved')


class TestMenuRepository(unittest.TestCase):
    """Test typed load and save."""

    def setUp(self):
        """Set up test fixtures."""
        self.repository = MenuRepository(InMemoryStorage())

    def test_restaurant_round_trip(self):
        """Test saving and loading a restaurant."""
        restaurant = Restaurant('r1', 'Casa Verde', 'Austin', 'TX', 'E1', 2, 'mexican', 0.6, ['tacos'])
        self.repository.save_restaurant(restaurant)

        self.assertEqual(self.repository.get_restaurant('r1'), restaurant)
        self.assertEqual(self.repository.get_restaurant('r1').location, 'Austin, TX')
        with self.assertRaises(NotFound):
            self.repository.get_restaurant('r2')

    def test_active_items(self):
        """Test that inactive items can be filtered out."""
        self.repository.save_item(MenuItem('i1', 'r1', 'Tacos'))
        self.repository.save_item(MenuItem('i2', 'r1', 'Old Tacos', is_active=False))
        self.repository.save_item(MenuItem('i3', 'r2', 'Other Tacos'))

        self.assertEqual([i.item_id for i in self.repository.list_items('r1')], ['i1', 'i2'])
        self.assertEqual([i.item_id for i in self.repository.list_items('r1', active_only=True)], ['i1'])

    def test_score_round_trip(self):
        """Test that trend points survive storage."""
        record = ScoreRecord('i1', 'r1', 50.0, 60.0, 55.0, (TrendPoint('2026-01-01T00:00:00+00:00', 'popularity', 50.0),))
        self.repository.save_score(record)

        self.assertEqual(self.repository.get_score('i1'), record)
        self.assertEqual(self.repository.list_scores('r1'), [record])

    def test_optimizations_by_status(self):
        """Test status filtering of reviewable records."""
        self.repository.save_optimization(OptimizedMenuItem('o1', 'i1', 'r1', 'A', 'B', '', 'b', 'why'))
        self.repository.save_optimization(OptimizedMenuItem(
            'o2', 'i2', 'r1', 'C', 'D', '', 'd', 'why', status=ReviewStatus.REJECTED
        ))

        pending = self.repository.list_optimizations('r1', ReviewStatus.PENDING)

        self.assertEqual([o.optimization_id for o in pending], ['o1'])
        self.assertEqual(len(self.repository.list_optimizations()), 2)
        self.assertIsNone(self.repository.get_optimization('o3'))


class TestPostgresStorage(unittest.TestCase):
    """Test SQL parameters of the JSONB storage without a database."""

    def setUp(self):
        """Set up a storage over a mocked database manager."""
        self.db = Mock()
        self.storage = PostgresStorage(self.db, table='records')

    def test_get(self):
        """Test lookup by kind and key."""
        self.db.execute_query.return_value = [{'body': {'name': 'Tacos'}}]

        self.assertEqual(self.storage.get(RecordKind.MENU_ITEM, 'i1'), {'name': 'Tacos'})
        _, params = self.db.execute_query.call_args[0]
        self.assertEqual(params, ('menu_item', 'i1'))

        self.db.execute_query.return_value = []
        self.assertIsNone(self.storage.get(RecordKind.MENU_ITEM, 'i2'))

    def test_put_indexes_restaurant(self):
        """Test that the restaurant id is stored alongside the body."""
        self.storage.put(RecordKind.MENU_ITEM, 'i1', {'restaurant_id': 'r1', 'name': 'Tacos'})

        _, params = self.db.execute_update.call_args[0]
        self.assertEqual(params[:3], ('menu_item', 'i1', 'r1'))
        self.assertEqual(params[3].adapted, {'restaurant_id': 'r1', 'name': 'Tacos'})

    def test_update_missing_raises(self):
        """Test NotFound when no row was updated."""
        self.db.execute_query.return_value = []

        with self.assertRaises(NotFound):
            self.storage.update(RecordKind.MENU_ITEM, 'nope', {'name': 'x'})

    def test_query_filters(self):
        """Test restaurant and containment filters."""
        self.db.execute_query.return_value = [{'body': {'k': 1}}, {'body': {'k': 2}}]

        rows = self.storage.query(RecordKind.OPTIMIZATION, 'r1', status='pending')

        self.assertEqual(rows, [{'k': 1}, {'k': 2}])
        _, params = self.db.execute_query.call_args[0]
        self.assertEqual(params[:2], ('optimized_menu_item', 'r1'))
        self.assertEqual(params[2].adapted, {'status': 'pending'})

    def test_compare_and_set_guard(self):
        """Test that the guard is a containment check and a miss returns None."""
        self.db.execute_query.return_value = []

        result = self.storage.compare_and_set(RecordKind.OPTIMIZATION, 'o1', 'status', 'pending',
                                              {'status': 'approved'})

        self.assertIsNone(result)
        _, params = self.db.execute_query.call_args[0]
        self.assertEqual(params[0].adapted, {'status': 'approved'})
        self.assertEqual(params[1:3], ('optimized_menu_item', 'o1'))
        self.assertEqual(params[3].adapted, {'status': 'pending'})


class TestDatabaseManager(unittest.TestCase):
    """Test transaction handling over a patched connection pool."""

    def setUp(self):
        """Set up a manager whose pool hands out a mock connection."""
        patcher = patch('menu_intel.data_pipeline.database.ThreadedConnectionPool')
        self.pool_class = patcher.start()
        self.addCleanup(patcher.stop)
        self.connection = MagicMock()
        self.cursor = self.connection.cursor.return_value.__enter__.return_value
        self.pool_class.return_value.getconn.return_value = self.connection
        self.db = DatabaseManager({'host': 'db.test', 'database': 'menu_intel'})

    def test_commit_on_success(self):
        """Test that a successful statement commits and returns the connection."""
        self.cursor.fetchall.return_value = [{'body': {}}]

        rows = self.db.execute_query('SELECT 1')

        self.assertEqual(rows, [{'body': {}}])
        self.connection.commit.assert_called_once()
        self.connection.rollback.assert_not_called()
        self.pool_class.return_value.putconn.assert_called_once_with(self.connection)

    def test_rollback_on_error(self):
        """Test that a failing statement rolls back and re-raises."""
        self.cursor.execute.side_effect = RuntimeError('syntax error')

        with self.assertRaises(RuntimeError):
            self.db.execute_update('UPDATE nothing')

        self.connection.rollback.assert_called_once()
        self.connection.commit.assert_not_called()
        self.pool_class.return_value.putconn.assert_called_once_with(self.connection)

    def test_pool_bounds(self):
        """Test that pool bounds are validated."""
        with self.assertRaises(ConfigurationError):
            DatabaseManager({'host': 'db.test'}, min_connections=5, max_connections=2)


if __name__ == '__main__':
    unittest.main()
