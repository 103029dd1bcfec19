"""
Tests for user preference database operations against moto DynamoDB.
"""
import unittest
import uuid
from unittest.mock import patch

from botocore.exceptions import ClientError
from moto import mock_aws

from tests.fixtures.categorization_fixtures import create_dynamodb_tables
from utils.db.base import ConflictError, tables
from utils.db.preferences import (
    RECORD_ATTEMPTS,
    get_user_preference_from_db,
    record_user_preference_in_db,
)

DINING = uuid.UUID("00000000-0000-0000-0000-0000000000d1")
TRANSPORT = uuid.UUID("00000000-0000-0000-0000-0000000000f1")


def conditional_failure(operation):
    return ClientError(
        {'Error': {'Code': 'ConditionalCheckFailedException', 'Message': 'condition failed'}},
        operation
    )


class TestPreferencesDB(unittest.TestCase):

    def setUp(self):
        self.mock_aws = mock_aws()
        self.mock_aws.start()
        create_dynamodb_tables()

    def tearDown(self):
        self.mock_aws.stop()

    def test_missing_preference(self):
        self.assertIsNone(get_user_preference_from_db("starbucks"))

    def test_first_correction_creates_preference(self):
        created = record_user_preference_in_db("starbucks", DINING)

        loaded = get_user_preference_from_db("starbucks")
        self.assertEqual(loaded.category_id, DINING)
        self.assertEqual((loaded.preference_weight, loaded.usage_count), (1, 1))
        self.assertEqual(loaded, created)

    def test_repeated_corrections_strengthen(self):
        for _ in range(3):
            latest = record_user_preference_in_db("starbucks", DINING)

        self.assertEqual((latest.preference_weight, latest.usage_count), (3, 3))
        self.assertEqual(get_user_preference_from_db("starbucks").preference_weight, 3)

    def test_correction_to_other_category_replaces(self):
        record_user_preference_in_db("uber", DINING)
        record_user_preference_in_db("uber", DINING)

        replaced = record_user_preference_in_db("uber", TRANSPORT)

        self.assertEqual(replaced.category_id, TRANSPORT)
        self.assertEqual(replaced.preference_weight, 1)
        self.assertEqual(get_user_preference_from_db("uber").category_id, TRANSPORT)

    def test_gives_up_when_always_overtaken(self):
        table = tables.preferences
        with patch.object(table, 'update_item', side_effect=conditional_failure('UpdateItem')) as update, \
                patch.object(table, 'put_item', side_effect=conditional_failure('PutItem')):
            with self.assertRaises(ConflictError):
                record_user_preference_in_db("starbucks", DINING)

        self.assertEqual(update.call_count, RECORD_ATTEMPTS)

    def test_lost_create_race_strengthens_winner(self):
        table = tables.preferences
        original_put = table.put_item

        def racing_put(**kwargs):
            # another learner stores the same preference first
            original_put(Item=kwargs['Item'])
            raise conditional_failure('PutItem')

        with patch.object(table, 'put_item', side_effect=racing_put):
            preference = record_user_preference_in_db("starbucks", DINING)

        self.assertEqual(preference.preference_weight, 2)


if __name__ == '__main__':
    unittest.main()
