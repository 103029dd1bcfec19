"""
User preference database operations.

Preferences are keyed by merchantKey. Repeated corrections toward the same
category raise the weight with an atomic ADD; a correction toward another
category replaces the preference.
"""

import logging
import uuid
from typing import Any, Optional

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from models.preference import UserPreference
from .base import (
    tables,
    dynamodb_operation,
    retry_on_throttle,
    monitor_performance,
    current_timestamp,
    ConflictError,
)

logger = logging.getLogger(__name__)

# Lost races between "strengthen" and "replace" are retried this many times
RECORD_ATTEMPTS = 3


def _preferences_table(operation: str) -> Any:
    table = tables.preferences
    if not table:
        logger.error(f"DB: Preferences table not initialized for {operation}")
        raise ConnectionError("Database table not initialized")
    return table


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException'


@monitor_performance(warn_threshold_ms=200)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("get_user_preference_from_db")
def get_user_preference_from_db(merchant_key: str) -> Optional[UserPreference]:
    """Retrieve the preference for a merchant key, or None."""
    table = _preferences_table("get_user_preference_from_db")
    response = table.get_item(Key={'merchantKey': merchant_key})
    item = response.get('Item')
    return UserPreference.from_dynamodb_item(item) if item else None


@retry_on_throttle(max_attempts=3)
@dynamodb_operation("record_user_preference_in_db")
def record_user_preference_in_db(merchant_key: str, category_id: uuid.UUID) -> UserPreference:
    """
    Record one correction of merchant_key to category_id.

    An existing preference for the same category gains one weight and one use.
    A missing preference, or one for another category, is replaced by a fresh
    one with weight 1.

    Raises:
        ConflictError: If concurrent writers kept winning every attempt
    """
    table = _preferences_table("record_user_preference_in_db")

    for _ in range(RECORD_ATTEMPTS):
        try:
            response = table.update_item(
                Key={'merchantKey': merchant_key},
                UpdateExpression='ADD preferenceWeight :one, usageCount :one SET updatedAt = :now',
                ConditionExpression=Attr('categoryId').eq(str(category_id)),
                ExpressionAttributeValues={':one': 1, ':now': current_timestamp()},
                ReturnValues='ALL_NEW'
            )
            return UserPreference.from_dynamodb_item(response['Attributes'])
        except ClientError as e:
            if not _is_conditional_failure(e):
                raise

        preference = UserPreference(merchant_key=merchant_key, category_id=category_id)
        try:
            table.put_item(
                Item=preference.to_dynamodb_item(),
                ConditionExpression=(
                    Attr('merchantKey').not_exists() | Attr('categoryId').ne(str(category_id))
                )
            )
        except ClientError as e:
            if not _is_conditional_failure(e):
                raise
            # another writer created the same preference first, strengthen it instead
            continue

        logger.info(f"DB: Preference for '{merchant_key}' set to category {str(category_id)}")
        return preference

    raise ConflictError(f"Preference for '{merchant_key}' kept changing, giving up")
