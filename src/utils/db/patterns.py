"""
Pattern database operations.

Patterns are keyed by patternId with a CategoryIdIndex GSI for per-category
reads. Outcome counters are only ever changed with atomic ADD updates.
"""

import logging
import uuid
from decimal import Decimal
from typing import List, Optional, Dict, Any

from boto3.dynamodb.conditions import Key, Attr
from botocore.exceptions import ClientError

from models.pattern import Pattern
from .base import (
    tables,
    dynamodb_operation,
    retry_on_throttle,
    monitor_performance,
    validate_params,
    is_valid_uuid,
    current_timestamp,
    NotFound,
)

logger = logging.getLogger(__name__)

CATEGORY_INDEX = 'CategoryIdIndex'


def _patterns_table(operation: str) -> Any:
    table = tables.patterns
    if not table:
        logger.error(f"DB: Patterns table not initialized for {operation}")
        raise ConnectionError("Database table not initialized")
    return table


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException'


# ============================================================================
# CRUD Operations
# ============================================================================

@retry_on_throttle(max_attempts=3)
@dynamodb_operation("create_pattern_in_db")
def create_pattern_in_db(pattern: Pattern) -> Pattern:
    """
    Persist a new pattern.

    Raises:
        ConnectionError: If database table is not initialized
    """
    table = _patterns_table("create_pattern_in_db")
    table.put_item(Item=pattern.to_dynamodb_item())
    logger.info(
        f"DB: Pattern {str(pattern.pattern_id)} ({pattern.pattern_type.value}) created "
        f"for category {str(pattern.category_id)}"
    )
    return pattern


@retry_on_throttle(max_attempts=3)
@dynamodb_operation("create_composite_pattern_in_db")
def create_composite_pattern_in_db(pattern: Pattern) -> Pattern:
    """
    Persist a composite pattern after checking its components.

    Raises:
        ValueError: If the pattern is not a composite, or a component is missing,
            belongs to another category or is itself a composite
    """
    if not pattern.is_composite:
        raise ValueError(f"Pattern {str(pattern.pattern_id)} is not a composite")

    problems: List[str] = []
    for component_id in pattern.component_ids:
        component = get_pattern_from_db(component_id)
        if component is None:
            problems.append(f"{str(component_id)} does not exist")
        elif component.category_id != pattern.category_id:
            problems.append(f"{str(component_id)} belongs to category {str(component.category_id)}")
        elif component.is_composite:
            problems.append(f"{str(component_id)} is a composite")
    if problems:
        raise ValueError(f"Invalid composite components: {'; '.join(problems)}")

    return create_pattern_in_db(pattern)


@monitor_performance(warn_threshold_ms=200)
@retry_on_throttle(max_attempts=3)
@validate_params(pattern_id=is_valid_uuid)
@dynamodb_operation("get_pattern_from_db")
def get_pattern_from_db(pattern_id: uuid.UUID) -> Optional[Pattern]:
    """Retrieve a pattern by ID, or None if it does not exist."""
    table = _patterns_table("get_pattern_from_db")
    response = table.get_item(Key={'patternId': str(pattern_id)})
    item = response.get('Item')
    return Pattern.from_dynamodb_item(item) if item else None


@monitor_performance(operation_type="query", warn_threshold_ms=500)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("list_active_patterns_from_db")
def list_active_patterns_from_db(category_id: Optional[uuid.UUID] = None) -> List[Pattern]:
    """
    List active patterns, optionally limited to one category.

    The per-category path is a GSI query; the unscoped path pages through the
    table and is only used to rebuild the cache index.
    """
    table = _patterns_table("list_active_patterns_from_db")

    if category_id is not None:
        params: Dict[str, Any] = {
            'IndexName': CATEGORY_INDEX,
            'KeyConditionExpression': Key('categoryId').eq(str(category_id)),
            'FilterExpression': Attr('active').eq(True),
        }
        operation = table.query
    else:
        params = {'FilterExpression': Attr('active').eq(True)}
        operation = table.scan

    patterns: List[Pattern] = []
    while True:
        response = operation(**params)
        for item in response.get('Items', []):
            try:
                patterns.append(Pattern.from_dynamodb_item(item))
            except ValueError as e:
                logger.error(f"DB: Skipping unreadable pattern {item.get('patternId')}: {str(e)}")
        last_key = response.get('LastEvaluatedKey')
        if not last_key:
            break
        params['ExclusiveStartKey'] = last_key

    logger.debug(f"DB: Loaded {len(patterns)} active patterns (category={category_id})")
    return patterns


@monitor_performance(operation_type="query", warn_threshold_ms=500)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("list_stale_patterns_from_db")
def list_stale_patterns_from_db(updated_before: int) -> List[Pattern]:
    """Active, non-user-created patterns not updated since updated_before (ms)."""
    table = _patterns_table("list_stale_patterns_from_db")
    params: Dict[str, Any] = {
        'FilterExpression': (
            Attr('active').eq(True)
            & Attr('userCreated').eq(False)
            & Attr('updatedAt').lt(updated_before)
        )
    }

    patterns: List[Pattern] = []
    while True:
        response = table.scan(**params)
        patterns.extend(Pattern.from_dynamodb_item(item) for item in response.get('Items', []))
        last_key = response.get('LastEvaluatedKey')
        if not last_key:
            break
        params['ExclusiveStartKey'] = last_key
    return patterns


@monitor_performance(operation_type="query", warn_threshold_ms=500)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("find_pattern_from_db")
def find_pattern_from_db(category_id: uuid.UUID, pattern_type: str, value: str) -> Optional[Pattern]:
    """Find a pattern in a category by type and exact value, active or not."""
    table = _patterns_table("find_pattern_from_db")
    params: Dict[str, Any] = {
        'IndexName': CATEGORY_INDEX,
        'KeyConditionExpression': Key('categoryId').eq(str(category_id)),
        'FilterExpression': Attr('patternType').eq(pattern_type) & Attr('value').eq(value),
    }
    while True:
        response = table.query(**params)
        items = response.get('Items', [])
        if items:
            return Pattern.from_dynamodb_item(items[0])
        last_key = response.get('LastEvaluatedKey')
        if not last_key:
            return None
        params['ExclusiveStartKey'] = last_key


# ============================================================================
# Atomic Updates
# ============================================================================

@monitor_performance(warn_threshold_ms=200)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("record_pattern_outcome_in_db")
def record_pattern_outcome_in_db(pattern_id: uuid.UUID, accepted: bool) -> Pattern:
    """
    Atomically apply one categorization outcome to a pattern.

    usageCount always increases by one, successCount by one only when accepted.
    Both counters move in a single UpdateItem so concurrent callers never
    observe or produce a torn pair.

    Raises:
        NotFound: If the pattern does not exist
    """
    table = _patterns_table("record_pattern_outcome_in_db")
    try:
        response = table.update_item(
            Key={'patternId': str(pattern_id)},
            UpdateExpression='ADD usageCount :one, successCount :success SET updatedAt = :now',
            ConditionExpression=Attr('patternId').exists(),
            ExpressionAttributeValues={
                ':one': 1,
                ':success': 1 if accepted else 0,
                ':now': current_timestamp(),
            },
            ReturnValues='ALL_NEW'
        )
    except ClientError as e:
        if _is_conditional_failure(e):
            raise NotFound(f"Pattern {str(pattern_id)} not found")
        raise
    return Pattern.from_dynamodb_item(response['Attributes'])


@retry_on_throttle(max_attempts=3)
@dynamodb_operation("update_pattern_weight_in_db")
def update_pattern_weight_in_db(pattern_id: uuid.UUID, confidence_weight: float) -> Pattern:
    """
    Set a pattern's confidence weight.

    Raises:
        NotFound: If the pattern does not exist
    """
    table = _patterns_table("update_pattern_weight_in_db")
    try:
        response = table.update_item(
            Key={'patternId': str(pattern_id)},
            UpdateExpression='SET confidenceWeight = :weight, updatedAt = :now',
            ConditionExpression=Attr('patternId').exists(),
            ExpressionAttributeValues={
                ':weight': Decimal(str(confidence_weight)),
                ':now': current_timestamp(),
            },
            ReturnValues='ALL_NEW'
        )
    except ClientError as e:
        if _is_conditional_failure(e):
            raise NotFound(f"Pattern {str(pattern_id)} not found")
        raise
    return Pattern.from_dynamodb_item(response['Attributes'])


@retry_on_throttle(max_attempts=3)
@dynamodb_operation("deactivate_pattern_in_db")
def deactivate_pattern_in_db(pattern_id: uuid.UUID) -> bool:
    """
    Mark a pattern inactive. Patterns are never deleted by the engine.

    Returns:
        True if the pattern was active before this call, False if it already was inactive

    Raises:
        NotFound: If the pattern does not exist
    """
    table = _patterns_table("deactivate_pattern_in_db")
    try:
        table.update_item(
            Key={'patternId': str(pattern_id)},
            UpdateExpression='SET active = :inactive, updatedAt = :now',
            ConditionExpression=Attr('patternId').exists() & Attr('active').eq(True),
            ExpressionAttributeValues={
                ':inactive': False,
                ':now': current_timestamp(),
            }
        )
    except ClientError as e:
        if not _is_conditional_failure(e):
            raise
        if get_pattern_from_db(pattern_id) is None:
            raise NotFound(f"Pattern {str(pattern_id)} not found")
        return False

    logger.info(f"DB: Pattern {str(pattern_id)} deactivated")
    return True


@retry_on_throttle(max_attempts=3)
@dynamodb_operation("record_pattern_correction_in_db")
def record_pattern_correction_in_db(candidate: Pattern) -> Pattern:
    """
    Count one user correction toward a learned candidate pattern.

    The candidate is created with correctionCount 1 if its id is not stored
    yet, otherwise correctionCount is incremented atomically. Candidates use
    deterministic ids so concurrent learners converge on one item.
    """
    table = _patterns_table("record_pattern_correction_in_db")
    first = candidate.model_copy(update={'correction_count': 1})
    try:
        table.put_item(
            Item=first.to_dynamodb_item(),
            ConditionExpression=Attr('patternId').not_exists()
        )
        logger.info(f"DB: Candidate pattern {str(candidate.pattern_id)} '{candidate.value}' created")
        return first
    except ClientError as e:
        if not _is_conditional_failure(e):
            raise

    response = table.update_item(
        Key={'patternId': str(candidate.pattern_id)},
        UpdateExpression='ADD correctionCount :one SET updatedAt = :now',
        ExpressionAttributeValues={':one': 1, ':now': current_timestamp()},
        ReturnValues='ALL_NEW'
    )
    return Pattern.from_dynamodb_item(response['Attributes'])


@retry_on_throttle(max_attempts=3)
@dynamodb_operation("activate_pattern_in_db")
def activate_pattern_in_db(pattern_id: uuid.UUID, metadata: Dict[str, Any]) -> bool:
    """
    Mark an inactive pattern active and replace its metadata.

    Returns:
        True if this call activated it, False if it was already active or missing
    """
    table = _patterns_table("activate_pattern_in_db")
    try:
        table.update_item(
            Key={'patternId': str(pattern_id)},
            UpdateExpression='SET #active = :active, #metadata = :metadata, updatedAt = :now',
            ConditionExpression=Attr('patternId').exists() & Attr('active').eq(False),
            ExpressionAttributeNames={'#active': 'active', '#metadata': 'metadata'},
            ExpressionAttributeValues={
                ':active': True,
                ':metadata': metadata,
                ':now': current_timestamp(),
            }
        )
    except ClientError as e:
        if _is_conditional_failure(e):
            return False
        raise

    logger.info(f"DB: Pattern {str(pattern_id)} activated")
    return True


@retry_on_throttle(max_attempts=3)
@dynamodb_operation("merge_pattern_stats_in_db")
def merge_pattern_stats_in_db(
    pattern_id: uuid.UUID,
    usage_count: int,
    success_count: int,
    confidence_weight: float,
    metadata: Dict[str, Any]
) -> Pattern:
    """
    Fold a merged pattern's statistics into pattern_id.

    Counters are added atomically; weight and metadata are replaced.

    Raises:
        NotFound: If the pattern does not exist
    """
    table = _patterns_table("merge_pattern_stats_in_db")
    try:
        response = table.update_item(
            Key={'patternId': str(pattern_id)},
            UpdateExpression=(
                'ADD usageCount :usage, successCount :success '
                'SET confidenceWeight = :weight, #metadata = :metadata, updatedAt = :now'
            ),
            ConditionExpression=Attr('patternId').exists(),
            ExpressionAttributeNames={'#metadata': 'metadata'},
            ExpressionAttributeValues={
                ':usage': usage_count,
                ':success': success_count,
                ':weight': Decimal(str(confidence_weight)),
                ':metadata': metadata,
                ':now': current_timestamp(),
            },
            ReturnValues='ALL_NEW'
        )
    except ClientError as e:
        if _is_conditional_failure(e):
            raise NotFound(f"Pattern {str(pattern_id)} not found")
        raise
    return Pattern.from_dynamodb_item(response['Attributes'])
