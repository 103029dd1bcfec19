"""
Category database operations.

This module provides the category reads and writes the categorization engine needs.
"""

import logging
import uuid
from typing import List, Dict, Any, Optional

from models.category import Category
from .base import (
    tables,
    dynamodb_operation,
    retry_on_throttle,
    monitor_performance,
    NotFound,
)

logger = logging.getLogger(__name__)


def checked_mandatory_category(category_id: uuid.UUID) -> Category:
    """
    Return the category or raise.

    Raises:
        NotFound: If the category doesn't exist
    """
    category = get_category_by_id_from_db(category_id)
    if not category:
        raise NotFound("Category not found")
    return category


@retry_on_throttle(max_attempts=3)
@dynamodb_operation("create_category_in_db")
def create_category_in_db(category: Category) -> Category:
    """
    Persist a new category to DynamoDB.

    Raises:
        ConnectionError: If database table is not initialized
    """
    table = tables.categories
    if not table:
        logger.error("DB: Categories table not initialized for create_category_in_db")
        raise ConnectionError("Database table not initialized")

    table.put_item(Item=category.to_dynamodb_item())
    logger.info(f"DB: Category {str(category.category_id)} ({category.name}) created successfully.")
    return category


@monitor_performance(warn_threshold_ms=200)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("get_category_by_id_from_db")
def get_category_by_id_from_db(category_id: uuid.UUID) -> Optional[Category]:
    """Retrieve a category by ID, or None if it does not exist."""
    table = tables.categories
    if not table:
        logger.error("DB: Categories table not initialized for get_category_by_id_from_db")
        return None

    logger.debug(f"DB: Getting category {str(category_id)}")
    response = table.get_item(Key={'categoryId': str(category_id)})
    item = response.get('Item')
    return Category.from_dynamodb_item(item) if item else None


@monitor_performance(operation_type="query", warn_threshold_ms=500)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("list_categories_from_db")
def list_categories_from_db() -> List[Category]:
    """List all categories."""
    table = tables.categories
    if not table:
        logger.error("DB: Categories table not initialized for list_categories_from_db")
        return []

    params: Dict[str, Any] = {}
    categories: List[Category] = []
    while True:
        response = table.scan(**params)
        categories.extend(Category.from_dynamodb_item(item) for item in response.get('Items', []))
        last_key = response.get('LastEvaluatedKey')
        if not last_key:
            break
        params['ExclusiveStartKey'] = last_key

    logger.info(f"DB: Found {len(categories)} categories")
    return categories
