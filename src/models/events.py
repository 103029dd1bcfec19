"""
Event models for the event-driven architecture.
Contains the base event envelope and the events the categorization engine reacts to.
"""
from dataclasses import dataclass
from typing import Dict, Any, Optional, List
from datetime import datetime
import uuid
import json


@dataclass
class BaseEvent:
    """Base event structure for all events in the system"""
    event_id: str
    event_type: str
    event_version: str
    timestamp: int  # Unix timestamp in milliseconds
    source: str
    user_id: str
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_eventbridge_format(self) -> Dict[str, Any]:
        """Convert to EventBridge event format"""
        return {
            'Source': self.source,
            'DetailType': self.event_type,
            'Detail': json.dumps({
                'eventId': self.event_id,
                'eventVersion': self.event_version,
                'timestamp': self.timestamp,
                'userId': self.user_id,
                'correlationId': self.correlation_id,
                'causationId': self.causation_id,
                'data': self.data or {},
                'metadata': self.metadata or {}
            })
        }


# =============================================================================
# PATTERN EVENTS
# =============================================================================

PATTERN_CREATED = 'pattern.created'
PATTERN_UPDATED = 'pattern.updated'
PATTERN_DEACTIVATED = 'pattern.deactivated'
CATEGORIZATION_FEEDBACK = 'categorization.feedback'

PATTERN_CHANGE_EVENT_TYPES = (PATTERN_CREATED, PATTERN_UPDATED, PATTERN_DEACTIVATED)


@dataclass
class PatternChangedEvent(BaseEvent):
    """Published by pattern administration whenever a pattern is created, edited or deactivated"""

    def __init__(self, user_id: str, change_type: str, pattern_id: Optional[str] = None,
                 category_id: Optional[str] = None, previous_category_id: Optional[str] = None,
                 **kwargs):
        if change_type not in PATTERN_CHANGE_EVENT_TYPES:
            raise ValueError(f"Unsupported pattern change type: {change_type}")
        super().__init__(
            event_id=str(uuid.uuid4()),
            event_type=change_type,
            event_version='1.0',
            timestamp=int(datetime.now().timestamp() * 1000),
            source='pattern.admin',
            user_id=user_id,
            data={
                'patternId': pattern_id,
                'categoryId': category_id,
                'previousCategoryId': previous_category_id,
                **kwargs
            }
        )


@dataclass
class CategorizationFeedbackEvent(BaseEvent):
    """Published after a user confirms or corrects a suggested category"""

    def __init__(self, user_id: str, transaction_id: str, pattern_ids: List[str],
                 accepted: bool, correct_category_id: Optional[str] = None, **kwargs):
        super().__init__(
            event_id=str(uuid.uuid4()),
            event_type=CATEGORIZATION_FEEDBACK,
            event_version='1.0',
            timestamp=int(datetime.now().timestamp() * 1000),
            source='categorization.service',
            user_id=user_id,
            data={
                'transactionId': transaction_id,
                'patternIds': pattern_ids,
                'accepted': accepted,
                'correctCategoryId': correct_category_id,
                **kwargs
            }
        )
