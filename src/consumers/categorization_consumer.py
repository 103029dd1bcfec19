"""
Categorization Event Consumer Lambda

Keeps the pattern cache and pattern statistics in step with the rest of the system.

Event Types Processed:
- pattern.created / pattern.updated / pattern.deactivated: invalidate the cached
  patterns of the affected categories, or the whole cache namespace when the
  event carries no category
- categorization.feedback: record accepted/rejected outcomes for the patterns that
  produced a suggestion, and learn from corrections when the transaction is included
"""

import logging
import uuid
from typing import Any, Dict, Optional, Set

from pydantic import ValidationError

from consumers.base_consumer import BaseEventConsumer, EventProcessingError, create_lambda_handler
from models.events import BaseEvent, CATEGORIZATION_FEEDBACK, PATTERN_CHANGE_EVENT_TYPES
from models.transaction import Transaction
from services.categorization.config import CategorizationConfig
from services.categorization.errors import CacheUnavailableError
from services.categorization.learning import PatternLearner
from services.categorization.pattern_cache import PatternCache

logger = logging.getLogger(__name__)


class CategorizationEventConsumer(BaseEventConsumer):
    """Consumer for pattern changes and categorization feedback"""

    HANDLED_EVENT_TYPES = set(PATTERN_CHANGE_EVENT_TYPES) | {CATEGORIZATION_FEEDBACK}

    def __init__(self, pattern_cache: Optional[PatternCache] = None,
                 learner: Optional[PatternLearner] = None):
        super().__init__("categorization_consumer")
        config = CategorizationConfig.from_environment()
        if pattern_cache is None:
            pattern_cache = PatternCache.from_config(config)
        self.pattern_cache = pattern_cache
        self.learner = learner or PatternLearner(self.pattern_cache, config.learning)

    def should_process_event(self, event: BaseEvent) -> bool:
        return event.event_type in self.HANDLED_EVENT_TYPES

    def process_event(self, event: BaseEvent) -> None:
        self.validate_event(event)
        if event.event_type == CATEGORIZATION_FEEDBACK:
            self._handle_feedback(event)
        else:
            self._handle_pattern_change(event)

    def _handle_pattern_change(self, event: BaseEvent) -> None:
        data = event.data or {}
        scopes: Set[uuid.UUID] = set()
        for field_name in ('categoryId', 'previousCategoryId'):
            if data.get(field_name):
                scopes.add(self._parse_uuid(data[field_name], field_name, event))

        try:
            if not scopes:
                logger.info(f"{event.event_type} event {event.event_id} has no category, invalidating namespace")
                self.pattern_cache.invalidate_all()
                return
            for category_id in sorted(scopes, key=str):
                self.pattern_cache.invalidate_category(category_id)
        except CacheUnavailableError as e:
            raise EventProcessingError(
                f"Cache invalidation failed: {str(e)}",
                event_id=event.event_id,
                permanent=False
            )

        logger.info(f"Invalidated {len(scopes)} categories for {event.event_type} event {event.event_id}")

    def _handle_feedback(self, event: BaseEvent) -> None:
        data = event.data or {}
        accepted = data.get('accepted')
        if not isinstance(accepted, bool):
            raise EventProcessingError("Feedback event requires a boolean 'accepted'",
                                       event_id=event.event_id, permanent=True)

        pattern_ids = [self._parse_uuid(pid, 'patternIds', event) for pid in data.get('patternIds') or []]
        if pattern_ids:
            updated = self.learner.record_outcome(pattern_ids, accepted)
            logger.info(f"Recorded {'accepted' if accepted else 'rejected'} outcome for "
                        f"{len(updated)}/{len(pattern_ids)} patterns from event {event.event_id}")

        correct_category = data.get('correctCategoryId')
        transaction_data = data.get('transaction')
        if not accepted and correct_category and transaction_data:
            transaction = self._parse_transaction(transaction_data, event)
            result = self.learner.learn_from_correction(
                transaction,
                self._parse_uuid(correct_category, 'correctCategoryId', event),
                pattern_ids
            )
            if not result.success:
                raise EventProcessingError(f"Correction not applied: {result.error}",
                                           event_id=event.event_id, permanent=True)

    @staticmethod
    def _parse_uuid(value: Any, field_name: str, event: BaseEvent) -> uuid.UUID:
        try:
            return uuid.UUID(str(value))
        except ValueError:
            raise EventProcessingError(f"Invalid {field_name}: {value}", event_id=event.event_id, permanent=True)

    @staticmethod
    def _parse_transaction(data: Dict[str, Any], event: BaseEvent) -> Transaction:
        try:
            return Transaction.model_validate(data)
        except ValidationError as e:
            raise EventProcessingError(f"Invalid transaction in feedback: {str(e)}",
                                       event_id=event.event_id, permanent=True)


handler = create_lambda_handler(CategorizationEventConsumer)
