"""
Unit tests for the categorization event consumer.
"""

import json
import uuid
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from consumers.base_consumer import EventProcessingError, RetryableBatchError, create_lambda_handler
from consumers.categorization_consumer import CategorizationEventConsumer
from models.events import (
    BaseEvent,
    CategorizationFeedbackEvent,
    PatternChangedEvent,
    PATTERN_DEACTIVATED,
    PATTERN_UPDATED,
)
from services.categorization.errors import CacheUnavailableError
from services.categorization.learning import LearningResult, PatternLearner
from services.categorization.pattern_cache import PatternCache

DINING = "00000000-0000-0000-0000-0000000000d1"
TRANSPORT = "00000000-0000-0000-0000-0000000000f1"


def _eventbridge_record(event: BaseEvent):
    """Wrap an event the way EventBridge delivers it to Lambda"""
    formatted = event.to_eventbridge_format()
    return {
        'source': formatted['Source'],
        'detail-type': formatted['DetailType'],
        'detail': json.loads(formatted['Detail']),
    }


def _sqs_record(event: BaseEvent, message_id: str = "msg-1"):
    return {'messageId': message_id, 'body': json.dumps(_eventbridge_record(event))}


def _transaction_payload():
    return {
        'transactionId': 'txn-42',
        'merchantName': 'STARBUCKS #4521',
        'amount': '-5.75',
        'date': int(datetime(2024, 6, 11, 9, 15).timestamp() * 1000),
    }


@pytest.fixture
def pattern_cache():
    return MagicMock(spec=PatternCache)


@pytest.fixture
def learner():
    mock = MagicMock(spec=PatternLearner)
    mock.record_outcome.return_value = []
    mock.learn_from_correction.return_value = LearningResult(success=True)
    return mock


@pytest.fixture
def consumer(pattern_cache, learner):
    return CategorizationEventConsumer(pattern_cache=pattern_cache, learner=learner)


class TestPatternChangeEvents:
    def test_scoped_invalidation(self, consumer, pattern_cache):
        event = PatternChangedEvent("user-1", PATTERN_UPDATED, pattern_id=str(uuid.uuid4()),
                                    category_id=DINING, previous_category_id=TRANSPORT)

        consumer.process_event(event)

        invalidated = [c.args[0] for c in pattern_cache.invalidate_category.call_args_list]
        assert invalidated == [uuid.UUID(DINING), uuid.UUID(TRANSPORT)]
        pattern_cache.invalidate_all.assert_not_called()

    def test_single_category(self, consumer, pattern_cache):
        consumer.process_event(PatternChangedEvent("user-1", PATTERN_DEACTIVATED, category_id=DINING))

        pattern_cache.invalidate_category.assert_called_once_with(uuid.UUID(DINING))

    def test_no_category_invalidates_namespace(self, consumer, pattern_cache):
        consumer.process_event(PatternChangedEvent("user-1", PATTERN_UPDATED))

        pattern_cache.invalidate_all.assert_called_once_with()
        pattern_cache.invalidate_category.assert_not_called()

    def test_cache_unavailable_is_retryable(self, consumer, pattern_cache):
        pattern_cache.invalidate_category.side_effect = CacheUnavailableError("shared tier down")

        with pytest.raises(EventProcessingError) as exc_info:
            consumer.process_event(PatternChangedEvent("user-1", PATTERN_UPDATED, category_id=DINING))

        assert exc_info.value.permanent is False

    def test_invalid_category_is_permanent(self, consumer):
        with pytest.raises(EventProcessingError) as exc_info:
            consumer.process_event(PatternChangedEvent("user-1", PATTERN_UPDATED, category_id="not-a-uuid"))

        assert exc_info.value.permanent is True

    def test_unsupported_change_type(self):
        with pytest.raises(ValueError):
            PatternChangedEvent("user-1", "pattern.renamed")


class TestFeedbackEvents:
    def test_accepted_records_outcome(self, consumer, learner):
        pattern_ids = [str(uuid.uuid4()), str(uuid.uuid4())]

        consumer.process_event(CategorizationFeedbackEvent("user-1", "txn-1", pattern_ids, accepted=True))

        learner.record_outcome.assert_called_once_with([uuid.UUID(p) for p in pattern_ids], True)
        learner.learn_from_correction.assert_not_called()

    def test_rejection_without_correction(self, consumer, learner):
        pattern_id = str(uuid.uuid4())

        consumer.process_event(CategorizationFeedbackEvent("user-1", "txn-1", [pattern_id], accepted=False))

        learner.record_outcome.assert_called_once_with([uuid.UUID(pattern_id)], False)
        learner.learn_from_correction.assert_not_called()

    def test_correction_learns(self, consumer, learner):
        pattern_id = str(uuid.uuid4())
        event = CategorizationFeedbackEvent("user-1", "txn-42", [pattern_id], accepted=False,
                                            correct_category_id=DINING, transaction=_transaction_payload())

        consumer.process_event(event)

        transaction, category_id, rejected = learner.learn_from_correction.call_args.args
        assert transaction.transaction_id == "txn-42"
        assert transaction.merchant_name == "STARBUCKS #4521"
        assert category_id == uuid.UUID(DINING)
        assert rejected == [uuid.UUID(pattern_id)]

    def test_failed_correction_is_permanent(self, consumer, learner):
        learner.learn_from_correction.return_value = LearningResult.invalid("Category not found")
        event = CategorizationFeedbackEvent("user-1", "txn-42", [], accepted=False,
                                            correct_category_id=DINING, transaction=_transaction_payload())

        with pytest.raises(EventProcessingError) as exc_info:
            consumer.process_event(event)

        assert exc_info.value.permanent is True
        assert "Category not found" in str(exc_info.value)

    def test_invalid_transaction_is_permanent(self, consumer):
        event = CategorizationFeedbackEvent("user-1", "txn-42", [], accepted=False,
                                            correct_category_id=DINING, transaction={'amount': 'lots'})

        with pytest.raises(EventProcessingError) as exc_info:
            consumer.process_event(event)

        assert exc_info.value.permanent is True

    def test_missing_accepted_flag(self, consumer):
        event = CategorizationFeedbackEvent("user-1", "txn-1", [], accepted=True)
        event.data['accepted'] = "yes"

        with pytest.raises(EventProcessingError) as exc_info:
            consumer.process_event(event)

        assert exc_info.value.permanent is True

    def test_invalid_pattern_id(self, consumer, learner):
        with pytest.raises(EventProcessingError):
            consumer.process_event(CategorizationFeedbackEvent("user-1", "txn-1", ["bogus"], accepted=True))

        learner.record_outcome.assert_not_called()


class TestLambdaEntryPoint:
    def test_eventbridge_event(self, consumer, pattern_cache):
        event = PatternChangedEvent("user-1", PATTERN_UPDATED, category_id=DINING)

        response = consumer.handle_eventbridge_event(_eventbridge_record(event), None)

        assert response['statusCode'] == 200
        assert response['processed_count'] == 1
        pattern_cache.invalidate_category.assert_called_once_with(uuid.UUID(DINING))

    def test_sqs_batch(self, consumer, pattern_cache, learner):
        records = [
            _sqs_record(PatternChangedEvent("user-1", PATTERN_UPDATED, category_id=DINING)),
            _sqs_record(CategorizationFeedbackEvent("user-1", "txn-1", [str(uuid.uuid4())], accepted=True)),
        ]

        response = consumer.handle_eventbridge_event({'Records': records}, None)

        assert response['processed_count'] == 2
        assert pattern_cache.invalidate_category.call_count == 1
        assert learner.record_outcome.call_count == 1

    def test_unrelated_event_skipped(self, consumer, pattern_cache):
        event = BaseEvent(
            event_id=str(uuid.uuid4()),
            event_type="account.created",
            event_version="1.0",
            timestamp=int(datetime.now().timestamp() * 1000),
            source="account.service",
            user_id="user-1",
            data={},
        )

        response = consumer.handle_eventbridge_event(_eventbridge_record(event), None)

        assert response['skipped_count'] == 1
        pattern_cache.invalidate_category.assert_not_called()
        pattern_cache.invalidate_all.assert_not_called()

    def test_duplicate_event_processed_once(self, consumer, pattern_cache):
        record = _eventbridge_record(PatternChangedEvent("user-1", PATTERN_UPDATED, category_id=DINING))

        consumer.handle_eventbridge_event(record, None)
        response = consumer.handle_eventbridge_event(record, None)

        assert response['skipped_count'] == 1
        assert pattern_cache.invalidate_category.call_count == 1

    def test_transient_invalidation_failure_fails_invocation(self, consumer, pattern_cache):
        pattern_cache.invalidate_all.side_effect = CacheUnavailableError("shared tier down")
        event = PatternChangedEvent("user-1", PATTERN_UPDATED)

        with pytest.raises(RetryableBatchError) as exc_info:
            consumer.handle_eventbridge_event(_eventbridge_record(event), None)

        assert exc_info.value.permanent is False
        assert exc_info.value.failed_event_ids == [event.event_id]

    def test_transient_failure_retried_once_cache_recovers(self, consumer, pattern_cache):
        pattern_cache.invalidate_category.side_effect = [CacheUnavailableError("shared tier down"), None]
        record = _eventbridge_record(PatternChangedEvent("user-1", PATTERN_UPDATED, category_id=DINING))

        with pytest.raises(RetryableBatchError):
            consumer.handle_eventbridge_event(record, None)
        response = consumer.handle_eventbridge_event(record, None)

        assert response['processed_count'] == 1
        assert pattern_cache.invalidate_category.call_count == 2

    def test_sqs_transient_failure_reported_as_batch_item_failure(self, consumer, pattern_cache):
        pattern_cache.invalidate_category.side_effect = CacheUnavailableError("shared tier down")
        records = [
            _sqs_record(PatternChangedEvent("user-1", PATTERN_UPDATED, category_id=DINING), "msg-1"),
            _sqs_record(CategorizationFeedbackEvent("user-1", "txn-1", [str(uuid.uuid4())], accepted=True), "msg-2"),
        ]

        response = consumer.handle_eventbridge_event({'Records': records}, None)

        assert response['statusCode'] == 200
        assert response['processed_count'] == 1
        assert response['failed_count'] == 1
        assert response['batchItemFailures'] == [{'itemIdentifier': 'msg-1'}]

    def test_lambda_handler_raises_for_transient_failure(self, pattern_cache, learner):
        pattern_cache.invalidate_all.side_effect = CacheUnavailableError("shared tier down")
        handler = create_lambda_handler(CategorizationEventConsumer, pattern_cache=pattern_cache, learner=learner)

        with pytest.raises(RetryableBatchError):
            handler(_eventbridge_record(PatternChangedEvent("user-1", PATTERN_UPDATED)), None)

    def test_permanent_failure_fails_invocation(self, consumer):
        record = _eventbridge_record(
            CategorizationFeedbackEvent("user-1", "txn-1", ["bogus"], accepted=True)
        )

        response = consumer.handle_eventbridge_event(record, None)

        assert response['statusCode'] == 500
        assert response['failed_count'] == 1
        assert response['errors'][0]['permanent'] is True
