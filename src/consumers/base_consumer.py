"""
Base consumer framework for event-driven architecture.
Provides event parsing from EventBridge/SQS payloads, per-record error
classification, basic idempotency and the Lambda handler factory.
"""
import json
import logging
import traceback
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional
from datetime import datetime
from models.events import BaseEvent

logger = logging.getLogger(__name__)

PROCESSED_EVENT_MEMORY = 1000
PROCESSED_EVENT_RETAIN = 500


class EventProcessingError(Exception):
    """Raised for event processing failures; permanent ones are routed to the DLQ"""
    def __init__(self, message: str, event_id: Optional[str] = None, permanent: bool = False):
        super().__init__(message)
        self.event_id = event_id
        self.permanent = permanent


class RetryableBatchError(EventProcessingError):
    """Raised when records failed transiently and the invocation must be retried"""
    def __init__(self, message: str, failed_event_ids: List[str]):
        super().__init__(message, permanent=False)
        self.failed_event_ids = failed_event_ids


class BaseEventConsumer(ABC):
    """
    Base class for all event consumers.

    Subclasses decide which events they handle (should_process_event) and
    what handling means (process_event). A failure on one record is counted
    and reported without stopping the remaining records, unless it is permanent.
    """

    def __init__(self, consumer_name: str):
        self.consumer_name = consumer_name
        self.processed_events: List[str] = []
        self._processed_lookup = set()
        self._lambda_context: Optional[Any] = None
        logger.info(f"Initializing {consumer_name} consumer")

    def handle_eventbridge_event(self, event: Dict[str, Any], context: Any) -> Dict[str, Any]:
        """
        Entry point called by AWS Lambda.

        Returns:
            dict: Processing counts, errors and timing
        """
        start_time = datetime.now()
        stats: Dict[str, Any] = {
            'consumer': self.consumer_name,
            'processed_count': 0,
            'failed_count': 0,
            'skipped_count': 0,
            'errors': []
        }

        try:
            records = self._extract_records(event)
            if not records:
                logger.warning("No records found in event payload")
                return self._create_response(stats, start_time)

            logger.info(f"🔄 {self.consumer_name} processing {len(records)} records")
            retryable: List[Dict[str, Any]] = []
            for record in records:
                if not self._handle_record(record, stats):
                    retryable.append(record)

            logger.info(f"✅ {self.consumer_name} processing complete: "
                        f"{stats['processed_count']} processed, "
                        f"{stats['failed_count']} failed, "
                        f"{stats['skipped_count']} skipped")
            if retryable:
                self._report_retryable(retryable, stats)
            return self._create_response(stats, start_time)

        except RetryableBatchError:
            raise

        except Exception as e:
            logger.error(f"❌ {self.consumer_name} failed with critical error: {str(e)}")
            logger.error(traceback.format_exc())
            stats['errors'].append({'error': str(e), 'critical': True})
            return self._create_response(stats, start_time, status_code=500)

    def _report_retryable(self, records: List[Dict[str, Any]], stats: Dict[str, Any]) -> None:
        """
        Hand transiently failed records back to the caller for redelivery.

        SQS records are reported as batchItemFailures so only they are redelivered
        (the event source mapping needs ReportBatchItemFailures). Any other
        delivery is failed as a whole so Lambda retries the invocation.

        Raises:
            RetryableBatchError: If a failed record did not come from SQS
        """
        message_ids = [record.get('messageId') for record in records]
        if all(message_ids):
            stats['batchItemFailures'] = [{'itemIdentifier': mid} for mid in message_ids]
            logger.warning(f"{len(message_ids)} records returned to SQS for retry")
            return

        failed_ids = [error['event_id'] for error in stats['errors'] if not error['permanent']]
        raise RetryableBatchError(
            f"{self.consumer_name} has {len(records)} records that failed transiently",
            failed_event_ids=failed_ids
        )

    def _handle_record(self, record: Dict[str, Any], stats: Dict[str, Any]) -> bool:
        """Process one record. Returns False when it failed and should be retried."""
        parsed_event: Optional[BaseEvent] = None
        try:
            parsed_event = self._parse_event_record(record)

            if not self.should_process_event(parsed_event):
                logger.debug(f"Skipping event {parsed_event.event_id} of type {parsed_event.event_type}")
                stats['skipped_count'] += 1
                return True

            if parsed_event.event_id in self._processed_lookup:
                logger.info(f"Skipping duplicate event {parsed_event.event_id}")
                stats['skipped_count'] += 1
                return True

            self.process_event(parsed_event)
            self._mark_event_processed(parsed_event)
            stats['processed_count'] += 1
            return True

        except EventProcessingError as e:
            logger.error(f"❌ EventProcessingError: {str(e)}")
            stats['failed_count'] += 1
            stats['errors'].append({
                'event_id': e.event_id or (parsed_event.event_id if parsed_event else 'unknown'),
                'error': str(e),
                'permanent': e.permanent
            })
            if e.permanent:
                raise
            return False

        except Exception as e:
            logger.error(f"Unexpected error processing record: {str(e)}")
            logger.error(traceback.format_exc())
            permanent = self.is_permanent_failure(e)
            stats['failed_count'] += 1
            stats['errors'].append({
                'event_id': parsed_event.event_id if parsed_event else 'unknown',
                'error': str(e),
                'permanent': permanent
            })
            if permanent:
                raise
            return False

    def _extract_records(self, event: Any) -> List[Dict[str, Any]]:
        """Extract records from direct EventBridge, SQS or list payloads"""
        if isinstance(event, list):
            return event
        if 'source' in event and 'detail-type' in event:
            return [event]
        if 'Records' in event:
            return event['Records']
        return [event]

    def _parse_event_record(self, record: Dict[str, Any]) -> BaseEvent:
        """Parse an EventBridge record, or an SQS record wrapping one, into a BaseEvent"""
        try:
            if 'detail' in record and 'source' in record:
                detail = record['detail']
                if isinstance(detail, str):
                    detail = json.loads(detail)
                return self._event_from_fields(detail, record.get('detail-type', ''), record.get('source', ''))

            if 'body' in record:
                body = json.loads(record['body'])
                if 'detail' in body and 'source' in body:
                    return self._parse_event_record(body)
                return self._event_from_fields(body, body.get('eventType', ''), body.get('source', ''))

        except json.JSONDecodeError as e:
            raise EventProcessingError(f"Failed to parse JSON in event record: {str(e)}", permanent=True)
        except (AttributeError, TypeError) as e:
            raise EventProcessingError(f"Failed to parse event record: {str(e)}", permanent=True)

        raise EventProcessingError(
            f"Unknown event record format: {list(record.keys())}",
            permanent=True
        )

    @staticmethod
    def _event_from_fields(fields: Dict[str, Any], event_type: str, source: str) -> BaseEvent:
        return BaseEvent(
            event_id=fields.get('eventId', ''),
            event_type=event_type,
            event_version=fields.get('eventVersion', '1.0'),
            timestamp=fields.get('timestamp', 0),
            source=source,
            user_id=fields.get('userId', ''),
            correlation_id=fields.get('correlationId'),
            causation_id=fields.get('causationId'),
            data=fields.get('data') or {},
            metadata=fields.get('metadata') or {}
        )

    def _mark_event_processed(self, event: BaseEvent) -> None:
        """Remember the event id, keeping only the most recent ids in long-running containers"""
        self.processed_events.append(event.event_id)
        self._processed_lookup.add(event.event_id)
        if len(self.processed_events) > PROCESSED_EVENT_MEMORY:
            self.processed_events = self.processed_events[-PROCESSED_EVENT_RETAIN:]
            self._processed_lookup = set(self.processed_events)

    def _create_response(self, stats: Dict[str, Any], start_time: datetime, status_code: int = 200) -> Dict[str, Any]:
        processing_time_ms = (datetime.now() - start_time).total_seconds() * 1000
        response = {
            'statusCode': status_code,
            'processingTimeMs': round(processing_time_ms, 2),
            'timestamp': int(datetime.now().timestamp() * 1000),
            **stats
        }
        if self._lambda_context is not None:
            response['requestId'] = getattr(self._lambda_context, 'aws_request_id', None)
        return response

    # =============================================================================
    # ABSTRACT METHODS - Must be implemented by subclasses
    # =============================================================================

    @abstractmethod
    def should_process_event(self, event: BaseEvent) -> bool:
        """Return True if this consumer handles the event"""
        pass

    @abstractmethod
    def process_event(self, event: BaseEvent) -> None:
        """
        Process the event.

        Raises:
            EventProcessingError: For application-specific errors
            Exception: For unexpected errors
        """
        pass

    # =============================================================================
    # OPTIONAL METHODS - Can be overridden by subclasses
    # =============================================================================

    def is_permanent_failure(self, error: Exception) -> bool:
        """Bad input will not get better on retry"""
        return isinstance(error, (ValueError, TypeError, KeyError, AttributeError))

    def validate_event(self, event: BaseEvent) -> None:
        """
        Raises:
            EventProcessingError: If the envelope is missing required fields
        """
        if not event.event_id:
            raise EventProcessingError("Event ID is required", permanent=True)
        if not event.event_type:
            raise EventProcessingError("Event type is required", event_id=event.event_id, permanent=True)

    def setup_consumer(self) -> None:
        """One-time setup, called when the Lambda handler creates the consumer"""
        pass


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def create_lambda_handler(consumer_class, *args, **kwargs):
    """
    Build a Lambda handler that lazily creates one consumer per container.
    """
    consumer = None

    def lambda_handler(event, context):
        nonlocal consumer
        if consumer is None:
            consumer = consumer_class(*args, **kwargs)
            consumer.setup_consumer()
            logger.info(f"Initialized {consumer.consumer_name} consumer")

        consumer._lambda_context = context
        try:
            return consumer.handle_eventbridge_event(event, context)
        except RetryableBatchError as e:
            logger.error(f"Retryable failure in {consumer.consumer_name}: {str(e)}")
            raise
        except Exception as e:
            logger.error(f"Critical error in {consumer.consumer_name}: {str(e)}")
            return {
                'statusCode': 500,
                'error': str(e),
                'consumer': consumer.consumer_name,
                'timestamp': int(datetime.now().timestamp() * 1000)
            }

    return lambda_handler
