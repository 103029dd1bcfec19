"""
Tests for categorization event envelopes.
"""
import json
import uuid

import pytest

from models.events import (
    CATEGORIZATION_FEEDBACK,
    PATTERN_UPDATED,
    CategorizationFeedbackEvent,
    PatternChangedEvent,
)


def test_pattern_changed_event():
    category_id = str(uuid.uuid4())
    event = PatternChangedEvent(user_id="admin", change_type=PATTERN_UPDATED,
                                pattern_id="p-1", category_id=category_id)

    assert event.event_type == PATTERN_UPDATED
    assert event.source == 'pattern.admin'
    assert event.data['categoryId'] == category_id
    assert event.data['previousCategoryId'] is None


def test_pattern_changed_event_rejects_unknown_type():
    with pytest.raises(ValueError):
        PatternChangedEvent(user_id="admin", change_type="pattern.deleted")


def test_feedback_event_eventbridge_format():
    event = CategorizationFeedbackEvent(user_id="user-1", transaction_id="t-1",
                                        pattern_ids=["p-1", "p-2"], accepted=False,
                                        correct_category_id="c-1")
    entry = event.to_eventbridge_format()
    detail = json.loads(entry['Detail'])

    assert entry['DetailType'] == CATEGORIZATION_FEEDBACK
    assert entry['Source'] == 'categorization.service'
    assert detail['data']['patternIds'] == ["p-1", "p-2"]
    assert detail['data']['accepted'] is False
    assert detail['data']['correctCategoryId'] == "c-1"
