"""Tests for the structlog processors."""

import pytest
from asgi_correlation_id.context import correlation_id

from app.core.logging import add_correlation_id, add_service

pytestmark = pytest.mark.unit


def test_entries_carry_service_and_request_id():
    token = correlation_id.set("req-1")
    try:
        event = add_correlation_id(None, "info", add_service(None, "info", {"event": "push_accepted"}))
    finally:
        correlation_id.reset(token)

    assert event == {"event": "push_accepted", "service": "curation-backend", "correlation_id": "req-1"}


def test_no_request_id_outside_a_request():
    assert "correlation_id" not in add_correlation_id(None, "info", {"event": "ws_listener_started"})
