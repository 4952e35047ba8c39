"""Tests for the log processor chain and request/task context."""

import json

import structlog

from switchboard.logging_config import bind_context, build_processors, clear_context


def test_processor_chain_renderer_follows_debug():
    assert isinstance(build_processors(False)[-1], structlog.processors.JSONRenderer)
    assert isinstance(build_processors(True)[-1], structlog.dev.ConsoleRenderer)
    assert build_processors(False)[0] is structlog.contextvars.merge_contextvars


def test_bound_fields_reach_every_line_until_cleared():
    clear_context()
    bind_context(request_id="req-1", call_id=7)
    try:
        merged = structlog.contextvars.merge_contextvars(None, "info", {"event": "claim_won"})
        line = json.loads(structlog.processors.JSONRenderer()(None, "info", merged))
        assert line == {"event": "claim_won", "request_id": "req-1", "call_id": 7}
    finally:
        clear_context()

    assert structlog.contextvars.merge_contextvars(None, "info", {"event": "x"}) == {"event": "x"}
