"""
Tests for structured logging setup.

## Test Perspectives Table
| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|----------------------|---------------------------------------|-----------------|-------|
| TC-LG-01 | LogContext block | Equivalence – context | Bound inside, unbound after | - |
| TC-LG-02 | Per-chunk debug event | Equivalence – filtering | Dropped | - |
| TC-LG-03 | Other events | Equivalence – filtering | Kept | - |
| TC-LG-04 | configure_logging with file | Equivalence – setup | Log file created | - |
"""

import pytest
import structlog

from src.utils.logging import (
    LogContext,
    _drop_chunk_events,
    configure_logging,
    get_logger,
)

pytestmark = pytest.mark.unit


class TestLogContext:
    def test_binds_for_scope(self):
        with LogContext(url="http://example.test/", attempt=0):
            bound = structlog.contextvars.get_contextvars()
            assert bound["url"] == "http://example.test/"
            assert bound["attempt"] == 0

        assert "url" not in structlog.contextvars.get_contextvars()

    def test_unbinds_on_error(self):
        with pytest.raises(ValueError):
            with LogContext(url="http://example.test/"):
                raise ValueError("boom")

        assert "url" not in structlog.contextvars.get_contextvars()


class TestChunkFilter:
    def test_drops_chunk_debug(self):
        with pytest.raises(structlog.DropEvent):
            _drop_chunk_events(None, "debug", {"event": "recorder_chunk", "size": 10})

    def test_keeps_other_events(self):
        event = {"event": "recorder_chunk"}

        assert _drop_chunk_events(None, "info", event) is event
        assert _drop_chunk_events(None, "debug", {"event": "Fetch failed"}) == {"event": "Fetch failed"}


class TestConfigureLogging:
    def test_creates_log_file(self, temp_dir):
        log_file = temp_dir / "skein.log"

        try:
            configure_logging(log_level="DEBUG", log_file=log_file, json_format=True)
            get_logger("tests").info("hello", attempt=1)
        finally:
            structlog.reset_defaults()

        assert log_file.exists()
