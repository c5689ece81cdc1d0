"""
Unit tests for the structlog setup.
"""
import structlog

import sys
sys.path.insert(0, 'src')

from shared.logging_config import MAX_FIELD_CHARS, compact_event_fields, configure_logging


class TestCompactEventFields:
    """Tests for the field compaction processor."""

    def test_audio_bytes_replaced_by_size(self):
        event = compact_event_fields(None, "info", {"event": "x", "audio": b"\x00" * 32})
        assert event["audio"] == "<32 bytes>"

    def test_long_strings_clipped(self):
        event = compact_event_fields(None, "info", {"event": "x", "transcript": "a" * (MAX_FIELD_CHARS + 10)})
        assert len(event["transcript"]) == MAX_FIELD_CHARS + 3

    def test_event_name_untouched(self):
        name = "e" * (MAX_FIELD_CHARS + 1)
        assert compact_event_fields(None, "info", {"event": name})["event"] == name


class TestConfigureLogging:
    """Tests for configure_logging()."""

    def test_returns_logger(self, capsys):
        try:
            logger = configure_logging("test-service", level="debug", log_format="json")
            logger.info("hello", room_id="living")
        finally:
            structlog.reset_defaults()
            structlog.contextvars.clear_contextvars()

        out = capsys.readouterr().out
        assert '"service": "test-service"' in out
        assert '"room_id": "living"' in out
