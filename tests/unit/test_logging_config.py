"""
Unit Tests for Structured Logging
"""

import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / 'src'))

from common.logging_config import JSONFormatter, MetricsLogger, ServiceLogger, setup_logging


class TestJSONFormatter:
    """Test JSON log documents"""

    def test_context_fields(self):
        record = logging.LogRecord("coverage.calculator", logging.INFO, __file__, 10,
                                   "Stage %s", ("direct_coverage",), None)
        record.run_id = "ab12cd34"
        record.component = "calculator"

        data = json.loads(JSONFormatter().format(record))

        assert data['message'] == "Stage direct_coverage"
        assert data['level'] == "INFO"
        assert data['run_id'] == "ab12cd34"
        assert data['component'] == "calculator"
        assert data['timestamp'].endswith("Z")


class TestLoggers:
    """Test logger wrappers"""

    def test_service_logger_context(self, caplog):
        logger = ServiceLogger("coverage", "tile_store")

        with caplog.at_level(logging.INFO, logger="coverage.tile_store"):
            logger.info("Tile stored", extra={'zoom': 12})

        record = caplog.records[-1]
        assert record.service == "coverage"
        assert record.component == "tile_store"
        assert record.zoom == 12

    def test_metrics_logger(self, caplog):
        metrics = MetricsLogger("coverage")

        with caplog.at_level(logging.INFO, logger="coverage.metrics"):
            metrics.log_counter("terrain_tiles_downloaded", labels={'zoom': '12'})

        data = json.loads(caplog.records[-1].getMessage())
        assert data['metric'] == "terrain_tiles_downloaded_total"
        assert data['value'] == 1
        assert data['labels'] == {'zoom': '12'}

    def test_setup_logging_file(self, tmp_path):
        log_file = tmp_path / "logs" / "coverage.log"
        logger = setup_logging("coverage-test", "DEBUG", str(log_file), json_format=True)

        logger.debug("hello")
        for handler in logger.handlers:
            handler.flush()

        assert json.loads(log_file.read_text().splitlines()[0])['message'] == "hello"
        assert len(logger.handlers) == 2
