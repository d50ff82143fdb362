"""
Centralized Logging Configuration for the Mesh Coverage Engine

This module provides structured logging with JSON formatting so that
coverage runs can be traced stage by stage.
"""

import logging
import sys
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

# Context fields copied from LogRecord extras into the JSON document
CONTEXT_FIELDS = ('service', 'component', 'stage', 'run_id')


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record as JSON

        Args:
            record: Log record

        Returns:
            JSON string
        """
        log_data = {
            'timestamp': _utc_timestamp(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    service_name: str = "coverage",
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = True
) -> logging.Logger:
    """
    Set up logging for the engine

    Args:
        service_name: Root logger name shared by all engine components
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path (None for stdout only)
        json_format: Use JSON formatting (True) or simple text (False)

    Returns:
        Configured logger instance
    """
    level = getattr(logging, log_level.upper())
    logger = logging.getLogger(service_name)
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


class ServiceLogger:
    """
    Wrapper for component-specific logging with extra context
    """

    def __init__(self, service_name: str, component: str = None):
        """
        Initialize service logger

        Args:
            service_name: Name of the service
            component: Optional component name within service
        """
        self.logger = logging.getLogger(
            f"{service_name}.{component}" if component else service_name
        )
        self.service_name = service_name
        self.component = component

    def _add_context(self, extra: Dict[str, Any] = None) -> Dict[str, Any]:
        """Add service context to log extra fields"""
        context = {'service': self.service_name}
        if self.component:
            context['component'] = self.component
        if extra:
            context.update(extra)
        return context

    def isEnabledFor(self, level: int) -> bool:
        return self.logger.isEnabledFor(level)

    def debug(self, message: str, extra: Dict[str, Any] = None):
        """Log debug message"""
        self.logger.debug(message, extra=self._add_context(extra))

    def info(self, message: str, extra: Dict[str, Any] = None):
        """Log info message"""
        self.logger.info(message, extra=self._add_context(extra))

    def warning(self, message: str, extra: Dict[str, Any] = None, exc_info: bool = False):
        """Log warning message"""
        self.logger.warning(message, extra=self._add_context(extra), exc_info=exc_info)

    def error(self, message: str, extra: Dict[str, Any] = None, exc_info: bool = False):
        """Log error message"""
        self.logger.error(message, extra=self._add_context(extra), exc_info=exc_info)

    def critical(self, message: str, extra: Dict[str, Any] = None, exc_info: bool = False):
        """Log critical message"""
        self.logger.critical(message, extra=self._add_context(extra), exc_info=exc_info)


class MetricsLogger:
    """
    Log run metrics (stage timings, cache and download counters) as JSON lines
    """

    def __init__(self, service_name: str):
        """
        Initialize metrics logger

        Args:
            service_name: Name of the service
        """
        self.logger = logging.getLogger(f"{service_name}.metrics")

    def log_metric(self, metric_name: str, value: float, labels: Dict[str, str] = None):
        """
        Log a metric value

        Args:
            metric_name: Name of the metric
            value: Metric value
            labels: Optional metric labels
        """
        metric_data = {
            'metric': metric_name,
            'value': value,
            'timestamp': _utc_timestamp()
        }

        if labels:
            metric_data['labels'] = labels

        self.logger.info(json.dumps(metric_data))

    def log_counter(self, name: str, increment: int = 1, labels: Dict[str, str] = None):
        """Log a counter increment"""
        self.log_metric(f"{name}_total", increment, labels)

    def log_gauge(self, name: str, value: float, labels: Dict[str, str] = None):
        """Log a gauge value"""
        self.log_metric(name, value, labels)

    def log_histogram(self, name: str, value: float, labels: Dict[str, str] = None):
        """Log a histogram observation"""
        self.log_metric(f"{name}_seconds", value, labels)
