"""
Telemetry Layer: Logging and Metrics
=====================================

Provides:
  - Structured logging with request and caller correlation
  - Prometheus metrics for the tutoring pipeline

Usage:
    from tutorflow.infra.telemetry import get_logger

    logger = get_logger(__name__)
    logger.info("upstream_completed", attempts=1, latency_ms=812.4)
"""

from tutorflow.infra.telemetry.logger import StructuredLogger, get_logger, setup_logging
from tutorflow.infra.telemetry.metrics import PipelineMetrics, get_metrics

__all__ = [
    "PipelineMetrics",
    "StructuredLogger",
    "get_logger",
    "get_metrics",
    "setup_logging",
]
