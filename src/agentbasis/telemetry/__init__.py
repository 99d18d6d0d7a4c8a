"""
Telemetry - OpenTelemetry pipeline and span exporters.
"""

from .exporters import (
    AgentBasisHTTPExporter,
    JsonFileExporter,
    create_exporter,
    span_to_dict,
)
from .pipeline import ResultTrackingExporter, TracerPipeline

__all__ = [
    "AgentBasisHTTPExporter",
    "JsonFileExporter",
    "ResultTrackingExporter",
    "TracerPipeline",
    "create_exporter",
    "span_to_dict",
]
