"""
Observability and tracing with Arize Phoenix.

Provides OpenTelemetry-based tracing for agent execution and retrieval,
with automatic instrumentation of the LangGraph workflow.
"""

from mnemosyne.tracing.phoenix import add_span_attributes, record_exception, setup_tracing, traced

__all__ = ["add_span_attributes", "record_exception", "setup_tracing", "traced"]
