"""
Cross-cutting pieces of the ERP business rules engine.

Configuration (``config``), structured logging (``logging``), Prometheus
collectors (``metrics``), OpenTelemetry spans (``tracing``), the engine's
exception hierarchy (``errors``) and the outbound-call guards used by
CALL_API (``retry``, ``circuit_breaker``).

``test_helpers`` holds test data factories built on the engine models; it is
the only module here that imports from ``service_rules``.
"""
