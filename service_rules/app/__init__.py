"""
Business rules service for the ERP backend.

Domain modules (payroll, leave, orders, invoices) build a
RuleExecutionContext from their entity and hand it to the engine. The
engine resolves rule groups, evaluates rules, runs their actions and keeps
execution statistics for dashboards.
"""

__version__ = "1.0.0"
