"""
Business Rule Engine package.

Runs tenant-defined "if trigger and conditions then actions" automations
against change events on school tables. It provides:

- app.main: FastAPI surface for events, rules and execution logs.
- app.rules: Rule/event models, condition evaluator and trigger matcher.
- app.actions: Typed action parameters and the ordered action dispatcher.
- app.engine: The orchestrator that fires rules and writes execution logs.
- app.persistence: Rule Store and Execution Log Store (PostgreSQL, in-memory).
- app.adapters: HTTP clients for the email queue, data mutation and webhooks.
- app.ingest: Kafka consumer for the change-data stream.

Guidelines:
- Every store and sink call takes the tenant id explicitly.
- One rule failing never stops another rule from firing.
- Every firing writes exactly one execution log row.
"""
