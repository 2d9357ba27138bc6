"""
Segments Service package for Segmentator.

This package owns named user segments and the user-segment membership
relation, and reports on how that membership changed over time. It provides:

- app.main: HTTP surface for segments, assignments and history reports.
- app.engine: Wiring of storage, sampling, rollout and reporting.
- app.storage: Capability interfaces plus PostgreSQL and in-memory backends.
- app.assignment: Random sampling and percentage rollout.
- app.history: Date windows, event reconstruction and CSV export.

Guidelines:
- Every mutating operation is one storage transaction; nothing is retried here.
- Relation rows are never deleted; they are the audit trail.
"""
