"""
CohortWatch Monitoring & Alerting.

Components:
- schemas: Student, rule, alert, and result models
- signals / obligations: Per-student risk, engagement, and compliance signals
- evaluator: Flat rule matching against signals
- dedup: Idempotency window over the action log
- templates / dispatch: Outbound messages and their transports
- actions: Alert, email, counselor, and stage actions
- notifications: Alert read/unread lifecycle
- duplicates: Students sharing a normalized email
- engine / events: Batch and event-driven passes
"""
