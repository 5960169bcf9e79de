"""
CohortWatch: Student lifecycle monitoring and alerting engine.

Architecture:
    cohortwatch/
    ├── api/             # FastAPI routers (HTTP layer)
    ├── db/              # SQLAlchemy models, engine, record store
    ├── monitoring/      # Signals, rule evaluation, actions, alerts, duplicates
    └── services/        # Scheduled analysis ticks

Data Flow:
    Record change / scheduled tick / "Run Analysis"
    → Signal Deriver → Rule Evaluator → Action Executor
    → Record Store (alerts, communications, stage changes) → Alert Manager

Every engine call is scoped by an explicit institution id.

Version: 1.0.0
"""

__version__ = "1.0.0"
