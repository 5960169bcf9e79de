"""
FastAPI dependencies for API routes.

Services are built once in create_app() and kept on app.state.
"""

from fastapi import Request

from cohortwatch.monitoring.engine import MonitoringEngine
from cohortwatch.monitoring.events import ChangeEventStream
from cohortwatch.monitoring.notifications import AlertManager


def get_engine(request: Request) -> MonitoringEngine:
    return request.app.state.engine


def get_alert_manager(request: Request) -> AlertManager:
    return request.app.state.alerts


def get_event_stream(request: Request) -> ChangeEventStream:
    return request.app.state.events


__all__ = ["get_engine", "get_alert_manager", "get_event_stream"]
