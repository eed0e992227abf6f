"""Alerting for terminal processing failures."""

from ortenberg.alerts.base import Alert, AlertSink, CompositeAlertSink, LoggingAlertSink
from ortenberg.alerts.factory import create_alert_sink

__all__ = [
    "Alert",
    "AlertSink",
    "CompositeAlertSink",
    "LoggingAlertSink",
    "create_alert_sink",
]
