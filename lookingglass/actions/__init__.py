"""
Actions package.

Named, parameterized side-effecting operations that rules and flows
invoke: broker publishes, notifications, connector calls, HTTP requests
and data shaping.
"""

from .context import ActionContext, ActionHandler, Connector
from .framework import ActionFramework, as_invocation
from .notifications import Notification, NotificationService, build_notification_service

__all__ = [
    'ActionContext',
    'ActionHandler',
    'Connector',
    'ActionFramework',
    'as_invocation',
    'Notification',
    'NotificationService',
    'build_notification_service',
]
