"""
Intake

Chat-platform handlers and the webhook server that feeds the pipeline.

Available Handlers:
- SlackHandler: Slack Events API webhooks
"""

from .base import BaseHandler
from .slack import SlackHandler

__all__ = [
    "BaseHandler",
    "SlackHandler",
]
