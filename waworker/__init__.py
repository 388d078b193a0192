"""WhatsApp session lifecycle microservice."""

from .api import create_app
from .manager import SessionLifecycleManager

__all__ = ["create_app", "SessionLifecycleManager"]
