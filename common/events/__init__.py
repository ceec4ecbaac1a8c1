"""
Events module - In-process publish/subscribe.
"""

from common.events.bus import EventBus, Unsubscribe

__all__ = ["EventBus", "Unsubscribe"]
