"""
Event pipeline for merchant categorization
"""

from .event_bus import EventBus, EventDispatchError
from .event_types import EventTypes, MerchantCategorizationEvent, MerchantCategorySelectedEvent
from .task_queue import SequentialTaskQueue
from .coordinator import CategorizationCoordinator, ConversationState

__all__ = [
    'EventBus',
    'EventDispatchError',
    'EventTypes',
    'MerchantCategorizationEvent',
    'MerchantCategorySelectedEvent',
    'SequentialTaskQueue',
    'CategorizationCoordinator',
    'ConversationState',
]
