from .batches import BatchTracker as BatchTracker
from .blob import LocalBlobStore as LocalBlobStore
from .config import QueueSettings as QueueSettings
from .config import load_settings as load_settings
from .offload import PayloadOffloader as PayloadOffloader
from .queue import AiQueue as AiQueue
from .queue import ProviderAdapter as ProviderAdapter
from .rate_limiter import RateLimiter as RateLimiter
from .rate_limiter import build_rate_limiters as build_rate_limiters
from .store import SQLQueueStore as SQLQueueStore
from .triggers import HttpDispatchTrigger as HttpDispatchTrigger
from .triggers import LocalDispatchTrigger as LocalDispatchTrigger

__all__ = [
    "AiQueue",
    "ProviderAdapter",
    "BatchTracker",
    "PayloadOffloader",
    "LocalBlobStore",
    "RateLimiter",
    "build_rate_limiters",
    "SQLQueueStore",
    "LocalDispatchTrigger",
    "HttpDispatchTrigger",
    "QueueSettings",
    "load_settings",
]
