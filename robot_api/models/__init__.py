from .apikey import ApiKey
from .job import Job
from .schedule import Schedule
from .usage import UsageLog
from .cache_entry import CacheEntry
from .idempotency import IdempotencyEntry

__all__ = ["ApiKey", "Job", "Schedule", "UsageLog", "CacheEntry", "IdempotencyEntry"]
