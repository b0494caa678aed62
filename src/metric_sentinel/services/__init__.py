"""Services: the analysis engine, coalescing cache and rate limiting."""

from metric_sentinel.services.cache import CoalescingCache
from metric_sentinel.services.engine import AnalysisEngine
from metric_sentinel.services.rate_limiter import RateLimitAwareExecutor

__all__ = ["AnalysisEngine", "CoalescingCache", "RateLimitAwareExecutor"]
