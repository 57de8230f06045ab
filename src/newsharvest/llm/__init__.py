from .ratelimit import MinIntervalRateLimiter, RateLimitedCompletion
from .router import OpenAICompatibleCompletion

__all__ = ["MinIntervalRateLimiter", "OpenAICompatibleCompletion", "RateLimitedCompletion"]
