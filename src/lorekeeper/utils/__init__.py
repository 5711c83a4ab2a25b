from lorekeeper.utils.cancellation import CancellationToken
from lorekeeper.utils.token_tracker import TokenStats, TokenTracker, TokenUsage, usage_from_message

__all__ = ["CancellationToken", "TokenStats", "TokenTracker", "TokenUsage", "usage_from_message"]
