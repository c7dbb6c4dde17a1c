from typing import Optional

from .reconciler import AttributionResult, UsedInvite, VanityFallback


def format_attribution(user_id: int, result: AttributionResult) -> Optional[str]:
    """Build the log line for a join, or None when there is nothing to say."""
    if isinstance(result, UsedInvite):
        message = f"<@{user_id}> joined via `discord.gg/{result.code}`"
        if result.inviter_id is not None:
            message += f" by <@{result.inviter_id}>"
        message += f" (used {result.uses} times)"
        return message
    if isinstance(result, VanityFallback):
        return f"<@{user_id}> joined via `discord.gg/{result.code}` (vanity url code)"
    return None
