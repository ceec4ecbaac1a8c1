"""Pure timing rules for the app lock. No clocks, no state."""

from typing import Optional


def is_background_timeout_expired(
    now: int,
    backgrounded_at: Optional[int],
    threshold: int,
) -> bool:
    """
    Whether the app stayed in the background longer than ``threshold``.

    Args:
        now: Current time (ms)
        backgrounded_at: When the app went to the background (ms), or None
        threshold: Allowed background duration (ms)

    Returns:
        True only if backgrounded_at is set and strictly more than
        threshold has elapsed
    """
    if backgrounded_at is None:
        return False
    return now - backgrounded_at > threshold


def lockout_duration_ms(failed_attempts: int, max_attempts: int, base_ms: int) -> int:
    """base × 2^(failed_attempts // max_attempts − 1); 0 below the first threshold."""
    tier = failed_attempts // max_attempts
    if tier < 1:
        return 0
    return base_ms * (2 ** (tier - 1))
