from datetime import timedelta

MAX_BACKOFF_MINUTES = 60


def backoff_minutes(attempt: int) -> int:
    # 2, 4, 8, 16, 32, then capped at 60
    return min(MAX_BACKOFF_MINUTES, 2 ** min(max(attempt, 0), 6))


def compute_backoff(attempt: int) -> timedelta:
    return timedelta(minutes=backoff_minutes(attempt))
