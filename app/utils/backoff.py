from datetime import timedelta


def backoff(attempts: int) -> timedelta:
    """Delay before the next try after ``attempts`` failed sends: 2, 4, 8... minutes."""
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    return timedelta(minutes=2 ** attempts)
