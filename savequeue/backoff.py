import os
from typing import Callable

# Задержки (сек) перед следующей попыткой, индекс - число уже сделанных попыток
RETRY_DELAYS = [2, 3, 5, 8, 10, 15, 20, 30, 45, 60]

# "table" или "exponential"
SAVE_QUEUE_BACKOFF = os.getenv("SAVE_QUEUE_BACKOFF", "table")

BackoffPolicy = Callable[[int], float]


def default_backoff(attempts: int) -> float:
    return RETRY_DELAYS[min(max(attempts, 0), len(RETRY_DELAYS) - 1)]


def exponential_backoff(initial: float = 1.0, factor: float = 2.0, maximum: float = 10.0) -> BackoffPolicy:
    """Экспоненциальная задержка: initial * factor^(attempts-1), не больше maximum."""
    if initial <= 0:
        raise ValueError("initial delay must be positive")

    def policy(attempts: int) -> float:
        return min(initial * factor ** max(attempts - 1, 0), maximum)

    return policy


def backoff_from_env(name: str | None = None) -> BackoffPolicy:
    name = (name or SAVE_QUEUE_BACKOFF).strip().lower()
    if name == "table":
        return default_backoff
    if name == "exponential":
        return exponential_backoff()
    raise ValueError(f"Unknown SAVE_QUEUE_BACKOFF policy: {name}")
