from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_unsubscribe() -> None:
    _inc("unsubscribes")


def record_resubscribe() -> None:
    _inc("resubscribes")


def record_invalid_token() -> None:
    _inc("invalid_tokens")


def record_notification_failure() -> None:
    _inc("notification_failures")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
