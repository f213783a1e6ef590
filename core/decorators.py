import logging
from functools import wraps

logger = logging.getLogger(__name__)


def best_effort(label: str, default=None):
    """
    Run a secondary side effect (audit, notification, metrics) without ever
    letting its failure reach the caller. Errors are logged and `default` is
    returned instead.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                logger.warning(f"[{label}] {func.__name__} failed: {e}")
                return default
        return wrapper
    return decorator
