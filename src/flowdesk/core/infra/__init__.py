from .breaker import CircuitBreaker
from .breaker_manager import BreakerManager

__all__ = ["BreakerManager", "CircuitBreaker"]
