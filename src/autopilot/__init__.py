"""
Autopilot control plane
Decides whether and when a unit of work (post a reply, scrape a target,
refresh a token) may run: circuit breakers, sliding-window limiters,
a periodic scheduler and the reply retry policy.
"""

from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from .config import AutopilotConfig, load_config
from .control import ControlPlane, build_control_plane
from .rate_limiter import RateLimiter
from .reply_queue import ReplyQueueProcessor
from .runtime import Autopilot, build_autopilot
from .scheduler import Scheduler, build_scheduler
from .scrape_limiter import ScrapeLimiter

__all__ = [
    'Autopilot',
    'AutopilotConfig',
    'CircuitBreaker',
    'CircuitBreakerRegistry',
    'CircuitState',
    'ControlPlane',
    'RateLimiter',
    'ReplyQueueProcessor',
    'ScrapeLimiter',
    'Scheduler',
    'build_autopilot',
    'build_control_plane',
    'build_scheduler',
    'load_config',
]
