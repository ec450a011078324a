"""quillguard package providing request-defense middleware for web apps."""

from .csrf import OriginGuard
from .exceptions import BadPolicy, QuillGuardException
from .guard import Guard
from .policy import Policy, load_policy
from .rate_limit import RateLimiter
from .security_log import SecurityLogger

__all__ = [
    "Guard",
    "Policy",
    "load_policy",
    "RateLimiter",
    "OriginGuard",
    "SecurityLogger",
    "BadPolicy",
    "QuillGuardException",
]
