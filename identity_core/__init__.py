"""Identity core: account authentication and lifecycle state machine."""

from .domain.contracts import OAuthLoginResult, RegistrationResult, RoleChange, TokenPair
from .domain.service import AccountLifecycleManager
from .factory import build_lifecycle_manager, build_rate_limiter

__all__ = [
    "AccountLifecycleManager",
    "OAuthLoginResult",
    "RegistrationResult",
    "RoleChange",
    "TokenPair",
    "build_lifecycle_manager",
    "build_rate_limiter",
]
