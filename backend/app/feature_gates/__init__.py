"""Feature gating utilities coordinating access enforcement."""
from .context import AccessContext
from .enforcement import require_feature
from .exceptions import FeatureGateError

__all__ = [
    "AccessContext",
    "FeatureGateError",
    "require_feature",
]
