from scheduling_intel.api.routes import feature_flags, health, schedule, writeback
from scheduling_intel.api.dependencies import (
    get_correlation_id,
    get_current_actor,
    get_feature_flags,
    require_actor
)

# API route modules
__all__ = [
    "feature_flags",
    "health",
    "schedule",
    "writeback",
    "get_correlation_id",
    "get_current_actor",
    "get_feature_flags",
    "require_actor"
]
