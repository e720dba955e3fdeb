from typing import Dict

from pydantic import BaseModel, Field


class FeatureFlagUpdate(BaseModel):
    """Persisted local override for one flag"""

    enabled: bool


class FeatureFlagsResponse(BaseModel):
    """Resolved value of every known flag"""

    flags: Dict[str, bool] = Field(default_factory=dict)


__all__ = ["FeatureFlagUpdate", "FeatureFlagsResponse"]
