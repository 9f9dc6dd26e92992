"""
Base Models

Foundation class for dashsync pydantic models.
"""

from pydantic import BaseModel, ConfigDict


class SyncModel(BaseModel):
    """Base model for dashsync messages with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        frozen=True,
    )
