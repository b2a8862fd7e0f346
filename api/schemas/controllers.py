from typing import Optional

from pydantic import BaseModel


class RotateRequest(BaseModel):
    """Request body for the rotation endpoint."""
    force: bool = False
    strict: Optional[bool] = None   # None → use the controller's stored setting
