# /flowbot/models/api.py

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from flowbot.models.campaign import CampaignContact

# Request and response bodies of the HTTP API.


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str


class ValidateFlowRequest(BaseModel):
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    edges: List[Dict[str, Any]] = Field(default_factory=list)
    treat_delay_as_break_point: bool = True


class StartCampaignRequest(BaseModel):
    contacts: List[CampaignContact] = Field(..., min_length=1)
    batch_size: Optional[int] = Field(default=None, ge=1, le=1000)
    rate_limit_ms: Optional[int] = Field(default=None, ge=0)
    phone_number_id: Optional[str] = None
