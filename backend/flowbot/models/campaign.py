# /flowbot/models/campaign.py

from enum import Enum
from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, Field

from flowbot.models.flow import utcnow


class CampaignStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CampaignContact(BaseModel):
    phone: str
    name: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)


class CampaignExecution(BaseModel):
    """Durable progress record for one campaign run (`campaign_executions` collection)."""
    id: str
    flow_id: str
    status: CampaignStatus = CampaignStatus.RUNNING
    total_contacts: int = 0
    sent_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    skip_reasons: Dict[str, str] = Field(default_factory=dict)
    processed_contacts: List[str] = Field(default_factory=list)
    batches_total: int = 0
    batches_done: int = 0
    completed_batches: List[int] = Field(default_factory=list)
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class WorkUnit(BaseModel):
    """One batch of contacts, as carried through the job dispatcher."""
    kind: str = "campaign_batch"
    execution_id: str
    flow_id: str
    batch_index: int
    is_last_batch: bool = False
    contacts: List[CampaignContact] = Field(default_factory=list)
    rate_limit_ms: int = 6000
    phone_number_id: Optional[str] = None
    attempt: int = 0
