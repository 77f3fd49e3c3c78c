from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class TriggerRecoveryRequest(BaseModel):
    action_id: Optional[str] = Field(default=None, min_length=1, max_length=200)


class TriggerRecoveryResponse(BaseModel):
    scheduled: bool
    component_name: str
    action_id: Optional[str] = None


class AlertActionResponse(BaseModel):
    ok: bool
    alert: Dict[str, Any]
