from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional, List

class CreateForwardRequest(BaseModel):
    connection_id: str
    namespace: str = Field(..., min_length=1)
    service_name: str = Field(..., min_length=1)
    remote_port: int = Field(..., ge=1, le=65535)

    @field_validator('connection_id', mode='before')
    @classmethod
    def coerce_connection_id(cls, v):
        # Connections are stored with integer ids; accept both forms
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

class ForwardResponse(BaseModel):
    id: str
    connection_id: str
    namespace: str
    service_name: str
    local_host: str
    local_port: int
    remote_host: str
    remote_port: int
    pod_name: Optional[str] = None
    status: str  # pending, active, error, idle, stopped
    created_at: datetime
    last_used_at: datetime
    error_message: Optional[str] = None

class ForwardListResponse(BaseModel):
    forwards: List[ForwardResponse]
    total: int

class ForwardStatsResponse(BaseModel):
    total: int
    pending: int
    active: int
    error: int
    idle: int
    stopped: int

class EndpointResponse(BaseModel):
    connection_id: str
    host: str
    port: int
    forward_id: Optional[str] = None
