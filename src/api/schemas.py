# src/api/schemas.py
from pydantic import BaseModel, Field, model_validator
from typing import List, Optional


class ExecuteRequest(BaseModel):
    scan_id: str = Field(..., min_length=1, description="Identifier of the approved scan")
    user_id: str = Field("system", description="Owner of the scan; events are addressed to this user")
    command: Optional[str] = Field(None, description="Free-text command, e.g. 'nmap -sV target.example.com'")
    tool: Optional[str] = Field(None, description="Tool id for a structured request")
    target: Optional[str] = Field(None, description="Target host or URL for structured and preset requests")
    flags: Optional[List[str]] = Field(None, description="Extra flags for a structured request")
    preset: Optional[str] = Field(None, description="Named scan preset, e.g. 'headers_tls'")
    timeout_ms: Optional[int] = Field(None, description="Wall-clock limit in milliseconds")

    @model_validator(mode="after")
    def check_shape(self):
        if not (self.command or self.tool or self.preset):
            raise ValueError("Provide one of 'command', 'tool' + 'target', or 'preset' + 'target'.")
        if (self.tool or self.preset) and not self.target:
            raise ValueError("'target' is required with 'tool' or 'preset'.")
        return self


class KillRequest(BaseModel):
    scan_id: str


class ScanResult(BaseModel):
    success: bool
    status: str
    output: Optional[str] = None
    error: Optional[str] = None
    container_id: Optional[str] = None
    exit_code: Optional[int] = None
    duration_ms: Optional[int] = None


class ContainerStats(BaseModel):
    memory_usage: str
    cpu_usage: str
    uptime: str
    container_id: str
    image: str
    created_at: str


class ContainerStatus(BaseModel):
    exists: bool
    running: bool
    stats: Optional[ContainerStats] = None


class HealthStatus(BaseModel):
    engine_reachable: bool
    default_image_present: bool
    active_count: int
    mode: str
    error: Optional[str] = None
