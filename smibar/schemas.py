"""Pydantic models for API request/response validation."""

import re

from pydantic import BaseModel, Field, field_validator

from smibar.config import DISPLAY_MODES

# user@host, host, ip, [v6]; no whitespace, no leading dash (ssh would read an option)
_TARGET_RE = re.compile(r"^[^\s\-][^\s]*$")


class ConnectionRequest(BaseModel):
    """Target for SetConnection / TestConnection. Empty target means disconnect."""

    target: str = Field(default="", max_length=255, description="ssh destination or alias")
    port: int = Field(default=0, le=65535, description="ssh port, 0 or less for the default")

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        v = v.strip()
        if not v:
            return v
        if any(ord(c) < 32 for c in v):
            raise ValueError("Target contains control characters")
        if not _TARGET_RE.match(v):
            raise ValueError("Target must not contain whitespace or start with '-'")
        return v

    @field_validator("port")
    @classmethod
    def normalize_port(cls, v: int) -> int:
        return v if v > 0 else 0


class ConnectionMetaResponse(BaseModel):
    status: str
    lastSuccessTs: int
    consecutiveFailures: int
    nextRetryInSec: int
    errorCode: str
    errorMessage: str
    activeTarget: str
    activePort: int


class ConnectionTestResponse(BaseModel):
    success: bool
    code: str
    message: str
    gpuCount: int


class SSHConfigConnection(BaseModel):
    name: str
    target: str
    port: int
    source: str = "ssh_config"


class GPUData(BaseModel):
    index: int
    name: str
    util: int
    temp: int
    memUsed: int
    memTotal: int
    fanSpeed: int = -1
    powerDraw: int = -1
    powerLimit: int = -1
    driverVersion: str = ""
    cudaVersion: str = ""


class GPUListResponse(BaseModel):
    gpus: list[GPUData]


class TrayTitleResponse(BaseModel):
    mode: str
    title: str


def validate_display_mode(mode: str) -> str:
    mode = mode.strip().lower()
    if mode not in DISPLAY_MODES:
        raise ValueError(f"mode must be one of {', '.join(DISPLAY_MODES)}")
    return mode
