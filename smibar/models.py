"""Core data types shared by the remote client, supervisor and presentation layer."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

# Sentinels for values the remote host did not report.
UNKNOWN_INT = -1
UNKNOWN_STR = ""


class ConnectionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LIVE = "live"
    STALE = "stale"
    ERROR = "error"


@dataclass(frozen=True)
class GPURecord:
    """One row of nvidia-smi output.

    Attributes:
        index: GPU index as reported by the driver
        name: Product name (e.g. "NVIDIA GeForce RTX 4090")
        util: GPU utilization in percent
        temp: Core temperature in degrees Celsius
        mem_used: Used framebuffer memory in MiB
        mem_total: Total framebuffer memory in MiB
        fan_speed: Fan speed in percent, -1 if not reported
        power_draw: Power draw in watts, -1 if not reported
        power_limit: Power limit in watts, -1 if not reported
        driver_version: Driver version, "" if not reported
        cuda_version: CUDA version, "" if not reported or not queried
    """

    index: int
    name: str
    util: int
    temp: int
    mem_used: int
    mem_total: int
    fan_speed: int = UNKNOWN_INT
    power_draw: int = UNKNOWN_INT
    power_limit: int = UNKNOWN_INT
    driver_version: str = UNKNOWN_STR
    cuda_version: str = UNKNOWN_STR

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the camelCase keys the UI consumes."""
        return {
            "index": self.index,
            "name": self.name,
            "util": self.util,
            "temp": self.temp,
            "memUsed": self.mem_used,
            "memTotal": self.mem_total,
            "fanSpeed": self.fan_speed,
            "powerDraw": self.power_draw,
            "powerLimit": self.power_limit,
            "driverVersion": self.driver_version,
            "cudaVersion": self.cuda_version,
        }


@dataclass(frozen=True)
class GPUSnapshot:
    """A complete, ordered result of one successful query."""

    gpus: tuple[GPURecord, ...] = ()

    def __len__(self) -> int:
        return len(self.gpus)

    def __iter__(self) -> Iterator[GPURecord]:
        return iter(self.gpus)

    def __getitem__(self, idx: int) -> GPURecord:
        return self.gpus[idx]

    def to_list(self) -> list[dict[str, Any]]:
        return [gpu.to_dict() for gpu in self.gpus]


@dataclass(frozen=True)
class ConnectionMetadata:
    """Immutable copy of the session state, as sent on the meta event."""

    status: ConnectionStatus = ConnectionStatus.IDLE
    last_success_ts: int = 0
    consecutive_failures: int = 0
    next_retry_in_sec: int = 0
    error_code: str = ""
    error_message: str = ""
    active_target: str = ""
    active_port: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "lastSuccessTs": self.last_success_ts,
            "consecutiveFailures": self.consecutive_failures,
            "nextRetryInSec": self.next_retry_in_sec,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "activeTarget": self.active_target,
            "activePort": self.active_port,
        }


@dataclass
class ConnectionState:
    """Mutable session state owned by the supervisor's worker."""

    status: ConnectionStatus = ConnectionStatus.IDLE
    last_success_time: Optional[float] = None
    consecutive_failures: int = 0
    next_retry_deadline: Optional[float] = None
    last_error_code: str = ""
    last_error_message: str = ""
    active_target: str = ""
    active_port: int = 0

    def reset(self, target: str = "", port: int = 0) -> None:
        """Start a fresh session for target/port."""
        self.status = ConnectionStatus.CONNECTING if target else ConnectionStatus.IDLE
        self.last_success_time = None
        self.consecutive_failures = 0
        self.next_retry_deadline = None
        self.last_error_code = ""
        self.last_error_message = ""
        self.active_target = target
        self.active_port = port

    @property
    def has_succeeded(self) -> bool:
        return self.last_success_time is not None


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a one-shot connection test."""

    success: bool
    code: str = ""
    message: str = ""
    gpu_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "code": self.code,
            "message": self.message,
            "gpuCount": self.gpu_count,
        }


@dataclass(frozen=True, order=True)
class AliasCandidate:
    """A connection target discovered in the ssh client config.

    Field order doubles as the sort order: (name, target, port).
    """

    name: str
    target: str
    port: int = 0
    source: str = field(default="ssh_config", compare=False)

    @property
    def dedup_key(self) -> tuple[str, str, int]:
        return (self.name, self.target, self.port)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "target": self.target,
            "port": self.port,
            "source": self.source,
        }
