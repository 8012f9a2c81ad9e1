"""Remote NVIDIA GPU telemetry over ssh using nvidia-smi."""

import logging
import math
import re
import subprocess
import time
from typing import Callable, List, Sequence

from smibar.errors import GPUParseError, RemoteCommandError
from smibar.logging_config import sanitize_for_logging
from smibar.models import UNKNOWN_INT, UNKNOWN_STR, GPURecord, GPUSnapshot

logger = logging.getLogger(__name__)

FULL_QUERY_FIELDS = (
    "index",
    "name",
    "utilization.gpu",
    "temperature.gpu",
    "memory.used",
    "memory.total",
    "fan.speed",
    "power.draw",
    "power.limit",
    "driver_version",
    "cuda_version",
)
# Older drivers reject cuda_version as a query field.
FALLBACK_QUERY_FIELDS = FULL_QUERY_FIELDS[:-1]

MIN_FIELDS = 6
_MISSING_VALUES = ("n/a", "[not supported]")
# Plain ASCII decimal or float literal, optionally signed.
_NUMBER_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?", re.ASCII)


class RemoteMetricsClient:
    """Runs nvidia-smi on a remote host through the system ssh client.

    Command:
        ssh -o BatchMode=yes -o ConnectTimeout=3 [-p PORT] TARGET \\
            "nvidia-smi --query-gpu=<fields> --format=csv,noheader,nounits"

    BatchMode keeps ssh from ever prompting; credentials must already be
    usable by the ssh client (agent, key files, ~/.ssh/config).

    Fallback:
        If the first attempt fails with an error mentioning cuda_version, the
        query is retried once without that field.
    """

    def __init__(
        self,
        ssh_binary: str = "ssh",
        connect_timeout: int = 3,
        command_timeout: float = 15.0,
        nvidia_smi_path: str = "nvidia-smi",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        """Initialize the client.

        Args:
            ssh_binary: ssh executable name or path
            connect_timeout: Seconds ssh waits for the TCP/SSH handshake
            command_timeout: Hard limit for the local ssh process
            nvidia_smi_path: nvidia-smi executable on the remote host
            runner: subprocess.run-compatible callable (swapped out in tests)
        """
        self._ssh_binary = ssh_binary
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout
        self._nvidia_smi_path = nvidia_smi_path
        self._runner = runner

    def build_query(self, fields: Sequence[str]) -> str:
        return (
            f"{self._nvidia_smi_path} --query-gpu={','.join(fields)} "
            "--format=csv,noheader,nounits"
        )

    def build_ssh_args(self, target: str, port: int, remote_cmd: str) -> List[str]:
        args = [
            self._ssh_binary,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self._connect_timeout}",
        ]
        if port > 0:
            args += ["-p", str(port)]
        args += [target, remote_cmd]
        return args

    def run_remote(self, target: str, port: int, remote_cmd: str) -> str:
        """Run remote_cmd on target and return its combined stdout/stderr.

        Raises:
            RemoteCommandError: If ssh cannot be started, times out or exits non-zero
        """
        target = target.strip()
        if not target:
            raise RemoteCommandError("empty target")
        if target.startswith("-"):
            # Would be parsed by ssh as an option.
            raise RemoteCommandError(f"invalid target {target!r}")

        args = self.build_ssh_args(target, port, remote_cmd)
        try:
            result = self._runner(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self._command_timeout,
            )
        except subprocess.TimeoutExpired:
            raise RemoteCommandError(
                f"ssh: operation timed out after {self._command_timeout:g}s"
            ) from None
        except (FileNotFoundError, PermissionError) as e:
            raise RemoteCommandError(f"ssh: cannot run {self._ssh_binary}: {e}") from e

        output = result.stdout or ""
        if result.returncode != 0:
            msg = output.strip() or f"exit status {result.returncode}"
            raise RemoteCommandError(f"ssh: {msg}")
        return output

    def query(self, target: str, port: int = 0) -> GPUSnapshot:
        """Query all GPUs on target.

        Returns:
            GPUSnapshot with one record per nvidia-smi row, in row order.

        Raises:
            RemoteCommandError: If the remote call fails (after the fallback, if tried)
            GPUParseError: If the output is malformed or a required field is missing
        """
        started = time.monotonic()
        try:
            output = self.run_remote(target, port, self.build_query(FULL_QUERY_FIELDS))
            has_cuda = True
        except RemoteCommandError as e:
            if "cuda_version" not in str(e).lower():
                raise
            logger.info(
                f"{target}: cuda_version not supported by remote nvidia-smi, retrying without it"
            )
            output = self.run_remote(target, port, self.build_query(FALLBACK_QUERY_FIELDS))
            has_cuda = False

        snapshot = parse_output(output, has_cuda=has_cuda)
        logger.debug(
            f"{target}: {len(snapshot)} GPU(s) in {time.monotonic() - started:.2f}s"
        )
        return snapshot


def parse_output(raw: str, has_cuda: bool = True) -> GPUSnapshot:
    """Parse nvidia-smi CSV output (noheader, nounits).

    Expected format per line:
        index, name, util, temp, mem.used, mem.total[, fan, power.draw, power.limit,
        driver_version[, cuda_version]]

    Example:
        0, NVIDIA GeForce RTX 4090, 78, 66, 10240, 24576, 45, 210.3, 450.0, 550.54.14, 12.4

    Raises:
        GPUParseError: On any malformed row; no partial snapshot is returned.
    """
    gpus: List[GPURecord] = []

    for line in raw.strip().splitlines():
        line = line.strip()
        if not line:
            continue

        parts = line.split(",")
        if len(parts) < MIN_FIELDS:
            raise GPUParseError(
                f"unexpected nvidia-smi output: {sanitize_for_logging(line)!r}"
            )

        gpus.append(
            GPURecord(
                index=_parse_required_int(parts[0], "index"),
                name=parts[1].strip(),
                util=_parse_required_int(parts[2], "util"),
                temp=_parse_required_int(parts[3], "temp"),
                mem_used=_parse_required_int(parts[4], "memUsed"),
                mem_total=_parse_required_int(parts[5], "memTotal"),
                fan_speed=_parse_optional_int(parts, 6),
                power_draw=_parse_optional_int(parts, 7),
                power_limit=_parse_optional_int(parts, 8),
                driver_version=_parse_optional_str(parts, 9),
                cuda_version=_parse_optional_str(parts, 10) if has_cuda else UNKNOWN_STR,
            )
        )

    return GPUSnapshot(tuple(gpus))


def _is_missing(raw: str) -> bool:
    return raw == "" or raw.lower() in _MISSING_VALUES


def _round_half_away(value: float) -> int:
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def _to_int(raw: str) -> int:
    """Parse an integer or floating-point literal, rounding floats half away from zero."""
    if not _NUMBER_RE.fullmatch(raw):
        raise ValueError(f"invalid number {raw!r}")
    try:
        return int(raw)
    except ValueError:
        pass
    value = float(raw)
    if not math.isfinite(value):
        raise ValueError(f"non-finite value {raw!r}")
    return _round_half_away(value)


def _parse_required_int(raw: str, field: str) -> int:
    raw = raw.strip()
    if raw == "":
        raise GPUParseError(f"parse {field}: empty value", field=field)
    if _is_missing(raw):
        raise GPUParseError(
            f"parse {field}: missing required numeric value {raw!r}", field=field
        )
    try:
        return _to_int(raw)
    except ValueError as e:
        raise GPUParseError(f"parse {field}: {e}", field=field) from e


def _parse_optional_int(parts: List[str], index: int) -> int:
    if index >= len(parts):
        return UNKNOWN_INT
    raw = parts[index].strip()
    if _is_missing(raw):
        return UNKNOWN_INT
    try:
        return _to_int(raw)
    except ValueError:
        return UNKNOWN_INT


def _parse_optional_str(parts: List[str], index: int) -> str:
    if index >= len(parts):
        return UNKNOWN_STR
    raw = parts[index].strip()
    if _is_missing(raw):
        return UNKNOWN_STR
    return raw
