"""Exceptions raised by the remote client and the classifier that normalizes them."""

from typing import NamedTuple

AUTH_FAILED = "auth_failed"
HOST_KEY = "host_key"
DNS = "dns"
REFUSED = "refused"
TIMEOUT = "timeout"
NVIDIA_SMI_MISSING = "nvidia_smi_missing"
UNKNOWN = "unknown"
INVALID_TARGET = "invalid_target"

DEFAULT_FAILURE_MESSAGE = "Connection failed"


class RemoteQueryError(Exception):
    """Base class for a failed GPU query. ``str(exc)`` is the raw failure text."""


class RemoteCommandError(RemoteQueryError):
    """The ssh transport or the remote command failed."""


class GPUParseError(RemoteQueryError):
    """nvidia-smi output could not be parsed into a complete snapshot."""

    def __init__(self, message: str, field: str = ""):
        super().__init__(message)
        self.field = field


class ClassifiedError(NamedTuple):
    code: str
    message: str


# Evaluated in order; first match wins.
_RULES: tuple[tuple[tuple[str, ...], str, str], ...] = (
    (
        ("permission denied",),
        AUTH_FAILED,
        "Authentication failed. Check that your SSH key is loaded and accepted by the host.",
    ),
    (
        ("host key verification failed",),
        HOST_KEY,
        "Host key verification failed. Connect once from a terminal to trust the host key.",
    ),
    (
        ("could not resolve hostname",),
        DNS,
        "Could not resolve hostname. Check the host name or your network.",
    ),
    (
        ("connection refused",),
        REFUSED,
        "Connection refused. Check that sshd is running and the port is correct.",
    ),
    (
        ("timed out",),
        TIMEOUT,
        "Connection timed out. The host may be offline or unreachable.",
    ),
)


def classify(raw: str) -> ClassifiedError:
    """Map raw failure text to a stable (code, message) pair."""
    text = (raw or "").strip()
    lowered = text.lower()

    for needles, code, message in _RULES:
        if any(needle in lowered for needle in needles):
            return ClassifiedError(code, message)

    if "nvidia-smi" in lowered and "not found" in lowered:
        return ClassifiedError(
            NVIDIA_SMI_MISSING,
            "nvidia-smi was not found on the remote host. Install the NVIDIA driver utilities.",
        )

    return ClassifiedError(UNKNOWN, text or DEFAULT_FAILURE_MESSAGE)
