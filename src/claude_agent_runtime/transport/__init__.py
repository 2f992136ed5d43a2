"""Line-framed transports to the CLI."""

from .base import Transport, TransportState
from .mock import MockTransport, control_failure, control_success
from .subprocess_cli import SubprocessCLITransport, find_cli

__all__ = [
    "Transport",
    "TransportState",
    "SubprocessCLITransport",
    "MockTransport",
    "find_cli",
    "control_success",
    "control_failure",
]
