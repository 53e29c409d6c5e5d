"""Serial console access for fleet VMs."""

from kvmfleet.console.session import ConsoleSession
from kvmfleet.console.transcript import ConsoleTranscript

__all__ = ["ConsoleSession", "ConsoleTranscript"]
