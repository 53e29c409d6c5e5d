"""VM lifecycle states and transition rules.

VM state lifecycle:
    starting -> booting -> configuring -> ready
    any non-terminal state -> failed

Ready and failed are terminal: a VM never moves backward, and a failed VM
is discarded rather than provisioned again.
"""

from __future__ import annotations

from enum import Enum

from kvmfleet.errors import InvalidTransitionError


class VMState(str, Enum):
    """Lifecycle state of a fleet VM."""
    STARTING = "starting"
    BOOTING = "booting"
    CONFIGURING = "configuring"
    READY = "ready"
    FAILED = "failed"


class VMStateMachine:
    """Centralized transition logic for VMs."""

    VALID_TRANSITIONS: dict[VMState, set[VMState]] = {
        VMState.STARTING: {VMState.BOOTING, VMState.FAILED},
        VMState.BOOTING: {VMState.CONFIGURING, VMState.FAILED},
        VMState.CONFIGURING: {VMState.READY, VMState.FAILED},
        VMState.READY: set(),
        VMState.FAILED: set(),
    }

    TERMINAL_STATES: set[VMState] = {VMState.READY, VMState.FAILED}

    @classmethod
    def can_transition(cls, current: VMState, target: VMState) -> bool:
        """Check if a state transition is valid."""
        return target in cls.VALID_TRANSITIONS.get(current, set())

    @classmethod
    def is_terminal(cls, state: VMState) -> bool:
        return state in cls.TERMINAL_STATES

    @classmethod
    def transition(cls, current: VMState, target: VMState, vm_index: int | None = None) -> VMState:
        """Return ``target`` if the move is allowed, else raise InvalidTransitionError."""
        if not cls.can_transition(current, target):
            raise InvalidTransitionError(
                f"invalid VM state transition {current.value} -> {target.value}",
                vm_index=vm_index,
            )
        return target
