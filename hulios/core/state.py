import dataclasses
import enum
from typing import Optional


class EnforcementState(enum.Enum):
    DISENGAGED = "disengaged"
    ENGAGING = "engaging"
    ENGAGED = "engaged"
    DISENGAGING = "disengaging"


@dataclasses.dataclass(frozen=True)
class StateFacts:
    """Observable host facts the enforcement state is derived from."""
    pid_marker: bool
    relay_alive: bool
    output_policy: Optional[str]
    dns_hijacked: bool

    @property
    def gate_closed(self):
        return self.output_policy == "DROP"


def derive_state(facts):
    """Map probed facts onto a state.

    Anything short of a clean host with no relay is treated as an
    unfinished transition, so callers never trust an assumed prior state.
    """
    if facts.relay_alive and facts.gate_closed:
        return EnforcementState.ENGAGED
    if facts.relay_alive:
        return EnforcementState.ENGAGING
    if facts.gate_closed or facts.dns_hijacked or facts.pid_marker:
        return EnforcementState.DISENGAGING
    return EnforcementState.DISENGAGED
