from enum import Enum


class StreamState(Enum):
    """Lifecycle of one input stream inside the batch scheduler."""

    UNOPENED = "UNOPENED"
    ACTIVE = "ACTIVE"
    DRAINING = "DRAINING"
    CLOSED = "CLOSED"


class SchedulerPhase(Enum):
    """Phases the driver loop moves through on every cycle."""

    RUNNING = "RUNNING"
    ASSEMBLING = "ASSEMBLING"
    DISPATCHING = "DISPATCHING"
    DISTRIBUTING = "DISTRIBUTING"
    RETIRING = "RETIRING"
    DRAINED = "DRAINED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
