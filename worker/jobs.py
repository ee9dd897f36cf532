"""
Transcode job model and per-job state machine.

State Transition Diagram:
    QUEUED ──> STABILITY_CHECK ──> VALIDATING_SOURCE ──> ENCODING ──> VALIDATING_OUTPUT
                                          │                  ^               │
                                          │                  └── (retry) ────┤
                                          v                                  v
                                   PERSISTING_POINTER <──────────────────────┘
                                          │
                                          v
                                      COMPLETED

    ENCODING may also repeat directly when ffmpeg itself fails and a retry
    is left. Any non-terminal step may move to FAILED. A requeued job (source vanished
    during the stability check) goes back to QUEUED.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

from store.owners import OwningRecord

logger = logging.getLogger(__name__)


class JobStep(str, Enum):
    """Processing steps of a transcode job."""

    QUEUED = "queued"
    STABILITY_CHECK = "stability_check"
    VALIDATING_SOURCE = "validating_source"
    ENCODING = "encoding"
    VALIDATING_OUTPUT = "validating_output"
    PERSISTING_POINTER = "persisting_pointer"
    COMPLETED = "completed"
    FAILED = "failed"


class JobKind(str, Enum):
    """FRESH may reuse a current rendition; FORCED always re-encodes."""

    FRESH = "fresh"
    FORCED = "forced"


class JobTrigger(str, Enum):
    """What discovered the asset."""

    FILESYSTEM = "filesystem"
    DB_SCAN = "db_scan"
    CLI = "cli"


TERMINAL_STEPS: FrozenSet[JobStep] = frozenset([JobStep.COMPLETED, JobStep.FAILED])

ALLOWED_TRANSITIONS: Dict[JobStep, FrozenSet[JobStep]] = {
    JobStep.QUEUED: frozenset([JobStep.STABILITY_CHECK, JobStep.FAILED]),
    JobStep.STABILITY_CHECK: frozenset([JobStep.VALIDATING_SOURCE, JobStep.QUEUED, JobStep.FAILED]),
    JobStep.VALIDATING_SOURCE: frozenset([JobStep.ENCODING, JobStep.PERSISTING_POINTER, JobStep.FAILED]),
    JobStep.ENCODING: frozenset([JobStep.VALIDATING_OUTPUT, JobStep.ENCODING, JobStep.FAILED]),
    JobStep.VALIDATING_OUTPUT: frozenset([JobStep.PERSISTING_POINTER, JobStep.ENCODING, JobStep.FAILED]),
    JobStep.PERSISTING_POINTER: frozenset([JobStep.COMPLETED, JobStep.FAILED]),
    JobStep.COMPLETED: frozenset(),
    JobStep.FAILED: frozenset(),
}


class InvalidJobTransition(RuntimeError):
    """Raised when a job is moved along an edge the state machine does not allow."""


@dataclass
class Job:
    """A unit of work: bring one asset's rendition and pointer up to date."""

    path: Path
    key: str
    kind: JobKind = JobKind.FRESH
    trigger: JobTrigger = JobTrigger.FILESYSTEM
    owner: Optional[OwningRecord] = None
    step: JobStep = JobStep.QUEUED
    requeues: int = 0
    error: Optional[str] = None
    history: List[JobStep] = field(default_factory=list)

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def is_terminal(self) -> bool:
        return self.step in TERMINAL_STEPS

    def advance(self, step: JobStep) -> None:
        """Move to ``step``, enforcing the transition table."""
        if step not in ALLOWED_TRANSITIONS[self.step]:
            raise InvalidJobTransition(f"{self.filename}: {self.step.value} -> {step.value} not allowed")
        self.history.append(self.step)
        self.step = step
        logger.debug(f"{self.filename}: {self.history[-1].value} -> {step.value}")

    def fail(self, reason: str) -> None:
        self.error = reason
        self.advance(JobStep.FAILED)

    def merge(self, other: "Job") -> None:
        """Fold a duplicate trigger for the same asset into this queued job."""
        if other.kind == JobKind.FORCED:
            self.kind = JobKind.FORCED
        if self.owner is None and other.owner is not None:
            self.owner = other.owner
        # A rename keeps the key but may change the directory
        self.path = other.path
