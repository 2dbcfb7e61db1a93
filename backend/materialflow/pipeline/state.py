"""
Processing state machine for a material.

    PENDING ─► EXTRACTING ─┬─────────────────► CLEANING ─► SEGMENTING ─► COMPLETED
                           └─► OCR_EXTRACTING ─┘
    FAILED is reachable from every non-terminal state.
    PENDING is the only state a material can be reset into (from anywhere).

Chunk indexing runs while the material sits in SEGMENTING; COMPLETED is only
written together with the completion marker (indexed_version).
"""

from __future__ import annotations

from enum import Enum

from materialflow.core.exceptions import InvalidTransitionError


class ProcessingStatus(str, Enum):
    PENDING        = "pending"
    EXTRACTING     = "extracting"
    OCR_EXTRACTING = "ocr_extracting"
    CLEANING       = "cleaning"
    SEGMENTING     = "segmenting"
    COMPLETED      = "completed"
    FAILED         = "failed"


class MaterialStatus(str, Enum):
    """Business-visible status. READY iff processing COMPLETED."""
    PENDING = "pending"
    READY   = "ready"


ACTIVE_STATES: frozenset[ProcessingStatus] = frozenset({
    ProcessingStatus.EXTRACTING,
    ProcessingStatus.OCR_EXTRACTING,
    ProcessingStatus.CLEANING,
    ProcessingStatus.SEGMENTING,
})

TERMINAL_STATES: frozenset[ProcessingStatus] = frozenset({
    ProcessingStatus.COMPLETED,
    ProcessingStatus.FAILED,
})

# Forward edges driven by the orchestrator. Resets to PENDING are handled
# separately because they are legal from every state.
_FORWARD_EDGES: dict[ProcessingStatus, frozenset[ProcessingStatus]] = {
    ProcessingStatus.PENDING:        frozenset({ProcessingStatus.EXTRACTING}),
    ProcessingStatus.EXTRACTING:     frozenset({ProcessingStatus.OCR_EXTRACTING, ProcessingStatus.CLEANING}),
    ProcessingStatus.OCR_EXTRACTING: frozenset({ProcessingStatus.CLEANING}),
    ProcessingStatus.CLEANING:       frozenset({ProcessingStatus.SEGMENTING}),
    ProcessingStatus.SEGMENTING:     frozenset({ProcessingStatus.COMPLETED}),
    ProcessingStatus.COMPLETED:      frozenset(),
    ProcessingStatus.FAILED:         frozenset(),
}


def can_transition(current: ProcessingStatus, target: ProcessingStatus) -> bool:
    current = ProcessingStatus(current)
    target = ProcessingStatus(target)

    if target is ProcessingStatus.PENDING:
        return True
    if target is ProcessingStatus.FAILED:
        return current not in TERMINAL_STATES
    return target in _FORWARD_EDGES[current]


def assert_transition(current: ProcessingStatus, target: ProcessingStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(ProcessingStatus(current).value, ProcessingStatus(target).value)


def business_status(processing_status: ProcessingStatus) -> MaterialStatus:
    if ProcessingStatus(processing_status) is ProcessingStatus.COMPLETED:
        return MaterialStatus.READY
    return MaterialStatus.PENDING


def is_active(processing_status: ProcessingStatus) -> bool:
    return ProcessingStatus(processing_status) in ACTIVE_STATES
