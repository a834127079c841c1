from docproc.processing.state_machine import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    ProcessingStatus,
    can_transition,
    mark_completed,
    mark_failed,
    mark_processing,
    reset_for_retry,
    validate_progress,
)

__all__ = [
    "ALLOWED_TRANSITIONS", "TERMINAL_STATES", "ProcessingStatus", "can_transition",
    "mark_completed", "mark_failed", "mark_processing", "reset_for_retry", "validate_progress",
]
