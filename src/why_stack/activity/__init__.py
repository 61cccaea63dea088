"""
Activity module: structured change events and their after-commit recorder.
"""

from why_stack.activity.recorder import ActivityEvent, ActivityRead, ActivityRecorder

__all__ = [
    "ActivityEvent",
    "ActivityRead",
    "ActivityRecorder",
]
