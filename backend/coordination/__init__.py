"""Sub-agent fan-out / fan-in coordination.

Key Components:
    - FanOutDispatcher: Splits a coordinator's work into child sessions
    - FanInReconciler: Applies subtask outcomes, resumes the coordinator once
    - SubtaskWatchdog: Fails subtasks that miss their liveness deadline
    - filter_diff_for_files: Path-exact unified diff filter
    - format_coordinator_message: Merged findings for the coordinator
"""

from coordination.diff_filter import filter_diff_for_files
from coordination.dispatcher import DispatchError, DispatchResult, FanOutDispatcher
from coordination.merger import format_coordinator_message, parse_findings
from coordination.reconciler import FanInReconciler
from coordination.watchdog import SubtaskWatchdog

__all__ = [
    "DispatchError",
    "DispatchResult",
    "FanInReconciler",
    "FanOutDispatcher",
    "SubtaskWatchdog",
    "filter_diff_for_files",
    "format_coordinator_message",
    "parse_findings",
]
