from __future__ import annotations

from battlebridge.bridge.agent import AgentBridge, split_command
from battlebridge.bridge.classifier import OutputClassifier, classify
from battlebridge.bridge.fake import ProcessScript, ScriptStep, ScriptedProcessLauncher, dry_run_script
from battlebridge.bridge.outcomes import (
    COMPLETION_MARKER,
    Cancelled,
    Completed,
    ConfigurationError,
    Failed,
    RunOutcome,
    RunRequest,
    StreamEvent,
    TimedOut,
    outcome_to_dict,
)
from battlebridge.bridge.process import OsProcessLauncher, ProcessHandle, ProcessLauncher
from battlebridge.bridge.supervisor import ProcessSupervisor

__all__ = [
    'AgentBridge',
    'COMPLETION_MARKER',
    'Cancelled',
    'Completed',
    'ConfigurationError',
    'Failed',
    'OsProcessLauncher',
    'OutputClassifier',
    'ProcessHandle',
    'ProcessLauncher',
    'ProcessScript',
    'ProcessSupervisor',
    'RunOutcome',
    'RunRequest',
    'ScriptStep',
    'ScriptedProcessLauncher',
    'StreamEvent',
    'TimedOut',
    'classify',
    'dry_run_script',
    'outcome_to_dict',
    'split_command',
]
