from stepflow.state.handoff import (
    HandoffPayload,
    HandoffStore,
    restore_from_handoff,
    serialize_handoff,
)
from stepflow.state.store import JsonEnvelopeStore, StateStoreError
from stepflow.state.worktree import MergeResult, WorktreeHandle, WorktreeManager

__all__ = [
    "HandoffPayload",
    "HandoffStore",
    "JsonEnvelopeStore",
    "MergeResult",
    "StateStoreError",
    "WorktreeHandle",
    "WorktreeManager",
    "restore_from_handoff",
    "serialize_handoff",
]
