"""Staged upload lifecycle state machine.

Each staged upload attempt gets its own FSM instance.  The orchestrator
drives it and uses it to refuse illegal steps, most importantly a second
finalize of the same target.  The FSM itself performs no I/O.
"""

from __future__ import annotations

from statemachine import State, StateMachine


class StagedUploadSM(StateMachine):
    """Lifecycle of one staged upload.

    States:
        pending     -- Payload known, no target yet.
        requested   -- Signed target obtained, payload not yet sent.
        transferred -- Payload accepted by the signer.
        finalized   -- File created from the resource URL.
        failed      -- Any step failed; may restart from pending.
    """

    pending = State("pending", initial=True, value="pending")
    requested = State("requested", value="requested")
    transferred = State("transferred", value="transferred")
    finalized = State("finalized", final=True, value="finalized")
    failed = State("failed", value="failed")

    request_target = pending.to(requested)
    complete_transfer = requested.to(transferred)
    finalize = transferred.to(finalized)
    fail = pending.to(failed) | requested.to(failed) | transferred.to(failed)
    restart = failed.to(pending)


def create_fsm(current_state: str = "pending") -> StagedUploadSM:
    """Create an FSM instance positioned at *current_state*.

    Args:
        current_state: One of 'pending', 'requested', 'transferred',
            'finalized', 'failed'.
    """
    return StagedUploadSM(start_value=current_state)
