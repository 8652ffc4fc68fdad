"""
Submission Workflow State Machine

State machine for the review pipeline: which operation is legal in which
status, and where an approval sends a submission next.
"""

from typing import Dict, List, Optional, Sequence
import logging

from qbank.core.identity import Role
from .exceptions import InvalidState
from .schemas import HistoryEntry, SubmissionStatus, WorkflowAction

logger = logging.getLogger(__name__)

INITIAL_STATUS = SubmissionStatus.AWAITING_PROCESSOR

# Stage that just finished -> where the processor's approval sends the submission.
NEXT_STAGE_BY_ROLE: Dict[Role, SubmissionStatus] = {
    Role.GATHERER: SubmissionStatus.AWAITING_AUTHOR,
    Role.CREATOR: SubmissionStatus.AWAITING_EXPLAINER,
    Role.EXPLAINER: SubmissionStatus.COMPLETED,
}
DEFAULT_NEXT_STAGE = SubmissionStatus.AWAITING_AUTHOR


def next_stage_after(history: Sequence[HistoryEntry]) -> SubmissionStatus:
    """
    Infer the status an approval leads to from the most recent history entry.

    The role of the last ledger entry tells which producing stage just
    submitted; anything unrecognised falls back to the authoring stage.
    """
    if not history:
        return DEFAULT_NEXT_STAGE
    return NEXT_STAGE_BY_ROLE.get(history[-1].performed_by_role, DEFAULT_NEXT_STAGE)


class SubmissionStateMachine:
    """
    Finite state machine for the submission review pipeline.

    Approval is the only transition whose target is not fixed: it is resolved
    from the history ledger by next_stage_after().
    """

    def __init__(self):
        """Initialize the state machine with valid transitions"""
        # None marks a target computed at transition time
        self._transitions: Dict[SubmissionStatus, Dict[WorkflowAction, Optional[SubmissionStatus]]] = {
            SubmissionStatus.AWAITING_PROCESSOR: {
                WorkflowAction.APPROVE: None,
                WorkflowAction.REJECT: SubmissionStatus.REJECTED,
                WorkflowAction.COMMENT: SubmissionStatus.AWAITING_PROCESSOR,
            },
            SubmissionStatus.AWAITING_AUTHOR: {
                WorkflowAction.REVISE: SubmissionStatus.AWAITING_PROCESSOR,
                WorkflowAction.COMMENT: SubmissionStatus.AWAITING_AUTHOR,
            },
            SubmissionStatus.AWAITING_EXPLAINER: {
                WorkflowAction.SUPPLY_EXPLANATION: SubmissionStatus.AWAITING_PROCESSOR,
                WorkflowAction.COMMENT: SubmissionStatus.AWAITING_EXPLAINER,
            },
            # Final states - no transitions allowed
            SubmissionStatus.COMPLETED: {},
            SubmissionStatus.REJECTED: {},
        }

        self._state_metadata = {
            SubmissionStatus.AWAITING_PROCESSOR: {
                'description': 'Staged for processor review',
                'is_final': False,
                'owner_role': Role.PROCESSOR,
            },
            SubmissionStatus.AWAITING_AUTHOR: {
                'description': 'With the authoring stage',
                'is_final': False,
                'owner_role': Role.CREATOR,
            },
            SubmissionStatus.AWAITING_EXPLAINER: {
                'description': 'With the explanation stage',
                'is_final': False,
                'owner_role': Role.EXPLAINER,
            },
            SubmissionStatus.COMPLETED: {
                'description': 'Approved and publicly usable',
                'is_final': True,
                'owner_role': None,
            },
            SubmissionStatus.REJECTED: {
                'description': 'Rejected by the processor',
                'is_final': True,
                'owner_role': None,
            },
        }

    def transition(
        self,
        current_state: SubmissionStatus,
        action: WorkflowAction,
        history: Sequence[HistoryEntry] = (),
    ) -> SubmissionStatus:
        """
        Resolve the status an action leads to.

        Args:
            current_state: Current submission status
            action: Action to execute
            history: Ledger of the submission, consulted for approvals

        Returns:
            New status after transition

        Raises:
            InvalidState: If the action is not legal in the current status
        """
        allowed_actions = self._transitions.get(current_state, {})
        if action not in allowed_actions:
            raise InvalidState(
                operation=action.value,
                current_state=SubmissionStatus(current_state).value,
                required_state=self._required_state_name(action),
            )

        new_state = allowed_actions[action]
        if new_state is None:
            new_state = next_stage_after(history)

        logger.debug(f"State transition: {current_state.value} --({action.value})--> {new_state.value}")
        return new_state

    def can_transition(self, current_state: SubmissionStatus, action: WorkflowAction) -> bool:
        return action in self._transitions.get(current_state, {})

    def required_state(self, action: WorkflowAction) -> Optional[SubmissionStatus]:
        """
        The single status an action is legal in, or None when several are.
        """
        states = [state for state, actions in self._transitions.items() if action in actions]
        return states[0] if len(states) == 1 else None

    def _required_state_name(self, action: WorkflowAction) -> Optional[str]:
        state = self.required_state(action)
        return state.value if state is not None else None

    def get_allowed_actions(self, current_state: SubmissionStatus) -> List[WorkflowAction]:
        return list(self._transitions.get(current_state, {}).keys())

    def is_final_state(self, state: SubmissionStatus) -> bool:
        return self._state_metadata.get(state, {}).get('is_final', False)

    def owner_role(self, state: SubmissionStatus) -> Optional[Role]:
        """Stage role that may act on a submission in this status."""
        return self._state_metadata.get(state, {}).get('owner_role')

    def get_state_description(self, state: SubmissionStatus) -> str:
        return self._state_metadata.get(state, {}).get('description', str(state))

    def get_next_possible_states(self, current_state: SubmissionStatus) -> List[SubmissionStatus]:
        """All statuses reachable in one step, approval targets included."""
        next_states: List[SubmissionStatus] = []
        for action, target in self._transitions.get(current_state, {}).items():
            targets = [target] if target is not None else [*NEXT_STAGE_BY_ROLE.values(), DEFAULT_NEXT_STAGE]
            for state in targets:
                if state not in next_states:
                    next_states.append(state)
        return next_states


def create_submission_state_machine() -> SubmissionStateMachine:
    """
    Factory function to create a configured submission state machine.
    """
    return SubmissionStateMachine()
