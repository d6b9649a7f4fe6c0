"""
Replica State Machine

This module maps the observed replica state (derived from its pod) and the
desired state (declared in the replica spec) to the single action the
controller takes in one reconcile pass.

Observed states:
- STOPPED: No pod, or the pod is still pending
- RUNNING: The pod is running
- UNKNOWN: The pod failed or its state cannot be determined
- DELETED: Data cleanup was confirmed; only the finalizer is left

Usage:
    >>> from longhorn_manager.core.state_machine import ReplicaAction, ReplicaStateMachine
    >>> from longhorn_manager.models.replica import InstanceState
    >>>
    >>> ReplicaStateMachine.next_action(InstanceState.STOPPED, InstanceState.RUNNING)
    <ReplicaAction.START: 'start'>
    >>> ReplicaStateMachine.next_action(InstanceState.UNKNOWN, InstanceState.RUNNING)
    <ReplicaAction.NONE: 'none'>
"""

from enum import Enum
from typing import Dict, Optional, Tuple
import structlog

from longhorn_manager.models.replica import InstanceState
from longhorn_manager.models.workload import Pod, PodPhase

logger = structlog.get_logger(__name__)


class ReplicaAction(str, Enum):
    """Side effects a reconcile pass can perform"""
    NONE = "none"
    START = "start"
    STOP = "stop"
    CLEANUP = "cleanup"
    FINALIZE = "finalize"


class ReplicaStateMachine:
    """
    Transition table for replica instances.

    Only the pairs listed in TRANSITIONS lead to an action; any other
    mismatch between observed and desired state is logged and left alone.
    """

    TRANSITIONS: Dict[Tuple[InstanceState, InstanceState], ReplicaAction] = {
        (InstanceState.STOPPED, InstanceState.RUNNING): ReplicaAction.START,
        (InstanceState.RUNNING, InstanceState.STOPPED): ReplicaAction.STOP,
        # Cleanup happens on a later pass, once the pod is observed gone
        (InstanceState.RUNNING, InstanceState.DELETED): ReplicaAction.STOP,
        (InstanceState.STOPPED, InstanceState.DELETED): ReplicaAction.CLEANUP,
        (InstanceState.DELETED, InstanceState.DELETED): ReplicaAction.FINALIZE,
    }

    @classmethod
    def observed_state(
        cls,
        pod: Optional[Pod],
        previous: Optional[InstanceState] = None,
    ) -> InstanceState:
        """
        Derive the observed instance state from the replica pod.

        Args:
            pod: The replica pod, or None if it does not exist
            previous: The state last persisted on the replica

        Returns:
            Observed instance state

        Example:
            >>> ReplicaStateMachine.observed_state(None)
            <InstanceState.STOPPED: 'stopped'>
        """
        if pod is None:
            # Confirmed cleanup is terminal until the finalizer is removed
            if previous == InstanceState.DELETED:
                return InstanceState.DELETED
            return InstanceState.STOPPED

        phase = pod.status.phase
        if phase == PodPhase.PENDING.value:
            return InstanceState.STOPPED
        if phase == PodPhase.RUNNING.value:
            return InstanceState.RUNNING
        return InstanceState.UNKNOWN

    @classmethod
    def next_action(
        cls,
        observed: Optional[InstanceState],
        desired: Optional[InstanceState],
        replica: Optional[str] = None,
    ) -> ReplicaAction:
        """
        Get the action that moves observed toward desired.

        Args:
            observed: Current observed state
            desired: Desired state from the replica spec
            replica: Optional replica name for logging

        Returns:
            The action to perform; NONE when converged or the pair is invalid
        """
        if observed == desired and desired != InstanceState.DELETED:
            return ReplicaAction.NONE

        action = cls.TRANSITIONS.get((observed, desired))
        if action is None:
            logger.error(
                "invalid_replica_transition",
                replica=replica,
                current=observed.value if observed else None,
                desired=desired.value if desired else None,
            )
            return ReplicaAction.NONE
        return action
