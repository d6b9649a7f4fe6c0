"""
Core reconciliation machinery.

This package provides the pieces the replica controller is built from:
- Work queue with single-flight delivery and rate limited retries
- Typed informer events and their translation to work queue keys
- Replica state machine

Import directly from submodules:
from longhorn_manager.core.workqueue import RateLimitingQueue
from longhorn_manager.core.state_machine import ReplicaAction, ReplicaStateMachine
from longhorn_manager.core.event_translator import EventTranslator
"""
