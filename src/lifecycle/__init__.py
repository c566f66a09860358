"""Lifecycle — статусы резерваций: оплата, отмена, продление, sweep."""

from .service import LifecycleConfig, LifecycleService, SweepReport
from .state_machine import (
    CancelPolicy,
    LifecycleEvent,
    LifecycleTransitionResult,
    SubscriptionLifecycle,
)

__all__ = [
    "SubscriptionLifecycle",
    "LifecycleEvent",
    "LifecycleTransitionResult",
    "CancelPolicy",
    "LifecycleService",
    "LifecycleConfig",
    "SweepReport",
]
