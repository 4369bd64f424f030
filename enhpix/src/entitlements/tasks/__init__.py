from .identity import IdentityProvisioner, LocalIdentityProvisioner
from .queue import (
    TASK_PASSWORD_SETUP,
    TASK_TRACK_CANCELLATION,
    EntitlementTaskQueue,
)

__all__ = [
    'IdentityProvisioner',
    'LocalIdentityProvisioner',
    'TASK_PASSWORD_SETUP',
    'TASK_TRACK_CANCELLATION',
    'EntitlementTaskQueue',
]
