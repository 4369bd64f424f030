from .lifecycle import SubscriptionLifecycle
from .reconciler import Reconciler, VerificationResult

__all__ = [
    'Reconciler',
    'SubscriptionLifecycle',
    'VerificationResult',
]
