"""Enhpix entitlement backend.

Keeps a local mirror of Stripe subscription state, meters monthly image
credits and repairs drift between the two.
"""

__version__ = '0.1.0'
