"""
Identity Provisioning

Checkout can complete for an email that has no account yet. The engine then
asks an identity provider for a user id and, later, to send a
password-setup link. Account management itself lives elsewhere.
"""

import logging
import uuid
from typing import Optional

logger = logging.getLogger(__name__)

# Namespace for ids derived from email addresses
IDENTITY_NAMESPACE = uuid.UUID('6f1f4a4e-2c1b-5d8e-9a77-3e5b0c6d9f21')


class IdentityProvisioner:
    """Interface of the identity provider the engine talks to."""

    async def ensure_identity(self, email: str, full_name: Optional[str] = None) -> str:
        raise NotImplementedError

    async def send_password_setup(self, email: str, user_id: Optional[str] = None) -> None:
        raise NotImplementedError


class LocalIdentityProvisioner(IdentityProvisioner):
    """
    Derives a stable id from the email and logs password-setup requests.

    Because the id is a UUID5 of the normalized email, two checkouts racing
    for the same new customer provision the same user.
    """

    def __init__(self, site_url: str):
        self._site_url = site_url.rstrip('/')

    async def ensure_identity(self, email: str, full_name: Optional[str] = None) -> str:
        user_id = str(uuid.uuid5(IDENTITY_NAMESPACE, email.strip().lower()))
        logger.info(f"[TASKS] Identity for {email}: {user_id}")
        return user_id

    async def send_password_setup(self, email: str, user_id: Optional[str] = None) -> None:
        logger.info(
            f"[TASKS] Password setup requested for {email} "
            f"(redirect: {self._site_url}/reset-password)"
        )
