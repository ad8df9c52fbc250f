"""
Bookflow Backend — Account Service
====================================

What:  Permanently deletes a user account.
How:   Calls the GoTrue admin API with the service-role key. The store's
       foreign keys cascade the deletion to the profile, shelf rows and the
       user's manual catalog entries.
"""

import logging
import uuid

from bookflow.exceptions import AuthServiceError, DatabaseError, ExternalServiceError
from bookflow.services.auth_service import AuthService, auth_service

logger = logging.getLogger(__name__)


class AccountService:
    def __init__(self, auth: AuthService = auth_service):
        self._auth = auth

    async def delete_account(self, user_id: uuid.UUID) -> None:
        """
        Delete the auth user and, by cascade, everything they own.

        Raises:
            DatabaseError: The admin API refused or could not be reached
        """
        try:
            await self._auth.delete_user(user_id)
        except (AuthServiceError, ExternalServiceError) as e:
            logger.error("Failed to delete account %s: %s", user_id, e.message)
            raise DatabaseError(
                message=f"Failed to delete user account: {e.message}",
                context={"user_id": str(user_id)},
            ) from e
        logger.info("Deleted account %s", user_id)


account_service = AccountService()
