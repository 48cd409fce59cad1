import logging

from marketchat.core.errors import AuthenticationMissing

logger = logging.getLogger(__name__)


class IdentityResolver:
    """
    Maps the authenticated Supabase session to the numeric id in `users`.

    With `jwt` set the user is read for that bearer token (server side);
    without it the client's own session is used.
    """

    def __init__(self, client, jwt: str | None = None):
        self.client = client
        self.jwt = jwt
        self._user_id: int | None = None

    async def current_user_id(self) -> int | None:
        if self._user_id is not None:
            return self._user_id

        try:
            if self.jwt:
                user_data = await self.client.auth.get_user(jwt=self.jwt)
            else:
                user_data = await self.client.auth.get_user()
        except Exception as e:
            logger.warning("Could not read authenticated user: %s", e)
            return None

        user = getattr(user_data, "user", None)
        email = getattr(user, "email", None)
        if not email:
            return None

        self._user_id = await self.user_id_by_email(email)
        return self._user_id

    async def require_user_id(self) -> int:
        user_id = await self.current_user_id()
        if user_id is None:
            raise AuthenticationMissing()
        return user_id

    async def user_id_by_email(self, email: str) -> int | None:
        try:
            response = (
                await self.client.table("users")
                .select("id")
                .eq("email", email)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error("Error fetching user id for %s: %s", email, e)
            return None

        if not response.data:
            logger.warning("No users row for %s", email)
            return None
        return int(response.data[0]["id"])
