"""
Auth session - the signed-in identity and its bearer token
"""

from typing import Awaitable, Callable, Optional
import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)


class Identity(BaseModel):
    """Signed-in user as seen by the client"""
    uid: str
    email: Optional[str] = None
    session_id: Optional[str] = None
    token: Optional[str] = None


class AuthSession:
    """
    Holds the current identity and resolves auth tokens

    Args:
        admin_email: identity granted unlimited credits
        token_fetcher: coroutine returning a fresh token; when absent the
            identity's static token is used
    """

    def __init__(
        self,
        admin_email: Optional[str] = None,
        token_fetcher: Optional[Callable[[], Awaitable[Optional[str]]]] = None
    ):
        self.admin_email = admin_email.lower() if admin_email else None
        self.token_fetcher = token_fetcher
        self.identity: Optional[Identity] = None

    def sign_in(self, identity: Identity):
        self.identity = identity
        structlog.contextvars.bind_contextvars(uid=identity.uid, session_id=identity.session_id)
        logger.info("Identity set", uid=identity.uid)

    def sign_out(self):
        self.identity = None
        structlog.contextvars.unbind_contextvars("uid", "session_id")

    @property
    def uid(self) -> Optional[str]:
        return self.identity.uid if self.identity else None

    @property
    def session_id(self) -> Optional[str]:
        return self.identity.session_id if self.identity else None

    def is_admin(self) -> bool:
        if not self.identity or not self.identity.email or not self.admin_email:
            return False
        return self.identity.email.lower() == self.admin_email

    async def get_token(self) -> Optional[str]:
        """
        Resolve the current token

        Raises:
            Whatever the token fetcher raises; callers decide on fallbacks
        """

        if self.identity is None:
            return None
        if self.token_fetcher is not None:
            return await self.token_fetcher()
        return self.identity.token
