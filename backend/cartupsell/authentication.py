"""Password login for the SQLAdmin back-office at /admin.

A single shared password (ADMIN_PASSWORD) guards the panel. With no password
configured, login is refused.
"""

import hmac
import logging
from typing import Optional

from sqladmin.authentication import AuthenticationBackend
from starlette.requests import Request

logger = logging.getLogger(__name__)


class SimpleAuth(AuthenticationBackend):
    """Session-cookie auth backed by one admin password."""

    def __init__(self, secret_key: str, password: Optional[str] = None):
        super().__init__(secret_key=secret_key)
        self.password = password

    async def login(self, request: Request) -> bool:
        form = await request.form()
        supplied = str(form.get("password") or "")

        if not self.password or not hmac.compare_digest(supplied, self.password):
            logger.warning(f"[ADMIN] Failed login for user {form.get('username')!r}")
            return False

        request.session.update({"admin": True, "username": str(form.get("username") or "admin")})
        return True

    async def logout(self, request: Request) -> bool:
        request.session.clear()
        return True

    async def authenticate(self, request: Request) -> bool:
        return bool(request.session.get("admin"))
