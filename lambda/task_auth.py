from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ClientError
from task_errors import EmailNotFoundError
from task_errors import ForbiddenError
from task_errors import IdentityLookupError

ADMIN_SCOPE_PREFIX = "admin"


@dataclass(frozen=True)
class Caller:
    email: str
    is_admin: bool


def claims_from_event(event: dict[str, Any]) -> dict[str, Any]:
    rc = event.get("requestContext") or {}
    if not isinstance(rc, dict):
        return {}
    auth = rc.get("authorizer") or {}
    if not isinstance(auth, dict):
        return {}
    claims = auth.get("claims")
    if isinstance(claims, dict):
        return claims
    jwt_claims = (auth.get("jwt") or {}).get("claims")
    if isinstance(jwt_claims, dict):
        return jwt_claims
    return {}


def user_pool_id(issuer: str) -> str:
    # https://cognito-idp.<region>.amazonaws.com/<poolId>
    return str(issuer or "").strip().rstrip("/").rsplit("/", 1)[-1]


def enforce_ownership(requested_email: str, caller_email: str, is_admin: bool) -> None:
    if is_admin:
        return
    if not requested_email or requested_email != caller_email:
        raise ForbiddenError("Forbidden")


class AuthorizationGate:
    def __init__(self, cognito_client: Any) -> None:
        self._cognito = cognito_client

    def resolve_email(self, claims: dict[str, Any]) -> str:
        pool_id = user_pool_id(str(claims.get("iss") or ""))
        username = str(claims.get("username") or claims.get("cognito:username") or "").strip()
        if not pool_id or not username:
            raise IdentityLookupError("missing issuer or username claims")

        try:
            user = self._cognito.admin_get_user(UserPoolId=pool_id, Username=username)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code") or "")
            if code == "UserNotFoundException":
                raise IdentityLookupError(f"user not found: {username}") from e
            raise IdentityLookupError(f"identity lookup failed: {code or e}") from e

        for attr in user.get("UserAttributes") or []:
            if attr.get("Name") == "email" and str(attr.get("Value") or "").strip():
                return str(attr["Value"]).strip()
        raise EmailNotFoundError("Email not found")

    def is_admin(self, claims: dict[str, Any]) -> bool:
        return str(claims.get("scope") or "").startswith(ADMIN_SCOPE_PREFIX)

    def caller(self, claims: dict[str, Any]) -> Caller:
        return Caller(email=self.resolve_email(claims), is_admin=self.is_admin(claims))

    def enforce_ownership(self, requested_email: str, caller: Caller) -> None:
        enforce_ownership(requested_email, caller.email, caller.is_admin)
