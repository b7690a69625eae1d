from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import HTTPException, Request

from signage.config import JWT_ALGORITHM, JWT_EXPIRE_MIN, JWT_SECRET
from signage.services.errors import AuthenticationFailure
from signage.services.sessions import DashboardIdentity


@dataclass(frozen=True)
class TokenClaims:
    tenant_id: str
    user_id: str
    email: str | None = None

    def identity(self) -> DashboardIdentity:
        return DashboardIdentity(tenant_id=self.tenant_id, user_id=self.user_id)


class TokenVerifier:
    def __init__(self, secret_key: str = JWT_SECRET, algorithm: str = JWT_ALGORITHM) -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm

    def create_token(
        self,
        tenant_id: str,
        user_id: str,
        email: str | None = None,
        expires_in: timedelta | None = None,
    ) -> str:
        expire_at = datetime.now(timezone.utc) + (expires_in or timedelta(minutes=JWT_EXPIRE_MIN))
        payload = {"tenantId": tenant_id, "userId": user_id, "exp": expire_at}
        if email:
            payload["email"] = email
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify(self, token: str) -> TokenClaims:
        try:
            decoded = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationFailure("Token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthenticationFailure("Invalid token") from exc

        tenant_id = decoded.get("tenantId")
        user_id = decoded.get("userId")
        if not tenant_id or not user_id:
            raise AuthenticationFailure("Token is missing tenant or user claims")
        return TokenClaims(tenant_id=str(tenant_id), user_id=str(user_id), email=decoded.get("email"))


token_verifier = TokenVerifier()


def bearer_token(authorization: str | None) -> str | None:
    scheme, _, value = (authorization or "").strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def get_current_user(request: Request) -> TokenClaims:
    token = bearer_token(request.headers.get("Authorization"))
    if not token:
        raise HTTPException(status_code=401, detail="Access token required")
    verifier: TokenVerifier = getattr(request.app.state, "token_verifier", token_verifier)
    try:
        return verifier.verify(token)
    except AuthenticationFailure as exc:
        raise HTTPException(status_code=403, detail="Invalid or expired token") from exc
