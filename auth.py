import logging
import time
from datetime import timedelta
from typing import Callable, Optional

from fastapi import Depends, Request, Response
from jose import jwt, JWTError
from passlib.context import CryptContext

import config
from errors import (
    Forbidden,
    InvalidCredentials,
    InvalidToken,
    MalformedPayload,
    NotFound,
    TokenExpired,
    Unauthenticated,
)
from models import TokenData
from stores import UserStore, get_user_store

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE = timedelta(hours=config.ACCESS_TOKEN_EXPIRE_HOURS)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


# ---------------- TOKEN CODEC ----------------
class TokenCodec:
    """Signs and verifies stateless session tokens.

    Expiry is checked here rather than inside jose so callers can pass an
    explicit `now` and so an expired token can be told apart from a forged
    one.
    """

    def __init__(self, secret: str, algorithm: str = "HS256", clock: Callable[[], float] = time.time):
        self.secret = secret
        self.algorithm = algorithm
        self.clock = clock

    def sign(self, claims: dict, expires_in: timedelta = ACCESS_TOKEN_EXPIRE) -> str:
        issued_at = int(self.clock())
        to_encode = claims.copy()
        to_encode.update({"iat": issued_at, "exp": issued_at + int(expires_in.total_seconds())})
        return jwt.encode(to_encode, self.secret, algorithm=self.algorithm)

    def verify(self, token: str, now: Optional[float] = None) -> dict:
        try:
            claims = jwt.decode(
                token, self.secret, algorithms=[self.algorithm], options={"verify_exp": False}
            )
        except JWTError as e:
            raise InvalidToken() from e

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            raise InvalidToken()
        if (self.clock() if now is None else now) >= exp:
            raise TokenExpired()
        return claims


def get_token_codec() -> TokenCodec:
    return TokenCodec(config.JWT_SECRET, config.JWT_ALGORITHM)


# ---------------- CREDENTIAL ISSUER ----------------
async def authenticate_user(users: UserStore, email: str, password: str) -> dict:
    user = await users.find_by_email(email)
    if not user:
        raise NotFound("User not found")
    if not verify_password(password, user.get("password", "")):
        logger.warning("Login rejected for %s: bad password", email)
        raise InvalidCredentials()
    return user


def issue_token(codec: TokenCodec, user: dict) -> str:
    return codec.sign({"sub": user["user_id"], "id": user["user_id"], "email": user["email"]})


def set_auth_cookie(response: Response, token: str):
    response.set_cookie(
        config.AUTH_COOKIE_NAME,
        token,
        max_age=int(ACCESS_TOKEN_EXPIRE.total_seconds()),
        path="/",
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite="strict",
    )


def clear_auth_cookie(response: Response):
    response.delete_cookie(
        config.AUTH_COOKIE_NAME,
        path="/",
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite="strict",
    )


# ---------------- CREDENTIAL SOURCES ----------------
class HeaderCredentialSource:
    name = "header"

    def extract(self, request: Request) -> Optional[str]:
        header = request.headers.get("Authorization")
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()


class CookieCredentialSource:
    name = "cookie"

    def __init__(self, cookie_name: str = config.AUTH_COOKIE_NAME):
        self.cookie_name = cookie_name

    def extract(self, request: Request) -> Optional[str]:
        return request.cookies.get(self.cookie_name) or None


# ---------------- CREDENTIAL VERIFIER ----------------
class Authenticated:
    """FastAPI dependency that gates an endpoint on a valid token.

    load_user resolves the subject against the user store (needed for a
    user projection); admin implies load_user and rejects non-admins.
    """

    def __init__(self, source, load_user: bool = False, admin: bool = False):
        self.source = source
        self.load_user = load_user or admin
        self.admin = admin

    async def __call__(
        self,
        request: Request,
        codec: TokenCodec = Depends(get_token_codec),
        users: UserStore = Depends(get_user_store),
    ) -> TokenData:
        token = self.source.extract(request)
        if not token:
            raise Unauthenticated()

        try:
            claims = codec.verify(token)
        except TokenExpired:
            logger.warning("Rejected expired token from %s on %s", self.source.name, request.url.path)
            raise
        except InvalidToken:
            logger.warning("Rejected token with bad signature or format on %s", request.url.path)
            raise

        user_id = claims.get("sub") or claims.get("id")
        if not user_id:
            logger.warning("Token without subject on %s", request.url.path)
            raise MalformedPayload()

        data = TokenData(user_id=str(user_id), email=claims.get("email"))
        if not self.load_user:
            return data

        user = await users.find_by_id(data.user_id)
        if not user:
            raise NotFound("User not found.")
        data.user = user
        if self.admin and not data.is_admin:
            logger.warning("User %s denied admin access to %s", data.user_id, request.url.path)
            raise Forbidden()
        return data


bearer_user = Authenticated(HeaderCredentialSource())
bearer_profile = Authenticated(HeaderCredentialSource(), load_user=True)
bearer_admin = Authenticated(HeaderCredentialSource(), admin=True)
cookie_profile = Authenticated(CookieCredentialSource(), load_user=True)
