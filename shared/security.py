import os
from fastapi import Header
from jose import jwt, JWTError, ExpiredSignatureError

from shared.errors import Unauthenticated

JWT_SECRET = os.getenv("JWT_SECRET")
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is not set")
ALGO = "HS256"

JWT_ISSUER = os.getenv("JWT_ISSUER")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE")


def decode_token(token: str) -> dict:
    options = {"verify_aud": bool(JWT_AUDIENCE)}
    return jwt.decode(
        token,
        JWT_SECRET,
        algorithms=[ALGO],
        audience=JWT_AUDIENCE,
        issuer=JWT_ISSUER,
        options=options,
    )


def require_user(authorization: str = Header(default=None)) -> dict:
    """
    Resolve the calling user from a bearer token.

    The returned claims always carry `uid` (the `sub` claim as a string),
    which is how orders, carts and refunds are keyed.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthenticated("Authentication required")

    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise Unauthenticated("Authentication required")

    try:
        claims = decode_token(token)
    except ExpiredSignatureError:
        raise Unauthenticated("Token expired")
    except JWTError:
        raise Unauthenticated("Invalid token")

    if not claims.get("sub"):
        raise Unauthenticated("Token has no subject")

    claims["uid"] = str(claims["sub"])
    return claims
