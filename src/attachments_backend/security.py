from __future__ import annotations

import jwt

from attachments_backend.config import settings


class TokenVerificationError(Exception):
    pass


def verify_token(token: str | None, *, secret: str | None = None) -> str:
    """Verify a caller JWT and return its subject id.

    The subject is the `id` claim (falling back to `sub`); a token without a
    non-empty subject is rejected like a bad signature.
    """

    if not token or not token.strip():
        raise TokenVerificationError("missing token")
    try:
        claims = jwt.decode(
            token.strip(),
            secret if secret is not None else settings.jwt_secret,
            algorithms=settings.jwt_algorithms_list(),
        )
    except jwt.PyJWTError as e:
        raise TokenVerificationError(str(e)) from e

    subject = claims.get("id")
    if subject is None:
        subject = claims.get("sub")
    if isinstance(subject, int) and not isinstance(subject, bool):
        subject = str(subject)
    if not isinstance(subject, str) or not subject.strip():
        raise TokenVerificationError("token has no subject")
    return subject.strip()
