"""Bearer token issuing and validation.

Tokens have the form ``bmdev.<payload>.<signature>`` where ``payload`` is
the URL-safe base64 of the JSON claims and ``signature`` is the hex
HMAC-SHA256 of the same JSON under the configured secret.  Producers and
the dashboard are issued tokens out of band; this module only signs and
checks them.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid

from pydantic import BaseModel, Field, SecretStr
from pydantic import ValidationError as PydanticValidationError

_TOKEN_PREFIX = "bmdev"
_ISSUER = "metering"


class TokenClaims(BaseModel):
    """Claims carried by a bearer token.

    ``workspaces`` lists the workspaces the bearer may act on; ``"*"``
    grants every workspace.  An empty list scopes the token to
    ``tenant_id`` alone.
    """

    sub: str
    tenant_id: str
    role: str | None = None
    scopes: list[str] = Field(default_factory=list)
    workspaces: list[str] = Field(default_factory=list)
    identity_kind: str = "user"
    iss: str = _ISSUER
    iat: float
    exp: float
    jti: str | None = None

    def workspace_scope(self) -> frozenset[str]:
        return frozenset(self.workspaces or [self.tenant_id])


class TokenManager:
    """Sign and verify HMAC bearer tokens.

    Parameters
    ----------
    secret:
        HMAC key shared by the issuer and this service.
    ttl_seconds:
        Lifetime applied by :meth:`generate_token`.
    """

    def __init__(self, secret: SecretStr | str, ttl_seconds: int = 3600) -> None:
        raw = secret.get_secret_value() if isinstance(secret, SecretStr) else secret
        if not raw:
            raise ValueError("Token secret must not be empty")
        self._secret = raw.encode("utf-8")
        self._ttl = ttl_seconds

    def _sign(self, payload_json: str) -> str:
        return hmac.new(self._secret, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate_token(
        self,
        sub: str,
        tenant_id: str,
        *,
        role: str = "viewer",
        scopes: list[str] | None = None,
        workspaces: list[str] | None = None,
        identity_kind: str = "user",
    ) -> str:
        now = time.time()
        claims = TokenClaims(
            sub=sub,
            tenant_id=tenant_id,
            role=role,
            scopes=scopes or [],
            workspaces=workspaces or [],
            identity_kind=identity_kind,
            iat=now,
            exp=now + self._ttl,
            jti=uuid.uuid4().hex,
        )
        payload_json = claims.model_dump_json()
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{_TOKEN_PREFIX}.{encoded}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Return the claims of a well-signed, unexpired token.

        Raises
        ------
        PermissionError
            Malformed token, bad signature, or expired.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != _TOKEN_PREFIX:
            raise PermissionError("Malformed token")
        try:
            payload_json = base64.urlsafe_b64decode(parts[1].encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeError) as exc:
            raise PermissionError("Malformed token payload") from exc

        if not hmac.compare_digest(self._sign(payload_json), parts[2]):
            raise PermissionError("Invalid signature")

        try:
            claims = TokenClaims.model_validate(json.loads(payload_json))
        except (json.JSONDecodeError, PydanticValidationError) as exc:
            raise PermissionError("Invalid token claims") from exc

        if claims.exp < time.time():
            raise PermissionError("Token expired")
        return claims
