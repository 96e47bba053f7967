"""
auth/tokens.py -- Signed session tokens for the two credential domains.

One TokenService class, parameterized by a TokenPolicy, instantiated twice:

  admin: iss=nestguard-admin-api, aud=nestguard-admin-portal, 1h access,
         7d refresh, and a required `sid` claim (session-reference hash) that
         the admin middleware cross-checks against the server-side session.
  user:  iss=nestguard-api, aud=nestguard-users, 1h access, 30d refresh, no
         `sid`; user tokens are stateless and expire-only.

Refresh tokens carry the audience "<aud>-refresh", so an access token is
never accepted where a refresh token is expected, or the other way round.

Security design decisions:
  HS256 via python-jose. Verification never calls jwt.decode() with its
  default options: jose folds every failure into one JWTError, and callers
  need to know *why* a token was rejected (the reason goes to the logs and
  picks the error code). Instead verify() runs the checks itself, in a fixed
  order -- structure, signature, expiry, issuer, audience, claim presence --
  and stops at the first failure. Nothing in the claim set is trusted until
  every check has passed.

  Expiry is compared against the injected clock, not time.time(), so tests
  can advance time deterministically.

  Signing failures are configuration problems, not per-request problems:
  check_signing_config() signs and verifies a sample token for each domain at
  startup and raises ConfigurationError if that fails.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Mapping
from dataclasses import dataclass

from jose import JWSError, JWTError, jws, jwt

from auth.models import TokenClaims
from core.clock import Clock, utcnow
from core.config import Settings
from core.errors import ConfigurationError, TokenError, TokenErrorReason

logger = logging.getLogger("nestguard.auth")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

_BASE_REQUIRED_CLAIMS = ("sub", "role", "nonce", "iat", "exp", "typ")


# ---------------------------------------------------------------------------
# Hash helpers
# ---------------------------------------------------------------------------


def hash_token(raw: str) -> str:
    """SHA-256 hex digest of a raw token. The only form in which tokens are stored.

    Every token hashed here carries at least 256 bits of entropy; the digest
    is deterministic so stores can look it up through a unique index.
    """
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def session_reference(session_id: str) -> str:
    """The `sid` claim value for a session: a hash, so the raw id never leaves the server."""
    return hashlib.sha256(f"session:{session_id}".encode("utf-8")).hexdigest()


def generate_opaque_token() -> str:
    """Random URL-safe secret for invitation and password-reset links."""
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# Policy + service
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenPolicy:
    """Issuer/audience/TTL/claim-shape rules for one credential domain."""

    name: str
    issuer: str
    audience: str
    access_ttl_seconds: int
    refresh_ttl_seconds: int
    requires_session_ref: bool = False

    @property
    def refresh_audience(self) -> str:
        return f"{self.audience}-refresh"

    @property
    def required_claims(self) -> tuple[str, ...]:
        if self.requires_session_ref:
            return _BASE_REQUIRED_CLAIMS + ("sid",)
        return _BASE_REQUIRED_CLAIMS


class TokenService:
    """Issue and verify compact signed claim sets for one policy.

    Usage:
        svc = admin_token_service(settings)
        token = svc.issue({"sub": "42", "role": "support", "sid": ref})
        claims = svc.verify(token)           # TokenClaims or TokenError
    """

    def __init__(self, policy: TokenPolicy, secret: str, clock: Clock = utcnow) -> None:
        if not secret:
            raise ConfigurationError(f"Signing secret for {policy.name} tokens is not configured.")
        self.policy = policy
        self._secret = secret
        self._clock = clock

    def _now_ts(self) -> int:
        return int(self._clock().timestamp())

    def issue(self, claims: Mapping, ttl: int | None = None, *, typ: str = ACCESS) -> str:
        """Sign claims (at least sub and role; sid for admin) with a fresh nonce.

        iss, aud, iat, exp, nonce and typ are always set by the service and
        override anything the caller put in claims.
        """
        if typ == REFRESH:
            audience = self.policy.refresh_audience
            default_ttl = self.policy.refresh_ttl_seconds
        else:
            audience = self.policy.audience
            default_ttl = self.policy.access_ttl_seconds
        now = self._now_ts()
        payload = dict(claims)
        payload["sub"] = str(payload["sub"])
        payload.update(
            iss=self.policy.issuer,
            aud=audience,
            nonce=secrets.token_hex(16),
            iat=now,
            exp=now + (ttl if ttl is not None else default_ttl),
            typ=typ,
        )
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def issue_access(self, subject: str | int, role: str, sid: str | None = None) -> str:
        claims = {"sub": subject, "role": role}
        if sid is not None:
            claims["sid"] = sid
        return self.issue(claims, typ=ACCESS)

    def issue_refresh(self, subject: str | int, role: str, sid: str | None = None) -> str:
        claims = {"sub": subject, "role": role}
        if sid is not None:
            claims["sid"] = sid
        return self.issue(claims, typ=REFRESH)

    def verify(self, token: str, *, typ: str = ACCESS) -> TokenClaims:
        """Return the verified claims or raise TokenError(reason)."""
        expected_aud = self.policy.refresh_audience if typ == REFRESH else self.policy.audience

        # 1. structure
        try:
            unverified = jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenError(TokenErrorReason.malformed) from exc

        # 2. signature (also pins the algorithm)
        try:
            jws.verify(token, self._secret, algorithms=[_ALGORITHM])
        except JWSError as exc:
            raise TokenError(TokenErrorReason.signature_invalid) from exc

        # 3. expiry
        exp = unverified.get("exp")
        if not isinstance(exp, int) or isinstance(exp, bool):
            raise TokenError(TokenErrorReason.malformed)
        if self._now_ts() >= exp:
            raise TokenError(TokenErrorReason.expired)

        # 4. issuer
        if unverified.get("iss") != self.policy.issuer:
            raise TokenError(TokenErrorReason.issuer_mismatch)

        # 5. audience
        aud = unverified.get("aud")
        audiences = aud if isinstance(aud, list) else [aud]
        if expected_aud not in audiences:
            raise TokenError(TokenErrorReason.audience_mismatch)

        # 6. claim shape
        missing = [name for name in self.policy.required_claims if unverified.get(name) in (None, "")]
        if missing or unverified.get("typ") != typ:
            logger.info("%s token rejected: missing or wrong claims %s", self.policy.name, missing or ["typ"])
            raise TokenError(TokenErrorReason.malformed)

        return TokenClaims(
            iss=unverified["iss"],
            aud=expected_aud,
            sub=str(unverified["sub"]),
            role=str(unverified["role"]),
            nonce=str(unverified["nonce"]),
            iat=int(unverified["iat"]),
            exp=exp,
            typ=unverified["typ"],
            sid=unverified.get("sid"),
        )


# ---------------------------------------------------------------------------
# Factories -- one per credential domain
# ---------------------------------------------------------------------------


def admin_token_service(settings: Settings, clock: Clock = utcnow) -> TokenService:
    policy = TokenPolicy(
        name="admin",
        issuer=settings.admin_jwt_issuer,
        audience=settings.admin_jwt_audience,
        access_ttl_seconds=settings.admin_access_ttl_seconds,
        refresh_ttl_seconds=settings.admin_refresh_ttl_seconds,
        requires_session_ref=True,
    )
    return TokenService(policy, settings.admin_jwt_secret, clock)


def user_token_service(settings: Settings, clock: Clock = utcnow) -> TokenService:
    policy = TokenPolicy(
        name="user",
        issuer=settings.user_jwt_issuer,
        audience=settings.user_jwt_audience,
        access_ttl_seconds=settings.user_access_ttl_seconds,
        refresh_ttl_seconds=settings.user_refresh_ttl_seconds,
    )
    return TokenService(policy, settings.user_jwt_secret, clock)


def check_signing_config(*services: TokenService) -> None:
    """Sign and verify a sample token per service. Raises ConfigurationError on failure.

    Called once at startup (api/main.py lifespan and `main.py check-config`)
    so a broken key or policy stops the process instead of failing requests.
    """
    for svc in services:
        sample = {"sub": "self-check", "role": "self-check"}
        if svc.policy.requires_session_ref:
            sample["sid"] = session_reference("self-check")
        try:
            svc.verify(svc.issue(sample))
            svc.verify(svc.issue(sample, typ=REFRESH), typ=REFRESH)
        except (JWTError, TokenError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"{svc.policy.name} token signing self-check failed: {exc}") from exc
        logger.info("%s token signing self-check passed", svc.policy.name)
