import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import jwt  # PyJWT
import requests
from fastapi import Depends, Header, HTTPException, status

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Cache for JWKS (Public Keys)
JWKS_CACHE = None
JWKS_CACHE_TIMESTAMP = None
JWKS_CACHE_TTL = 3600  # Cache for 1 hour
JWKS_STALE_LIMIT = 86400  # Stale cache is still usable for 24 hours when Supabase is down


@dataclass
class AuthenticatedUser:
    id: str
    email: Optional[str]
    user_metadata: dict = field(default_factory=dict)
    app_metadata: dict = field(default_factory=dict)


def get_jwks(supabase_url: str, force_refresh: bool = False):
    """
    Fetch JWKS from Supabase with caching and retry logic.
    Only caches successful fetches - failures are not cached to allow retries.
    """
    global JWKS_CACHE, JWKS_CACHE_TIMESTAMP

    if JWKS_CACHE and JWKS_CACHE_TIMESTAMP and not force_refresh:
        if time.time() - JWKS_CACHE_TIMESTAMP < JWKS_CACHE_TTL:
            return JWKS_CACHE

    max_retries = 3
    last_error = None
    jwks_url = f"{supabase_url}/auth/v1/.well-known/jwks.json"

    for attempt in range(max_retries):
        try:
            r = requests.get(jwks_url, timeout=10)
            r.raise_for_status()
            JWKS_CACHE = r.json()
            JWKS_CACHE_TIMESTAMP = time.time()
            logger.info("[AUTH] Fetched JWKS with %d keys", len(JWKS_CACHE.get("keys", [])))
            return JWKS_CACHE
        except requests.exceptions.RequestException as e:
            last_error = str(e)
            logger.warning("[AUTH] JWKS fetch failed (attempt %d/%d): %s", attempt + 1, max_retries, last_error)
            if attempt < max_retries - 1:
                time.sleep(1)

    logger.error("[AUTH] Failed to fetch JWKS after %d attempts: %s", max_retries, last_error)

    # Fall back to a stale cache rather than locking everyone out
    if JWKS_CACHE and JWKS_CACHE_TIMESTAMP and time.time() - JWKS_CACHE_TIMESTAMP < JWKS_STALE_LIMIT:
        logger.warning("[AUTH] Using stale JWKS cache as fallback")
        return JWKS_CACHE
    return None


def _decode_with_jwks(token: str, algo: str, supabase_url: str) -> dict:
    if not supabase_url:
        logger.error("[AUTH] SUPABASE_URL is missing for %s verification", algo)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: SUPABASE_URL not set"
        )

    jwks = get_jwks(supabase_url)
    if not jwks:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service temporarily unavailable. Please try again in a moment."
        )

    try:
        kid = jwt.get_unverified_header(token).get("kid")
        key_data = next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)
        if key_data is None:
            raise jwt.InvalidTokenError(f"No JWKS key for kid {kid}")
        signing_key = jwt.PyJWK(key_data)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=[algo],
            audience="authenticated",
            options={"verify_aud": True}
        )
    except jwt.PyJWTError as e:
        logger.warning("[AUTH] %s verification failed: %s", algo, str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token signature"
        )


def verify_supabase_token(authorization: Optional[str], settings: Settings) -> dict:
    """
    Verifies the Supabase JWT token.
    Supports both HS256 (Shared Secret) and ES256/RS256 (Asymmetric Key).
    Returns the payload dict if valid.
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header"
        )

    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid header format. Expected 'Bearer <token>'"
        )

    token = authorization.replace("Bearer ", "").strip()

    # Reject common invalid token values
    if not token or token.lower() in ["null", "undefined", "none"]:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing token"
        )

    if len(token.split(".")) != 3:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token format. Token must have header.payload.signature structure."
        )

    try:
        algo = jwt.get_unverified_header(token).get("alg")
    except jwt.DecodeError as e:
        logger.warning("[AUTH] Failed to decode token header: %s", str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token header"
        )

    if algo == "HS256":
        if not settings.SUPABASE_JWT_SECRET:
            logger.error("[AUTH] SUPABASE_JWT_SECRET is missing in environment variables")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Server misconfiguration: SUPABASE_JWT_SECRET not set"
            )
        try:
            return jwt.decode(
                token,
                settings.SUPABASE_JWT_SECRET,
                algorithms=["HS256"],
                audience="authenticated",
                options={"verify_aud": True}
            )
        except jwt.PyJWTError as e:
            logger.warning("[AUTH] HS256 verification failed: %s", str(e))
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token signature"
            )

    if algo in ("ES256", "RS256"):
        return _decode_with_jwks(token, algo, settings.SUPABASE_URL)

    logger.warning("[AUTH] Unsupported algorithm: %s", algo)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=f"Unsupported token algorithm: {algo}"
    )


def get_current_user(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> AuthenticatedUser:
    """FastAPI dependency: the Supabase user behind the bearer token."""
    payload = verify_supabase_token(authorization, settings)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing user ID claim"
        )
    return AuthenticatedUser(
        id=user_id,
        email=payload.get("email"),
        user_metadata=payload.get("user_metadata") or {},
        app_metadata=payload.get("app_metadata") or {},
    )


def is_admin(user: AuthenticatedUser, settings: Settings) -> bool:
    """
    Allow-listed email, or is_admin in app_metadata.
    user_metadata is writable by the user through supabase.auth.updateUser and is never trusted here.
    """
    if user.email and user.email.strip().lower() in settings.ADMIN_EMAILS:
        return True
    return user.app_metadata.get("is_admin") is True


def require_admin(
    user: AuthenticatedUser = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
) -> AuthenticatedUser:
    if not is_admin(user, settings):
        logger.warning("[ADMIN] Non-admin %s (%s) denied", user.id, user.email)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return user


def verify_cron_secret(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Scheduled jobs authenticate with 'Authorization: Bearer <CRON_SECRET>'."""
    if not settings.CRON_SECRET:
        logger.error("[CRON] CRON_SECRET is not set")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Cron secret not configured"
        )
    expected = f"Bearer {settings.CRON_SECRET}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )
