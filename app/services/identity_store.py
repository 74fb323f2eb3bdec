"""
Supabase Auth admin client.
The Identity Store: per-user metadata (membership_type, subscription_expires_at)
read by page and route guards. Talks to the GoTrue admin REST API with the
service-role key.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import requests

from app.core.membership import MembershipTier, parse_timestamp, isoformat

logger = logging.getLogger(__name__)


class IdentityStoreError(Exception):
    """Supabase Auth could not be reached or rejected the call."""


@dataclass
class IdentityRecord:
    id: str
    email: Optional[str]
    membership_type: Optional[MembershipTier]
    subscription_expires_at: Optional[datetime]
    user_metadata: dict = field(default_factory=dict)
    app_metadata: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict) -> "IdentityRecord":
        user_metadata = payload.get("user_metadata") or {}
        app_metadata = payload.get("app_metadata") or {}
        raw_tier = user_metadata.get("membership_type") or app_metadata.get("membership_type")
        raw_expiry = user_metadata.get("subscription_expires_at") or app_metadata.get("subscription_expires_at")
        return cls(
            id=payload.get("id"),
            email=payload.get("email"),
            membership_type=MembershipTier.parse(raw_tier),
            subscription_expires_at=parse_timestamp(raw_expiry),
            user_metadata=user_metadata,
            app_metadata=app_metadata,
        )


class SupabaseIdentityStore:
    def __init__(self, supabase_url: str, service_role_key: str, timeout: float = 10):
        self.base_url = (supabase_url or "").rstrip("/")
        self.service_role_key = service_role_key
        self.timeout = timeout

    def _headers(self) -> dict:
        return {
            "apikey": self.service_role_key,
            "Authorization": f"Bearer {self.service_role_key}",
            "Content-Type": "application/json",
        }

    def _user_url(self, user_id: str) -> str:
        if not self.base_url or not self.service_role_key:
            raise IdentityStoreError("Supabase admin credentials not configured")
        return f"{self.base_url}/auth/v1/admin/users/{user_id}"

    def get_user(self, user_id: str) -> Optional[IdentityRecord]:
        """Fetch one auth user. Returns None when Supabase has no such user."""
        url = self._user_url(user_id)
        try:
            r = requests.get(url, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise IdentityStoreError(f"Request error: {str(e)}") from e

        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            raise IdentityStoreError(f"Supabase returned {r.status_code}: {r.text[:200]}")

        payload = r.json()
        # Some GoTrue versions wrap the user object
        if isinstance(payload, dict) and "user" in payload and "id" not in payload:
            payload = payload["user"]
        return IdentityRecord.from_payload(payload)

    def update_membership(
        self,
        user_id: str,
        tier: MembershipTier,
        expires_at: Optional[datetime],
    ) -> None:
        """
        Write membership fields into user_metadata.
        GoTrue merges user_metadata keys, so unrelated keys such as username survive.
        """
        url = self._user_url(user_id)
        body = {
            "user_metadata": {
                "membership_type": tier.value,
                "subscription_expires_at": isoformat(expires_at),
            }
        }
        try:
            r = requests.put(url, json=body, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise IdentityStoreError(f"Request error: {str(e)}") from e

        if r.status_code >= 400:
            raise IdentityStoreError(f"Supabase returned {r.status_code}: {r.text[:200]}")
        logger.info("[IDENTITY] user_metadata updated for %s: %s", user_id, tier.value)
