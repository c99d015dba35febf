from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pushdispatch.core.errors import DispatchStoreError, ProfileFetchError
from pushdispatch.domain.records import NotificationRecord, RecipientProfile
from pushdispatch.services.dispatch.contracts import DispatchStore


class RecipientStatus(str, Enum):
    DELIVERABLE = "deliverable"
    MISSING_TOKEN = "missing_token"
    PREFERENCE_DISABLED = "skipped_preferences"


@dataclass(frozen=True)
class Recipient:
    status: RecipientStatus
    profile: RecipientProfile
    endpoints: list[str]


def profile_endpoints(profile: RecipientProfile) -> list[str]:
    # Mobile first, then web; both are legitimate simultaneous targets.
    endpoints: list[str] = []
    for token in (profile.mobile_token, profile.web_token):
        if token and token.strip():
            endpoints.append(token.strip())
    return endpoints


def is_type_disabled(preferences: dict | None, notification_type: str) -> bool:
    # Only an explicit false disables a type; missing keys and true mean enabled.
    if not preferences:
        return False
    return preferences.get(notification_type) is False


async def resolve_recipient(store: DispatchStore, notification: NotificationRecord) -> Recipient:
    try:
        profile = await store.fetch_profile(notification.user_id)
    except DispatchStoreError as exc:
        raise ProfileFetchError(f"Error fetching profile: {exc}") from exc
    if profile is None:
        raise ProfileFetchError(f"Error fetching profile: no profile for user {notification.user_id}")
    endpoints = profile_endpoints(profile)
    if not endpoints:
        return Recipient(status=RecipientStatus.MISSING_TOKEN, profile=profile, endpoints=[])
    if is_type_disabled(profile.preferences, notification.notification_type):
        return Recipient(status=RecipientStatus.PREFERENCE_DISABLED, profile=profile, endpoints=endpoints)
    return Recipient(status=RecipientStatus.DELIVERABLE, profile=profile, endpoints=endpoints)
