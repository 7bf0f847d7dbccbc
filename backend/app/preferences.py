"""
Per-user UI preferences (theme, notification settings).

Preferences are an explicit object owned by `PreferenceStore`: loaded once
at startup, changed only through `set`, and dropped on sign-out. Notification
settings live in the `notification_preferences` table and survive restarts;
the theme is held in process memory only.
"""
import logging
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from .database import Repository
from .schemas import ThemeMode, NotificationPermission, NotificationType, PreferencesReq

logger = logging.getLogger(__name__)

ALL_NOTIFICATION_TYPES: List[str] = ["dose_due", "refill_reminder", "streak_milestone", "motivation"]

# preference field -> notification_preferences column
NOTIFICATION_COLUMNS = {
    "notifications_enabled": "enabled",
    "notification_permission": "notification_permission",
    "enabled_notification_types": "enabled_types",
}

class UserPreferences(BaseModel):
    theme: ThemeMode = "system"
    notifications_enabled: bool = False
    notification_permission: NotificationPermission = "default"
    enabled_notification_types: List[NotificationType] = Field(default_factory=lambda: list(ALL_NOTIFICATION_TYPES))

    def wants(self, notification_type: str) -> bool:
        """Whether a notification of this type may be shown"""
        return (
            self.notifications_enabled
            and self.notification_permission == "granted"
            and notification_type in self.enabled_notification_types
        )

    def notification_row(self) -> Dict[str, Any]:
        return {column: getattr(self, name) for name, column in NOTIFICATION_COLUMNS.items()}

class PreferenceStore:
    def __init__(self):
        self._themes: Dict[str, str] = {}
        self._defaults = UserPreferences()
        self.loaded = False

    def load(self, defaults: Optional[UserPreferences] = None):
        """Start from a clean slate; called once from the app lifespan"""
        self._themes.clear()
        self._defaults = defaults or UserPreferences()
        self.loaded = True
        logger.info("Preference store loaded")

    def get(self, user_id: str, repo: Repository) -> UserPreferences:
        prefs = self._defaults.model_copy(deep=True)
        row = repo.get_notification_preferences(user_id)
        if row:
            stored = {name: row[column] for name, column in NOTIFICATION_COLUMNS.items() if row.get(column) is not None}
            prefs = prefs.model_copy(update=stored)
        if user_id in self._themes:
            prefs.theme = self._themes[user_id]
        return prefs

    def set(self, user_id: str, changes: PreferencesReq, repo: Repository) -> UserPreferences:
        current = self.get(user_id, repo)
        supplied = changes.model_dump(exclude_none=True)
        updated = current.model_copy(update=supplied)

        # A denied permission forces notifications off
        if updated.notification_permission == "denied":
            updated.notifications_enabled = False

        if any(name in supplied for name in NOTIFICATION_COLUMNS):
            repo.upsert_notification_preferences(user_id, updated.notification_row())
        if "theme" in supplied:
            self._themes[user_id] = updated.theme

        logger.info("Preferences updated", extra={"user_id": user_id})
        return updated

    def teardown(self, user_id: str) -> bool:
        """Forget a user's in-memory preferences (sign-out). Returns whether any were held."""
        removed = self._themes.pop(user_id, None) is not None
        logger.info("Preferences torn down", extra={"user_id": user_id})
        return removed

    def dispose(self):
        self._themes.clear()
        self.loaded = False

# Global instance
preference_store = PreferenceStore()
