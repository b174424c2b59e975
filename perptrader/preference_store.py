"""Persistence for trading preferences and the trader whitelist."""

import logging
from dataclasses import fields
from typing import List, Optional

from .base_store import BaseStore, StoreError
from .database import PreferencesDB, TraderWhitelistDB
from .preferences import Preferences

logger = logging.getLogger(__name__)

PREFERENCES_ROW_ID = 1
PREFERENCE_FIELDS = [f.name for f in fields(Preferences)]


class PreferenceStore(BaseStore):
    """Reads and writes the single preferences row and the whitelist."""

    def _get_or_create_row(self, session) -> PreferencesDB:
        row = session.get(PreferencesDB, PREFERENCES_ROW_ID)
        if row is None:
            defaults = Preferences()
            row = PreferencesDB(id=PREFERENCES_ROW_ID, **defaults.to_dict())
            session.add(row)
            session.flush()
        return row

    def load_preferences(self) -> Preferences:
        """
        Current preferences for the trading path.

        Raises:
            StoreError: If the preferences row cannot be read
        """
        try:
            with self._db_session() as session:
                row = self._get_or_create_row(session)
                return Preferences(**{name: getattr(row, name) for name in PREFERENCE_FIELDS})
        except Exception as e:
            logger.error(f"Failed to load preferences: {e}")
            raise StoreError(f"Preferences unavailable: {e}") from e

    def get_preferences(self) -> Preferences:
        """Current preferences for display; defaults if the read fails."""
        try:
            return self.load_preferences()
        except StoreError:
            return Preferences()

    def update_preferences(self, **updates) -> Optional[Preferences]:
        """
        Update some preferences. Unknown keys are ignored.

        Values go through Preferences validation before being stored.

        Returns:
            The stored Preferences, or None on failure
        """
        unknown = set(updates) - set(PREFERENCE_FIELDS)
        if unknown:
            logger.warning(f"Ignoring unknown preference keys: {sorted(unknown)}")

        try:
            with self._db_session() as session:
                row = self._get_or_create_row(session)
                current = {name: getattr(row, name) for name in PREFERENCE_FIELDS}
                current.update({k: v for k, v in updates.items() if k in PREFERENCE_FIELDS})
                prefs = Preferences(**current)
                for name, value in prefs.to_dict().items():
                    setattr(row, name, value)
                logger.info(f"Preferences updated: {sorted(k for k in updates if k in PREFERENCE_FIELDS)}")
                return prefs
        except Exception as e:
            logger.error(f"Failed to update preferences: {e}")
            return None

    # Whitelist

    def list_traders(self) -> List[dict]:
        try:
            with self._db_session() as session:
                rows = session.query(TraderWhitelistDB).order_by(TraderWhitelistDB.name).all()
                return [
                    {"id": r.id, "name": r.name, "created_at": r.created_at.isoformat() if r.created_at else None}
                    for r in rows
                ]
        except Exception as e:
            logger.error(f"Failed to list traders: {e}")
            return []

    def get_whitelist_names(self) -> List[str]:
        """
        Whitelisted trader names.

        Raises:
            StoreError: If the whitelist cannot be read
        """
        try:
            with self._db_session() as session:
                return [name for (name,) in session.query(TraderWhitelistDB.name).order_by(TraderWhitelistDB.name)]
        except Exception as e:
            logger.error(f"Failed to read trader whitelist: {e}")
            raise StoreError(f"Whitelist unavailable: {e}") from e

    def add_trader(self, name: str) -> bool:
        """Add a trader. Returns False if blank, already present or on failure."""
        name = (name or "").strip()
        if not name:
            return False

        try:
            with self._db_session() as session:
                exists = session.query(TraderWhitelistDB).filter_by(name_key=name.lower()).first()
                if exists:
                    logger.debug(f"Trader already whitelisted: {name}")
                    return False
                session.add(TraderWhitelistDB(name=name, name_key=name.lower()))
                logger.info(f"Trader whitelisted: {name}")
                return True
        except Exception as e:
            logger.error(f"Failed to add trader {name}: {e}")
            return False

    def remove_trader(self, name: str) -> bool:
        try:
            with self._db_session() as session:
                deleted = session.query(TraderWhitelistDB).filter_by(
                    name_key=(name or "").strip().lower()
                ).delete()
                if deleted:
                    logger.info(f"Trader removed from whitelist: {name}")
                return deleted > 0
        except Exception as e:
            logger.error(f"Failed to remove trader {name}: {e}")
            return False
