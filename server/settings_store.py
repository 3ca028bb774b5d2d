"""
OGS Manager — Settings Store
Key/value settings in the database; sensitive values are stored encrypted.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from crypto import SettingsCipher
from models.db_models import Setting

logger = logging.getLogger("ogs.settings")

MASK = "********"


class SettingsStore:

    def __init__(self, db: Session, cipher: SettingsCipher):
        self.db = db
        self.cipher = cipher

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self.db.query(Setting).filter(Setting.key == key).first()
        if row is None:
            return default
        return self.cipher.decrypt(row.value) if row.is_sensitive else row.value

    def set(self, key: str, value: str, sensitive: bool = False) -> Setting:
        stored = self.cipher.encrypt(value) if sensitive else value
        row = self.db.query(Setting).filter(Setting.key == key).first()
        if row is None:
            row = Setting(key=key, value=stored, is_sensitive=sensitive)
            self.db.add(row)
        else:
            row.value = stored
            row.is_sensitive = sensitive
        self.db.commit()
        self.db.refresh(row)
        logger.info("Setting '%s' updated%s", key, " (encrypted)" if sensitive else "")
        return row

    def delete(self, key: str) -> bool:
        deleted = self.db.query(Setting).filter(Setting.key == key).delete()
        self.db.commit()
        return bool(deleted)

    def list(self) -> List[Dict]:
        """All settings, sensitive values masked."""
        rows = self.db.query(Setting).order_by(Setting.key).all()
        return [
            {
                "key":          r.key,
                "value":        MASK if r.is_sensitive else r.value,
                "is_sensitive": r.is_sensitive,
                "updated_at":   r.updated_at,
            }
            for r in rows
        ]
