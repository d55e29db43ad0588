"""
Key storage service - durable record of every issued access key
Supports both SQLite (development) and PostgreSQL (production)
"""

import json
import logging
from typing import List, Optional, Dict, Any

from ..config.database import DatabaseConfig, is_integrity_error
from ..models.access_key import AccessKey
from ..utils.timeutil import isoformat

logger = logging.getLogger(__name__)

TABLE_NAME = "access_keys"

_COLUMNS = (
    "key_id, note, bound_payload_hash, device_fingerprint, expires_at, max_uses, "
    "use_count, blacklisted, usage_log, known_identities, created_at, last_used_at, version"
)


class KeyStorageService:
    """
    Pure data access for AccessKey records

    Writes after creation go through ``compare_and_swap``: the update only
    lands if the stored ``version`` still matches the one the caller read, so
    concurrent read-modify-write cycles cannot overwrite each other. Storage
    failures propagate as StorageUnavailableError; a missing key is ``None``.
    """

    def __init__(self, db_config: DatabaseConfig = None):
        """
        Initialize key storage service

        Args:
            db_config: Database connection settings (environment defaults if None)
        """
        self.db_config = db_config or DatabaseConfig()
        self._init_database()

    def _init_database(self) -> None:
        """Create the table and indexes if missing"""
        with self.db_config.get_connection() as conn:
            self.db_config.execute(conn, f"""
                CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                    key_id TEXT PRIMARY KEY,
                    note TEXT NOT NULL DEFAULT '',
                    bound_payload_hash TEXT,
                    device_fingerprint TEXT,
                    expires_at TEXT,
                    max_uses INTEGER,
                    use_count INTEGER NOT NULL DEFAULT 0,
                    blacklisted INTEGER NOT NULL DEFAULT 0,
                    usage_log TEXT NOT NULL DEFAULT '[]',
                    known_identities TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    last_used_at TEXT,
                    version INTEGER NOT NULL DEFAULT 0
                )
            """)
            self.db_config.execute(conn, f"""
                CREATE INDEX IF NOT EXISTS idx_access_keys_created
                ON {TABLE_NAME}(created_at)
            """)
            self.db_config.execute(conn, f"""
                CREATE INDEX IF NOT EXISTS idx_access_keys_payload
                ON {TABLE_NAME}(bound_payload_hash)
            """)
            conn.commit()

    def _key_to_params(self, key: AccessKey) -> tuple:
        return (
            key.note,
            key.bound_payload_hash,
            key.device_fingerprint,
            isoformat(key.expires_at),
            key.max_uses,
            key.use_count,
            1 if key.blacklisted else 0,
            json.dumps(key.usage_log.to_list()),
            json.dumps(key.known_identities),
            isoformat(key.last_used_at),
        )

    def _row_to_access_key(self, row) -> AccessKey:
        """Convert database row (sqlite3.Row or RealDictRow) to AccessKey"""
        data = dict(row)
        data['usage_log'] = json.loads(data.get('usage_log') or '[]')
        data['known_identities'] = json.loads(data.get('known_identities') or '[]')
        return AccessKey.from_dict(data)

    def create_key(self, key: AccessKey) -> bool:
        """
        Insert a new key record

        Returns:
            True if stored, False if the key id already exists

        Raises:
            ValueError: If the AccessKey is invalid
            StorageUnavailableError: If the backend fails
        """
        if not key.validate():
            raise ValueError("Invalid AccessKey instance")

        try:
            with self.db_config.get_connection() as conn:
                self.db_config.execute(conn, f"""
                    INSERT INTO {TABLE_NAME} ({_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (key.key_id,) + self._key_to_params(key)[:9] + (
                    key.created_at.isoformat(),
                    isoformat(key.last_used_at),
                    key.version,
                ))
                conn.commit()
                return True
        except Exception as e:
            if is_integrity_error(e):
                logger.warning(f"Key {key.key_id} already exists")
                return False
            raise

    def get_key(self, key_id: str) -> Optional[AccessKey]:
        """Retrieve a key by id; None if it does not exist"""
        if not key_id:
            return None
        with self.db_config.get_connection() as conn:
            cursor = self.db_config.execute(conn, f"""
                SELECT {_COLUMNS} FROM {TABLE_NAME} WHERE key_id = ?
            """, (key_id,))
            row = cursor.fetchone()
            return self._row_to_access_key(row) if row else None

    def list_keys(self, payload_hash: Optional[str] = None) -> List[AccessKey]:
        """List keys newest first, optionally only those bound to one payload"""
        # Bindings are stored lower-cased
        payload_hash = (payload_hash or "").strip().lower()
        with self.db_config.get_connection() as conn:
            if payload_hash:
                cursor = self.db_config.execute(conn, f"""
                    SELECT {_COLUMNS} FROM {TABLE_NAME}
                    WHERE bound_payload_hash = ?
                    ORDER BY created_at DESC
                """, (payload_hash,))
            else:
                cursor = self.db_config.execute(conn, f"""
                    SELECT {_COLUMNS} FROM {TABLE_NAME}
                    ORDER BY created_at DESC
                """)
            return [self._row_to_access_key(row) for row in cursor.fetchall()]

    def compare_and_swap(self, key: AccessKey, expected_version: int) -> bool:
        """
        Persist ``key`` only if the stored version equals ``expected_version``

        On success ``key.version`` is advanced to the stored value.

        Returns:
            True if the write landed, False on a version conflict or if the
            key was deleted in the meantime
        """
        if not key.validate():
            raise ValueError("Invalid AccessKey instance")

        with self.db_config.get_connection() as conn:
            cursor = self.db_config.execute(conn, f"""
                UPDATE {TABLE_NAME}
                SET note = ?, bound_payload_hash = ?, device_fingerprint = ?,
                    expires_at = ?, max_uses = ?, use_count = ?, blacklisted = ?,
                    usage_log = ?, known_identities = ?, last_used_at = ?,
                    version = version + 1
                WHERE key_id = ? AND version = ?
            """, self._key_to_params(key) + (key.key_id, expected_version))
            conn.commit()
            if cursor.rowcount > 0:
                key.version = expected_version + 1
                return True
            return False

    def delete_key(self, key_id: str) -> bool:
        """Hard delete; True if a row was removed"""
        with self.db_config.get_connection() as conn:
            cursor = self.db_config.execute(conn, f"""
                DELETE FROM {TABLE_NAME} WHERE key_id = ?
            """, (key_id,))
            conn.commit()
            return cursor.rowcount > 0

    def get_storage_stats(self) -> Dict[str, Any]:
        """Aggregate counts for the operator dashboard"""
        with self.db_config.get_connection() as conn:
            cursor = self.db_config.execute(conn, f"""
                SELECT
                    COUNT(*) AS total_keys,
                    COUNT(CASE WHEN blacklisted = 1 THEN 1 END) AS blacklisted_keys,
                    COUNT(CASE WHEN device_fingerprint IS NOT NULL THEN 1 END) AS bound_devices,
                    COALESCE(SUM(use_count), 0) AS total_uses
                FROM {TABLE_NAME}
            """)
            row = cursor.fetchone()
            return {
                'total_keys': row['total_keys'],
                'blacklisted_keys': row['blacklisted_keys'],
                'bound_devices': row['bound_devices'],
                'total_uses': row['total_uses'],
                'database_type': 'PostgreSQL' if self.db_config.use_postgres else 'SQLite',
            }
