"""
Payload storage service - persistence for obfuscated payload artifacts
"""

import json
import logging
from typing import List, Optional

from ..config.database import DatabaseConfig, is_integrity_error
from ..errors import StorageUnavailableError
from ..models.protected_payload import ProtectedPayload, PayloadKind
from ..models.usage_ledger import UsageLedger
from ..utils.encryption import EncryptionManager
from ..utils.timeutil import parse_timestamp, isoformat

logger = logging.getLogger(__name__)

TABLE_NAME = "protected_payloads"

_COLUMNS = (
    "payload_hash, label, kind, seed, sealed, created_at, updated_at, "
    "use_count, last_used_at, usage_log, version"
)


class PayloadStorageService:
    """
    Stores ProtectedPayload records with the encoded bytes sealed at rest

    The cleartext never reaches the database: records hold the codec output,
    and that output is itself sealed with the EncryptionManager before it is
    written.
    """

    def __init__(self, db_config: DatabaseConfig = None, encryption_manager: EncryptionManager = None):
        """
        Initialize payload storage service

        Args:
            db_config: Database connection settings
            encryption_manager: Sealing for encoded artifacts
        """
        self.db_config = db_config or DatabaseConfig()
        self.encryption_manager = encryption_manager or EncryptionManager()
        self._init_database()

    def _init_database(self) -> None:
        with self.db_config.get_connection() as conn:
            self.db_config.execute(conn, f"""
                CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                    payload_hash TEXT PRIMARY KEY,
                    label TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    seed BIGINT NOT NULL,
                    sealed {self.db_config.blob_type} NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    use_count INTEGER NOT NULL DEFAULT 0,
                    last_used_at TEXT,
                    usage_log TEXT NOT NULL DEFAULT '[]',
                    version INTEGER NOT NULL DEFAULT 0
                )
            """)
            self.db_config.execute(conn, f"""
                CREATE INDEX IF NOT EXISTS idx_payloads_created
                ON {TABLE_NAME}(created_at)
            """)
            conn.commit()

    def _row_to_payload(self, row) -> ProtectedPayload:
        """
        Rebuild a payload from its row

        Raises:
            StorageUnavailableError: If the sealed artifact cannot be opened
                (wrong master key or corrupt row). The detail is logged only.
        """
        try:
            encoded = self.encryption_manager.unseal(bytes(row['sealed']))
            kind = PayloadKind(row['kind'])
        except ValueError as e:
            logger.error(f"Stored payload {row['payload_hash']} is unreadable: {e}")
            raise StorageUnavailableError() from e
        return ProtectedPayload(
            payload_hash=row['payload_hash'],
            label=row['label'],
            kind=kind,
            seed=int(row['seed']),
            encoded=encoded,
            created_at=parse_timestamp(row['created_at']),
            updated_at=parse_timestamp(row['updated_at']),
            use_count=row['use_count'],
            last_used_at=parse_timestamp(row['last_used_at']),
            usage_log=UsageLedger.from_list(json.loads(row['usage_log'] or '[]')),
            version=row['version'],
        )

    def create_payload(self, payload: ProtectedPayload) -> bool:
        """
        Insert a new payload

        Returns:
            True if stored, False if the hash already exists
        """
        if not payload.validate():
            raise ValueError("Invalid ProtectedPayload instance")

        try:
            with self.db_config.get_connection() as conn:
                self.db_config.execute(conn, f"""
                    INSERT INTO {TABLE_NAME} ({_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    payload.payload_hash,
                    payload.label,
                    payload.kind.value,
                    payload.seed,
                    self.encryption_manager.seal(payload.encoded),
                    payload.created_at.isoformat(),
                    payload.updated_at.isoformat(),
                    payload.use_count,
                    isoformat(payload.last_used_at),
                    json.dumps(payload.usage_log.to_list()),
                    payload.version,
                ))
                conn.commit()
                return True
        except Exception as e:
            if is_integrity_error(e):
                logger.warning(f"Payload {payload.payload_hash} already exists")
                return False
            raise

    def get_payload(self, payload_hash: str) -> Optional[ProtectedPayload]:
        if not payload_hash:
            return None
        with self.db_config.get_connection() as conn:
            cursor = self.db_config.execute(conn, f"""
                SELECT {_COLUMNS} FROM {TABLE_NAME} WHERE payload_hash = ?
            """, (payload_hash,))
            row = cursor.fetchone()
            return self._row_to_payload(row) if row else None

    def payload_exists(self, payload_hash: str) -> bool:
        if not payload_hash:
            return False
        with self.db_config.get_connection() as conn:
            cursor = self.db_config.execute(conn, f"""
                SELECT 1 FROM {TABLE_NAME} WHERE payload_hash = ?
            """, (payload_hash,))
            return cursor.fetchone() is not None

    def list_payloads(self) -> List[ProtectedPayload]:
        """All payloads, newest first"""
        with self.db_config.get_connection() as conn:
            cursor = self.db_config.execute(conn, f"""
                SELECT {_COLUMNS} FROM {TABLE_NAME} ORDER BY created_at DESC
            """)
            return [self._row_to_payload(row) for row in cursor.fetchall()]

    def compare_and_swap(self, payload: ProtectedPayload, expected_version: int) -> bool:
        """Persist ``payload`` only if the stored version is unchanged"""
        if not payload.validate():
            raise ValueError("Invalid ProtectedPayload instance")

        with self.db_config.get_connection() as conn:
            cursor = self.db_config.execute(conn, f"""
                UPDATE {TABLE_NAME}
                SET label = ?, kind = ?, seed = ?, sealed = ?, updated_at = ?,
                    use_count = ?, last_used_at = ?, usage_log = ?,
                    version = version + 1
                WHERE payload_hash = ? AND version = ?
            """, (
                payload.label,
                payload.kind.value,
                payload.seed,
                self.encryption_manager.seal(payload.encoded),
                payload.updated_at.isoformat(),
                payload.use_count,
                isoformat(payload.last_used_at),
                json.dumps(payload.usage_log.to_list()),
                payload.payload_hash,
                expected_version,
            ))
            conn.commit()
            if cursor.rowcount > 0:
                payload.version = expected_version + 1
                return True
            return False

    def delete_payload(self, payload_hash: str) -> bool:
        with self.db_config.get_connection() as conn:
            cursor = self.db_config.execute(conn, f"""
                DELETE FROM {TABLE_NAME} WHERE payload_hash = ?
            """, (payload_hash,))
            conn.commit()
            return cursor.rowcount > 0
