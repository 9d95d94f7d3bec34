"""
WordPress media library access.

``MediaLibrary`` is the narrow interface the optimizer works against:
per-attachment meta storage (``get``/``set``/``delete``/``delete_all``) and
the few attachment lookups it needs. ``WordPressDatabase`` implements it on
top of the WordPress MySQL tables.
"""

import logging
import math
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import mysql.connector
from mysql.connector import Error as MySQLError
import phpserialize

SERIALIZED_PATTERN = re.compile(r'^(?:[adObis]:|N;)')


def php_unserialize(value: Any) -> Any:
    """Decode a postmeta value the way WordPress' maybe_unserialize does."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode('utf-8', errors='replace')
    if not isinstance(value, str) or not SERIALIZED_PATTERN.match(value):
        return value

    try:
        data = phpserialize.loads(value.encode('utf-8'), decode_strings=True)
    except ValueError:
        return value
    return _listify(data)


def _listify(data: Any) -> Any:
    # PHP has no lists: arrays keyed 0..n-1 come back as dicts
    if isinstance(data, dict):
        items = {key: _listify(item) for key, item in data.items()}
        if items and list(items.keys()) == list(range(len(items))):
            return list(items.values())
        return items
    return data


def php_serialize(value: Any) -> str:
    """Encode a value for postmeta; scalars are stored as plain strings."""
    if isinstance(value, (dict, list, tuple)):
        return phpserialize.dumps(value).decode('utf-8')
    if isinstance(value, bool):
        return '1' if value else ''
    return str(value)


class MediaLibrary:
    """Attachment lookups and per-attachment meta storage."""

    uploads_path: Path

    # meta repository
    def get(self, attachment_id: int, key: str) -> Any:
        raise NotImplementedError

    def set(self, attachment_id: int, key: str, value: Any) -> bool:
        raise NotImplementedError

    def delete(self, attachment_id: int, key: str) -> bool:
        raise NotImplementedError

    def delete_all(self, key: str) -> bool:
        raise NotImplementedError

    # attachments
    def get_attached_file(self, attachment_id: int) -> Optional[str]:
        raise NotImplementedError

    def get_attachment_metadata(self, attachment_id: int) -> Dict:
        raise NotImplementedError

    def is_image(self, attachment_id: int) -> bool:
        raise NotImplementedError

    def get_title(self, attachment_id: int) -> str:
        raise NotImplementedError

    def get_parent(self, attachment_id: int) -> int:
        raise NotImplementedError

    def get_attachment_url(self, attachment_id: int) -> str:
        raise NotImplementedError

    def find_attachments(self, ids: Iterable[int] = (), mime_types: Iterable[str] = ()) -> List[int]:
        raise NotImplementedError

    def find_missing_meta(self, keys: Iterable[str], limit: int, offset: int = 0) -> Tuple[List[int], int]:
        """Attachment ids lacking any of ``keys``, and their total count."""
        raise NotImplementedError


class WordPressDatabase(MediaLibrary):
    """MediaLibrary backed by the WordPress MySQL database"""

    def __init__(self, db_config: Dict, uploads_path: Path, logger: logging.Logger = None):
        self.db_config = db_config
        self.uploads_path = Path(uploads_path)
        self.logger = logger or logging.getLogger(__name__)
        self.connection = None
        self.prefix = db_config.get('table_prefix') or None

    def connect(self):
        """Connect to the WordPress database; raises mysql.connector.Error."""
        self.connection = mysql.connector.connect(
            host=self.db_config['host'],
            port=self.db_config['port'],
            user=self.db_config['user'],
            password=self.db_config['password'],
            database=self.db_config['database'],
            charset='utf8mb4',
            collation='utf8mb4_unicode_ci',
            autocommit=True
        )
        self.logger.info(f"Database connected: {self.db_config['user']}@{self.db_config['host']}/{self.db_config['database']}")

        if not self.prefix:
            self.prefix = self.detect_table_prefix()
        return self

    def close(self):
        if self.connection and self.connection.is_connected():
            self.connection.close()
        self.connection = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def detect_table_prefix(self) -> str:
        """Get WordPress table prefix"""
        try:
            cursor = self.connection.cursor()
            cursor.execute("SHOW TABLES LIKE '%posts'")
            tables = cursor.fetchall()

            for table in tables:
                table_name = table[0]
                if isinstance(table_name, (bytes, bytearray)):
                    table_name = table_name.decode('utf-8')
                if table_name.endswith('posts'):
                    prefix = table_name[:-5]
                    cursor.execute("SHOW TABLES LIKE %s", (f"{prefix}postmeta",))
                    if cursor.fetchone():
                        cursor.close()
                        self.logger.info(f"Table prefix detected: {prefix}")
                        return prefix

            cursor.close()
        except MySQLError as e:
            self.logger.error(f"Failed to detect table prefix: {e}")

        self.logger.warning("No standard WordPress tables found, using wp_")
        return "wp_"

    def _fetchone(self, query: str, params: Tuple = ()):
        cursor = self.connection.cursor()
        try:
            cursor.execute(query, params)
            return cursor.fetchone()
        finally:
            cursor.close()

    def _fetchall(self, query: str, params: Tuple = ()):
        cursor = self.connection.cursor()
        try:
            cursor.execute(query, params)
            return cursor.fetchall()
        finally:
            cursor.close()

    def _execute(self, query: str, params: Tuple = ()) -> int:
        cursor = self.connection.cursor()
        try:
            cursor.execute(query, params)
            return cursor.rowcount
        finally:
            cursor.close()

    def get(self, attachment_id: int, key: str) -> Any:
        try:
            row = self._fetchone(
                f"SELECT meta_value FROM {self.prefix}postmeta WHERE post_id = %s AND meta_key = %s "
                f"ORDER BY meta_id LIMIT 1",
                (attachment_id, key)
            )
        except MySQLError as e:
            self.logger.error(f"Failed to read {key} for ID {attachment_id}: {e}")
            return None

        return php_unserialize(row[0]) if row else None

    def set(self, attachment_id: int, key: str, value: Any) -> bool:
        serialized = php_serialize(value)
        try:
            updated = self._execute(
                f"UPDATE {self.prefix}postmeta SET meta_value = %s WHERE post_id = %s AND meta_key = %s",
                (serialized, attachment_id, key)
            )
            # an UPDATE writing the same value reports zero affected rows
            if not updated and self.get(attachment_id, key) is None:
                self._execute(
                    f"INSERT INTO {self.prefix}postmeta (post_id, meta_key, meta_value) VALUES (%s, %s, %s)",
                    (attachment_id, key, serialized)
                )
        except MySQLError as e:
            self.logger.error(f"Failed to update {key} for ID {attachment_id}: {e}")
            return False

        self.logger.debug(f"Updated {key} for ID {attachment_id}")
        return True

    def delete(self, attachment_id: int, key: str) -> bool:
        try:
            deleted = self._execute(
                f"DELETE FROM {self.prefix}postmeta WHERE post_id = %s AND meta_key = %s",
                (attachment_id, key)
            )
        except MySQLError as e:
            self.logger.error(f"Failed to delete {key} for ID {attachment_id}: {e}")
            return False
        return deleted > 0

    def delete_all(self, key: str) -> bool:
        try:
            deleted = self._execute(f"DELETE FROM {self.prefix}postmeta WHERE meta_key = %s", (key,))
        except MySQLError as e:
            self.logger.error(f"Failed to delete {key}: {e}")
            return False
        self.logger.info(f"Deleted {deleted} {key} rows")
        return deleted > 0

    def get_attached_file(self, attachment_id: int) -> Optional[str]:
        relative = self.get(attachment_id, '_wp_attached_file')
        if not relative:
            return None
        return str(self.uploads_path / relative)

    def get_attachment_metadata(self, attachment_id: int) -> Dict:
        metadata = self.get(attachment_id, '_wp_attachment_metadata')
        return metadata if isinstance(metadata, dict) else {}

    def _post_field(self, attachment_id: int, field: str):
        try:
            row = self._fetchone(f"SELECT {field} FROM {self.prefix}posts WHERE ID = %s", (attachment_id,))
        except MySQLError as e:
            self.logger.error(f"Failed to read {field} for ID {attachment_id}: {e}")
            return None
        return row[0] if row else None

    def is_image(self, attachment_id: int) -> bool:
        mime_type = self._post_field(attachment_id, 'post_mime_type') or ''
        return mime_type.startswith('image/')

    def get_title(self, attachment_id: int) -> str:
        return self._post_field(attachment_id, 'post_title') or ''

    def get_parent(self, attachment_id: int) -> int:
        return int(self._post_field(attachment_id, 'post_parent') or 0)

    def get_attachment_url(self, attachment_id: int) -> str:
        return self._post_field(attachment_id, 'guid') or ''

    def find_attachments(self, ids: Iterable[int] = (), mime_types: Iterable[str] = ()) -> List[int]:
        ids = [int(attachment_id) for attachment_id in ids]
        mime_types = list(mime_types)

        query = (
            f"SELECT ID FROM {self.prefix}posts "
            f"WHERE post_type = 'attachment' AND post_status NOT IN ('trash', 'auto-draft')"
        )
        params = []
        if ids:
            query += f" AND ID IN ({', '.join(['%s'] * len(ids))})"
            params.extend(ids)
        if mime_types:
            query += f" AND post_mime_type IN ({', '.join(['%s'] * len(mime_types))})"
            params.extend(mime_types)
        query += " ORDER BY post_date DESC, ID DESC"

        try:
            rows = self._fetchall(query, tuple(params))
        except MySQLError as e:
            self.logger.error(f"Failed to get attachments: {e}")
            return []

        attachments = [int(row[0]) for row in rows]
        self.logger.info(f"Retrieved {len(attachments)} attachments")
        return attachments

    def find_missing_meta(self, keys: Iterable[str], limit: int, offset: int = 0) -> Tuple[List[int], int]:
        keys = tuple(keys)
        missing = " OR ".join(
            f"NOT EXISTS (SELECT 1 FROM {self.prefix}postmeta pm "
            f"WHERE pm.post_id = p.ID AND pm.meta_key = %s)"
            for _ in keys
        )
        where = (
            f"FROM {self.prefix}posts p "
            f"WHERE p.post_type = 'attachment' AND p.post_status = 'inherit' AND ({missing})"
        )

        try:
            total = self._fetchone(f"SELECT COUNT(*) {where}", keys)[0]
            rows = self._fetchall(
                f"SELECT p.ID {where} ORDER BY p.post_date DESC, p.ID DESC LIMIT %s OFFSET %s",
                keys + (limit, offset)
            )
        except MySQLError as e:
            self.logger.error(f"Failed to query unoptimized attachments: {e}")
            return [], 0

        return [int(row[0]) for row in rows], int(total)


def page_count(total: int, per_page: int) -> int:
    return int(math.ceil(total / per_page)) if per_page > 0 else 0
