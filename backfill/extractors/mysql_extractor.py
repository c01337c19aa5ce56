"""MySQL source: keyset page extraction and bulk dimension lookups."""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import pymysql
import pymysql.cursors
from pymysql import InterfaceError, MySQLError, OperationalError

from .base import BaseExtractor
from ..errors import ConfigError, ConnectivityError, ExtractionError
from ..models.migration import SourceSettings

logger = logging.getLogger(__name__)

# Server-side codes that mean the session itself is unusable
_CONNECTIVITY_CODES = {1040, 1044, 1045, 1129, 1130}


def is_connectivity_error(error: MySQLError) -> bool:
    """True when a driver error means the server could not be reached or lost."""
    if isinstance(error, InterfaceError):
        return True
    if isinstance(error, OperationalError) and error.args:
        code = error.args[0]
        # 2xxx are client-side (CR_*) errors: refused, gone away, lost, timed out
        return isinstance(code, int) and (2000 <= code < 3000 or code in _CONNECTIVITY_CODES)
    return False


def expand_keys(keys: Sequence[Any]) -> Tuple[str, Dict[str, Any]]:
    """
    Build the placeholder list and parameters for an ``IN ({keys})`` clause.

    Scalar keys become ``%(k0)s, %(k1)s``; tuple keys become row
    constructors ``(%(k0_0)s, %(k0_1)s), ...``.
    """
    placeholders: List[str] = []
    params: Dict[str, Any] = {}
    for i, key in enumerate(keys):
        if isinstance(key, tuple):
            parts = []
            for j, part in enumerate(key):
                name = f"k{i}_{j}"
                params[name] = part
                parts.append(f"%({name})s")
            placeholders.append("(" + ", ".join(parts) + ")")
        else:
            name = f"k{i}"
            params[name] = key
            placeholders.append(f"%({name})s")
    return ", ".join(placeholders), params


class MySQLSource:
    """
    PyMySQL-backed source collaborator.

    Each thread gets its own connection, so dimension lookups fanned out to a
    thread pool never share one. ``close()`` closes every connection opened.
    """

    def __init__(self, settings: SourceSettings):
        self.settings = settings
        self._local = threading.local()
        self._connections: List[Any] = []
        self._lock = threading.Lock()

    def _connect(self):
        try:
            conn = pymysql.connect(
                host=self.settings.host,
                port=self.settings.port,
                user=self.settings.user,
                password=self.settings.password,
                database=self.settings.database,
                connect_timeout=self.settings.connect_timeout,
                read_timeout=self.settings.read_timeout,
                charset=self.settings.charset,
                autocommit=True,
                cursorclass=pymysql.cursors.DictCursor,
            )
        except MySQLError as e:
            raise ConnectivityError(
                f"Cannot connect to MySQL at {self.settings.host}:{self.settings.port}: {e}"
            )
        with self._lock:
            self._connections.append(conn)
        logger.debug(f"Opened MySQL connection to {self.settings.host}/{self.settings.database}")
        return conn

    def _connection(self):
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
        return conn

    def _discard_connection(self) -> None:
        conn = getattr(self._local, "conn", None)
        self._local.conn = None
        if conn is None:
            return
        with self._lock:
            if conn in self._connections:
                self._connections.remove(conn)
        try:
            conn.close()
        except MySQLError as e:
            logger.debug(f"Error closing broken MySQL connection: {e}")

    @contextmanager
    def cursor(self) -> Iterator[Any]:
        """Cursor on this thread's connection; connection failures become ConnectivityError."""
        conn = self._connection()
        try:
            with conn.cursor() as cur:
                yield cur
        except MySQLError as e:
            if is_connectivity_error(e):
                self._discard_connection()
                raise ConnectivityError(f"MySQL connection failed: {e}")
            raise

    def fetch_all(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run a query and return all rows as dictionaries."""
        with self.cursor() as cur:
            cur.execute(sql, params or {})
            return list(cur.fetchall())

    def bulk_lookup(
        self,
        sql: str,
        keys: Sequence[Any],
        params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """
        Run a lookup whose ``{keys}`` placeholder is replaced by the given keys.

        Args:
            sql: Query containing ``IN ({keys})``
            keys: Distinct keys (scalars or tuples)
            params: Extra named parameters

        Returns:
            Matching rows; empty when no keys are given
        """
        if not keys:
            return []
        placeholders, key_params = expand_keys(list(keys))
        query_params = dict(params or {})
        query_params.update(key_params)
        return self.fetch_all(sql.replace("{keys}", placeholders), query_params)

    def lookup(self, sql: str, **params) -> Callable[[List[Any]], List[Dict[str, Any]]]:
        """Bind a lookup query into a callable usable as a DimensionSpec lookup."""
        if "{keys}" not in sql:
            raise ConfigError("Lookup query must contain a {keys} placeholder")

        def _lookup(keys: List[Any]) -> List[Dict[str, Any]]:
            return self.bulk_lookup(sql, keys, params)

        return _lookup

    def close(self) -> None:
        """Close every connection opened by this source."""
        with self._lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.close()
            except MySQLError as e:
                logger.debug(f"Error closing MySQL connection: {e}")
        self._local = threading.local()


class MySQLExtractor(BaseExtractor):
    """
    Keyset-paginated extractor over a MySQL query.

    The page query must filter on ``key > %(watermark)s``, order by the key and
    end with ``LIMIT %(limit)s``.
    """

    def __init__(
        self,
        source: MySQLSource,
        query: str,
        count_query: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        key_field: str = "id"
    ):
        super().__init__(key_field=key_field)
        missing = [p for p in ("%(watermark)s", "%(limit)s") if p not in query]
        if missing:
            raise ConfigError(f"Page query is missing bound parameters: {', '.join(missing)}")
        self.source = source
        self.query = query
        self.count_query = count_query
        self.params = dict(params or {})

    def _fetch_rows(self, watermark: int, limit: int) -> List[Dict[str, Any]]:
        query_params = dict(self.params, watermark=watermark, limit=limit)
        try:
            return self.source.fetch_all(self.query, query_params)
        except MySQLError as e:
            raise ExtractionError(f"Page query failed above {watermark}: {e}")

    def count_remaining(self, watermark: int) -> Optional[int]:
        if not self.count_query:
            return None
        try:
            rows = self.source.fetch_all(self.count_query, dict(self.params, watermark=watermark))
        except MySQLError as e:
            logger.warning(f"Count query failed, total unknown: {e}")
            return None
        if not rows:
            return 0
        return int(next(iter(rows[0].values())) or 0)
