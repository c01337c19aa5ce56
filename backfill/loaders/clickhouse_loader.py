"""ClickHouse loader over the HTTP interface."""

import json
import logging
import re
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import BaseLoader
from ..errors import ConfigError, ConnectivityError, WriteError
from ..models.migration import DestinationSettings
from ..models.schema import DestinationSchema

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_identifier(name: str) -> str:
    """Backtick-quote a table or column name after validating it."""
    if not _IDENTIFIER.match(name or ""):
        raise ConfigError(f"Invalid identifier: {name!r}")
    return f"`{name}`"


class ClickHouseLoader(BaseLoader):
    """
    Loader for ClickHouse.

    Rows are sent as ``JSONEachRow`` in a single ``INSERT`` per call. Tables are
    created with a ``ReplacingMergeTree`` engine ordered by the record key, so
    a re-sent row replaces the earlier copy.

    Supports:
    - Retries on connection failures with exponential backoff; statements
      are POSTed, so a read timeout or an error status is reported, not resent
    - Typed query parameters (``{name:Type}`` bound via ``param_<name>``)
    - Dry-run mode (writes and DDL are logged, not sent)
    """

    def __init__(
        self,
        settings: DestinationSettings,
        dry_run: bool = False,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the ClickHouse loader.

        Args:
            settings: Destination connection settings
            dry_run: If True, skip inserts and DDL
            session: Custom requests session
        """
        super().__init__(dry_run=dry_run)
        self.settings = settings
        self.url = settings.url.rstrip("/") + "/"
        self._session = session or self._create_session()
        self._session.headers["X-ClickHouse-User"] = settings.user
        if settings.password:
            self._session.headers["X-ClickHouse-Key"] = settings.password

    def _create_session(self) -> requests.Session:
        """Create a requests session with retry logic."""
        session = requests.Session()

        retries = Retry(
            total=self.settings.max_retries,
            backoff_factor=self.settings.backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            raise_on_status=False,
        )

        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    def table(self, collection: str) -> str:
        """Fully qualified, quoted table name."""
        return f"{quote_identifier(self.settings.database)}.{quote_identifier(collection)}"

    def _request(
        self,
        body: bytes,
        query: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> requests.Response:
        """Send one statement; translate transport failures into backfill errors."""
        query_params: Dict[str, Any] = {"database": self.settings.database}
        if query:
            query_params["query"] = query
        for name, value in (params or {}).items():
            query_params[f"param_{name}"] = value

        try:
            response = self._session.post(
                self.url,
                params=query_params,
                data=body,
                timeout=(self.settings.connect_timeout, self.settings.timeout),
            )
        except requests.exceptions.ConnectTimeout as e:
            raise ConnectivityError(f"Connection to ClickHouse at {self.url} timed out: {e}")
        except requests.exceptions.ReadTimeout as e:
            raise WriteError(f"ClickHouse request timed out after {self.settings.timeout}s: {e}")
        except requests.exceptions.ConnectionError as e:
            raise ConnectivityError(f"Cannot reach ClickHouse at {self.url}: {e}")
        except requests.exceptions.RequestException as e:
            raise WriteError(f"ClickHouse request failed: {e}")

        if not response.ok:
            message = response.text.strip()[:500] or response.reason
            raise WriteError(
                f"ClickHouse returned HTTP {response.status_code}: {message}",
                {"status_code": response.status_code},
            )
        return response

    def insert_rows(self, collection: str, rows: List[Dict[str, Any]]) -> None:
        """Insert rows with one JSONEachRow request."""
        if not rows:
            return
        if self.dry_run:
            logger.info(f"[dry run] would insert {len(rows)} rows into {collection}")
            return

        try:
            body = "\n".join(json.dumps(row, default=str) for row in rows).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise WriteError(f"Cannot serialize rows for {collection}: {e}")

        self._request(body, query=f"INSERT INTO {self.table(collection)} FORMAT JSONEachRow")
        logger.debug(f"Inserted {len(rows)} rows into {collection}")

    def execute(self, sql: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Run a statement that returns no rows."""
        self._request(sql.encode("utf-8"), params=params)

    def query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Run a SELECT and return its rows.

        Args:
            sql: Query text, using ``{name:Type}`` placeholders for parameters
            params: Parameter values by name

        Returns:
            List of row dictionaries
        """
        response = self._request(f"{sql} FORMAT JSONEachRow".encode("utf-8"), params=params)
        rows = []
        for line in response.text.splitlines():
            line = line.strip()
            if line:
                rows.append(json.loads(line))
        return rows

    def ensure_collection(self, schema: DestinationSchema) -> None:
        """Create the table for a schema if it does not exist."""
        columns = ",\n    ".join(
            f"{quote_identifier(name)} {column_type}" for name, column_type in schema.columns
        )
        order_by = ", ".join(quote_identifier(c) for c in schema.order_by)
        ddl = (
            f"CREATE TABLE IF NOT EXISTS {self.table(schema.name)}\n"
            f"(\n    {columns}\n)\n"
            f"ENGINE = ReplacingMergeTree\n"
            f"ORDER BY ({order_by})"
        )
        if self.dry_run:
            logger.info(f"[dry run] would ensure table {schema.name}")
            logger.debug(ddl)
            return
        self.execute(ddl)
        logger.info(f"Ensured table {schema.name}")

    def drop_collection(self, collection: str) -> None:
        """Drop a table if it exists."""
        if self.dry_run:
            logger.info(f"[dry run] would drop table {collection}")
            return
        self.execute(f"DROP TABLE IF EXISTS {self.table(collection)}")
        logger.info(f"Dropped table {collection}")

    def list_collections(self, prefix: str = "") -> List[str]:
        """Names of tables in the database starting with ``prefix``."""
        rows = self.query(
            "SELECT name FROM system.tables "
            "WHERE database = {db:String} AND startsWith(name, {prefix:String}) "
            "ORDER BY name",
            {"db": self.settings.database, "prefix": prefix},
        )
        return [row["name"] for row in rows]

    def validate_connection(self) -> bool:
        """Validate connection to ClickHouse."""
        try:
            self.query("SELECT 1 AS ok")
            return True
        except (ConnectivityError, WriteError) as e:
            logger.error(f"ClickHouse connection validation failed: {e}")
            return False

    def close(self) -> None:
        self._session.close()
