"""Base extractor interface."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import logging

from ..errors import ExtractionError
from ..models.record import FactRow

logger = logging.getLogger(__name__)


class BaseExtractor(ABC):
    """
    Base class for all page extractors.

    Extractors pull one bounded, key-ordered page of fact rows at a time.
    Subclasses only implement ``_fetch_rows``; ``fetch_page`` checks the
    result against the paging contract before handing it to the orchestrator:

    - at most ``page_size`` rows
    - every key greater than the watermark
    - keys strictly increasing

    An empty page means there is no more work.
    """

    def __init__(self, key_field: str = "id"):
        """
        Initialize the extractor.

        Args:
            key_field: Column holding the monotonically increasing row key
        """
        self.key_field = key_field

    @abstractmethod
    def _fetch_rows(self, watermark: int, limit: int) -> List[Dict[str, Any]]:
        """
        Fetch raw rows with key > watermark, ordered by key, at most ``limit``.

        Args:
            watermark: Exclusive lower bound on the row key
            limit: Maximum rows to return

        Returns:
            List of row dictionaries
        """
        pass

    def count_remaining(self, watermark: int) -> Optional[int]:
        """Number of rows above the watermark, or None if the source cannot count."""
        return None

    def fetch_page(self, job_key: str, watermark: int, page_size: int) -> List[FactRow]:
        """
        Fetch and validate one page.

        Args:
            job_key: Job the page belongs to (used in errors and logs)
            watermark: Last committed row key
            page_size: Maximum rows in the page

        Returns:
            Ordered list of FactRow objects
        """
        raw_rows = self._fetch_rows(watermark, page_size)

        if len(raw_rows) > page_size:
            raise ExtractionError(
                f"{job_key}: source returned {len(raw_rows)} rows for a page of {page_size}"
            )

        rows: List[FactRow] = []
        previous = watermark
        for raw in raw_rows:
            row_id = self._row_key(job_key, raw)
            if row_id <= previous:
                raise ExtractionError(
                    f"{job_key}: row key {row_id} is not greater than {previous}; "
                    f"the source query must filter on {self.key_field} > watermark "
                    f"and order by {self.key_field}"
                )
            rows.append(FactRow(id=row_id, data=dict(raw)))
            previous = row_id

        logger.debug(f"{job_key}: fetched {len(rows)} rows above {watermark}")
        return rows

    def _row_key(self, job_key: str, raw: Dict[str, Any]) -> int:
        value = raw.get(self.key_field)
        if value is None:
            raise ExtractionError(f"{job_key}: row without '{self.key_field}' column")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ExtractionError(
                f"{job_key}: non-integer row key {value!r} in '{self.key_field}'"
            )

    def close(self) -> None:
        """Release resources held by the extractor."""
        pass
