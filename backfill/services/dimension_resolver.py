"""Bulk dimension resolution for one page of fact rows."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..errors import ConnectivityError, DimensionLookupError
from ..models.record import FactRow
from ..models.schema import NOT_FOUND, DimensionKey, DimensionSpec

logger = logging.getLogger(__name__)


class ResolvedDimensions:
    """
    Dimension maps of one page plus the run's ``as_of`` time.

    Every key referenced by the page is present in its map; keys the lookup
    did not return map to ``NOT_FOUND``.
    """

    def __init__(
        self,
        specs: Sequence[DimensionSpec],
        maps: Dict[str, Dict[DimensionKey, Any]],
        as_of: datetime
    ):
        self._specs = {spec.name: spec for spec in specs}
        self.maps = maps
        self.as_of = as_of

    def get(self, dimension: str, key: Optional[DimensionKey]) -> Any:
        """Resolved value of a key, NOT_FOUND if absent or not referenced."""
        if key is None:
            return NOT_FOUND
        return self.maps.get(dimension, {}).get(key, NOT_FOUND)

    def key_for(self, dimension: str, row: FactRow) -> Optional[DimensionKey]:
        """Key a fact row references in a dimension, None if it references nothing."""
        spec = self._specs.get(dimension)
        if spec is None:
            raise KeyError(f"Unknown dimension: {dimension}")
        return spec.key_of(row)

    def for_row(self, dimension: str, row: FactRow) -> Any:
        """Resolved value referenced by a fact row."""
        return self.get(dimension, self.key_for(dimension, row))

    def __contains__(self, dimension: str) -> bool:
        return dimension in self.maps


class DimensionResolver:
    """
    Resolves the dimensions of a page with one bulk lookup per dimension.

    Keys are deduplicated before the lookup. A dimension with no keys in the
    page skips its lookup. Lookups for different dimensions are independent
    and run on a thread pool when ``max_workers > 1``; ``resolve`` returns
    only after all of them have finished.
    """

    def __init__(self, max_workers: int = 1, max_attempts: int = 2, retry_delay: float = 0.5):
        """
        Args:
            max_workers: Concurrent lookups per page
            max_attempts: Tries per lookup before the page fails
            retry_delay: Base delay between tries, grows linearly
        """
        self.max_workers = max(1, max_workers)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay

    @staticmethod
    def distinct_keys(spec: DimensionSpec, rows: Sequence[FactRow]) -> List[DimensionKey]:
        """Distinct non-null keys referenced by rows, in first-seen order."""
        keys = (spec.key_of(row) for row in rows)
        return list(dict.fromkeys(k for k in keys if k is not None))

    def resolve(
        self,
        rows: Sequence[FactRow],
        specs: Sequence[DimensionSpec],
        as_of: Optional[datetime] = None
    ) -> ResolvedDimensions:
        """
        Build the dimension maps for a page.

        Args:
            rows: Fact rows of the page
            specs: Dimensions to resolve
            as_of: Reference time for time-relative fields

        Returns:
            ResolvedDimensions for the page
        """
        as_of = as_of or datetime.utcnow()
        if not specs:
            return ResolvedDimensions(specs, {}, as_of)

        if self.max_workers == 1 or len(specs) == 1:
            maps = [self._resolve_one(spec, rows) for spec in specs]
        else:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(specs))) as pool:
                futures = [pool.submit(self._resolve_one, spec, rows) for spec in specs]
                maps = [f.result() for f in futures]

        return ResolvedDimensions(
            specs,
            {spec.name: mapping for spec, mapping in zip(specs, maps)},
            as_of,
        )

    def _resolve_one(self, spec: DimensionSpec, rows: Sequence[FactRow]) -> Dict[DimensionKey, Any]:
        keys = self.distinct_keys(spec, rows)
        if not keys:
            return {}

        results = self._lookup(spec, keys)

        mapping: Dict[DimensionKey, Any] = {}
        if spec.aggregate is not None:
            grouped: Dict[DimensionKey, List[Dict[str, Any]]] = {}
            for result in results:
                grouped.setdefault(spec.key_of_result(result), []).append(result)
            for key, group in grouped.items():
                mapping[key] = spec.aggregate(group)
        else:
            for result in results:
                mapping.setdefault(spec.key_of_result(result), result)

        resolved = {key: mapping.get(key, NOT_FOUND) for key in keys}
        missing = sum(1 for value in resolved.values() if value is NOT_FOUND)
        logger.debug(
            f"Dimension {spec.name}: {len(keys)} keys, {len(keys) - missing} found, {missing} missing"
        )
        return resolved

    def _lookup(self, spec: DimensionSpec, keys: List[DimensionKey]) -> List[Dict[str, Any]]:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return list(spec.lookup(keys))
            except ConnectivityError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Lookup of {spec.name} failed (attempt {attempt}/{self.max_attempts}): {e}"
                )
                if attempt < self.max_attempts and self.retry_delay:
                    time.sleep(self.retry_delay * attempt)

        raise DimensionLookupError(spec.name, str(last_error), len(keys))
