"""Job catalogue: the entities that can be backfilled, keyed by name."""

from typing import Dict, List

from ..errors import ConfigError
from .appointments import APPOINTMENTS
from .common import JobDefinition, build_descriptor, list_active_providers
from .customers import CUSTOMERS
from .invoices import INVOICES
from .memberships import MEMBERSHIPS
from .payments import PAYMENTS
from .products import PRODUCTS

JOBS: Dict[str, JobDefinition] = {
    job.name: job for job in (INVOICES, PAYMENTS, CUSTOMERS, MEMBERSHIPS, PRODUCTS, APPOINTMENTS)
}


def list_jobs() -> List[JobDefinition]:
    """All catalogue entries, sorted by name."""
    return [JOBS[name] for name in sorted(JOBS)]


def get_job(name: str) -> JobDefinition:
    """Catalogue entry by name, ConfigError if unknown."""
    try:
        return JOBS[name]
    except KeyError:
        raise ConfigError(
            f"Unknown job: {name}",
            {"available": sorted(JOBS)},
        )


__all__ = [
    "JOBS",
    "JobDefinition",
    "build_descriptor",
    "get_job",
    "list_active_providers",
    "list_jobs",
]
