"""Customer details job.

Every per-customer lookup (preferences, tags, address, loyalty points,
referral, membership) is a bulk dimension keyed by the customer id.
"""

from typing import Any, List

from .common import (
    ACQUISITION_CHANNELS,
    CUSTOMER_STATUSES,
    JobDefinition,
    full_name,
    join_values,
    mysql_dimension,
    sum_of,
)
from ..extractors.mysql_extractor import MySQLSource
from ..models.record import FactRow
from ..models.schema import NOT_FOUND, DimensionSpec, FieldSpec, FieldType, NullPolicy
from ..services.dimension_resolver import ResolvedDimensions
from ..services.transformer import enum_map, from_dimension

QUERY = """
SELECT
    c.id, c.email, c.firstName, c.middleName, c.lastName, c.mobile, c.phone,
    c.dob, c.status, c.gender, c.creationDate, c.acquired,
    %(provider_id)s AS serviceProviderId
FROM customer c
WHERE c.id > %(watermark)s
  AND EXISTS (
    SELECT 1 FROM serviceProviderCustomerDetails scd
    WHERE scd.customerId = c.id AND scd.serviceProviderId = %(provider_id)s
  )
ORDER BY c.id
LIMIT %(limit)s
"""

COUNT_QUERY = """
SELECT COUNT(*) AS total
FROM customer c
WHERE c.id > %(watermark)s
  AND EXISTS (
    SELECT 1 FROM serviceProviderCustomerDetails scd
    WHERE scd.customerId = c.id AND scd.serviceProviderId = %(provider_id)s
  )
"""


def dimensions(source: MySQLSource, provider_id: int) -> List[DimensionSpec]:
    return [
        mysql_dimension(
            source, "provider", "serviceProviderId",
            "SELECT id, legalName AS name FROM serviceProvider WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "preferences", "id",
            "SELECT customerId, emailNewsletter, unsubscribeAutoresponder, unsubscribeAllEmail "
            "FROM customerPreferences WHERE customerId IN ({keys}) ORDER BY id",
            key_column="customerId",
        ),
        mysql_dimension(
            source, "tags", "id",
            "SELECT ct.customerId, t.tagName "
            "FROM customerTags ct JOIN tags t ON ct.tagId = t.id "
            "WHERE ct.customerId IN ({keys}) AND ct.status = 1 AND t.status = 1 "
            "ORDER BY ct.id",
            key_column="customerId",
            aggregate=join_values("tagName"),
        ),
        mysql_dimension(
            source, "referral", "id",
            "SELECT customerId, referralText FROM serviceProviderCustomerDetails "
            "WHERE serviceProviderId = %(provider_id)s AND customerId IN ({keys})",
            key_column="customerId",
            provider_id=provider_id,
        ),
        mysql_dimension(
            source, "address", "id",
            "SELECT customerId, address, cityName, stateName, countryName, zipCode "
            "FROM serviceProviderCustomerAddress "
            "WHERE serviceProviderId = %(provider_id)s AND customerId IN ({keys})",
            key_column="customerId",
            provider_id=provider_id,
        ),
        mysql_dimension(
            source, "loyalty_points", "id",
            "SELECT customerId, availablePoints FROM rewardPoints "
            "WHERE customerId IN ({keys}) AND dateExpire >= CURDATE() AND status IN (1, 6)",
            key_column="customerId",
            aggregate=sum_of("availablePoints"),
        ),
        mysql_dimension(
            source, "membership", "id",
            "SELECT customerId, MIN(id) AS enrollmentId FROM membershipEnrollment "
            "WHERE serviceProviderId = %(provider_id)s AND customerId IN ({keys}) "
            "GROUP BY customerId",
            key_column="customerId",
            provider_id=provider_id,
        ),
    ]


def unsubscribed(row: FactRow, dimensions: ResolvedDimensions) -> str:
    """Unsubscribe code: N (newsletter), A (autoresponder), N&A (both or all email)."""
    prefs = dimensions.for_row("preferences", row)
    if prefs is NOT_FOUND:
        return ""
    newsletter_off = prefs.get("emailNewsletter") == 0
    autoresponder_off = prefs.get("unsubscribeAutoresponder") == 1
    if (newsletter_off and autoresponder_off) or prefs.get("unsubscribeAllEmail") == 1:
        return "N&A"
    if newsletter_off:
        return "N"
    if autoresponder_off:
        return "A"
    return ""


def is_member(row: FactRow, dimensions: ResolvedDimensions) -> str:
    return "No" if dimensions.for_row("membership", row) is NOT_FOUND else "Yes"


def loyalty_points(row: FactRow, dimensions: ResolvedDimensions) -> Any:
    # Pre-aggregated: the dimension value is the sum itself
    return dimensions.for_row("loyalty_points", row)


def as_of(row: FactRow, dimensions: ResolvedDimensions) -> Any:
    return dimensions.as_of


FIELDS = (
    FieldSpec("id", type=FieldType.INT, null_policy=NullPolicy.REQUIRED),
    FieldSpec("provider_id", "serviceProviderId", FieldType.INT),
    FieldSpec("provider", from_dimension("provider", "name")),
    FieldSpec("customer_name", full_name("firstName", "middleName", "lastName")),
    FieldSpec("first_name", "firstName"),
    FieldSpec("middle_name", "middleName"),
    FieldSpec("last_name", "lastName"),
    FieldSpec("email"),
    FieldSpec("phone"),
    FieldSpec("mobile"),
    FieldSpec("date_of_birth", "dob", FieldType.DATE, strict=False),
    FieldSpec("gender"),
    FieldSpec("is_member", is_member),
    FieldSpec("member_id", from_dimension("membership", "enrollmentId"), FieldType.INT),
    FieldSpec("status", enum_map("status", CUSTOMER_STATUSES, "unknown")),
    FieldSpec("acquisition", enum_map("acquired", ACQUISITION_CHANNELS, "")),
    FieldSpec("address", from_dimension("address", "address")),
    FieldSpec("city", from_dimension("address", "cityName")),
    FieldSpec("state", from_dimension("address", "stateName")),
    FieldSpec("country", from_dimension("address", "countryName")),
    FieldSpec("zipcode", from_dimension("address", "zipCode")),
    FieldSpec("unsubscribed", unsubscribed),
    FieldSpec("tags", from_dimension("tags")),
    FieldSpec("loyalty_points", loyalty_points, FieldType.FLOAT),
    FieldSpec("referral", from_dimension("referral", "referralText")),
    FieldSpec("created_at", "creationDate", FieldType.DATETIME, strict=False),
    FieldSpec("updated_at", as_of, FieldType.DATETIME),
    FieldSpec("deleted_at", "deletedAt", FieldType.DATETIME, NullPolicy.NULL, strict=False),
)

CUSTOMERS = JobDefinition(
    name="customers",
    table_prefix="customers",
    query=QUERY,
    count_query=COUNT_QUERY,
    dimensions=dimensions,
    fields=FIELDS,
    description="Customers of a provider with address, preferences, tags, loyalty points and membership flag",
)
