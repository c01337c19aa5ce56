"""Membership analytics job.

Besides copying enrollment, membership and subscription attributes, this job
derives statuses and churn metrics. All time-relative values are computed
against the run's ``as_of`` time, never the wall clock.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from .common import (
    ENROLLMENT_STATUSES,
    SUBSCRIPTION_TYPES,
    JobDefinition,
    as_float,
    label,
    latest,
    mysql_dimension,
    nullable_id,
)
from ..extractors.mysql_extractor import MySQLSource
from ..models.record import FactRow
from ..models.schema import NOT_FOUND, DimensionSpec, FieldSpec, FieldType, NullPolicy
from ..services.dimension_resolver import ResolvedDimensions
from ..services.transformer import enum_map, from_dimension, parse_timestamp

QUERY = """
SELECT
    id, membershipId, customerId, memberId, serviceProviderId, subscriptionId,
    invoiceId, originalInvoiceId, locationId, customerMemberId, primaryMember,
    parentEnrollmentId, status, creationDate, startDate, contractDurationDate,
    expirationDate, renewalDate, bookingMethod
FROM membershipEnrollment
WHERE serviceProviderId = %(provider_id)s AND id > %(watermark)s
ORDER BY id
LIMIT %(limit)s
"""

COUNT_QUERY = """
SELECT COUNT(*) AS total
FROM membershipEnrollment
WHERE serviceProviderId = %(provider_id)s AND id > %(watermark)s
"""

CUSTOMER_NAME_SQL = (
    "SELECT id, CONCAT(IFNULL(firstName, ''), ' ', IFNULL(lastName, '')) AS name "
    "FROM customer WHERE id IN ({keys})"
)

ON_HOLD_STATUSES = (3, 6, 11)


def dimensions(source: MySQLSource, provider_id: int) -> List[DimensionSpec]:
    return [
        mysql_dimension(
            source, "membership", "membershipId",
            "SELECT m.id, m.name, m.type, mt.type AS typeName, m.franchiseId, m.onlineVisible, "
            "m.price, m.registrationFee, m.durationCount, m.duration, m.renewalType, "
            "m.noOfMembersIncluded, m.noOfAdditionalMembers, m.departmentId "
            "FROM membership m LEFT JOIN membershipType mt ON mt.id = m.type "
            "WHERE m.id IN ({keys})",
        ),
        mysql_dimension(
            source, "subscription", "subscriptionId",
            "SELECT id, subscriptionType, status, flag, autoException, declinedCount, "
            "noOfPayments, paymentDay, paymentMethod, renewalDate, nextBillingDate, "
            "firstRenewalDate, renewalNotificationDate, cancellationDate, "
            "recurringAmount, amount, cancelReason, cancelNotes "
            "FROM subscriptionsNew WHERE id IN ({keys})",
        ),
        mysql_dimension(source, "customer", "customerId", CUSTOMER_NAME_SQL),
        mysql_dimension(source, "member", "memberId", CUSTOMER_NAME_SQL),
        mysql_dimension(
            source, "latest_invoice", "subscriptionId",
            "SELECT si.id, si.subscriptionId, inv.lastUpdated, inv.grandTotal, inv.outstandingBalance "
            "FROM subscriptionInvoice si INNER JOIN invoiceNew inv ON si.invoiceId = inv.id "
            "WHERE si.subscriptionId IN ({keys})",
            key_column="subscriptionId",
            aggregate=latest("lastUpdated", "id"),
        ),
    ]


def _date(value: Any) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def days_to_expiration(row: FactRow, as_of: datetime) -> Optional[int]:
    """Whole days until the expiration date; negative once expired, None without a date."""
    expiration = _date(row.get("expirationDate"))
    if expiration is None:
        return None
    return (expiration.date() - as_of.date()).days


def _subscription(row: FactRow, dimensions: ResolvedDimensions) -> dict:
    value = dimensions.for_row("subscription", row)
    return {} if value is NOT_FOUND else value


def membership_status(row: FactRow, dimensions: ResolvedDimensions) -> str:
    status = row.get("status")
    days = days_to_expiration(row, dimensions.as_of)
    if status == 1:
        return "Active" if days is None or days >= 0 else "Expired"
    if status == 2:
        return "Cancelled"
    if status == 3:
        return "Expired"
    return "Unknown"


def subscription_status(row: FactRow, dimensions: ResolvedDimensions) -> str:
    subscription = _subscription(row, dimensions)
    status = subscription.get("status")
    flag = subscription.get("flag")
    if status == 1 and flag == 0:
        return "Current"
    if status == 1 and flag == 1:
        return "Pending"
    if status in ON_HOLD_STATUSES:
        return "OnHold"
    if status == 10:
        return "PaymentHeight"
    if status == 7:
        return "Frozen"
    return "Unknown"


def last_payment_status(row: FactRow, dimensions: ResolvedDimensions) -> Optional[str]:
    """UPTODATE, FAILED or PENDING from the latest subscription invoice; None without one."""
    invoice = dimensions.for_row("latest_invoice", row)
    if invoice is NOT_FOUND or invoice is None:
        return None
    subscription = _subscription(row, dimensions)
    outstanding = as_float(invoice.get("outstandingBalance"))
    next_billing = _date(subscription.get("nextBillingDate"))
    if outstanding == 0 and next_billing is not None and next_billing > dimensions.as_of:
        return "UPTODATE"
    if outstanding > 0 and subscription.get("flag") == 0:
        return "FAILED"
    return "PENDING"


def latest_invoice(column: str) -> Callable[[FactRow, ResolvedDimensions], Any]:
    def _source(row: FactRow, dimensions: ResolvedDimensions) -> Any:
        invoice = dimensions.for_row("latest_invoice", row)
        if invoice is NOT_FOUND or invoice is None:
            return None
        return invoice.get(column)
    return _source


def subscription_type(row: FactRow, dimensions: ResolvedDimensions) -> str:
    return label(_subscription(row, dimensions).get("subscriptionType"), SUBSCRIPTION_TYPES, "Unknown")


def auto_renew(row: FactRow, dimensions: ResolvedDimensions) -> int:
    return 1 if _subscription(row, dimensions).get("subscriptionType") in (1, 3) else 0


def total_amount(row: FactRow, dimensions: ResolvedDimensions) -> float:
    membership = dimensions.for_row("membership", row)
    if membership is NOT_FOUND:
        return 0.0
    return as_float(membership.get("price")) + as_float(membership.get("registrationFee"))


def has_full_membership(row: FactRow, dimensions: ResolvedDimensions) -> str:
    return "No" if row.get("subscriptionId") else "Yes"


def metric_days_to_expiration(row: FactRow, dimensions: ResolvedDimensions) -> int:
    days = days_to_expiration(row, dimensions.as_of)
    return 0 if days is None else days


def is_active(row: FactRow, dimensions: ResolvedDimensions) -> int:
    return 1 if membership_status(row, dimensions) == "Active" else 0


def expiring_within(window_days: int) -> Callable[[FactRow, ResolvedDimensions], int]:
    def _source(row: FactRow, dimensions: ResolvedDimensions) -> int:
        days = days_to_expiration(row, dimensions.as_of)
        return 1 if days is not None and 0 <= days <= window_days else 0
    return _source


def is_lapsed(row: FactRow, dimensions: ResolvedDimensions) -> int:
    days = days_to_expiration(row, dimensions.as_of)
    return 1 if row.get("status") == 1 and days is not None and days < 0 else 0


def is_auto_renew_failed(row: FactRow, dimensions: ResolvedDimensions) -> int:
    return 1 if as_float(_subscription(row, dimensions).get("declinedCount")) > 0 else 0


def days_since_cancellation(row: FactRow, dimensions: ResolvedDimensions) -> Optional[int]:
    cancelled = _date(_subscription(row, dimensions).get("cancellationDate"))
    if cancelled is None:
        return None
    return (dimensions.as_of.date() - cancelled.date()).days


def _nullable_date(name: str, source: Any) -> FieldSpec:
    return FieldSpec(name, source, FieldType.DATE, NullPolicy.NULL, strict=False)


FIELDS = (
    # Keys
    FieldSpec("enrollment_id", "id", FieldType.INT, NullPolicy.REQUIRED),
    FieldSpec("membership_id", "membershipId", FieldType.INT),
    FieldSpec("customer_id", "customerId", FieldType.INT),
    FieldSpec("member_id", "memberId", FieldType.INT),
    FieldSpec("service_provider_id", "serviceProviderId", FieldType.INT),
    FieldSpec("subscription_id", nullable_id("subscriptionId"), FieldType.INT, NullPolicy.NULL),
    FieldSpec("invoice_id", nullable_id("invoiceId"), FieldType.INT, NullPolicy.NULL),
    FieldSpec("parent_invoice_id", nullable_id("originalInvoiceId"), FieldType.INT, NullPolicy.NULL),
    FieldSpec("location_id", nullable_id("locationId"), FieldType.INT, NullPolicy.NULL),
    FieldSpec("franchise_id", from_dimension("membership", "franchiseId"), FieldType.INT, NullPolicy.NULL),

    # Customer and member
    FieldSpec("customer_name", from_dimension("customer", "name")),
    FieldSpec("member_name", from_dimension("member", "name")),
    FieldSpec("customer_member_id", nullable_id("customerMemberId"), FieldType.INT, NullPolicy.NULL),
    FieldSpec("primary_member", "primaryMember", FieldType.BOOL_FLAG),
    FieldSpec("parent_enrollment_id", nullable_id("parentEnrollmentId"), FieldType.INT, NullPolicy.NULL),
    FieldSpec("has_full_membership", has_full_membership),

    # Membership
    FieldSpec("membership_name", from_dimension("membership", "name")),
    FieldSpec("membership_type", from_dimension("membership", "typeName")),
    FieldSpec("membership_type_id", from_dimension("membership", "type"), FieldType.INT),
    FieldSpec("membership_status", membership_status),
    FieldSpec("enrollment_status", enum_map("status", ENROLLMENT_STATUSES, "Unknown")),
    FieldSpec("online_visible", from_dimension("membership", "onlineVisible"), FieldType.BOOL_FLAG),

    # Subscription
    FieldSpec("subscription_type", subscription_type),
    FieldSpec("subscription_status", subscription_status),
    FieldSpec("auto_renew", auto_renew, FieldType.BOOL_FLAG),
    FieldSpec("payment_method", from_dimension("subscription", "paymentMethod"), FieldType.INT),

    # Dates
    FieldSpec("enrollment_date", "creationDate", FieldType.DATETIME, strict=False),
    FieldSpec("start_date", "startDate", FieldType.DATE, strict=False),
    _nullable_date("contract_duration_date", "contractDurationDate"),
    _nullable_date("expiration_date", "expirationDate"),
    _nullable_date("next_billing_date", from_dimension("subscription", "nextBillingDate")),
    _nullable_date("renewal_date", "renewalDate"),
    _nullable_date("first_renewal_date", from_dimension("subscription", "firstRenewalDate")),
    _nullable_date("next_renewal_date", from_dimension("subscription", "renewalDate")),
    _nullable_date("renewal_notification_date", from_dimension("subscription", "renewalNotificationDate")),
    FieldSpec(
        "cancellation_date", from_dimension("subscription", "cancellationDate"),
        FieldType.DATETIME, NullPolicy.NULL, strict=False,
    ),

    # Amounts
    FieldSpec("membership_price", from_dimension("membership", "price"), FieldType.FLOAT),
    FieldSpec("recurring_amount", from_dimension("subscription", "recurringAmount"), FieldType.FLOAT),
    FieldSpec("subscription_amount", from_dimension("subscription", "amount"), FieldType.FLOAT),
    FieldSpec("registration_fee", from_dimension("membership", "registrationFee"), FieldType.FLOAT),
    FieldSpec("total_amount", total_amount, FieldType.FLOAT),
    FieldSpec("last_payment_status", last_payment_status, null_policy=NullPolicy.NULL),
    FieldSpec("last_payment_amount", latest_invoice("grandTotal"), FieldType.FLOAT),
    _nullable_date("last_payment_date", latest_invoice("lastUpdated")),

    # Membership configuration
    FieldSpec("duration_count", from_dimension("membership", "durationCount"), FieldType.INT),
    FieldSpec("duration_type", from_dimension("membership", "duration"), FieldType.INT),
    FieldSpec("renewal_type", from_dimension("membership", "renewalType"), FieldType.INT),
    FieldSpec("no_of_members_included", from_dimension("membership", "noOfMembersIncluded"), FieldType.INT),
    FieldSpec("no_of_additional_members", from_dimension("membership", "noOfAdditionalMembers"), FieldType.INT),

    # Auto-renewal
    FieldSpec("auto_exception", from_dimension("subscription", "autoException"), FieldType.BOOL_FLAG),
    FieldSpec("declined_count", from_dimension("subscription", "declinedCount"), FieldType.INT),
    FieldSpec("no_of_payments", from_dimension("subscription", "noOfPayments"), null_policy=NullPolicy.NULL),
    FieldSpec("payment_day", from_dimension("subscription", "paymentDay"), FieldType.INT, NullPolicy.NULL),

    # Cancellation
    FieldSpec("cancel_reason", from_dimension("subscription", "cancelReason"), null_policy=NullPolicy.NULL),
    FieldSpec("cancel_notes", from_dimension("subscription", "cancelNotes"), null_policy=NullPolicy.NULL),

    # Churn and retention metrics
    FieldSpec("days_to_expiration", metric_days_to_expiration, FieldType.INT),
    FieldSpec("is_active", is_active, FieldType.BOOL_FLAG),
    FieldSpec("is_expiring_30days", expiring_within(30), FieldType.BOOL_FLAG),
    FieldSpec("is_expiring_60days", expiring_within(60), FieldType.BOOL_FLAG),
    FieldSpec("is_lapsed", is_lapsed, FieldType.BOOL_FLAG),
    FieldSpec("is_auto_renew_failed", is_auto_renew_failed, FieldType.BOOL_FLAG),
    FieldSpec("days_since_cancellation", days_since_cancellation, FieldType.INT, NullPolicy.NULL),

    # Categorization
    FieldSpec("booking_method", "bookingMethod", FieldType.INT),
    FieldSpec("department_id", from_dimension("membership", "departmentId"), FieldType.INT, NullPolicy.NULL),
)

MEMBERSHIPS = JobDefinition(
    name="memberships",
    table_prefix="memberships",
    query=QUERY,
    count_query=COUNT_QUERY,
    dimensions=dimensions,
    fields=FIELDS,
    description="Membership enrollments with subscription state, latest payment and churn metrics",
    order_by=("enrollment_id",),
)
