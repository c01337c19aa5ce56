"""Range appointments job: appointments with their range ticket and rentals."""

from datetime import timedelta
from typing import Any, Dict, List, Optional

from .common import (
    BOOKING_TYPES,
    JobDefinition,
    dimension_or,
    latest,
    mysql_dimension,
    yes_no,
)
from ..extractors.mysql_extractor import MySQLSource
from ..models.record import FactRow
from ..models.schema import NOT_FOUND, DimensionSpec, FieldSpec, FieldType, NullPolicy
from ..services.dimension_resolver import ResolvedDimensions
from ..services.transformer import enum_map, from_dimension, lookup_label, parse_timestamp

QUERY = """
SELECT
    a.id, a.customerId, a.serviceProviderId, a.serviceLocation, a.approval, a.`date`,
    a.slotTime, a.status, a.serviceId, a.locationId, a.resourceId, a.recurringId,
    a.invoiceId, a.customerMemberId, a.packageId, a.payment, a.packageEnrollmentId,
    a.customId, a.bookingMethod, a.creationDate, a.cancelType, a.membershipId,
    a.actualStartTime, a.actualEndTime, a.addonId, a.startDate, a.endDate
FROM appointment a
WHERE a.serviceProviderId = %(provider_id)s AND a.id > %(watermark)s
    AND EXISTS (SELECT 1 FROM rangeTicket r WHERE r.appointmentId = a.id)
ORDER BY a.id
LIMIT %(limit)s
"""

COUNT_QUERY = """
SELECT COUNT(*) AS total
FROM appointment a
WHERE a.serviceProviderId = %(provider_id)s AND a.id > %(watermark)s
    AND EXISTS (SELECT 1 FROM rangeTicket r WHERE r.appointmentId = a.id)
"""

APPROVAL_STATUSES = {
    1: "Pending",
    2: "Approved",
    3: "Rejected",
    4: "Cancelled",
    5: "Completed",
}

STAFF_TYPES = {
    1: "Regular",
    2: "Temporary",
    3: "Seasonal",
    4: "Contractor",
    5: "FullTimeStudent",
    6: "PartTimeStudent",
}

PERSON_NAME = "CONCAT_WS(' ', firstName, lastName)"


def rental_summary(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Rental items of one appointment reduced to counts and id lists."""
    return {
        "total": len(rows),
        "product_ids": ",".join(str(r["productId"]) for r in rows if r.get("productId")),
        "serial_numbers": ",".join(str(r["serialNumber"]) for r in rows if r.get("serialNumber")),
        "ammo_used": sum(int(r.get("ammoUsedCount") or 0) for r in rows),
    }


def dimensions(source: MySQLSource, provider_id: int) -> List[DimensionSpec]:
    return [
        mysql_dimension(
            source, "customer", "customerId",
            f"SELECT id, {PERSON_NAME} AS name FROM customer WHERE id IN ({{keys}})",
        ),
        mysql_dimension(
            source, "provider", "serviceProviderId",
            "SELECT id, legalName AS name FROM serviceProvider WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "service_location", "serviceLocation",
            "SELECT id, name FROM location WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "service", "serviceId",
            "SELECT id, name FROM service WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "location", "locationId",
            "SELECT id, name FROM location WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "resource", "resourceId",
            f"SELECT id, {PERSON_NAME} AS name, staffType FROM resource WHERE id IN ({{keys}})",
        ),
        mysql_dimension(
            source, "recurring", "recurringId",
            "SELECT id, pattern FROM reccuring WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "customer_member", "customerMemberId",
            f"SELECT id, {PERSON_NAME} AS name FROM customerMembers WHERE id IN ({{keys}})",
        ),
        mysql_dimension(
            source, "package", "packageId",
            "SELECT id, name FROM package WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "addon", "addonId",
            "SELECT id, name, addonType, duration, actualPrice, price FROM addon WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "range_ticket", "id",
            "SELECT id, appointmentId, lane, timeIn, timeOut, membersCount, nonMembersCount, "
            "firearmItems, ammoItems, createdDate, status "
            "FROM rangeTicket WHERE appointmentId IN ({keys})",
            key_column="appointmentId", aggregate=latest("createdDate"),
        ),
        mysql_dimension(
            source, "rentals", "id",
            "SELECT r.appointmentId, ri.productId, ri.serialNumber, ri.ammoUsedCount "
            "FROM rentalItems ri JOIN rangeTicket r ON r.id = ri.rangeTicketId "
            "WHERE r.appointmentId IN ({keys}) ORDER BY ri.id",
            key_column="appointmentId", aggregate=rental_summary,
        ),
    ]


def minutes_of_day(value: Any) -> Optional[int]:
    """Minutes past midnight of a TIME value (timedelta or ``HH:MM[:SS]`` text)."""
    if value is None or value == "":
        return None
    if isinstance(value, timedelta):
        return int(value.total_seconds()) // 60
    parts = str(value).split(":")
    if len(parts) < 2:
        return None
    try:
        return int(parts[0]) * 60 + int(parts[1])
    except ValueError:
        return None


def time_of_day(value: Any) -> str:
    minutes = minutes_of_day(value)
    if minutes is None:
        return "Unknown"
    hour = (minutes // 60) % 24
    if 5 <= hour < 12:
        return "Morning"
    if 12 <= hour < 17:
        return "Afternoon"
    if 17 <= hour < 21:
        return "Evening"
    return "Night"


def _ticket(row: FactRow, dimensions: ResolvedDimensions) -> Dict[str, Any]:
    ticket = dimensions.for_row("range_ticket", row)
    return {} if ticket is NOT_FOUND else ticket


def _rentals(row: FactRow, dimensions: ResolvedDimensions) -> Dict[str, Any]:
    rentals = dimensions.for_row("rentals", row)
    return rental_summary([]) if rentals is NOT_FOUND else rentals


def ticket_value(column: str):
    def _source(row: FactRow, dimensions: ResolvedDimensions) -> Any:
        return _ticket(row, dimensions).get(column)

    return _source


def rental_value(name: str):
    def _source(row: FactRow, dimensions: ResolvedDimensions) -> Any:
        return _rentals(row, dimensions)[name]

    return _source


def clock(column: str, ticket: bool = False):
    """TIME column of the appointment (or its range ticket) as ``HH:MM:SS``."""

    def _source(row: FactRow, dimensions: ResolvedDimensions) -> Optional[str]:
        value = _ticket(row, dimensions).get(column) if ticket else row.get(column)
        if isinstance(value, timedelta):
            seconds = int(value.total_seconds())
            return f"{seconds // 3600:02d}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}"
        return value or None

    return _source


def session_duration(row: FactRow, dimensions: ResolvedDimensions) -> int:
    ticket = _ticket(row, dimensions)
    start = minutes_of_day(ticket.get("timeIn"))
    end = minutes_of_day(ticket.get("timeOut"))
    if start is None or end is None:
        return 0
    return end - start


def total_visitors(row: FactRow, dimensions: ResolvedDimensions) -> int:
    ticket = _ticket(row, dimensions)
    return int(ticket.get("membersCount") or 0) + int(ticket.get("nonMembersCount") or 0)


def staff_type(row: FactRow, dimensions: ResolvedDimensions) -> str:
    resource = dimensions.for_row("resource", row)
    if resource is NOT_FOUND or not resource.get("staffType"):
        return "Lane"
    return lookup_label(resource["staffType"], STAFF_TYPES, "Lane")


def appointment_day(row: FactRow) -> Any:
    try:
        return parse_timestamp(row.get("date"))
    except ValueError:
        return None


def calendar(part: str):
    """Calendar part of the appointment date; Sunday is day 0."""

    def _source(row: FactRow, dimensions: ResolvedDimensions) -> Any:
        day = appointment_day(row)
        if day is None:
            return None
        if part == "day_of_week":
            return (day.weekday() + 1) % 7
        if part == "month":
            return day.month
        return day.year

    return _source


def is_weekend(row: FactRow, dimensions: ResolvedDimensions) -> bool:
    day = appointment_day(row)
    return day is not None and day.weekday() >= 5


FIELDS = (
    FieldSpec("id", type=FieldType.INT, null_policy=NullPolicy.REQUIRED),
    FieldSpec("customer_id", "customerId", FieldType.INT),
    FieldSpec("customer_name", from_dimension("customer", "name")),
    FieldSpec("provider_id", "serviceProviderId", FieldType.INT),
    FieldSpec("provider_name", from_dimension("provider", "name")),
    FieldSpec("service_location_id", "serviceLocation", FieldType.INT),
    FieldSpec("service_location_name", from_dimension("service_location", "name"), default="Others"),
    FieldSpec("approval", enum_map("approval", APPROVAL_STATUSES, "Unknown")),
    FieldSpec("appointment_date", "date", FieldType.DATE, strict=False),
    FieldSpec("slot_time", clock("slotTime"), default="00:00:00"),
    FieldSpec("status", type=FieldType.INT),
    FieldSpec("service_id", "serviceId", FieldType.INT),
    FieldSpec("service_name", from_dimension("service", "name")),
    FieldSpec("location_id", "locationId", FieldType.INT),
    FieldSpec("location_name", from_dimension("location", "name")),
    FieldSpec("resource_id", "resourceId", FieldType.INT),
    FieldSpec("resource_name", from_dimension("resource", "name")),
    FieldSpec("resource_staff_type", staff_type),
    FieldSpec("recurring_id", "recurringId", FieldType.INT),
    FieldSpec("recurring_pattern", dimension_or("recurring", "pattern", not_found="Others", unreferenced="Others")),
    FieldSpec("invoice_id", "invoiceId", FieldType.INT),
    FieldSpec("customer_member_id", "customerMemberId", FieldType.INT),
    FieldSpec("customer_member_name", from_dimension("customer_member", "name")),
    FieldSpec("package_id", "packageId", FieldType.INT),
    FieldSpec("package_name", from_dimension("package", "name")),
    FieldSpec("payment", yes_no(lambda row, dims: str(row.get("payment")) == "1", "Yes", "No")),
    FieldSpec("package_enrollment_id", "packageEnrollmentId", FieldType.INT),
    FieldSpec("custom_id", "customId"),
    FieldSpec("booking_method", enum_map("bookingMethod", BOOKING_TYPES, "")),
    FieldSpec("creation_date", "creationDate", FieldType.DATETIME, strict=False),
    FieldSpec("cancel_type", "cancelType"),
    FieldSpec("membership_id", "membershipId", FieldType.INT),
    FieldSpec("actual_start_time", clock("actualStartTime"), default="00:00:00"),
    FieldSpec("actual_end_time", clock("actualEndTime"), default="00:00:00"),
    FieldSpec("addon_id", "addonId", FieldType.INT),
    FieldSpec("addon_name", from_dimension("addon", "name")),
    FieldSpec("addon_type", from_dimension("addon", "addonType")),
    FieldSpec("addon_duration", from_dimension("addon", "duration"), FieldType.INT),
    FieldSpec("addon_actual_price", from_dimension("addon", "actualPrice"), FieldType.FLOAT),
    FieldSpec("addon_price", from_dimension("addon", "price"), FieldType.FLOAT),
    FieldSpec("start_date", "startDate", FieldType.DATE, strict=False),
    FieldSpec("end_date", "endDate", FieldType.DATE, strict=False),
    FieldSpec("range_ticket_id", ticket_value("id"), FieldType.INT),
    FieldSpec("lane", ticket_value("lane"), FieldType.INT),
    FieldSpec("time_in", clock("timeIn", ticket=True), default="00:00:00"),
    FieldSpec("time_out", clock("timeOut", ticket=True), default="00:00:00"),
    FieldSpec("members_count", ticket_value("membersCount"), FieldType.INT),
    FieldSpec("non_members_count", ticket_value("nonMembersCount"), FieldType.INT),
    FieldSpec("firearm_items", ticket_value("firearmItems")),
    FieldSpec("ammo_items", ticket_value("ammoItems")),
    FieldSpec("range_created_date", ticket_value("createdDate"), FieldType.DATETIME, strict=False),
    FieldSpec("range_status", ticket_value("status"), FieldType.INT),
    FieldSpec("total_rentals", rental_value("total"), FieldType.INT),
    FieldSpec("rental_product_ids", rental_value("product_ids")),
    FieldSpec("rental_serial_numbers", rental_value("serial_numbers")),
    FieldSpec("total_ammo_used", rental_value("ammo_used"), FieldType.INT),
    FieldSpec("session_duration", session_duration, FieldType.INT),
    FieldSpec("total_visitors", total_visitors, FieldType.INT),
    FieldSpec("day_of_week", calendar("day_of_week"), FieldType.INT),
    FieldSpec("month_of_year", calendar("month"), FieldType.INT),
    FieldSpec("year", calendar("year"), FieldType.INT, default=1970),
    FieldSpec("time_of_day", lambda row, dims: time_of_day(_ticket(row, dims).get("timeIn"))),
    FieldSpec("is_weekend", is_weekend, FieldType.BOOL_FLAG),
    FieldSpec("has_firearms", lambda row, dims: bool(_ticket(row, dims).get("firearmItems")), FieldType.BOOL_FLAG),
    FieldSpec("has_ammo", lambda row, dims: bool(_ticket(row, dims).get("ammoItems")), FieldType.BOOL_FLAG),
)

APPOINTMENTS = JobDefinition(
    name="appointments",
    table_prefix="Range_appointments",
    query=QUERY,
    count_query=COUNT_QUERY,
    dimensions=dimensions,
    fields=FIELDS,
    description="Range appointments with customer, service, resource, range ticket and rental totals",
)
