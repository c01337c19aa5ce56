"""Invoice details job."""

from typing import List

from .common import (
    BOOKING_TYPES,
    INVOICE_STATUSES,
    JobDefinition,
    mysql_dimension,
    yes_no,
)
from ..extractors.mysql_extractor import MySQLSource
from ..models.schema import DimensionSpec, FieldSpec, FieldType, NullPolicy
from ..services.transformer import enum_map, from_dimension

QUERY = """
SELECT
    id, serviceProviderId, invoiceNumber, customerId, customerMemberId,
    resourceId, loggedinUserId, locationId, invoiceDate, status, price, discount,
    grandTotal, dueDate, posTerminalId, notes, parentInvoiceId, tax, bookingType
FROM invoiceNew
WHERE serviceProviderId = %(provider_id)s AND status = 1 AND id > %(watermark)s
ORDER BY id
LIMIT %(limit)s
"""

COUNT_QUERY = """
SELECT COUNT(*) AS total
FROM invoiceNew
WHERE serviceProviderId = %(provider_id)s AND status = 1 AND id > %(watermark)s
"""

RESOURCE_NAME_SQL = (
    "SELECT id, CONCAT_WS(' ', firstName, middleName, lastName) AS name "
    "FROM resource WHERE id IN ({keys})"
)


def dimensions(source: MySQLSource, provider_id: int) -> List[DimensionSpec]:
    return [
        mysql_dimension(
            source, "provider", "serviceProviderId",
            "SELECT id, legalName AS name FROM serviceProvider WHERE id IN ({keys})",
        ),
        mysql_dimension(source, "commission_clerk", "resourceId", RESOURCE_NAME_SQL),
        mysql_dimension(source, "sales_clerk", "loggedinUserId", RESOURCE_NAME_SQL),
        mysql_dimension(
            source, "location", "locationId",
            "SELECT id, name FROM location WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "customer", "customerId",
            "SELECT id, CONCAT_WS(' ', firstName, middleName, lastName) AS name, email "
            "FROM customer WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "company", ("serviceProviderId", "customerId"),
            "SELECT serviceProviderId, customerId, company "
            "FROM serviceProviderCustomerDetails "
            "WHERE (serviceProviderId, customerId) IN ({keys})",
            key_column=("serviceProviderId", "customerId"),
        ),
        mysql_dimension(
            source, "pos_terminal", "posTerminalId",
            "SELECT id, name FROM posTerminal WHERE id IN ({keys})",
        ),
    ]


FIELDS = (
    FieldSpec("id", type=FieldType.INT, null_policy=NullPolicy.REQUIRED),
    FieldSpec("provider_id", "serviceProviderId", FieldType.INT),
    FieldSpec("provider", from_dimension("provider", "name"), default="N/A"),
    FieldSpec("location_id", "locationId", FieldType.INT),
    FieldSpec("location", from_dimension("location", "name"), default="N/A"),
    FieldSpec("customer_id", "customerId", FieldType.INT),
    FieldSpec("customer_name", from_dimension("customer", "name"), default="N/A"),
    FieldSpec("customer_email", from_dimension("customer", "email")),
    FieldSpec("member_id", "customerMemberId", FieldType.INT),
    FieldSpec("is_member", yes_no(lambda row, dims: bool(row.get("customerMemberId")))),
    FieldSpec("company", from_dimension("company", "company"), default="N/A"),
    FieldSpec("commission_clerk", from_dimension("commission_clerk", "name"), default="N/A"),
    FieldSpec("sales_clerk", from_dimension("sales_clerk", "name"), default="N/A"),
    FieldSpec("pos_terminal", from_dimension("pos_terminal", "name"), default="N/A"),
    FieldSpec("pos_terminal_id", "posTerminalId", FieldType.INT),
    FieldSpec("parent_invoice_id", "parentInvoiceId", FieldType.INT),
    FieldSpec("invoice_number", "invoiceNumber"),
    FieldSpec("invoice_date", "invoiceDate", FieldType.DATE, strict=False),
    FieldSpec("due_date", "dueDate", FieldType.DATE, strict=False),
    FieldSpec("status", enum_map("status", INVOICE_STATUSES, "inactive")),
    FieldSpec("booking_type", enum_map("bookingType", BOOKING_TYPES, "")),
    FieldSpec("total_amount", "grandTotal", FieldType.FLOAT),
    FieldSpec("retail_discount", "discount", FieldType.FLOAT),
    FieldSpec("tax", type=FieldType.FLOAT),
    FieldSpec("notes"),
    FieldSpec("created_at", "invoiceDate", FieldType.DATETIME, strict=False),
    FieldSpec("updated_at", "invoiceDate", FieldType.DATETIME, strict=False),
)

INVOICES = JobDefinition(
    name="invoices",
    table_prefix="invoice_details",
    query=QUERY,
    count_query=COUNT_QUERY,
    dimensions=dimensions,
    fields=FIELDS,
    description="Active invoices with provider, clerk, location, customer, company and POS terminal names",
)
