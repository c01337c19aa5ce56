"""Payment details job."""

from typing import List

from .common import JobDefinition, dimension_or, mysql_dimension, or_as_of
from ..extractors.mysql_extractor import MySQLSource
from ..models.schema import DimensionSpec, FieldSpec, FieldType, NullPolicy
from ..services.transformer import from_dimension

QUERY = """
SELECT
    id, serviceProviderId, invoiceId, posTerminalId, paymentMethodId,
    amount, refundAmount, code, notes, `date`, createdAt, updatedAt
FROM paymentItemNew
WHERE serviceProviderId = %(provider_id)s AND status = 1 AND id > %(watermark)s
ORDER BY id
LIMIT %(limit)s
"""

COUNT_QUERY = """
SELECT COUNT(*) AS total
FROM paymentItemNew
WHERE serviceProviderId = %(provider_id)s AND status = 1 AND id > %(watermark)s
"""


def dimensions(source: MySQLSource, provider_id: int) -> List[DimensionSpec]:
    return [
        mysql_dimension(
            source, "provider", "serviceProviderId",
            "SELECT id, legalName AS name FROM serviceProvider WHERE id IN ({keys})",
        ),
        # invoice -> location in one query instead of two lookups per payment
        mysql_dimension(
            source, "invoice_location", "invoiceId",
            "SELECT i.id, i.locationId, l.name AS locationName "
            "FROM invoiceNew i LEFT JOIN location l ON l.id = i.locationId "
            "WHERE i.id IN ({keys})",
        ),
        mysql_dimension(
            source, "pos_terminal", "posTerminalId",
            "SELECT id, name FROM posTerminal WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "payment_method", "paymentMethodId",
            "SELECT id, name FROM paymentMethod WHERE id IN ({keys})",
        ),
    ]


FIELDS = (
    FieldSpec("id", type=FieldType.INT, null_policy=NullPolicy.REQUIRED),
    FieldSpec("provider_id", "serviceProviderId", FieldType.INT),
    FieldSpec("provider", from_dimension("provider", "name"), default="Other"),
    FieldSpec("invoice_id", "invoiceId", FieldType.INT),
    FieldSpec("location_id", from_dimension("invoice_location", "locationId"), FieldType.INT),
    FieldSpec("location", from_dimension("invoice_location", "locationName"), default="Other"),
    FieldSpec("pos_terminal_id", "posTerminalId", FieldType.INT),
    FieldSpec("pos_terminal", from_dimension("pos_terminal", "name"), default="Other"),
    FieldSpec("payment_method_id", "paymentMethodId", FieldType.INT),
    FieldSpec("payment_method", dimension_or("payment_method", "name", not_found="Other", unreferenced="")),
    FieldSpec("amount_paid", "amount", FieldType.FLOAT),
    FieldSpec("refund_amount", "refundAmount", FieldType.FLOAT),
    FieldSpec("reference_number", "code"),
    FieldSpec("notes"),
    FieldSpec("payment_date", or_as_of("date"), FieldType.DATE),
    FieldSpec("created_at", or_as_of("createdAt"), FieldType.DATETIME),
    FieldSpec("updated_at", or_as_of("updatedAt"), FieldType.DATETIME),
)

PAYMENTS = JobDefinition(
    name="payments",
    table_prefix="paymentDetails",
    query=QUERY,
    count_query=COUNT_QUERY,
    dimensions=dimensions,
    fields=FIELDS,
    description="Active payment items with provider, invoice location, POS terminal and payment method",
)
