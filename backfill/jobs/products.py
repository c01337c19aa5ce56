"""Product inventory job."""

from typing import Any, Dict, List

from .common import JobDefinition, as_float, mysql_dimension, yes_no
from ..extractors.mysql_extractor import MySQLSource
from ..models.record import FactRow
from ..models.schema import NOT_FOUND, DimensionSpec, FieldSpec, FieldType, NullPolicy
from ..services.dimension_resolver import ResolvedDimensions
from ..services.transformer import from_dimension

QUERY = """
SELECT
    id, serviceProviderId, name, customId, barcode, stockStatus, stockQuantity,
    productBrandId, category, subcategory, departmentId, typeId, caseCost, casePrice,
    online, salePrice, wholeSalePrice, regularPrice, avgCost, avgSellPrice, avgMargin,
    margin, reorderLevel, status, createdDate, lastUpdated
FROM product
WHERE serviceProviderId = %(provider_id)s AND status = 1 AND id > %(watermark)s
ORDER BY id
LIMIT %(limit)s
"""

COUNT_QUERY = """
SELECT COUNT(*) AS total
FROM product
WHERE serviceProviderId = %(provider_id)s AND status = 1 AND id > %(watermark)s
"""

# Serial numbers in these states are no longer in stock
GONE_STATUSES = (
    "SOLD", "TRANSFER", "TRANSFER-FFL", "TRANSFER-C", "REPAIRED", "INACTIVE",
    "DESTROYED", "LOST OR STOLEN", "External Repair Out", "CANCELED",
)

RESERVED_STATUSES = {"Reserved For Layaway", "RESERVED"}
RENTAL_STATUS = "RENTAL"

STOCK_SQL = (
    "SELECT ps.productId, ps.serialNumber, ps.inventoryStatus "
    "FROM productInventorySerialNumbers ps "
    "JOIN productInventory pi ON ps.inventoryId = pi.id "
    "WHERE ps.productId IN ({keys}) AND pi.status = 1 AND ps.status = 1 "
    "AND ps.inventoryStatus NOT IN %(gone)s "
    "ORDER BY ps.id"
)


def stock_levels(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Quantities on hand, reserved and rented out, plus the serial list."""
    qoh = qor = rental = 0
    for row in rows:
        status = row.get("inventoryStatus")
        if status in RESERVED_STATUSES:
            qor += 1
        elif status == RENTAL_STATUS:
            rental += 1
        else:
            qoh += 1
    serials = ", ".join(str(r["serialNumber"]) for r in rows if r.get("serialNumber"))
    return {"qoh": qoh, "qor": qor, "rental": rental, "serials": serials or None}


def dimensions(source: MySQLSource, provider_id: int) -> List[DimensionSpec]:
    return [
        mysql_dimension(
            source, "provider", "serviceProviderId",
            "SELECT id, legalName AS name FROM serviceProvider WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "brand", "productBrandId",
            "SELECT id, name FROM productBrand WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "category", "category",
            "SELECT id, name FROM productCategory WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "sub_category", "subcategory",
            "SELECT id, name FROM productCategory WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "department", "departmentId",
            "SELECT id, name FROM productDepartment WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "type", "typeId",
            "SELECT id, name FROM productType WHERE id IN ({keys})",
        ),
        mysql_dimension(
            source, "stock", "id", STOCK_SQL,
            key_column="productId", aggregate=stock_levels, gone=GONE_STATUSES,
        ),
    ]


def _stock(row: FactRow, dimensions: ResolvedDimensions) -> Dict[str, Any]:
    levels = dimensions.for_row("stock", row)
    if levels is NOT_FOUND:
        return stock_levels([])
    return levels


def _sale_price(row: FactRow) -> float:
    return as_float(row.get("salePrice")) or as_float(row.get("regularPrice"))


def _average_cost(row: FactRow) -> float:
    avg_cost = as_float(row.get("avgCost"))
    return avg_cost if avg_cost > 0 else as_float(row.get("wholeSalePrice"))


def stock_value(name: str):
    def _source(row: FactRow, dimensions: ResolvedDimensions) -> Any:
        return _stock(row, dimensions)[name]

    return _source


def gross_profit_percent(row: FactRow, dimensions: ResolvedDimensions) -> float:
    price = _sale_price(row)
    if price <= 0:
        return 0.0
    return round((price - as_float(row.get("wholeSalePrice"))) / price * 100, 2)


def extended(per_unit):
    """Value of the units on hand and reserved at a per-unit amount."""

    def _source(row: FactRow, dimensions: ResolvedDimensions) -> float:
        levels = _stock(row, dimensions)
        return round((levels["qoh"] + levels["qor"]) * per_unit(row), 2)

    return _source


FIELDS = (
    FieldSpec("id", type=FieldType.INT, null_policy=NullPolicy.REQUIRED),
    FieldSpec("provider_id", "serviceProviderId", FieldType.INT),
    FieldSpec("provider", from_dimension("provider", "name"), default="N/A"),
    FieldSpec("name", default="N/A"),
    FieldSpec("sku", "customId", default="N/A"),
    FieldSpec("upc", "barcode", default="N/A"),
    FieldSpec("serial", stock_value("serials"), default="N/A"),
    FieldSpec("brand_id", "productBrandId", FieldType.INT),
    FieldSpec("brand_name", from_dimension("brand", "name"), default="N/A"),
    FieldSpec("category", from_dimension("category", "name"), default="Uncategorized"),
    FieldSpec("sub_category", from_dimension("sub_category", "name"), default="N/A"),
    FieldSpec("department_id", "departmentId", FieldType.INT),
    FieldSpec("department_name", from_dimension("department", "name"), default="N/A"),
    FieldSpec("type_id", "typeId", FieldType.INT),
    FieldSpec("type_name", from_dimension("type", "name"), default="N/A"),
    FieldSpec("regular_price", "regularPrice", FieldType.FLOAT),
    FieldSpec("sale_price", "salePrice", FieldType.FLOAT),
    FieldSpec("price", lambda row, dims: _sale_price(row), FieldType.FLOAT),
    FieldSpec("cost", "wholeSalePrice", FieldType.FLOAT),
    FieldSpec("wholesale_price", "wholeSalePrice", FieldType.FLOAT),
    FieldSpec("average_cost", lambda row, dims: _average_cost(row), FieldType.FLOAT),
    FieldSpec("gross_profit_percent", gross_profit_percent, FieldType.FLOAT),
    FieldSpec("extended_cost", extended(_average_cost), FieldType.FLOAT),
    FieldSpec("extended_price", extended(_sale_price), FieldType.FLOAT),
    FieldSpec("qoh", stock_value("qoh"), FieldType.INT),
    FieldSpec("qor", stock_value("qor"), FieldType.INT),
    FieldSpec("rental", stock_value("rental"), FieldType.INT),
    FieldSpec("stock_status", yes_no(lambda row, dims: bool(row.get("stockStatus")), "In Stock", "Out of Stock")),
    FieldSpec("stock_quantity", "stockQuantity", FieldType.INT),
    FieldSpec("reorder_level", "reorderLevel", FieldType.INT),
    FieldSpec("avg_margin", "avgMargin", FieldType.FLOAT),
    FieldSpec("margin", type=FieldType.FLOAT),
    FieldSpec("case_cost", "caseCost", FieldType.FLOAT),
    FieldSpec("case_price", "casePrice", FieldType.FLOAT),
    FieldSpec("online", yes_no(lambda row, dims: bool(row.get("online")), "Online", "Retail")),
    FieldSpec("avg_cost", "avgCost", FieldType.FLOAT),
    FieldSpec("avg_sell_price", "avgSellPrice", FieldType.FLOAT),
    FieldSpec("created_at", "createdDate", FieldType.DATETIME, strict=False),
    FieldSpec("updated_at", "lastUpdated", FieldType.DATETIME, strict=False),
)

PRODUCTS = JobDefinition(
    name="products",
    table_prefix="product_inventory",
    query=QUERY,
    count_query=COUNT_QUERY,
    dimensions=dimensions,
    fields=FIELDS,
    description="Active products with brand, category, department, type and serialized stock levels",
)
