"""
CSV ingest for warehouse shelf-life exports.

The ERP export is usually Big5 with Chinese headers (產品代號, 保存批號, ...);
hand-made files tend to be UTF-8 with English headers. Both are accepted.
Invalid rows are reported as "row N: ..." and skipped, the rest are upserted
by (shop, product_id, batch_id).
"""

from __future__ import annotations

import csv
import io
import logging
import typing as t
from dataclasses import dataclass
from datetime import date, datetime

from .db import Database
from .errors import ValidationError
from .repositories import ShelfLifeRepository

log = logging.getLogger(__name__)

HEADER_ALIASES: dict[str, list[str]] = {
    "product_id": [
        "產品代號", "productid", "product_id", "product id", "sku", "product", "item",
        "商品id", "商品編號", "產品編號", "產品id", "商品代碼", "貨號",
    ],
    "batch_id": [
        "保存批號", "batchid", "batch_id", "batch id", "batch", "lot", "lotid", "lot id",
        "批次", "批號", "批次編號", "批次id",
    ],
    "expiration_date": [
        "有效期限", "保存期限", "expirationdate", "expiration_date", "expiration date",
        "expiration", "expiry", "exp date", "date", "到期日", "效期",
    ],
    "quantity": ["分倉存量", "quantity", "qty", "amount", "數量", "庫存", "庫存數量", "數目"],
    "batch_quantity": ["批號存量", "batchquantity", "batch_quantity", "batch quantity", "批次數量", "批號數量"],
    "location": ["倉庫名稱", "倉庫代號", "location", "loc", "warehouse", "位置", "倉庫", "儲位", "庫位"],
}
REQUIRED_COLUMNS = ("product_id", "batch_id", "expiration_date")

DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y", "%Y%m%d")

# python codec names for the hints merchants actually type
_ENCODING_NAMES = {"big5": "cp950", "big-5": "cp950", "cp950": "cp950", "utf8": "utf-8-sig", "utf-8": "utf-8-sig"}


@dataclass
class ShelfLifeRecord:
    row: int
    product_id: str
    batch_id: str
    expiration_date: date
    quantity: int
    batch_quantity: t.Optional[int]
    location: t.Optional[str]


# ===== HELPERS =====

def clean_id(value: t.Optional[str]) -> str:
    """Spreadsheet exports write ="00123" to keep leading zeros."""
    v = (value or "").strip()
    if v.startswith("="):
        v = v[1:]
    return v.replace('"', "").strip()


def parse_date(value: t.Optional[str]) -> t.Optional[date]:
    v = (value or "").strip()
    if not v:
        return None
    # drop a time part, "2025/01/31 00:00:00" and "2025-01-31T00:00:00" both occur
    v = v.replace("T", " ").split(" ", 1)[0]
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    return None


def parse_int(value: t.Optional[str]) -> t.Optional[int]:
    """'' -> None; '1,200' -> 1200; '3.0' -> 3; anything else raises ValueError."""
    v = (value or "").strip().replace(",", "")
    if not v:
        return None
    try:
        return int(v)
    except ValueError:
        f = float(v)
        if not f.is_integer():
            raise
        return int(f)


def decode_bytes(raw: bytes, encoding: t.Optional[str] = None, default_encoding: str = "big5") -> str:
    if raw.startswith(b"\xef\xbb\xbf"):
        return raw.decode("utf-8-sig")
    hint = (encoding or default_encoding or "big5").strip().lower()
    codec = _ENCODING_NAMES.get(hint, hint)
    try:
        return raw.decode(codec)
    except LookupError as e:
        raise ValidationError(f"Unknown encoding: {encoding}") from e
    except UnicodeDecodeError:
        log.info("CSV is not valid %s, retrying as UTF-8", codec)
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ValidationError(f"Could not decode CSV as {hint} or UTF-8") from e


def map_columns(fieldnames: t.Iterable[str]) -> dict[str, str]:
    """field -> actual CSV header, first alias that matches wins."""
    actual = {(h or "").strip().lower(): h for h in fieldnames if h}
    out: dict[str, str] = {}
    for fld, aliases in HEADER_ALIASES.items():
        for alias in aliases:
            if alias in actual:
                out[fld] = actual[alias]
                break
    return out


# ===== PARSE =====

def parse_rows(text: str) -> tuple[list[ShelfLifeRecord], list[str]]:
    reader = csv.DictReader(io.StringIO(text, newline=""))
    if not reader.fieldnames:
        raise ValidationError("CSV file is empty")
    cols = map_columns(reader.fieldnames)
    missing = [c for c in REQUIRED_COLUMNS if c not in cols]
    if missing:
        raise ValidationError(f"CSV is missing required column(s): {', '.join(missing)}")

    def cell(rec: dict, fld: str) -> str:
        h = cols.get(fld)
        return (rec.get(h) or "").strip() if h else ""

    records: list[ShelfLifeRecord] = []
    errors: list[str] = []
    for n, rec in enumerate(reader, start=2):
        if not any((v or "").strip() for v in rec.values() if isinstance(v, str)):
            continue  # blank line
        product_id = clean_id(cell(rec, "product_id"))
        batch_id = clean_id(cell(rec, "batch_id"))
        raw_date = cell(rec, "expiration_date")
        if not product_id:
            errors.append(f"row {n}: missing product id")
            continue
        if not batch_id:
            errors.append(f"row {n}: missing batch id for product {product_id}")
            continue
        exp = parse_date(raw_date)
        if exp is None:
            errors.append(f"row {n}: invalid expiration date {raw_date!r} for product {product_id}")
            continue
        try:
            qty = parse_int(cell(rec, "quantity"))
            batch_qty = parse_int(cell(rec, "batch_quantity"))
        except ValueError:
            errors.append(f"row {n}: quantity must be a whole number for product {product_id}")
            continue
        qty = qty or 0
        if qty < 0 or (batch_qty is not None and batch_qty < 0):
            errors.append(f"row {n}: quantity cannot be negative for product {product_id}")
            continue
        records.append(ShelfLifeRecord(
            row=n,
            product_id=product_id,
            batch_id=batch_id,
            expiration_date=exp,
            quantity=qty,
            batch_quantity=batch_qty,
            location=cell(rec, "location") or None,
        ))
    return records, errors


# ===== INGEST =====

def ingest_csv(
    db: Database,
    shop: str,
    raw: bytes,
    encoding: t.Optional[str] = None,
    default_encoding: str = "big5",
) -> dict:
    if not shop:
        raise ValidationError("shop is required")
    if not raw or not raw.strip():
        raise ValidationError("CSV file is empty")
    text = decode_bytes(raw, encoding, default_encoding)
    records, errors = parse_rows(text)

    saved = 0
    with db.session() as s:
        repo = ShelfLifeRepository(s)
        for r in records:
            repo.upsert(
                shop,
                r.product_id,
                r.batch_id,
                r.expiration_date,
                r.quantity,
                batch_quantity=r.batch_quantity,
                location=r.location,
            )
            saved += 1
    log.info("shop=%s csv ingest: saved=%d errors=%d", shop, saved, len(errors))
    return {"savedCount": saved, "errors": errors}
