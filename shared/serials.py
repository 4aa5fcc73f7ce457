"""
Serial number generation for work order items.

Two formats are in use on the shop floor:

* sequential serials, ``PREFIX-NNNN`` (e.g. ``Q-0042``), numbered per
  product type;
* work-order serials, ``PREFIX-SUFFIX-NNN`` (e.g. ``Q-202401-003``), where
  ``SUFFIX`` is derived from the work order number and ``NNN`` is the item's
  position in the batch.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from shared.types import ProductType

MAX_SERIALS_PER_REQUEST = 1000

PREFIXES: dict[ProductType, str] = {
    ProductType.SENSOR: "Q",
    ProductType.MLA: "W",
    ProductType.HMI: "X",
    ProductType.TRANSMITTER: "T",
    ProductType.SDM_ECO: "SDM",
}

_PREFIX_TO_TYPE = {prefix: product_type for product_type, prefix in PREFIXES.items()}

SEQUENTIAL_PATTERN = re.compile(r"^(?P<prefix>[A-Z]+)-(?P<number>\d{4,})$")


class SerialNumberError(ValueError):
    """Raised for invalid serial generation requests."""


@dataclass(frozen=True)
class ProductBatch:
    product_type: ProductType
    quantity: int


@dataclass(frozen=True)
class ParsedSerial:
    product_type: Optional[ProductType]
    number: Optional[int]
    prefix: Optional[str]


def get_prefix(product_type: ProductType | str) -> str:
    return PREFIXES[ProductType(product_type)]


def format_serial(product_type: ProductType | str, sequence: int) -> str:
    return f"{get_prefix(product_type)}-{sequence:04d}"


def extract_number(serial_number: str) -> Optional[int]:
    """``"Q-0042"`` -> 42. Returns None for anything that is not sequential."""
    match = SEQUENTIAL_PATTERN.match(serial_number or "")
    if not match:
        return None
    return int(match.group("number"))


def parse_serial(serial_number: str) -> ParsedSerial:
    match = SEQUENTIAL_PATTERN.match(serial_number or "")
    if match and match.group("prefix") in _PREFIX_TO_TYPE:
        prefix = match.group("prefix")
        return ParsedSerial(
            product_type=_PREFIX_TO_TYPE[prefix],
            number=int(match.group("number")),
            prefix=prefix,
        )
    return ParsedSerial(product_type=None, number=None, prefix=None)


def is_valid_serial(
    serial_number: str, product_type: ProductType | str | None = None
) -> bool:
    parsed = parse_serial(serial_number)
    if parsed.product_type is None:
        return False
    if product_type is None:
        return True
    return parsed.product_type == ProductType(product_type)


def next_sequence(
    existing_serials: Iterable[str], product_type: ProductType | str
) -> int:
    """Highest existing sequential number for the product's prefix, plus one."""
    prefix = get_prefix(product_type)
    highest = 0
    for serial in existing_serials:
        parsed = parse_serial(serial)
        if parsed.prefix == prefix and parsed.number is not None:
            highest = max(highest, parsed.number)
    return highest + 1


def _check_count(count: int) -> None:
    if count < 1:
        raise SerialNumberError("Count must be at least 1")
    if count > MAX_SERIALS_PER_REQUEST:
        raise SerialNumberError(
            f"Cannot generate more than {MAX_SERIALS_PER_REQUEST} serials at once"
        )


def generate_serials(
    product_type: ProductType | str, count: int, start: int
) -> list[str]:
    _check_count(count)
    if start < 1:
        raise SerialNumberError("Sequence must start at 1 or higher")
    return [format_serial(product_type, start + offset) for offset in range(count)]


def work_order_suffix(wo_number: str) -> str:
    suffix = re.sub(r"[^a-zA-Z0-9]", "", wo_number or "")[-6:]
    if not suffix:
        raise SerialNumberError(
            f"Work order number {wo_number!r} has no alphanumeric characters"
        )
    return suffix


def build_item_serials(
    wo_number: str, batches: Iterable[ProductBatch]
) -> list[tuple[ProductType, int, str]]:
    """
    Return ``(product_type, position, serial)`` for every item of a work order.

    Positions run from 1 across all batches, in batch order.
    """
    batches = list(batches)
    total = sum(batch.quantity for batch in batches)
    _check_count(total)
    suffix = work_order_suffix(wo_number)

    items: list[tuple[ProductType, int, str]] = []
    position = 1
    for batch in batches:
        if batch.quantity < 1:
            raise SerialNumberError("Batch quantity must be at least 1")
        prefix = get_prefix(batch.product_type)
        for _ in range(batch.quantity):
            items.append(
                (
                    ProductType(batch.product_type),
                    position,
                    f"{prefix}-{suffix}-{position:03d}",
                )
            )
            position += 1
    return items
