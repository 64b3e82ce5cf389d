"""Repository objects wrapping the workbook for the business layer.

Each collaborator the transaction recorder depends on is described by a
``Protocol`` (``ProductDirectory``, ``PartyDirectory``, ``LedgerStore``) and
implemented on top of the data access layer. Implementations are constructed
once per runtime context and share its re-entrant lock, which serialises every
workbook access because ``openpyxl`` objects are not thread-safe.
"""

from __future__ import annotations

import re
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional, Protocol, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    HEADER_SHEETS,
    LINE_ITEM_SHEETS,
    NUMBER_PREFIXES,
    PARTY_SHEETS,
    PartyKind,
    SheetName,
    TransactionType,
)


class DuplicateRecordError(ValueError):
    """Raised when a write would break a uniqueness constraint."""


def normalize_name(name: str) -> str:
    """Collapse whitespace and casefold ``name`` for case-insensitive matching."""

    return " ".join(name.split()).casefold()


def new_record_id(prefix: str = "") -> str:
    """Return an opaque, collision-resistant identifier."""

    return f"{prefix}{uuid.uuid4().hex}"


class ProductDirectory(Protocol):
    def find_by_id(self, product_id: str) -> Optional[data_manager.ProductRow]: ...

    def find_by_name(self, name: str) -> List[data_manager.ProductRow]: ...

    def list_all(self) -> List[data_manager.ProductRow]: ...

    def add(self, record: data_manager.ProductRow) -> data_manager.ProductRow: ...

    def update_fields(self, product_id: str, field_values: dict[str, Any]) -> None: ...

    def delete(self, product_id: str) -> bool: ...

    def update_quantity_and_price(
        self,
        product_id: str,
        new_quantity: Decimal,
        new_buying_price: Optional[Decimal] = None,
        *,
        expected_quantity: Optional[Decimal] = None,
    ) -> bool: ...


class PartyDirectory(Protocol):
    kind: PartyKind

    def find_by_id(self, party_id: str) -> Optional[data_manager.PartyRow]: ...

    def find_by_name(self, name: str) -> Optional[data_manager.PartyRow]: ...

    def list_all(self) -> List[data_manager.PartyRow]: ...

    def add(self, record: data_manager.PartyRow) -> data_manager.PartyRow: ...

    def update_fields(self, party_id: str, field_values: dict[str, Any]) -> None: ...

    def delete(self, party_id: str) -> bool: ...


class LedgerStore(Protocol):
    kind: TransactionType

    def insert_header(self, header: data_manager.HeaderRow) -> data_manager.HeaderRow: ...

    def insert_line_items(self, transaction_id: str, items: Sequence[data_manager.LineItemRow]) -> None: ...

    def delete_header(self, transaction_id: str) -> int: ...

    def delete_line_items(self, transaction_id: str) -> int: ...

    def get_header(self, transaction_id: str) -> Optional[data_manager.HeaderRow]: ...

    def find_by_request_key(self, request_key: str) -> Optional[data_manager.HeaderRow]: ...

    def list_headers(self) -> List[data_manager.HeaderRow]: ...

    def list_line_items(self, transaction_id: Optional[str] = None) -> List[data_manager.LineItemRow]: ...

    def references_product(self, product_id: str) -> bool: ...

    def references_party(self, party_id: str) -> bool: ...


class ResolutionStatus(str, Enum):
    """Outcome of resolving a user-supplied product reference."""

    FOUND = "FOUND"
    NOT_FOUND = "NOT_FOUND"
    AMBIGUOUS = "AMBIGUOUS"


@dataclass(frozen=True)
class ProductResolution:
    """Typed result of :func:`resolve_product`."""

    reference: str
    status: ResolutionStatus
    product: Optional[data_manager.ProductRow] = None
    candidates: tuple[data_manager.ProductRow, ...] = ()


def resolve_product(directory: ProductDirectory, reference: str) -> ProductResolution:
    """Resolve ``reference`` to exactly one product.

    The reference is looked up both as an id and as a name, compared
    case-insensitively. It is ``FOUND`` when exactly one product answers to
    it, ``AMBIGUOUS`` when an id and another product's name both match or
    several names match, and ``NOT_FOUND`` otherwise. Nothing is ever guessed.
    """

    reference = reference.strip()
    by_id = directory.find_by_id(reference)
    matches = directory.find_by_name(reference)
    if by_id is not None:
        others = [product for product in matches if product.product_id != by_id.product_id]
        if others:
            return ProductResolution(reference, ResolutionStatus.AMBIGUOUS, None, (by_id, *others))
        return ProductResolution(reference, ResolutionStatus.FOUND, by_id, (by_id,))

    if len(matches) == 1:
        return ProductResolution(reference, ResolutionStatus.FOUND, matches[0], tuple(matches))
    if not matches:
        return ProductResolution(reference, ResolutionStatus.NOT_FOUND)
    return ProductResolution(reference, ResolutionStatus.AMBIGUOUS, None, tuple(matches))


class WorkbookProductDirectory:
    """Product Directory backed by the ``Products`` worksheet."""

    def __init__(self, workbook: Workbook, lock: threading.RLock) -> None:
        self.workbook = workbook
        self.lock = lock

    def find_by_id(self, product_id: str) -> Optional[data_manager.ProductRow]:
        with self.lock:
            for product in data_manager.iter_products(self.workbook):
                if product.product_id == product_id:
                    return product
        return None

    def find_by_name(self, name: str) -> List[data_manager.ProductRow]:
        wanted = normalize_name(name)
        with self.lock:
            return [
                product
                for product in data_manager.iter_products(self.workbook)
                if normalize_name(product.name) == wanted
            ]

    def list_all(self) -> List[data_manager.ProductRow]:
        with self.lock:
            return list(data_manager.iter_products(self.workbook))

    def add(self, record: data_manager.ProductRow) -> data_manager.ProductRow:
        with self.lock:
            if self.find_by_id(record.product_id) is not None:
                raise DuplicateRecordError(f"Product id already exists: {record.product_id}")
            if self.find_by_name(record.name):
                raise DuplicateRecordError(f"Product name already exists: {record.name}")
            data_manager.append_product(self.workbook, record)
        return record

    def update_fields(self, product_id: str, field_values: dict[str, Any]) -> None:
        with self.lock:
            data_manager.update_product(self.workbook, product_id, field_values=field_values)

    def delete(self, product_id: str) -> bool:
        with self.lock:
            removed = data_manager.delete_rows(
                self.workbook, SheetName.PRODUCTS.value, "ProductID", product_id
            )
        return removed > 0

    def update_quantity_and_price(
        self,
        product_id: str,
        new_quantity: Decimal,
        new_buying_price: Optional[Decimal] = None,
        *,
        expected_quantity: Optional[Decimal] = None,
    ) -> bool:
        """Write a new quantity (and optionally buying price) atomically.

        When ``expected_quantity`` is given the write only happens if the
        stored quantity still equals it; ``False`` signals a lost race and the
        caller is expected to re-read and retry.

        Raises:
            KeyError: If the product does not exist.
        """

        with self.lock:
            current = self.find_by_id(product_id)
            if current is None:
                raise KeyError(f"Product not found: {product_id}")
            if expected_quantity is not None and current.quantity != expected_quantity:
                log.debug(
                    "Quantity conflict on '%s': expected %s, found %s",
                    product_id,
                    expected_quantity,
                    current.quantity,
                )
                return False
            field_values: dict[str, Any] = {"Quantity": new_quantity}
            if new_buying_price is not None:
                field_values["BuyingPrice"] = new_buying_price
            data_manager.update_product(self.workbook, product_id, field_values=field_values)
        return True


class WorkbookPartyDirectory:
    """Party Directory backed by the ``Suppliers`` or ``Customers`` worksheet."""

    def __init__(self, workbook: Workbook, lock: threading.RLock, kind: PartyKind) -> None:
        self.workbook = workbook
        self.lock = lock
        self.kind = kind
        self.sheet_name = PARTY_SHEETS[kind].value

    def find_by_id(self, party_id: str) -> Optional[data_manager.PartyRow]:
        with self.lock:
            for party in data_manager.iter_parties(self.workbook, self.sheet_name):
                if party.party_id == party_id:
                    return party
        return None

    def find_by_name(self, name: str) -> Optional[data_manager.PartyRow]:
        wanted = normalize_name(name)
        with self.lock:
            for party in data_manager.iter_parties(self.workbook, self.sheet_name):
                if normalize_name(party.name) == wanted:
                    return party
        return None

    def list_all(self) -> List[data_manager.PartyRow]:
        with self.lock:
            return list(data_manager.iter_parties(self.workbook, self.sheet_name))

    def add(self, record: data_manager.PartyRow) -> data_manager.PartyRow:
        with self.lock:
            if self.find_by_name(record.name) is not None:
                raise DuplicateRecordError(
                    f"{self.kind.value.title()} name already exists: {record.name}"
                )
            data_manager.append_party(self.workbook, self.sheet_name, record)
        return record

    def update_fields(self, party_id: str, field_values: dict[str, Any]) -> None:
        with self.lock:
            data_manager.update_party(self.workbook, self.sheet_name, party_id, field_values=field_values)

    def delete(self, party_id: str) -> bool:
        with self.lock:
            removed = data_manager.delete_rows(self.workbook, self.sheet_name, "PartyID", party_id)
        return removed > 0


class WorkbookLedgerStore:
    """Ledger Store for one transaction kind (header sheet plus line sheet)."""

    def __init__(self, workbook: Workbook, lock: threading.RLock, kind: TransactionType) -> None:
        self.workbook = workbook
        self.lock = lock
        self.kind = kind
        self.header_sheet = HEADER_SHEETS[kind].value
        self.line_sheet = LINE_ITEM_SHEETS[kind].value
        self.number_prefix = NUMBER_PREFIXES[kind]

    def next_document_number(self, doc_date: date) -> str:
        """Return the next free ``{PREFIX}-{YYYYMMDD}-{NNNN}`` number for ``doc_date``.

        Must be called with the lock held so the allocation and the insert
        happen as one step.
        """

        stem = f"{self.number_prefix}-{doc_date.strftime('%Y%m%d')}-"
        pattern = re.compile(re.escape(stem) + r"(\d+)$")
        highest = 0
        for header in data_manager.iter_headers(self.workbook, self.header_sheet):
            match = pattern.match(header.number or "")
            if match:
                highest = max(highest, int(match.group(1)))
        return f"{stem}{highest + 1:04d}"

    def insert_header(self, header: data_manager.HeaderRow) -> data_manager.HeaderRow:
        """Append ``header``, allocating its number when none is supplied.

        Raises:
            DuplicateRecordError: If the id or number is already taken.
        """

        with self.lock:
            if self.get_header(header.transaction_id) is not None:
                raise DuplicateRecordError(f"Transaction id already exists: {header.transaction_id}")
            if header.request_key is not None and self.find_by_request_key(header.request_key) is not None:
                raise DuplicateRecordError(f"Request key already recorded: {header.request_key}")
            if header.number is None:
                header = replace(
                    header,
                    number=self.next_document_number(date.fromisoformat(header.date_iso)),
                )
            elif data_manager.locate_row(self.workbook, self.header_sheet, "Number", header.number) is not None:
                raise DuplicateRecordError(f"Document number already exists: {header.number}")
            data_manager.append_header(self.workbook, self.header_sheet, header)
        return header

    def insert_line_items(self, transaction_id: str, items: Sequence[data_manager.LineItemRow]) -> None:
        with self.lock:
            for item in items:
                if item.transaction_id != transaction_id:
                    raise ValueError(
                        f"Line item '{item.line_item_id}' does not belong to '{transaction_id}'"
                    )
                data_manager.append_line_item(self.workbook, self.line_sheet, item)

    def delete_header(self, transaction_id: str) -> int:
        with self.lock:
            return data_manager.delete_rows(
                self.workbook, self.header_sheet, "TransactionID", transaction_id
            )

    def delete_line_items(self, transaction_id: str) -> int:
        with self.lock:
            return data_manager.delete_rows(
                self.workbook, self.line_sheet, "TransactionID", transaction_id
            )

    def get_header(self, transaction_id: str) -> Optional[data_manager.HeaderRow]:
        with self.lock:
            for header in data_manager.iter_headers(self.workbook, self.header_sheet):
                if header.transaction_id == transaction_id:
                    return header
        return None

    def find_by_request_key(self, request_key: str) -> Optional[data_manager.HeaderRow]:
        with self.lock:
            for header in data_manager.iter_headers(self.workbook, self.header_sheet):
                if header.request_key == request_key:
                    return header
        return None

    def list_headers(self) -> List[data_manager.HeaderRow]:
        with self.lock:
            return list(data_manager.iter_headers(self.workbook, self.header_sheet))

    def list_line_items(self, transaction_id: Optional[str] = None) -> List[data_manager.LineItemRow]:
        with self.lock:
            items = list(data_manager.iter_line_items(self.workbook, self.line_sheet))
        if transaction_id is None:
            return items
        return [item for item in items if item.transaction_id == transaction_id]

    def references_product(self, product_id: str) -> bool:
        return any(item.product_id == product_id for item in self.list_line_items())

    def references_party(self, party_id: str) -> bool:
        return any(header.party_id == party_id for header in self.list_headers())
