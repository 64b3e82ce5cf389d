"""Business logic layer for the retail ERP.

This module owns the transaction recorder: it turns sale and purchase requests
into a header, its line items and the matching stock adjustments, and makes
sure those writes land together or not at all. All I/O goes through the
repositories carried by :class:`RuntimeContext`; catalogue maintenance,
expenses and the dashboard/report aggregations live here as well.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log, repositories, set_log_level
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    MAX_STOCK_UPDATE_ATTEMPTS,
    ZERO,
    ExpenseType,
    PartyKind,
    PaymentMethod,
    PaymentType,
    TransactionType,
)


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, party, or transaction is unknown."""


class InvalidTransaction(BusinessRuleViolation, ValueError):
    """Raised when a request fails validation before any I/O happens."""

    def __init__(self, message: str, *, line_index: Optional[int] = None, field_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.line_index = line_index
        self.field_name = field_name


class ProductNotFound(MissingReferenceError):
    """Raised when a line item names a product that does not exist."""

    def __init__(self, reference: str, *, line_index: Optional[int] = None) -> None:
        location = f" (line {line_index + 1})" if line_index is not None else ""
        super().__init__(f'Product "{reference}" not found{location}. Please add it first.')
        self.reference = reference
        self.line_index = line_index


class AmbiguousProductMatch(BusinessRuleViolation):
    """Raised when a line item name matches more than one product."""

    def __init__(self, reference: str, candidates: Sequence[data_manager.ProductRow], *, line_index: Optional[int] = None) -> None:
        ids = ", ".join(candidate.product_id for candidate in candidates)
        location = f" (line {line_index + 1})" if line_index is not None else ""
        super().__init__(f'Product "{reference}" is ambiguous{location}; matches: {ids}')
        self.reference = reference
        self.candidates = tuple(candidates)
        self.line_index = line_index


class InsufficientStock(BusinessRuleViolation):
    """Raised when on-hand stock cannot cover a requested sale quantity."""

    def __init__(
        self,
        product: data_manager.ProductRow,
        *,
        requested: Decimal,
        available: Decimal,
        line_index: Optional[int] = None,
    ) -> None:
        location = f" (line {line_index + 1})" if line_index is not None else ""
        super().__init__(
            f"Insufficient stock for {product.name}{location}: requested {requested}, available {available}"
        )
        self.product_id = product.product_id
        self.product_name = product.name
        self.requested = requested
        self.available = available
        self.line_index = line_index


class PersistenceFailure(BusinessRuleViolation):
    """Raised when a write fails part-way; earlier writes have been undone."""

    def __init__(self, message: str, *, transaction_id: Optional[str] = None, product_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.transaction_id = transaction_id
        self.product_id = product_id


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration, workbook and the repositories built on top of it.

    The repositories are created once in :func:`build_runtime_context` and
    shared by reference; they all hold ``lock`` while touching the workbook.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    products: repositories.ProductDirectory
    suppliers: repositories.PartyDirectory
    customers: repositories.PartyDirectory
    sales: repositories.LedgerStore
    purchases: repositories.LedgerStore
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class LineItemRequest:
    """One requested line: a product reference (id or name), quantity and price."""

    product: str
    quantity: Decimal
    unit_price: Decimal


@dataclass(frozen=True)
class SaleCommand:
    """User intent for recording a sale."""

    items: Sequence[LineItemRequest]
    payment_type: PaymentType = PaymentType.CASH
    customer: Optional[str] = None
    sale_date: Optional[date] = None
    notes: Optional[str] = None
    # Ignored: the total is always recomputed from the line items.
    total_amount: Optional[Decimal] = None
    request_key: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for recording a purchase from a supplier."""

    items: Sequence[LineItemRequest]
    supplier: Optional[str] = None
    invoice_number: Optional[str] = None
    purchase_date: Optional[date] = None
    notes: Optional[str] = None
    # Ignored: the total is always recomputed from the line items.
    total_amount: Optional[Decimal] = None
    request_key: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ExpenseCommand:
    """User intent for recording a shop expense."""

    expense_type: ExpenseType
    description: str
    amount: Decimal
    payment_method: PaymentMethod = PaymentMethod.CASH
    expense_date: Optional[date] = None


@dataclass(frozen=True)
class TransactionReceipt:
    """What the recorder hands back after a sale or purchase."""

    header: data_manager.HeaderRow
    items: List[data_manager.LineItemRow]
    quantities: Dict[str, Decimal]
    replayed: bool = False

    @property
    def transaction_id(self) -> str:
        return self.header.transaction_id

    @property
    def total_amount(self) -> Decimal:
        return self.header.total_amount


@dataclass(frozen=True)
class LedgerEntry:
    """A header paired with the quantity totals of its line items."""

    header: data_manager.HeaderRow
    item_count: int
    total_quantity: Decimal


@dataclass(frozen=True)
class _ResolvedLine:
    index: int
    request: LineItemRequest
    product: data_manager.ProductRow


class TransactionScope:
    """Collect compensating actions and run them if the block fails.

    Each successful step registers how to undo itself. When an exception
    leaves the ``with`` block the actions run in reverse order and the
    exception keeps propagating. A compensation that fails is logged and the
    remaining ones still run.
    """

    def __init__(self, label: str) -> None:
        self.label = label
        self._undo: List[tuple[str, Callable[[], Any]]] = []

    def on_rollback(self, description: str, action: Callable[[], Any]) -> None:
        self._undo.append((description, action))

    def __enter__(self) -> "TransactionScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self._undo.clear()
            return False
        log.warning("Rolling back %s after %s: %s", self.label, exc_type.__name__, exc)
        self.rollback()
        return False

    def rollback(self) -> None:
        while self._undo:
            description, action = self._undo.pop()
            try:
                action()
                log.debug("Compensation '%s' applied for %s", description, self.label)
            except Exception:
                log.exception("Compensation '%s' failed for %s", description, self.label)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def build_runtime_context(settings: data_manager.ConfigSettings, workbook: Workbook) -> RuntimeContext:
    """Wire the workbook-backed repositories around ``workbook``."""

    lock = threading.RLock()
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        products=repositories.WorkbookProductDirectory(workbook, lock),
        suppliers=repositories.WorkbookPartyDirectory(workbook, lock, PartyKind.SUPPLIER),
        customers=repositories.WorkbookPartyDirectory(workbook, lock, PartyKind.CUSTOMER),
        sales=repositories.WorkbookLedgerStore(workbook, lock, TransactionType.SALE),
        purchases=repositories.WorkbookLedgerStore(workbook, lock, TransactionType.PURCHASE),
        lock=lock,
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the business layer.

    Resolves ``config.ini``, parses the settings, opens the workbook they
    point at and builds the repositories once for the whole process.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    set_log_level(settings.log_level)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_runtime_context(settings, workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    with context.lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook and new
            repositories.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_runtime_context(context.settings, workbook)


def require_finite(value: Decimal, *, field_name: str, line_index: Optional[int] = None) -> None:
    """Reject NaN and infinite values before any comparison touches them.

    Raises:
        InvalidTransaction: If ``value`` is not a finite number.
    """
    if not value.is_finite():
        log.error("Non-finite value for %s: %s", field_name, value)
        location = f" on line {line_index + 1}" if line_index is not None else ""
        raise InvalidTransaction(
            f"{field_name.replace('_', ' ').capitalize()} must be a finite number{location}",
            line_index=line_index,
            field_name=field_name,
        )


def require_positive_quantity(quantity: Decimal, *, line_index: Optional[int] = None) -> None:
    """Validate that a quantity is finite and strictly positive.

    Raises:
        InvalidTransaction: If ``quantity`` is not finite, zero or negative.
    """
    require_finite(quantity, field_name="quantity", line_index=line_index)
    if quantity <= ZERO:
        log.error("Quantity validation failed: %s", quantity)
        location = f" on line {line_index + 1}" if line_index is not None else ""
        raise InvalidTransaction(
            f"Quantity must be greater than zero{location}",
            line_index=line_index,
            field_name="quantity",
        )


def require_nonnegative_money(amount: Decimal, *, field_name: str = "amount", line_index: Optional[int] = None) -> None:
    """Validate that a monetary value is finite and nonnegative.

    Raises:
        InvalidTransaction: If ``amount`` is not finite or is less than zero.
    """
    require_finite(amount, field_name=field_name, line_index=line_index)
    if amount < ZERO:
        log.error("Monetary value validation failed for %s: %s", field_name, amount)
        location = f" on line {line_index + 1}" if line_index is not None else ""
        raise InvalidTransaction(
            f"{field_name.replace('_', ' ').capitalize()} cannot be negative{location}",
            line_index=line_index,
            field_name=field_name,
        )


def require_text(value: Optional[str], *, field_name: str) -> str:
    """Return ``value`` stripped, rejecting ``None`` and blank strings."""
    if value is None or not value.strip():
        log.error("Required field '%s' is blank", field_name)
        raise InvalidTransaction(f"{field_name.replace('_', ' ').capitalize()} is required", field_name=field_name)
    return value.strip()


def validate_line_items(items: Sequence[LineItemRequest], *, price_field: str = "unit_price") -> None:
    """Reject empty item lists, blank references and bad quantities or prices."""
    if not items:
        log.error("Transaction rejected: no line items supplied")
        raise InvalidTransaction("Please add at least one product", field_name="items")
    for index, item in enumerate(items):
        if item.product is None or not str(item.product).strip():
            raise InvalidTransaction(
                f"Product name is required on line {index + 1}",
                line_index=index,
                field_name="product",
            )
        require_positive_quantity(item.quantity, line_index=index)
        require_nonnegative_money(item.unit_price, field_name=price_field, line_index=index)


def resolve_line_products(context: RuntimeContext, items: Sequence[LineItemRequest]) -> List[_ResolvedLine]:
    """Resolve every line to exactly one product or raise for the first bad line.

    Raises:
        ProductNotFound: If a reference matches nothing.
        AmbiguousProductMatch: If a name matches more than one product.
    """
    resolved: List[_ResolvedLine] = []
    for index, item in enumerate(items):
        resolution = repositories.resolve_product(context.products, item.product)
        if resolution.status is repositories.ResolutionStatus.NOT_FOUND:
            log.warning("Product lookup failed for '%s' (line %d)", item.product, index + 1)
            raise ProductNotFound(resolution.reference, line_index=index)
        if resolution.status is repositories.ResolutionStatus.AMBIGUOUS:
            log.warning(
                "Product reference '%s' matched %d products (line %d)",
                item.product,
                len(resolution.candidates),
                index + 1,
            )
            raise AmbiguousProductMatch(resolution.reference, resolution.candidates, line_index=index)
        resolved.append(_ResolvedLine(index=index, request=item, product=resolution.product))
    return resolved


def _aggregate_by_product(lines: Sequence[_ResolvedLine]) -> "OrderedDict[str, tuple[Decimal, _ResolvedLine]]":
    """Sum requested quantities per product, remembering the first line seen."""
    totals: "OrderedDict[str, tuple[Decimal, _ResolvedLine]]" = OrderedDict()
    for line in lines:
        product_id = line.product.product_id
        if product_id in totals:
            quantity, first = totals[product_id]
            totals[product_id] = (quantity + line.request.quantity, first)
        else:
            totals[product_id] = (line.request.quantity, line)
    return totals


def _resolve_party_id(directory: repositories.PartyDirectory, reference: Optional[str]) -> Optional[str]:
    """Best-effort party lookup by id or name; unmatched references become ``None``."""
    if reference is None or not reference.strip():
        return None
    reference = reference.strip()
    party = directory.find_by_id(reference) or directory.find_by_name(reference)
    if party is None:
        log.warning("%s '%s' not found; storing without a reference", directory.kind.value.title(), reference)
        return None
    return party.party_id


def _build_line_items(transaction_id: str, lines: Sequence[_ResolvedLine]) -> List[data_manager.LineItemRow]:
    return [
        data_manager.LineItemRow(
            line_item_id=repositories.new_record_id(),
            transaction_id=transaction_id,
            product_id=line.product.product_id,
            quantity=line.request.quantity,
            unit_price=line.request.unit_price,
            total_amount=line.request.quantity * line.request.unit_price,
        )
        for line in lines
    ]


def _apply_stock_delta(
    context: RuntimeContext,
    product_id: str,
    delta: Decimal,
    *,
    new_buying_price: Optional[Decimal] = None,
    line_index: Optional[int] = None,
    allow_negative: bool = False,
) -> tuple[data_manager.ProductRow, Decimal]:
    """Add ``delta`` to a product's quantity with compare-and-set retries.

    Stock sufficiency is re-checked against the freshly read quantity on every
    attempt, so a concurrent writer that drained the product in the meantime
    turns into :class:`InsufficientStock` rather than a negative balance.

    Returns:
        tuple[ProductRow, Decimal]: The product as read before the winning
            write, and the quantity written.
    """
    for attempt in range(1, MAX_STOCK_UPDATE_ATTEMPTS + 1):
        current = context.products.find_by_id(product_id)
        if current is None:
            raise ProductNotFound(product_id, line_index=line_index)
        new_quantity = current.quantity + delta
        if new_quantity < ZERO and not allow_negative:
            log.warning(
                "Stock for '%s' dropped to %s before commit; %s requested",
                product_id,
                current.quantity,
                -delta,
            )
            raise InsufficientStock(current, requested=-delta, available=current.quantity, line_index=line_index)
        if context.products.update_quantity_and_price(
            product_id,
            new_quantity,
            new_buying_price,
            expected_quantity=current.quantity,
        ):
            return current, new_quantity
        log.info("Retrying stock update for '%s' (attempt %d)", product_id, attempt)

    raise PersistenceFailure(
        f"Could not update stock for product '{product_id}' after "
        f"{MAX_STOCK_UPDATE_ATTEMPTS} attempts",
        product_id=product_id,
    )


def _undo_stock_delta(
    context: RuntimeContext,
    product_id: str,
    delta: Decimal,
    previous_buying_price: Optional[Decimal] = None,
) -> None:
    _apply_stock_delta(
        context,
        product_id,
        -delta,
        new_buying_price=previous_buying_price,
        allow_negative=True,
    )


def _replay_receipt(context: RuntimeContext, ledger: repositories.LedgerStore, request_key: Optional[str]) -> Optional[TransactionReceipt]:
    """Return the stored receipt for ``request_key`` if it was already recorded."""
    if request_key is None:
        return None
    header = ledger.find_by_request_key(request_key)
    if header is None:
        return None
    items = ledger.list_line_items(header.transaction_id)
    quantities: Dict[str, Decimal] = {}
    for item in items:
        product = context.products.find_by_id(item.product_id)
        if product is not None:
            quantities[item.product_id] = product.quantity
    log.info(
        "Request key '%s' already recorded as %s '%s'; returning stored result",
        request_key,
        ledger.kind.value,
        header.number,
    )
    return TransactionReceipt(header=header, items=items, quantities=quantities, replayed=True)


def _commit(
    context: RuntimeContext,
    ledger: repositories.LedgerStore,
    header: data_manager.HeaderRow,
    items: List[data_manager.LineItemRow],
    stock_changes: "OrderedDict[str, tuple[Decimal, Optional[Decimal], _ResolvedLine]]",
) -> TransactionReceipt:
    """Write header, line items and stock changes as one unit.

    ``stock_changes`` maps product id to ``(delta, new_buying_price, line)``.
    Any failure undoes the steps already applied and is re-raised; errors
    that are not domain errors surface as :class:`PersistenceFailure`.
    """
    label = f"{ledger.kind.value} {header.transaction_id}"
    quantities: Dict[str, Decimal] = {}
    try:
        with TransactionScope(label) as scope:
            stored = ledger.insert_header(header)
            scope.on_rollback("delete header", lambda: ledger.delete_header(stored.transaction_id))

            scope.on_rollback("delete line items", lambda: ledger.delete_line_items(stored.transaction_id))
            ledger.insert_line_items(stored.transaction_id, items)

            for product_id, (delta, buying_price, line) in stock_changes.items():
                before, after = _apply_stock_delta(
                    context,
                    product_id,
                    delta,
                    new_buying_price=buying_price,
                    line_index=line.index,
                )
                previous_price = before.buying_price if buying_price is not None else None
                scope.on_rollback(
                    f"restore stock of {product_id}",
                    lambda pid=product_id, d=delta, p=previous_price: _undo_stock_delta(context, pid, d, p),
                )
                quantities[product_id] = after
    except BusinessRuleViolation:
        raise
    except Exception as exc:
        log.error("Persistence failure while recording %s: %s", label, exc)
        raise PersistenceFailure(
            f"Could not record {ledger.kind.value.lower()} {header.transaction_id}: {exc}",
            transaction_id=header.transaction_id,
        ) from exc

    return TransactionReceipt(header=stored, items=items, quantities=quantities)


def record_sale(context: RuntimeContext, command: SaleCommand) -> TransactionReceipt:
    """Validate and record a sale, deducting stock for every line.

    The order of effects is: validate the request, resolve every product,
    check stock for every product, then write the header, the line items and
    the stock decrements as one unit (see :class:`TransactionScope`). The
    header total is computed from the line items; ``command.total_amount`` is
    ignored. A repeated ``request_key`` returns the original receipt without
    touching stock again.

    Args:
        context (RuntimeContext): Runtime context with the repositories.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        TransactionReceipt: Stored header, line items and resulting quantities.

    Raises:
        InvalidTransaction: Empty item list, non-positive quantity, negative
            price or unsupported payment type.
        ProductNotFound: A line references an unknown product.
        AmbiguousProductMatch: A line name matches several products.
        InsufficientStock: Stock cannot cover a product's requested total.
        PersistenceFailure: A write failed; partial writes were undone.
    """
    validate_line_items(command.items, price_field="sale_price")
    if not isinstance(command.payment_type, PaymentType):
        log.error("Unsupported payment type provided: %s", command.payment_type)
        raise InvalidTransaction(f"Unsupported payment type: {command.payment_type}", field_name="payment_type")

    replay = _replay_receipt(context, context.sales, command.request_key)
    if replay is not None:
        return replay

    lines = resolve_line_products(context, command.items)
    demand = _aggregate_by_product(lines)
    for product_id, (quantity, first_line) in demand.items():
        if first_line.product.quantity < quantity:
            log.warning(
                "Insufficient stock for '%s': requested %s, available %s",
                first_line.product.name,
                quantity,
                first_line.product.quantity,
            )
            raise InsufficientStock(
                first_line.product,
                requested=quantity,
                available=first_line.product.quantity,
                line_index=first_line.index,
            )

    customer_id = _resolve_party_id(context.customers, command.customer)
    timestamp = _resolve_timestamp(command.timestamp)
    transaction_id = repositories.new_record_id()
    items = _build_line_items(transaction_id, lines)
    total = sum((item.total_amount for item in items), ZERO)
    if command.total_amount is not None and command.total_amount != total:
        log.warning("Ignoring caller total %s; computed %s", command.total_amount, total)

    header = data_manager.HeaderRow(
        transaction_id=transaction_id,
        number=None,
        date_iso=(command.sale_date or timestamp.date()).isoformat(),
        party_id=customer_id,
        payment_type=command.payment_type.value,
        total_amount=total,
        external_ref=None,
        notes=command.notes or None,
        request_key=command.request_key,
        created_at_iso=timestamp.isoformat(),
    )
    stock_changes = OrderedDict(
        (product_id, (-quantity, None, first_line)) for product_id, (quantity, first_line) in demand.items()
    )
    receipt = _commit(context, context.sales, header, items, stock_changes)
    log.info(
        "Recorded SALE '%s' (%d lines, total=%s)",
        receipt.header.number,
        len(items),
        total,
    )
    return receipt


def record_purchase(context: RuntimeContext, command: PurchaseCommand) -> TransactionReceipt:
    """Validate and record a purchase, adding stock for every line.

    Mirrors :func:`record_sale` without the stock-sufficiency check. Each
    product's buying price is overwritten with the unit cost of its last line
    (last-cost-wins). An unknown supplier is stored as a null reference; an
    unknown product fails the purchase.

    Raises:
        InvalidTransaction: Empty item list, non-positive quantity or negative
            cost.
        ProductNotFound: A line references an unknown product.
        AmbiguousProductMatch: A line name matches several products.
        PersistenceFailure: A write failed; partial writes were undone.
    """
    validate_line_items(command.items, price_field="cost_price")

    replay = _replay_receipt(context, context.purchases, command.request_key)
    if replay is not None:
        return replay

    lines = resolve_line_products(context, command.items)
    supplier_id = _resolve_party_id(context.suppliers, command.supplier)
    timestamp = _resolve_timestamp(command.timestamp)
    transaction_id = repositories.new_record_id()
    items = _build_line_items(transaction_id, lines)
    total = sum((item.total_amount for item in items), ZERO)
    if command.total_amount is not None and command.total_amount != total:
        log.warning("Ignoring caller total %s; computed %s", command.total_amount, total)

    stock_changes: "OrderedDict[str, tuple[Decimal, Optional[Decimal], _ResolvedLine]]" = OrderedDict()
    for product_id, (quantity, first_line) in _aggregate_by_product(lines).items():
        last_cost = [line.request.unit_price for line in lines if line.product.product_id == product_id][-1]
        stock_changes[product_id] = (quantity, last_cost, first_line)

    header = data_manager.HeaderRow(
        transaction_id=transaction_id,
        number=None,
        date_iso=(command.purchase_date or timestamp.date()).isoformat(),
        party_id=supplier_id,
        payment_type=None,
        total_amount=total,
        external_ref=command.invoice_number or None,
        notes=command.notes or None,
        request_key=command.request_key,
        created_at_iso=timestamp.isoformat(),
    )
    receipt = _commit(context, context.purchases, header, items, stock_changes)
    log.info(
        "Recorded PURCHASE '%s' (%d lines, total=%s, supplier=%s)",
        receipt.header.number,
        len(items),
        total,
        supplier_id,
    )
    return receipt


# ---------------------------------------------------------------------------
# Catalogue and parties
# ---------------------------------------------------------------------------

_PRODUCT_FIELDS = {
    "name": "Name",
    "category": "Category",
    "unit": "Unit",
    "quantity": "Quantity",
    "buying_price": "BuyingPrice",
    "selling_price": "SellingPrice",
    "reorder_level": "ReorderLevel",
}


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return every product in sheet order."""
    return context.products.list_all()


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    product = context.products.find_by_id(product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    return product


def _validate_product_values(values: Dict[str, Any]) -> None:
    if "name" in values:
        values["name"] = require_text(values["name"], field_name="name")
    if "unit" in values:
        values["unit"] = require_text(values["unit"], field_name="unit")
    for money_field in ("buying_price", "selling_price"):
        if money_field in values:
            require_nonnegative_money(values[money_field], field_name=money_field)
    for count_field in ("quantity", "reorder_level"):
        if count_field in values:
            require_finite(values[count_field], field_name=count_field)
        if count_field in values and values[count_field] < ZERO:
            log.error("Product %s validation failed: %s", count_field, values[count_field])
            raise InvalidTransaction(
                f"{count_field.replace('_', ' ').capitalize()} cannot be negative",
                field_name=count_field,
            )


def add_product(
    context: RuntimeContext,
    *,
    name: str,
    unit: str = "pcs",
    quantity: Decimal = ZERO,
    buying_price: Decimal = ZERO,
    selling_price: Decimal = ZERO,
    reorder_level: Optional[Decimal] = None,
    category: Optional[str] = None,
    product_id: Optional[str] = None,
) -> data_manager.ProductRow:
    """Register a new product.

    Names must be unique case-insensitively. The reorder level defaults to
    the configured ``DefaultReorderLevel``.

    Raises:
        InvalidTransaction: Blank name/unit or negative numbers.
        BusinessRuleViolation: Duplicate id or name.
    """
    values: Dict[str, Any] = {
        "name": name,
        "unit": unit,
        "quantity": quantity,
        "buying_price": buying_price,
        "selling_price": selling_price,
        "reorder_level": context.settings.default_reorder_level if reorder_level is None else reorder_level,
    }
    _validate_product_values(values)
    record = data_manager.ProductRow(
        product_id=product_id or f"P{repositories.new_record_id()[:8].upper()}",
        category=category or None,
        **values,
    )
    try:
        context.products.add(record)
    except repositories.DuplicateRecordError as exc:
        log.warning("Product rejected: %s", exc)
        raise BusinessRuleViolation(str(exc)) from exc
    log.info("Added product '%s' (%s)", record.name, record.product_id)
    return record


def update_product(context: RuntimeContext, product_id: str, **changes: Any) -> data_manager.ProductRow:
    """Apply a direct edit to a product's fields.

    Accepted keys: ``name``, ``category``, ``unit``, ``quantity``,
    ``buying_price``, ``selling_price`` and ``reorder_level``.

    Raises:
        InvalidTransaction: Unknown field or invalid value.
        MissingReferenceError: Unknown product id.
        BusinessRuleViolation: The new name is used by another product.
    """
    unknown = sorted(set(changes) - set(_PRODUCT_FIELDS))
    if unknown:
        raise InvalidTransaction(f"Unknown product field(s): {', '.join(unknown)}", field_name=unknown[0])
    _validate_product_values(changes)

    with context.lock:
        get_product(context, product_id)
        if "name" in changes:
            clashes = [p for p in context.products.find_by_name(changes["name"]) if p.product_id != product_id]
            if clashes:
                raise BusinessRuleViolation(f"Product name already exists: {changes['name']}")
        context.products.update_fields(
            product_id,
            {_PRODUCT_FIELDS[key]: value for key, value in changes.items()},
        )
        updated = get_product(context, product_id)
    log.info("Updated product '%s': %s", product_id, ", ".join(sorted(changes)) or "no changes")
    return updated


def delete_product(context: RuntimeContext, product_id: str) -> None:
    """Delete a product that no sale or purchase references.

    Raises:
        MissingReferenceError: Unknown product id.
        BusinessRuleViolation: The product appears on historical line items.
    """
    with context.lock:
        product = get_product(context, product_id)
        if context.sales.references_product(product_id) or context.purchases.references_product(product_id):
            log.warning("Refusing to delete referenced product '%s'", product_id)
            raise BusinessRuleViolation(
                f"Product '{product.name}' is referenced by recorded transactions and cannot be deleted"
            )
        context.products.delete(product_id)
    log.info("Deleted product '%s' (%s)", product.name, product_id)


_PARTY_FIELDS = {
    "name": "Name",
    "contact_number": "ContactNumber",
    "address": "Address",
}
_CUSTOMER_FIELDS = {
    **_PARTY_FIELDS,
    "credit_limit": "CreditLimit",
    "outstanding_balance": "OutstandingBalance",
}


def _add_party(
    directory: repositories.PartyDirectory,
    *,
    name: str,
    contact_number: Optional[str],
    address: Optional[str],
    credit_limit: Decimal = ZERO,
) -> data_manager.PartyRow:
    require_nonnegative_money(credit_limit, field_name="credit_limit")
    record = data_manager.PartyRow(
        party_id=repositories.new_record_id(directory.kind.value[0]),
        name=require_text(name, field_name="name"),
        contact_number=contact_number or None,
        address=address or None,
        credit_limit=credit_limit,
    )
    try:
        directory.add(record)
    except repositories.DuplicateRecordError as exc:
        log.warning("%s rejected: %s", directory.kind.value.title(), exc)
        raise BusinessRuleViolation(str(exc)) from exc
    log.info("Added %s '%s' (%s)", directory.kind.value.lower(), record.name, record.party_id)
    return record


def add_supplier(context: RuntimeContext, *, name: str, contact_number: Optional[str] = None, address: Optional[str] = None) -> data_manager.PartyRow:
    """Register a supplier; names are unique case-insensitively."""
    return _add_party(context.suppliers, name=name, contact_number=contact_number, address=address)


def add_customer(
    context: RuntimeContext,
    *,
    name: str,
    contact_number: Optional[str] = None,
    address: Optional[str] = None,
    credit_limit: Decimal = ZERO,
) -> data_manager.PartyRow:
    """Register a customer; names are unique case-insensitively."""
    return _add_party(
        context.customers,
        name=name,
        contact_number=contact_number,
        address=address,
        credit_limit=credit_limit,
    )


def list_suppliers(context: RuntimeContext) -> List[data_manager.PartyRow]:
    return context.suppliers.list_all()


def list_customers(context: RuntimeContext) -> List[data_manager.PartyRow]:
    return context.customers.list_all()



def _get_party(directory: repositories.PartyDirectory, party_id: str) -> data_manager.PartyRow:
    party = directory.find_by_id(party_id)
    if party is None:
        log.warning("%s lookup failed for id '%s'", directory.kind.value.title(), party_id)
        raise MissingReferenceError(f"Unknown {directory.kind.value.lower()} id: {party_id}")
    return party


def _update_party(
    context: RuntimeContext,
    directory: repositories.PartyDirectory,
    fields: Dict[str, str],
    party_id: str,
    changes: Dict[str, Any],
) -> data_manager.PartyRow:
    unknown = sorted(set(changes) - set(fields))
    if unknown:
        raise InvalidTransaction(
            f"Unknown {directory.kind.value.lower()} field(s): {', '.join(unknown)}",
            field_name=unknown[0],
        )
    if "name" in changes:
        changes["name"] = require_text(changes["name"], field_name="name")
    for text_field in ("contact_number", "address"):
        if text_field in changes:
            changes[text_field] = (changes[text_field] or "").strip() or None
    for money_field in ("credit_limit", "outstanding_balance"):
        if money_field in changes:
            require_nonnegative_money(changes[money_field], field_name=money_field)

    with context.lock:
        _get_party(directory, party_id)
        if "name" in changes:
            clash = directory.find_by_name(changes["name"])
            if clash is not None and clash.party_id != party_id:
                raise BusinessRuleViolation(
                    f"{directory.kind.value.title()} name already exists: {changes['name']}"
                )
        directory.update_fields(party_id, {fields[key]: value for key, value in changes.items()})
        updated = _get_party(directory, party_id)
    log.info(
        "Updated %s '%s': %s",
        directory.kind.value.lower(),
        party_id,
        ", ".join(sorted(changes)) or "no changes",
    )
    return updated


def update_supplier(context: RuntimeContext, party_id: str, **changes: Any) -> data_manager.PartyRow:
    """Edit a supplier's ``name``, ``contact_number`` or ``address``.

    Raises:
        InvalidTransaction: Unknown field or blank name.
        MissingReferenceError: Unknown supplier id.
        BusinessRuleViolation: The new name belongs to another supplier.
    """
    return _update_party(context, context.suppliers, _PARTY_FIELDS, party_id, changes)


def update_customer(context: RuntimeContext, party_id: str, **changes: Any) -> data_manager.PartyRow:
    """Edit a customer; also accepts ``credit_limit`` and ``outstanding_balance``.

    Raises:
        InvalidTransaction: Unknown field, blank name or a negative or
            non-finite credit value.
        MissingReferenceError: Unknown customer id.
        BusinessRuleViolation: The new name belongs to another customer.
    """
    return _update_party(context, context.customers, _CUSTOMER_FIELDS, party_id, changes)


def _delete_party(
    context: RuntimeContext,
    directory: repositories.PartyDirectory,
    ledger: repositories.LedgerStore,
    party_id: str,
) -> None:
    with context.lock:
        party = _get_party(directory, party_id)
        if ledger.references_party(party_id):
            log.warning("Refusing to delete referenced %s '%s'", directory.kind.value.lower(), party_id)
            raise BusinessRuleViolation(
                f"{directory.kind.value.title()} '{party.name}' is referenced by recorded "
                f"transactions and cannot be deleted"
            )
        directory.delete(party_id)
    log.info("Deleted %s '%s' (%s)", directory.kind.value.lower(), party.name, party_id)


def delete_supplier(context: RuntimeContext, party_id: str) -> None:
    """Delete a supplier that no purchase references.

    Raises:
        MissingReferenceError: Unknown supplier id.
        BusinessRuleViolation: A recorded purchase names the supplier.
    """
    _delete_party(context, context.suppliers, context.purchases, party_id)


def delete_customer(context: RuntimeContext, party_id: str) -> None:
    """Delete a customer that no sale references.

    Raises:
        MissingReferenceError: Unknown customer id.
        BusinessRuleViolation: A recorded sale names the customer.
    """
    _delete_party(context, context.customers, context.sales, party_id)


# ---------------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------------


def record_expense(context: RuntimeContext, command: ExpenseCommand) -> data_manager.ExpenseRow:
    """Validate and append an expense.

    Raises:
        InvalidTransaction: Unsupported type or method, blank description or
            non-positive amount.
    """
    if not isinstance(command.expense_type, ExpenseType):
        raise InvalidTransaction(f"Unsupported expense type: {command.expense_type}", field_name="expense_type")
    if not isinstance(command.payment_method, PaymentMethod):
        raise InvalidTransaction(f"Unsupported payment method: {command.payment_method}", field_name="payment_method")
    description = require_text(command.description, field_name="description")
    require_finite(command.amount, field_name="amount")
    if command.amount <= ZERO:
        log.error("Expense amount validation failed: %s", command.amount)
        raise InvalidTransaction("Amount must be greater than zero", field_name="amount")

    record = data_manager.ExpenseRow(
        expense_id=repositories.new_record_id("E"),
        expense_type=command.expense_type.value,
        description=description,
        amount=command.amount,
        expense_date_iso=(command.expense_date or _resolve_timestamp(None).date()).isoformat(),
        payment_method=command.payment_method.value,
    )
    with context.lock:
        data_manager.append_expense(context.workbook, record)
    log.info("Recorded %s expense of %s", record.expense_type, record.amount)
    return record


def list_expenses(context: RuntimeContext) -> List[data_manager.ExpenseRow]:
    with context.lock:
        return list(data_manager.iter_expenses(context.workbook))


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def list_low_stock(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return products whose quantity is below their reorder level."""
    return [product for product in context.products.list_all() if product.quantity < product.reorder_level]


def calculate_stock_value(context: RuntimeContext) -> Decimal:
    """Value on-hand stock at buying price."""
    return sum(
        (product.quantity * product.buying_price for product in context.products.list_all()),
        ZERO,
    )


def _list_entries(ledger: repositories.LedgerStore) -> List[LedgerEntry]:
    items_by_header: Dict[str, List[data_manager.LineItemRow]] = {}
    for item in ledger.list_line_items():
        items_by_header.setdefault(item.transaction_id, []).append(item)
    entries = [
        LedgerEntry(
            header=header,
            item_count=len(items_by_header.get(header.transaction_id, [])),
            total_quantity=sum((i.quantity for i in items_by_header.get(header.transaction_id, [])), ZERO),
        )
        for header in ledger.list_headers()
    ]
    entries.sort(key=lambda entry: (entry.header.date_iso, entry.header.created_at_iso), reverse=True)
    return entries


def list_sales(context: RuntimeContext) -> List[LedgerEntry]:
    """Sales newest first, each with its line count and total quantity."""
    return _list_entries(context.sales)


def list_purchases(context: RuntimeContext) -> List[LedgerEntry]:
    """Purchases newest first, each with its line count and total quantity."""
    return _list_entries(context.purchases)


def _in_range(date_iso: str, start: date, end: date) -> bool:
    try:
        day = date.fromisoformat(date_iso[:10])
    except ValueError:
        log.warning("Skipping record with unreadable date '%s'", date_iso)
        return False
    return start <= day <= end


def calculate_period_summary(context: RuntimeContext, start: date, end: date) -> Dict[str, Decimal]:
    """Aggregate sales, purchases and expenses for an inclusive date range.

    Returns:
        dict[str, Decimal]: ``total_sales``, ``total_purchases``,
            ``total_expenses`` and ``net`` (sales minus purchases minus
            expenses).
    """
    if end < start:
        raise InvalidTransaction("End date must not be before start date", field_name="end")
    total_sales = sum(
        (h.total_amount for h in context.sales.list_headers() if _in_range(h.date_iso, start, end)),
        ZERO,
    )
    total_purchases = sum(
        (h.total_amount for h in context.purchases.list_headers() if _in_range(h.date_iso, start, end)),
        ZERO,
    )
    total_expenses = sum(
        (e.amount for e in list_expenses(context) if _in_range(e.expense_date_iso, start, end)),
        ZERO,
    )
    net = total_sales - total_purchases - total_expenses
    log.debug(
        "Period summary %s..%s: sales=%s purchases=%s expenses=%s net=%s",
        start,
        end,
        total_sales,
        total_purchases,
        total_expenses,
        net,
    )
    return {
        "total_sales": total_sales,
        "total_purchases": total_purchases,
        "total_expenses": total_expenses,
        "net": net,
    }


def calculate_daily_sales(context: RuntimeContext, *, days: int = 7, today: Optional[date] = None) -> List[tuple[date, Decimal]]:
    """Return ``(day, sales total)`` for the last ``days`` days, oldest first."""
    if days <= 0:
        raise InvalidTransaction("Days must be greater than zero", field_name="days")
    today = today or _resolve_timestamp(None).date()
    window = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    totals: Dict[date, Decimal] = {day: ZERO for day in window}
    for header in context.sales.list_headers():
        try:
            day = date.fromisoformat(header.date_iso[:10])
        except ValueError:
            continue
        if day in totals:
            totals[day] += header.total_amount
    return [(day, totals[day]) for day in window]
