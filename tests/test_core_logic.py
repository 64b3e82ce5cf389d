"""Unit tests verifying the business logic layer with injected collaborators."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from retail_erp import constants, core_logic, data_manager, repositories, set_log_level


def _line(product: str, quantity: str, price: str) -> core_logic.LineItemRequest:
    return core_logic.LineItemRequest(product=product, quantity=Decimal(quantity), unit_price=Decimal(price))


def _header(transaction_id: str = "T1", **overrides) -> data_manager.HeaderRow:
    values = dict(
        transaction_id=transaction_id,
        number="BILL-20240501-0001",
        date_iso="2024-05-01",
        party_id=None,
        payment_type="cash",
        total_amount=Decimal("100"),
        external_ref=None,
        notes=None,
        request_key=None,
        created_at_iso="2024-05-01T10:00:00+00:00",
    )
    values.update(overrides)
    return data_manager.HeaderRow(**values)


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path, settings):
    """load_runtime_context should assemble settings, workbook and repositories."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(settings.data_file)
    assert context.workbook is workbook
    assert context.settings is settings
    assert context.products.workbook is workbook
    assert context.sales.kind is constants.TransactionType.SALE
    assert context.purchases.kind is constants.TransactionType.PURCHASE
    assert context.suppliers.kind is constants.PartyKind.SUPPLIER
    # Every repository shares the context lock.
    assert context.products.lock is context.lock
    assert context.sales.lock is context.lock


def test_load_runtime_context_applies_configured_log_level(monkeypatch, tmp_path, settings):
    applied = Mock()
    monkeypatch.setattr(core_logic, "set_log_level", applied)
    monkeypatch.setattr(data_manager, "read_config", Mock())
    monkeypatch.setattr(data_manager, "parse_settings", Mock(return_value=replace(settings, log_level="WARNING")))
    monkeypatch.setattr(data_manager, "open_workbook", Mock())

    core_logic.load_runtime_context(tmp_path / "config.ini")

    applied.assert_called_once_with("WARNING")


def test_set_log_level_updates_logger_and_handlers():
    logger = logging.getLogger("retail_erp.tests.levels")
    handler = logging.NullHandler()
    logger.addHandler(handler)
    try:
        assert set_log_level("debug", logger) == logging.DEBUG
        assert logger.level == logging.DEBUG
        assert handler.level == logging.DEBUG
        with pytest.raises(ValueError, match="Unknown log level"):
            set_log_level("chatty", logger)
    finally:
        logger.removeHandler(handler)


def test_ensure_schema_version_rejects_mismatch(context):
    """A schema version other than the expected one should raise."""

    mismatched = core_logic.RuntimeContext(
        settings=data_manager.ConfigSettings(
            data_file=context.settings.data_file,
            store_name="Store",
            schema_version="0.0.1",
        ),
        workbook=context.workbook,
        products=context.products,
        suppliers=context.suppliers,
        customers=context.customers,
        sales=context.sales,
        purchases=context.purchases,
    )

    with pytest.raises(RuntimeError, match="schema mismatch"):
        core_logic.ensure_schema_version(mismatched)


def test_persist_context_saves_to_configured_file(monkeypatch, context):
    save_workbook = Mock()
    monkeypatch.setattr(data_manager, "save_workbook", save_workbook)

    core_logic.persist_context(context)

    save_workbook.assert_called_once_with(context.workbook, destination=context.settings.data_file)


# ---------------------------------------------------------------------------
# Transaction scope
# ---------------------------------------------------------------------------


def test_transaction_scope_runs_compensations_in_reverse_order():
    calls = []

    with pytest.raises(RuntimeError):
        with core_logic.TransactionScope("demo") as scope:
            scope.on_rollback("first", lambda: calls.append("first"))
            scope.on_rollback("second", lambda: calls.append("second"))
            raise RuntimeError("boom")

    assert calls == ["second", "first"]


def test_transaction_scope_keeps_going_when_a_compensation_fails():
    calls = []

    def _explode():
        raise OSError("cannot undo")

    with pytest.raises(ValueError):
        with core_logic.TransactionScope("demo") as scope:
            scope.on_rollback("first", lambda: calls.append("first"))
            scope.on_rollback("broken", _explode)
            raise ValueError("boom")

    assert calls == ["first"]


def test_transaction_scope_discards_compensations_on_success():
    calls = []

    with core_logic.TransactionScope("demo") as scope:
        scope.on_rollback("first", lambda: calls.append("first"))

    scope.rollback()
    assert calls == []


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def test_record_sale_writes_header_items_and_deducts_stock(context, products, set_fixed_datetime):
    """Selling 4 of 10 at 50 should total 200 and leave 6 on hand."""

    moment = set_fixed_datetime(datetime(2024, 5, 1, 9, 30, tzinfo=UTC))

    receipt = core_logic.record_sale(
        context,
        core_logic.SaleCommand(items=[_line("Rice 5kg", "4", "50")]),
    )

    assert receipt.total_amount == Decimal("200")
    assert receipt.quantities == {"P1": Decimal("6")}
    assert receipt.replayed is False
    assert products.rows["P1"].quantity == Decimal("6")

    header = context.sales.insert_header.call_args.args[0]
    assert header.total_amount == Decimal("200")
    assert header.payment_type == "cash"
    assert header.party_id is None
    assert header.number is None
    assert header.date_iso == "2024-05-01"
    assert header.created_at_iso == moment.isoformat()

    transaction_id, items = context.sales.insert_line_items.call_args.args
    assert transaction_id == header.transaction_id
    assert len(items) == 1
    assert items[0].product_id == "P1"
    assert items[0].quantity == Decimal("4")
    assert items[0].unit_price == Decimal("50")
    assert items[0].total_amount == Decimal("200")
    context.sales.delete_header.assert_not_called()


def test_record_sale_ignores_caller_total(context):
    receipt = core_logic.record_sale(
        context,
        core_logic.SaleCommand(items=[_line("P1", "2", "50")], total_amount=Decimal("1")),
    )

    assert receipt.total_amount == Decimal("100")


def test_record_sale_insufficient_stock_writes_nothing(context, products_factory, product_factory):
    """Requesting 3 when only 2 are on hand should fail before any write."""

    products = products_factory(product_factory(quantity="2"))
    context = _with_products(context, products)

    with pytest.raises(core_logic.InsufficientStock) as excinfo:
        core_logic.record_sale(context, core_logic.SaleCommand(items=[_line("P1", "3", "50")]))

    assert excinfo.value.product_id == "P1"
    assert excinfo.value.product_name == "Rice 5kg"
    assert excinfo.value.requested == Decimal("3")
    assert excinfo.value.available == Decimal("2")
    assert "Insufficient stock for Rice 5kg" in str(excinfo.value)
    context.sales.insert_header.assert_not_called()
    context.sales.insert_line_items.assert_not_called()
    assert products.rows["P1"].quantity == Decimal("2")
    assert products.updates == []


def test_record_sale_checks_summed_quantity_across_lines(context):
    """Two lines of 6 for the same product exceed a stock of 10."""

    with pytest.raises(core_logic.InsufficientStock) as excinfo:
        core_logic.record_sale(
            context,
            core_logic.SaleCommand(items=[_line("P1", "6", "50"), _line("rice 5KG", "6", "50")]),
        )

    assert excinfo.value.requested == Decimal("12")
    context.sales.insert_header.assert_not_called()


def test_record_sale_aggregates_stock_updates_per_product(context, products):
    receipt = core_logic.record_sale(
        context,
        core_logic.SaleCommand(items=[_line("P1", "3", "50"), _line("Rice 5kg", "2", "45")]),
    )

    assert receipt.total_amount == Decimal("240")
    assert len(receipt.items) == 2
    assert products.updates == [("P1", Decimal("5"), None)]


def test_record_sale_unknown_product_raises(context):
    with pytest.raises(core_logic.ProductNotFound) as excinfo:
        core_logic.record_sale(
            context,
            core_logic.SaleCommand(items=[_line("P1", "1", "50"), _line("Sugar", "1", "40")]),
        )

    assert excinfo.value.reference == "Sugar"
    assert excinfo.value.line_index == 1
    assert "line 2" in str(excinfo.value)
    context.sales.insert_header.assert_not_called()


def test_record_sale_ambiguous_name_raises(context, products_factory, product_factory):
    products = products_factory(
        product_factory("P1", "Tea"),
        product_factory("P2", " tea "),
    )
    context = _with_products(context, products)

    with pytest.raises(core_logic.AmbiguousProductMatch) as excinfo:
        core_logic.record_sale(context, core_logic.SaleCommand(items=[_line("TEA", "1", "10")]))

    assert {candidate.product_id for candidate in excinfo.value.candidates} == {"P1", "P2"}
    context.sales.insert_header.assert_not_called()



def test_record_sale_id_shadowed_by_another_name_raises(context, products_factory, product_factory):
    products = products_factory(
        product_factory("P1001", "Sugar"),
        product_factory("P2002", "P1001"),
    )
    context = _with_products(context, products)

    with pytest.raises(core_logic.AmbiguousProductMatch) as excinfo:
        core_logic.record_sale(context, core_logic.SaleCommand(items=[_line("P1001", "1", "40")]))

    assert [candidate.product_id for candidate in excinfo.value.candidates] == ["P1001", "P2002"]
    assert products.updates == []
    context.sales.insert_header.assert_not_called()


@pytest.mark.parametrize(
    ("items", "field_name"),
    [
        ([], "items"),
        ([core_logic.LineItemRequest(product="P1", quantity=Decimal("0"), unit_price=Decimal("5"))], "quantity"),
        ([core_logic.LineItemRequest(product="P1", quantity=Decimal("-1"), unit_price=Decimal("5"))], "quantity"),
        ([core_logic.LineItemRequest(product="P1", quantity=Decimal("1"), unit_price=Decimal("-5"))], "sale_price"),
        ([core_logic.LineItemRequest(product="  ", quantity=Decimal("1"), unit_price=Decimal("5"))], "product"),
        ([core_logic.LineItemRequest(product="P1", quantity=Decimal("NaN"), unit_price=Decimal("5"))], "quantity"),
        ([core_logic.LineItemRequest(product="P1", quantity=Decimal("Infinity"), unit_price=Decimal("5"))], "quantity"),
        ([core_logic.LineItemRequest(product="P1", quantity=Decimal("1"), unit_price=Decimal("NaN"))], "sale_price"),
        ([core_logic.LineItemRequest(product="P1", quantity=Decimal("1"), unit_price=Decimal("-Infinity"))], "sale_price"),
    ],
)
def test_record_sale_rejects_invalid_requests(context, items, field_name):
    with pytest.raises(core_logic.InvalidTransaction) as excinfo:
        core_logic.record_sale(context, core_logic.SaleCommand(items=items))

    assert excinfo.value.field_name == field_name
    context.sales.insert_header.assert_not_called()


def test_record_sale_empty_items_message(context):
    with pytest.raises(core_logic.InvalidTransaction, match="Please add at least one product"):
        core_logic.record_sale(context, core_logic.SaleCommand(items=[]))


def test_record_sale_rejects_unknown_payment_type(context):
    with pytest.raises(core_logic.InvalidTransaction, match="Unsupported payment type"):
        core_logic.record_sale(
            context,
            core_logic.SaleCommand(items=[_line("P1", "1", "50")], payment_type="cheque"),
        )


def test_record_sale_allows_zero_price(context):
    receipt = core_logic.record_sale(context, core_logic.SaleCommand(items=[_line("P1", "1", "0")]))

    assert receipt.total_amount == Decimal("0")


def test_record_sale_links_known_customer(context):
    context.customers.find_by_name.return_value = data_manager.PartyRow("C1", "Asha", None, None)

    core_logic.record_sale(
        context,
        core_logic.SaleCommand(items=[_line("P1", "1", "50")], customer="asha", payment_type=constants.PaymentType.UPI),
    )

    header = context.sales.insert_header.call_args.args[0]
    assert header.party_id == "C1"
    assert header.payment_type == "upi"


def test_record_sale_replays_request_key(context, products):
    stored = _header(request_key="req-1")
    item = data_manager.LineItemRow("L1", "T1", "P1", Decimal("2"), Decimal("50"), Decimal("100"))
    context.sales.find_by_request_key.return_value = stored
    context.sales.list_line_items.return_value = [item]

    receipt = core_logic.record_sale(
        context,
        core_logic.SaleCommand(items=[_line("P1", "2", "50")], request_key="req-1"),
    )

    assert receipt.replayed is True
    assert receipt.header is stored
    assert receipt.items == [item]
    assert receipt.quantities == {"P1": Decimal("10")}
    context.sales.insert_header.assert_not_called()
    assert products.updates == []


def test_record_sale_rolls_back_when_line_items_fail(context, products):
    """A failing line-item write should delete the header and leave stock alone."""

    context.sales.insert_line_items.side_effect = OSError("disk full")

    with pytest.raises(core_logic.PersistenceFailure) as excinfo:
        core_logic.record_sale(context, core_logic.SaleCommand(items=[_line("P1", "4", "50")]))

    header = context.sales.insert_header.call_args.args[0]
    assert excinfo.value.transaction_id == header.transaction_id
    assert isinstance(excinfo.value.__cause__, OSError)
    context.sales.delete_line_items.assert_called_once_with(header.transaction_id)
    context.sales.delete_header.assert_called_once_with(header.transaction_id)
    assert products.rows["P1"].quantity == Decimal("10")


def test_record_sale_restores_stock_when_later_update_fails(context, products_factory, product_factory):
    products = products_factory(
        product_factory("P1", "Rice 5kg", quantity="10"),
        product_factory("P2", "Dal 1kg", quantity="10"),
    )
    original_update = products.update_quantity_and_price

    def _update(product_id, new_quantity, new_buying_price=None, *, expected_quantity=None):
        if product_id == "P2":
            raise OSError("sheet locked")
        return original_update(product_id, new_quantity, new_buying_price, expected_quantity=expected_quantity)

    products.update_quantity_and_price = _update
    context = _with_products(context, products)

    with pytest.raises(core_logic.PersistenceFailure):
        core_logic.record_sale(
            context,
            core_logic.SaleCommand(items=[_line("P1", "4", "50"), _line("P2", "1", "80")]),
        )

    assert products.rows["P1"].quantity == Decimal("10")
    assert products.rows["P2"].quantity == Decimal("10")
    context.sales.delete_header.assert_called_once()


def test_record_sale_rechecks_stock_after_lost_race(context, products):
    """A concurrent writer draining stock between check and write should fail the sale."""

    original_update = products.update_quantity_and_price

    def _racing_update(product_id, new_quantity, new_buying_price=None, *, expected_quantity=None):
        products.update_quantity_and_price = original_update
        products.rows["P1"] = replace(products.rows["P1"], quantity=Decimal("2"))
        return original_update(product_id, new_quantity, new_buying_price, expected_quantity=expected_quantity)

    products.update_quantity_and_price = _racing_update

    with pytest.raises(core_logic.InsufficientStock) as excinfo:
        core_logic.record_sale(context, core_logic.SaleCommand(items=[_line("P1", "4", "50")]))

    assert excinfo.value.available == Decimal("2")
    assert products.rows["P1"].quantity == Decimal("2")
    context.sales.delete_header.assert_called_once()
    context.sales.delete_line_items.assert_called_once()


def test_record_sale_gives_up_after_repeated_conflicts(context, products):
    products.update_quantity_and_price = Mock(return_value=False)

    with pytest.raises(core_logic.PersistenceFailure) as excinfo:
        core_logic.record_sale(context, core_logic.SaleCommand(items=[_line("P1", "1", "50")]))

    assert excinfo.value.product_id == "P1"
    assert products.update_quantity_and_price.call_count == constants.MAX_STOCK_UPDATE_ATTEMPTS
    context.sales.delete_header.assert_called_once()


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------


def test_record_purchase_adds_stock_and_updates_buying_price(context, products):
    """Buying 5 at 20 with a previous cost of 15 should set cost 20 and add 5."""

    receipt = core_logic.record_purchase(
        context,
        core_logic.PurchaseCommand(items=[_line("Rice 5kg", "5", "20")], invoice_number="INV-9"),
    )

    assert receipt.total_amount == Decimal("100")
    assert products.rows["P1"].quantity == Decimal("15")
    assert products.rows["P1"].buying_price == Decimal("20")
    header = context.purchases.insert_header.call_args.args[0]
    assert header.external_ref == "INV-9"
    assert header.payment_type is None


def test_record_purchase_last_cost_wins(context, products):
    core_logic.record_purchase(
        context,
        core_logic.PurchaseCommand(items=[_line("P1", "2", "18"), _line("P1", "3", "22")]),
    )

    assert products.rows["P1"].quantity == Decimal("15")
    assert products.rows["P1"].buying_price == Decimal("22")
    assert products.updates == [("P1", Decimal("15"), Decimal("22"))]


def test_record_purchase_unknown_supplier_stored_as_null(context):
    core_logic.record_purchase(
        context,
        core_logic.PurchaseCommand(items=[_line("P1", "1", "20")], supplier="Nobody Traders"),
    )

    header = context.purchases.insert_header.call_args.args[0]
    assert header.party_id is None


def test_record_purchase_links_known_supplier(context):
    context.suppliers.find_by_id.return_value = data_manager.PartyRow("S1", "Metro", None, None)

    core_logic.record_purchase(
        context,
        core_logic.PurchaseCommand(items=[_line("P1", "1", "20")], supplier="S1"),
    )

    header = context.purchases.insert_header.call_args.args[0]
    assert header.party_id == "S1"


def test_record_purchase_unknown_product_fails(context):
    with pytest.raises(core_logic.ProductNotFound, match="Please add it first"):
        core_logic.record_purchase(context, core_logic.PurchaseCommand(items=[_line("Ghee", "1", "20")]))

    context.purchases.insert_header.assert_not_called()


def test_record_purchase_rejects_negative_cost(context):
    with pytest.raises(core_logic.InvalidTransaction) as excinfo:
        core_logic.record_purchase(context, core_logic.PurchaseCommand(items=[_line("P1", "1", "-2")]))

    assert excinfo.value.field_name == "cost_price"



@pytest.mark.parametrize(
    ("quantity", "price", "field_name"),
    [
        ("NaN", "20", "quantity"),
        ("Infinity", "20", "quantity"),
        ("1", "NaN", "cost_price"),
        ("1", "Infinity", "cost_price"),
    ],
)
def test_record_purchase_rejects_non_finite_numbers(context, products, quantity, price, field_name):
    """NaN and infinite values are reported as invalid input, never as arithmetic errors."""

    with pytest.raises(core_logic.InvalidTransaction, match="finite number") as excinfo:
        core_logic.record_purchase(context, core_logic.PurchaseCommand(items=[_line("P1", quantity, price)]))

    assert excinfo.value.field_name == field_name
    context.purchases.insert_header.assert_not_called()
    assert products.rows["P1"].quantity == Decimal("10")


def test_record_purchase_restores_price_on_rollback(context, products):
    context.purchases.insert_header.side_effect = None
    context.purchases.insert_header.return_value = _header("ignored")
    original_update = products.update_quantity_and_price

    def _update(product_id, new_quantity, new_buying_price=None, *, expected_quantity=None):
        if product_id == "P2":
            raise OSError("boom")
        return original_update(product_id, new_quantity, new_buying_price, expected_quantity=expected_quantity)

    products.rows["P2"] = replace(products.rows["P1"], product_id="P2", name="Oil 1L")
    products.update_quantity_and_price = _update

    with pytest.raises(core_logic.PersistenceFailure):
        core_logic.record_purchase(
            context,
            core_logic.PurchaseCommand(items=[_line("P1", "5", "30"), _line("P2", "1", "90")]),
        )

    assert products.rows["P1"].quantity == Decimal("10")
    assert products.rows["P1"].buying_price == Decimal("15")
    context.purchases.delete_header.assert_called_once_with("ignored")


# ---------------------------------------------------------------------------
# Catalogue and parties
# ---------------------------------------------------------------------------


def test_get_product_missing_raises(context):
    with pytest.raises(core_logic.MissingReferenceError, match="Unknown product id"):
        core_logic.get_product(context, "P404")


def test_add_product_defaults_reorder_level_from_settings():
    products = Mock()
    context = Mock(settings=Mock(default_reorder_level=Decimal("5")), products=products)

    record = core_logic.add_product(context, name="  Sugar 1kg ", selling_price=Decimal("45"))

    products.add.assert_called_once_with(record)
    assert record.name == "Sugar 1kg"
    assert record.reorder_level == Decimal("5")
    assert record.product_id.startswith("P")


def test_add_product_duplicate_surfaces_business_rule(context):
    context = Mock(settings=context.settings, products=Mock())
    context.products.add.side_effect = repositories.DuplicateRecordError("Product name already exists: Rice")

    with pytest.raises(core_logic.BusinessRuleViolation, match="already exists"):
        core_logic.add_product(context, name="Rice")


def test_add_product_rejects_blank_name(context):
    with pytest.raises(core_logic.InvalidTransaction, match="Name is required"):
        core_logic.add_product(context, name="   ")


def test_update_product_rejects_unknown_fields(context):
    with pytest.raises(core_logic.InvalidTransaction, match="Unknown product field"):
        core_logic.update_product(context, "P1", colour="red")


def test_delete_product_refuses_referenced_product(context):
    context.products.delete = Mock()
    context.sales.references_product.return_value = True

    with pytest.raises(core_logic.BusinessRuleViolation, match="cannot be deleted"):
        core_logic.delete_product(context, "P1")

    context.products.delete.assert_not_called()


def test_add_supplier_uses_supplier_directory(context):
    supplier = core_logic.add_supplier(context, name="Metro Wholesale", contact_number="9999")

    context.suppliers.add.assert_called_once_with(supplier)
    assert supplier.party_id.startswith("S")
    assert supplier.contact_number == "9999"



def test_add_customer_rejects_negative_credit_limit(context):
    with pytest.raises(core_logic.InvalidTransaction) as excinfo:
        core_logic.add_customer(context, name="Asha", credit_limit=Decimal("-1"))

    assert excinfo.value.field_name == "credit_limit"
    context.customers.add.assert_not_called()


def test_update_customer_writes_mapped_columns(context):
    current = data_manager.PartyRow("C1", "Asha", None, None)
    edited = replace(current, credit_limit=Decimal("500"), address="MG Road")
    context.customers.find_by_id.side_effect = [current, edited]

    result = core_logic.update_customer(context, "C1", credit_limit=Decimal("500"), address="  MG Road ")

    context.customers.update_fields.assert_called_once_with(
        "C1", {"CreditLimit": Decimal("500"), "Address": "MG Road"}
    )
    assert result is edited


def test_update_customer_rejects_name_of_another_customer(context):
    context.customers.find_by_id.return_value = data_manager.PartyRow("C1", "Asha", None, None)
    context.customers.find_by_name.return_value = data_manager.PartyRow("C2", "Ravi", None, None)

    with pytest.raises(core_logic.BusinessRuleViolation, match="Customer name already exists"):
        core_logic.update_customer(context, "C1", name="ravi")

    context.customers.update_fields.assert_not_called()


@pytest.mark.parametrize(
    ("changes", "field_name"),
    [
        ({"colour": "red"}, "colour"),
        ({"name": "  "}, "name"),
        ({"outstanding_balance": Decimal("-5")}, "outstanding_balance"),
        ({"credit_limit": Decimal("NaN")}, "credit_limit"),
    ],
)
def test_update_customer_rejects_invalid_changes(context, changes, field_name):
    with pytest.raises(core_logic.InvalidTransaction) as excinfo:
        core_logic.update_customer(context, "C1", **changes)

    assert excinfo.value.field_name == field_name
    context.customers.update_fields.assert_not_called()


def test_update_supplier_refuses_credit_fields(context):
    with pytest.raises(core_logic.InvalidTransaction, match="Unknown supplier field"):
        core_logic.update_supplier(context, "S1", credit_limit=Decimal("10"))


def test_update_supplier_unknown_id_raises(context):
    with pytest.raises(core_logic.MissingReferenceError, match="Unknown supplier id"):
        core_logic.update_supplier(context, "S404", name="Metro")


def test_delete_customer_refuses_referenced_customer(context):
    context.customers.find_by_id.return_value = data_manager.PartyRow("C1", "Asha", None, None)
    context.sales.references_party.return_value = True

    with pytest.raises(core_logic.BusinessRuleViolation, match="cannot be deleted"):
        core_logic.delete_customer(context, "C1")

    context.sales.references_party.assert_called_once_with("C1")
    context.customers.delete.assert_not_called()


def test_delete_supplier_checks_purchase_ledger(context):
    context.suppliers.find_by_id.return_value = data_manager.PartyRow("S1", "Metro", None, None)

    core_logic.delete_supplier(context, "S1")

    context.purchases.references_party.assert_called_once_with("S1")
    context.sales.references_party.assert_not_called()
    context.suppliers.delete.assert_called_once_with("S1")


# ---------------------------------------------------------------------------
# Expenses and reports
# ---------------------------------------------------------------------------


def test_record_expense_appends_row(monkeypatch, context):
    append_expense = Mock()
    monkeypatch.setattr(data_manager, "append_expense", append_expense)

    record = core_logic.record_expense(
        context,
        core_logic.ExpenseCommand(
            expense_type=constants.ExpenseType.RENT,
            description="May rent",
            amount=Decimal("1200"),
            expense_date=date(2024, 5, 1),
        ),
    )

    append_expense.assert_called_once_with(context.workbook, record)
    assert record.expense_type == "rent"
    assert record.payment_method == "cash"
    assert record.expense_date_iso == "2024-05-01"


def test_record_expense_rejects_nonpositive_amount(context):
    with pytest.raises(core_logic.InvalidTransaction, match="greater than zero"):
        core_logic.record_expense(
            context,
            core_logic.ExpenseCommand(
                expense_type=constants.ExpenseType.MISC,
                description="Nothing",
                amount=Decimal("0"),
            ),
        )


def test_record_expense_rejects_nan_amount(context):
    with pytest.raises(core_logic.InvalidTransaction, match="finite number"):
        core_logic.record_expense(
            context,
            core_logic.ExpenseCommand(
                expense_type=constants.ExpenseType.MISC,
                description="Broken till entry",
                amount=Decimal("NaN"),
            ),
        )


def test_add_product_rejects_infinite_values(context):
    with pytest.raises(core_logic.InvalidTransaction) as excinfo:
        core_logic.add_product(context, name="Ghee", selling_price=Decimal("Infinity"))
    assert excinfo.value.field_name == "selling_price"

    with pytest.raises(core_logic.InvalidTransaction) as excinfo:
        core_logic.add_product(context, name="Ghee", quantity=Decimal("NaN"))
    assert excinfo.value.field_name == "quantity"


def test_list_low_stock_and_stock_value(context, products_factory, product_factory):
    context = _with_products(
        context,
        products_factory(
            product_factory("P1", "Rice", quantity="3", buying_price="10", reorder_level="5"),
            product_factory("P2", "Dal", quantity="8", buying_price="2.5", reorder_level="5"),
        ),
    )

    assert [p.product_id for p in core_logic.list_low_stock(context)] == ["P1"]
    assert core_logic.calculate_stock_value(context) == Decimal("50.0")


def test_calculate_period_summary_filters_by_date(monkeypatch, context):
    context.sales.list_headers.return_value = [
        _header("S1", date_iso="2024-05-01", total_amount=Decimal("100")),
        _header("S2", date_iso="2024-04-30", total_amount=Decimal("999")),
    ]
    context.purchases.list_headers.return_value = [
        _header("B1", date_iso="2024-05-02", total_amount=Decimal("40")),
    ]
    monkeypatch.setattr(
        data_manager,
        "iter_expenses",
        Mock(return_value=iter([data_manager.ExpenseRow("E1", "rent", "Rent", Decimal("10"), "2024-05-03", "cash")])),
    )

    summary = core_logic.calculate_period_summary(context, date(2024, 5, 1), date(2024, 5, 31))

    assert summary == {
        "total_sales": Decimal("100"),
        "total_purchases": Decimal("40"),
        "total_expenses": Decimal("10"),
        "net": Decimal("50"),
    }


def test_calculate_period_summary_rejects_reversed_range(context):
    with pytest.raises(core_logic.InvalidTransaction):
        core_logic.calculate_period_summary(context, date(2024, 5, 2), date(2024, 5, 1))


def test_calculate_daily_sales_returns_window_oldest_first(context):
    context.sales.list_headers.return_value = [
        _header("S1", date_iso="2024-05-03", total_amount=Decimal("30")),
        _header("S2", date_iso="2024-05-03", total_amount=Decimal("20")),
        _header("S3", date_iso="2024-04-01", total_amount=Decimal("999")),
    ]

    daily = core_logic.calculate_daily_sales(context, days=3, today=date(2024, 5, 3))

    assert daily == [
        (date(2024, 5, 1), Decimal("0")),
        (date(2024, 5, 2), Decimal("0")),
        (date(2024, 5, 3), Decimal("50")),
    ]


def test_list_sales_orders_newest_first(context):
    context.sales.list_headers.return_value = [
        _header("S1", date_iso="2024-05-01"),
        _header("S2", date_iso="2024-05-03"),
    ]
    context.sales.list_line_items.return_value = [
        data_manager.LineItemRow("L1", "S1", "P1", Decimal("2"), Decimal("5"), Decimal("10")),
        data_manager.LineItemRow("L2", "S1", "P1", Decimal("1"), Decimal("5"), Decimal("5")),
    ]

    entries = core_logic.list_sales(context)

    assert [entry.header.transaction_id for entry in entries] == ["S2", "S1"]
    assert entries[1].item_count == 2
    assert entries[1].total_quantity == Decimal("3")
    assert entries[0].item_count == 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _with_products(context: core_logic.RuntimeContext, products) -> core_logic.RuntimeContext:
    return core_logic.RuntimeContext(
        settings=context.settings,
        workbook=context.workbook,
        products=products,
        suppliers=context.suppliers,
        customers=context.customers,
        sales=context.sales,
        purchases=context.purchases,
        lock=context.lock,
    )
