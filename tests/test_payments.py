import logging

import pytest
from bson import ObjectId

from conftest import make_menu_item, make_user, place
from errors import AlreadyPaid, GatewayError, InvalidPhone, OrderNotFound
from payments import normalize_phone, format_amount, gateway_status


@pytest.fixture
def order_id(engine, world):
    return place(engine, world)["order_id"]


def order_doc(db, order_id):
    return db["order"].find_one({"_id": ObjectId(order_id)})


@pytest.mark.parametrize("raw,expected", [
    ("677123456", "237677123456"),
    ("6 77 12 34 56", "237677123456"),
    ("+237 677-123-456", "237677123456"),
    ("00237677123456", "237677123456"),
    ("233456789", "237233456789"),
])
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", ["", None, "12345", "777123456", "23767712345", "+33612345678"])
def test_normalize_phone_rejects(raw):
    with pytest.raises(InvalidPhone):
        normalize_phone(raw)


def test_format_amount_and_status_mapping():
    assert format_amount(5500.0) == "5500"
    assert format_amount(12.5) == "12.50"
    assert gateway_status("SUCCESSFUL") == "successful"
    assert gateway_status("failed") == "failed"
    assert gateway_status("PENDING") == "pending"
    assert gateway_status(None) == "pending"


def test_initiate_pending_payment(adapter, gateway, world, db, order_id, events):
    result = adapter.initiate_payment(order_id, world["customer"].id, "677123456")

    assert result["status"] == "pending"
    call = gateway.collect_calls[0]
    assert call["amount"] == "5500"
    assert call["currency"] == "XAF"
    assert call["from_phone"] == "237677123456"
    assert call["external_reference"].startswith(f"SB_{order_id}_")

    payment = db["payment"].find_one({"_id": ObjectId(result["payment_id"])})
    assert payment["status"] == "pending"
    assert payment["gateway_reference"] == "camp-ref-1"
    assert payment["amount"] == 5500
    assert order_doc(db, order_id)["payment_status"] == "pending"
    assert events.emitted[-1] == ("payment-update", {
        "orderId": order_id, "paymentStatus": "pending",
        "restaurantId": world["restaurant_id"], "customerId": world["customer"].id,
    })


def test_external_reference_unique_per_attempt(adapter, gateway, world, order_id):
    adapter.initiate_payment(order_id, world["customer"].id, "677123456")
    adapter.initiate_payment(order_id, world["customer"].id, "677123456")
    refs = {c["external_reference"] for c in gateway.collect_calls}
    assert len(refs) == 2


def test_immediate_success_marks_order_paid(adapter, gateway, world, db, engine):
    item = make_menu_item(db, world["restaurant_id"], 3000, name="Poulet DG")
    order_id = place(engine, world, [{"menu_item_id": item, "quantity": 1}])["order_id"]
    gateway.collect_response = {"reference": "camp-ok", "status": "SUCCESSFUL", "operator": "ORANGE"}

    result = adapter.initiate_payment(order_id, world["customer"].id, "699000000")

    assert result["status"] == "successful"
    assert db["payment"].find_one({"_id": ObjectId(result["payment_id"])})["status"] == "successful"
    assert order_doc(db, order_id)["payment_status"] == "paid"


def test_duplicate_immediate_success_is_logged(adapter, gateway, world, db, order_id, caplog):
    stale = order_doc(db, order_id)
    db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"payment_status": "paid"}})
    adapter._customer_order = lambda *args, **kwargs: dict(stale)
    gateway.collect_response = {"reference": "camp-twice", "status": "SUCCESSFUL", "operator": "MTN"}

    with caplog.at_level(logging.WARNING, logger="payments"):
        result = adapter.initiate_payment(order_id, world["customer"].id, "677123456")

    assert result["status"] == "successful"
    assert "duplicate collection" in caplog.text
    assert order_doc(db, order_id)["payment_status"] == "paid"


def test_paid_order_rejects_new_attempts(adapter, gateway, world, db, order_id):
    gateway.collect_response = {"reference": "camp-ok", "status": "SUCCESSFUL"}
    adapter.initiate_payment(order_id, world["customer"].id, "677123456")

    with pytest.raises(AlreadyPaid):
        adapter.initiate_payment(order_id, world["customer"].id, "677123456")
    assert db["payment"].count_documents({"order_id": order_id}) == 1
    assert len(gateway.collect_calls) == 1


def test_gateway_error_leaves_nothing(adapter, gateway, world, db, order_id, events):
    gateway.collect_error = GatewayError("Insufficient balance")
    with pytest.raises(GatewayError) as exc:
        adapter.initiate_payment(order_id, world["customer"].id, "677123456")
    assert exc.value.message == "Insufficient balance"
    assert db["payment"].count_documents({}) == 0
    assert order_doc(db, order_id)["payment_status"] == "pending"
    assert "payment-update" not in events.names()


def test_invalid_phone_never_reaches_gateway(adapter, gateway, world, db, order_id):
    with pytest.raises(InvalidPhone):
        adapter.initiate_payment(order_id, world["customer"].id, "12")
    assert gateway.collect_calls == []
    assert db["payment"].count_documents({}) == 0


def test_other_customers_order_not_found(adapter, world, db, order_id):
    stranger = make_user(db, "customer", name="stranger")
    with pytest.raises(OrderNotFound):
        adapter.initiate_payment(order_id, stranger.id, "677123456")
    with pytest.raises(OrderNotFound):
        adapter.initiate_payment("bogus", world["customer"].id, "677123456")


# ---------------------- reconciliation ----------------------
def test_reconcile_settles_successful_payment(adapter, gateway, world, db, order_id):
    adapter.initiate_payment(order_id, world["customer"].id, "677123456")
    gateway.statuses["camp-ref-1"] = {"status": "SUCCESSFUL", "operator_reference": "MP2401", "reason": ""}

    assert adapter.reconcile(order_id) == "successful"
    payment = db["payment"].find_one({"order_id": order_id})
    assert payment["status"] == "successful"
    assert payment["operator_reference"] == "MP2401"
    assert order_doc(db, order_id)["payment_status"] == "paid"


def test_reconcile_is_idempotent(adapter, gateway, world, db, order_id, events):
    adapter.initiate_payment(order_id, world["customer"].id, "677123456")
    before = len(events.emitted)

    assert adapter.reconcile(order_id) == "pending"
    assert adapter.reconcile(order_id) == "pending"
    assert len(events.emitted) == before

    gateway.statuses["camp-ref-1"] = {"status": "SUCCESSFUL"}
    adapter.reconcile(order_id)
    after_success = len(events.emitted)
    adapter.reconcile(order_id)
    assert len(events.emitted) == after_success
    assert gateway.status_calls.count("camp-ref-1") == 3


def test_reconcile_failure_does_not_revert_paid(adapter, gateway, world, db, order_id):
    gateway.collect_response = {"reference": "camp-ok", "status": "SUCCESSFUL"}
    adapter.initiate_payment(order_id, world["customer"].id, "677123456")
    # a stray pending attempt recorded before the success was known
    db["payment"].insert_one({
        "order_id": order_id, "user_id": world["customer"].id, "amount": 5500, "phone_number": "237677123456",
        "method": "mobile_money", "status": "pending", "gateway_reference": "camp-late",
        "external_reference": "SB_late", "created_at": order_doc(db, order_id)["created_at"],
    })
    gateway.statuses["camp-late"] = {"status": "FAILED", "reason": "Timeout"}

    adapter.reconcile(order_id)
    assert db["payment"].find_one({"gateway_reference": "camp-late"})["status"] == "failed"
    assert order_doc(db, order_id)["payment_status"] == "paid"


def test_payment_status_view(adapter, gateway, world, order_id):
    adapter.initiate_payment(order_id, world["customer"].id, "677123456")
    gateway.statuses["camp-ref-1"] = {"status": "SUCCESSFUL"}

    view = adapter.payment_status(order_id, world["customer"].id)
    assert view["status"] == "successful"
    assert view["order_payment_status"] == "paid"
    assert view["order_total"] == 5500


def test_payment_status_survives_gateway_outage(adapter, gateway, world, order_id):
    adapter.initiate_payment(order_id, world["customer"].id, "677123456")

    def down(reference):
        raise GatewayError("Payment gateway unreachable")
    gateway.transaction_status = down

    assert adapter.payment_status(order_id, world["customer"].id)["status"] == "pending"


# ---------------------- webhook ----------------------
def test_webhook_unknown_reference_is_noop(adapter, db, events):
    adapter.handle_webhook("nope", "SUCCESSFUL", "SB_x")
    adapter.handle_webhook(None, None, None)
    assert db["payment"].count_documents({}) == 0
    assert events.emitted == []


def test_webhook_replay_is_idempotent(adapter, world, db, order_id, events):
    adapter.initiate_payment(order_id, world["customer"].id, "677123456")
    ext = db["payment"].find_one({"order_id": order_id})["external_reference"]

    adapter.handle_webhook("camp-ref-1", "SUCCESSFUL", ext)
    first_payment = db["payment"].find_one({"order_id": order_id})
    first_order = order_doc(db, order_id)
    emitted = len(events.emitted)

    adapter.handle_webhook("camp-ref-1", "SUCCESSFUL", ext)
    assert db["payment"].find_one({"order_id": order_id}) == first_payment
    assert order_doc(db, order_id) == first_order
    assert first_order["payment_status"] == "paid"
    assert len(events.emitted) == emitted


def test_webhook_failure_after_success_is_ignored(adapter, world, db, order_id):
    adapter.initiate_payment(order_id, world["customer"].id, "677123456")
    adapter.handle_webhook("camp-ref-1", "SUCCESSFUL", None)
    adapter.handle_webhook("camp-ref-1", "FAILED", None)
    assert db["payment"].find_one({"order_id": order_id})["status"] == "successful"
    assert order_doc(db, order_id)["payment_status"] == "paid"


def test_webhook_with_mismatched_external_reference(adapter, world, db, order_id):
    adapter.initiate_payment(order_id, world["customer"].id, "677123456")
    adapter.handle_webhook("camp-ref-1", "SUCCESSFUL", "SB_someone_else")
    assert db["payment"].find_one({"order_id": order_id})["status"] == "pending"
    assert order_doc(db, order_id)["payment_status"] == "pending"
