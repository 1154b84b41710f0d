"""
Payment adapter: turns orders into mobile-money collection requests and
reconciles gateway status (polling or webhook) back onto payments and orders.

A payment row is only written once the gateway has answered, so a failed or
timed out submission leaves nothing behind. An order marked paid is never
reverted.
"""
import re
import uuid
import logging
from typing import Any, Dict, List, Optional

from database import parse_object_id, serialize, transaction, utcnow, DATABASE_TRANSACTIONS
from errors import AlreadyPaid, GatewayError, InvalidPhone, OrderNotFound, PaymentNotFound
from schemas import Payment
from campay import CAMPAY_CURRENCY

logger = logging.getLogger(__name__)

COUNTRY_CODE = "237"
LOCAL_NUMBER_LENGTH = 9

GATEWAY_STATUSES = {
    "SUCCESSFUL": "successful",
    "FAILED": "failed",
}


def normalize_phone(phone_number: Optional[str]) -> str:
    """Canonical 237XXXXXXXXX form for Cameroonian mobile numbers."""
    digits = re.sub(r"\D", "", phone_number or "")
    if digits.startswith("00"):
        digits = digits[2:]
    if len(digits) == LOCAL_NUMBER_LENGTH and digits[0] in ("6", "2"):
        return COUNTRY_CODE + digits
    if len(digits) == len(COUNTRY_CODE) + LOCAL_NUMBER_LENGTH and digits.startswith(COUNTRY_CODE):
        return digits
    raise InvalidPhone()


def gateway_status(value: Optional[str]) -> str:
    return GATEWAY_STATUSES.get((value or "").upper(), "pending")


def format_amount(amount: float) -> str:
    amount = float(amount)
    return str(int(amount)) if amount.is_integer() else f"{amount:.2f}"


class PaymentAdapter:
    def __init__(self, database, gateway, events, use_transactions: bool = DATABASE_TRANSACTIONS,
                 currency: str = CAMPAY_CURRENCY):
        self.db = database
        self.gateway = gateway
        self.events = events
        self.use_transactions = use_transactions
        self.currency = currency

    def _emit(self, order: Dict[str, Any], payment_status: str) -> None:
        try:
            self.events.emit('payment-update', {
                "orderId": str(order['_id']),
                "paymentStatus": payment_status,
                "restaurantId": order.get('restaurant_id'),
                "customerId": order.get('customer_id'),
            })
        except Exception:
            logger.exception("Notification payment-update failed")

    def _customer_order(self, order_id: str, customer_id: str, session=None) -> Dict[str, Any]:
        oid = parse_object_id(order_id)
        order = self.db['order'].find_one({"_id": oid, "customer_id": customer_id}, session=session) if oid else None
        if not order:
            raise OrderNotFound()
        return order

    def _mark_order_paid(self, order_oid, session=None) -> bool:
        res = self.db['order'].update_one(
            {"_id": order_oid, "payment_status": {"$ne": "paid"}},
            {"$set": {"payment_status": "paid", "updated_at": utcnow()}},
            session=session,
        )
        return res.modified_count > 0

    # ---------------------- initiation ----------------------
    def initiate_payment(self, order_id: str, customer_id: str, phone_number: str) -> Dict[str, Any]:
        with transaction(self.db, self.use_transactions) as session:
            order = self._customer_order(order_id, customer_id, session=session)
            if order.get('payment_status') == 'paid':
                raise AlreadyPaid()
            phone = normalize_phone(phone_number)

            external_reference = f"SB_{order['_id']}_{uuid.uuid4().hex[:12]}"
            response = self.gateway.collect(
                amount=format_amount(order['total']),
                currency=self.currency,
                from_phone=phone,
                description=f"SmartBite Order #{order['_id']}",
                external_reference=external_reference,
            )
            status = 'successful' if gateway_status(response.get('status')) == 'successful' else 'pending'

            payment = Payment(
                order_id=str(order['_id']),
                user_id=customer_id,
                amount=float(order['total']),
                phone_number=phone,
                status=status,
                gateway_reference=response.get('reference'),
                external_reference=response.get('external_reference') or external_reference,
                operator=response.get('operator'),
            )
            doc = payment.model_dump()
            now = utcnow()
            doc['created_at'] = now
            doc['updated_at'] = now
            result = self.db['payment'].insert_one(doc, session=session)
            if status == 'successful' and not self._mark_order_paid(order['_id'], session=session):
                logger.warning("Order %s was already paid; payment %s is a duplicate collection",
                               order_id, result.inserted_id)

        payment_id = str(result.inserted_id)
        logger.info("Payment %s for order %s recorded as %s", payment_id, order_id, status)
        self._emit(order, 'paid' if status == 'successful' else 'pending')
        return {
            "success": True,
            "payment_id": payment_id,
            "status": status,
            "gateway_response": response,
            "message": "Payment successful!" if status == 'successful'
            else "Payment request sent. Please check your phone to complete the payment.",
        }

    # ---------------------- reconciliation ----------------------
    def _latest_payment(self, filt: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self.db['payment'].find_one(filt, sort=[("created_at", -1), ("_id", -1)])

    def _apply_gateway_status(self, payment: Dict[str, Any], new_status: str,
                              extra: Optional[Dict[str, Any]] = None) -> bool:
        """Move a payment out of its current status; successful payments are final."""
        if new_status == payment.get('status') or payment.get('status') == 'successful':
            return False
        updates = {"status": new_status, "updated_at": utcnow()}
        updates.update(extra or {})
        res = self.db['payment'].update_one(
            {"_id": payment['_id'], "status": payment.get('status')},
            {"$set": updates},
        )
        return res.modified_count > 0

    def _settle_order(self, order_id: str, payment_status: str, changed: bool) -> None:
        order = self.db['order'].find_one({"_id": parse_object_id(order_id)})
        if not order:
            return
        if payment_status == 'successful' and self._mark_order_paid(order['_id']):
            changed = True
        if changed:
            self._emit(order, 'paid' if payment_status == 'successful' else order.get('payment_status', 'pending'))

    def reconcile(self, order_id: str) -> Optional[str]:
        """Pull gateway status for the most recent pending payment of an order.

        Returns the status of the order's latest payment, or None when the
        order has no payments. Safe to repeat.
        """
        pending = self._latest_payment({
            "order_id": order_id,
            "status": "pending",
            "gateway_reference": {"$nin": [None, ""]},
        })
        if pending:
            remote = self.gateway.transaction_status(pending['gateway_reference'])
            new_status = gateway_status(remote.get('status'))
            extra = {
                "operator_reference": remote.get('operator_reference') or pending.get('operator_reference'),
                "reason": remote.get('reason') or pending.get('reason'),
            }
            changed = self._apply_gateway_status(pending, new_status, extra)
            if changed:
                logger.info("Payment %s reconciled: %s -> %s", pending['_id'], pending.get('status'), new_status)
            self._settle_order(order_id, new_status, changed)

        # keep the order in sync with any successful attempt
        if self.db['payment'].find_one({"order_id": order_id, "status": "successful"}, {"_id": 1}):
            self._settle_order(order_id, 'successful', False)

        latest = self._latest_payment({"order_id": order_id})
        return latest.get('status') if latest else None

    def payment_status(self, order_id: str, customer_id: str) -> Dict[str, Any]:
        order = self._customer_order(order_id, customer_id)
        try:
            self.reconcile(str(order['_id']))
        except GatewayError as e:
            logger.warning("Error checking payment status for order %s: %s", order_id, e.message)
        payment = self._latest_payment({"order_id": str(order['_id'])})
        if not payment:
            raise PaymentNotFound()
        order = self.db['order'].find_one({"_id": order['_id']})
        view = serialize(payment)
        view['payment_id'] = view.pop('id')
        view['order_total'] = order.get('total')
        view['order_payment_status'] = order.get('payment_status')
        return view

    def history(self, customer_id: str) -> List[Dict[str, Any]]:
        cursor = self.db['payment'].find({"user_id": customer_id}).sort([("created_at", -1), ("_id", -1)])
        return [serialize(p) for p in cursor]

    # ---------------------- webhook ----------------------
    def handle_webhook(self, reference: Optional[str], status: Optional[str],
                       external_reference: Optional[str] = None) -> None:
        if not reference:
            logger.info("Webhook without reference ignored")
            return
        payment = self.db['payment'].find_one({"gateway_reference": reference})
        if not payment:
            logger.info("Webhook for unknown reference %s ignored", reference)
            return
        if external_reference and payment.get('external_reference') not in (None, external_reference):
            logger.warning("Webhook reference %s does not match external reference %s", reference, external_reference)
            return
        new_status = gateway_status(status)
        changed = self._apply_gateway_status(payment, new_status)
        if changed:
            logger.info("Payment %s updated by webhook: %s", payment['_id'], new_status)
        self._settle_order(payment['order_id'], new_status, changed)
