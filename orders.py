"""
Order engine: order creation, the status state machine, delivery claims and
the delivery location trail.

Orders embed their lines, so an order and its items are written by a single
insert. Status changes are compare-and-set updates keyed on the status (and
agent) the decision was made against.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from database import parse_object_id, serialize, transaction, utcnow, DATABASE_TRANSACTIONS
from errors import (
    EmptyCart, MissingDeliveryInfo, InvalidItem, InvalidTransition, ValidationError,
    Forbidden, NotFoundError, OrderNotFound, NotAvailable,
)
from schemas import Order, OrderItem, DeliveryLocation, Principal, ORDER_STATUSES

logger = logging.getLogger(__name__)

ORDER_FLOW = ('pending', 'preparing', 'ready', 'in_transit', 'delivered')
TERMINAL_STATUSES = ('delivered', 'cancelled')
# statuses at which an order may carry a delivery agent
AGENT_STATUSES = ('in_transit', 'delivered')


def can_transition(current: str, new: str) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if new == 'cancelled':
        return True
    if current not in ORDER_FLOW or new not in ORDER_FLOW:
        return False
    return ORDER_FLOW.index(new) == ORDER_FLOW.index(current) + 1


class OrderEngine:
    def __init__(self, database, events, use_transactions: bool = DATABASE_TRANSACTIONS):
        self.db = database
        self.events = events
        self.use_transactions = use_transactions

    # ---------------------- helpers ----------------------
    def _load_order(self, order_id: str, session=None) -> Dict[str, Any]:
        oid = parse_object_id(order_id)
        order = self.db['order'].find_one({"_id": oid}, session=session) if oid else None
        if not order:
            raise OrderNotFound()
        return order

    def _restaurant_owner(self, restaurant_id: str) -> Optional[str]:
        oid = parse_object_id(restaurant_id)
        rest = self.db['restaurant'].find_one({"_id": oid}, {"owner_user_id": 1}) if oid else None
        return rest.get('owner_user_id') if rest else None

    def _emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        try:
            self.events.emit(event_name, payload)
        except Exception:
            logger.exception("Notification %s failed", event_name)

    def can_view(self, order: Dict[str, Any], actor: Principal) -> bool:
        if actor.role == 'admin':
            return True
        if actor.role == 'customer':
            return order.get('customer_id') == actor.id
        if actor.role == 'owner':
            return self._restaurant_owner(order.get('restaurant_id')) == actor.id
        if actor.role == 'agent':
            if order.get('agent_id') == actor.id:
                return True
            return order.get('status') == 'ready' and not order.get('agent_id')
        return False

    # ---------------------- creation ----------------------
    def create_order(self, customer_id: str, restaurant_id: str, lines: List[Dict[str, Any]],
                     delivery_address: Optional[str], customer_phone: Optional[str],
                     payment_method: str = 'cash') -> Dict[str, Any]:
        if not restaurant_id or not lines:
            raise EmptyCart()
        if not (delivery_address or '').strip() or not (customer_phone or '').strip():
            raise MissingDeliveryInfo()
        for line in lines:
            if int(line.get('quantity') or 0) < 1:
                raise ValidationError("Item quantity must be at least 1")

        with transaction(self.db, self.use_transactions) as session:
            total = 0.0
            items: List[OrderItem] = []
            for line in lines:
                menu_item_id = line.get('menu_item_id')
                oid = parse_object_id(menu_item_id)
                menu_item = None
                if oid:
                    menu_item = self.db['menuitem'].find_one(
                        {"_id": oid, "restaurant_id": restaurant_id, "is_available": True},
                        session=session,
                    )
                if not menu_item:
                    raise InvalidItem(f"Menu item {menu_item_id} not available")
                quantity = int(line['quantity'])
                price = float(menu_item['price'])
                total += price * quantity
                items.append(OrderItem(menu_item_id=str(menu_item['_id']), name=menu_item.get('name', ''),
                                       quantity=quantity, price=price))

            total = round(total, 2)
            order = Order(
                customer_id=customer_id,
                restaurant_id=restaurant_id,
                items=items,
                total=total,
                status='pending',
                delivery_address=delivery_address.strip(),
                customer_phone=customer_phone.strip(),
                payment_method=payment_method or 'cash',
                payment_status='pending',
            )
            doc = order.model_dump()
            now = utcnow()
            doc['created_at'] = now
            doc['updated_at'] = now
            result = self.db['order'].insert_one(doc, session=session)
            order_id = str(result.inserted_id)

        logger.info("Order %s created for customer %s (total %s)", order_id, customer_id, total)
        self._emit('new-order', {
            "orderId": order_id,
            "restaurantId": restaurant_id,
            "customerId": customer_id,
            "total": total,
        })
        return {"order_id": order_id, "total": total}

    # ---------------------- status machine ----------------------
    def _authorize_status_change(self, order: Dict[str, Any], actor: Principal, new_status: str) -> None:
        if actor.role == 'admin':
            return
        if actor.role == 'owner' and self._restaurant_owner(order.get('restaurant_id')) == actor.id:
            return
        if actor.role == 'agent' and (order.get('agent_id') == actor.id or new_status == 'in_transit'):
            return
        raise Forbidden("Not authorized to update this order")

    def _validate_agent(self, agent_id: str) -> None:
        oid = parse_object_id(agent_id)
        agent = self.db['user'].find_one({"_id": oid, "role": "agent"}) if oid else None
        if not agent:
            raise ValidationError("Assigned user is not a delivery agent")

    def update_status(self, order_id: str, actor: Principal, new_status: str, agent_id: Optional[str] = None) -> None:
        if new_status not in ORDER_STATUSES:
            raise InvalidTransition(f"Unknown order status '{new_status}'")
        order = self._load_order(order_id)
        self._authorize_status_change(order, actor, new_status)

        current = order.get('status')
        if not can_transition(current, new_status):
            raise InvalidTransition(f"Cannot move order from {current} to {new_status}")

        current_agent = order.get('agent_id')
        if agent_id is None and actor.role == 'agent' and new_status == 'in_transit':
            agent_id = actor.id
        if agent_id is not None:
            if new_status not in AGENT_STATUSES:
                raise ValidationError("An agent can only be assigned when the order goes in transit")
            if actor.role == 'agent' and agent_id != actor.id:
                raise Forbidden("Agents can only assign themselves")
            if actor.role == 'agent' and current_agent not in (None, actor.id):
                raise NotAvailable("Order already assigned to another agent")
            self._validate_agent(agent_id)

        updates: Dict[str, Any] = {"status": new_status, "updated_at": utcnow()}
        if agent_id is not None:
            updates["agent_id"] = agent_id
        res = self.db['order'].update_one(
            {"_id": order['_id'], "status": current, "agent_id": current_agent},
            {"$set": updates},
        )
        if res.matched_count == 0:
            raise NotAvailable("Order was changed by another request")

        logger.info("Order %s: %s -> %s by %s %s", order_id, current, new_status, actor.role, actor.id)
        self._emit('order-status-update', {
            "orderId": str(order['_id']),
            "status": new_status,
            "restaurantId": order.get('restaurant_id'),
            "customerId": order.get('customer_id'),
            "agentId": agent_id if agent_id is not None else current_agent,
        })

    def accept_delivery(self, order_id: str, agent: Principal) -> Dict[str, Any]:
        oid = parse_object_id(order_id)
        if not oid:
            raise OrderNotFound()
        claimed = self.db['order'].find_one_and_update(
            {"_id": oid, "status": "ready", "agent_id": None},
            {"$set": {"agent_id": agent.id, "status": "in_transit", "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not claimed:
            if not self.db['order'].find_one({"_id": oid}, {"_id": 1}):
                raise OrderNotFound()
            raise NotAvailable()

        logger.info("Order %s claimed by agent %s", order_id, agent.id)
        self._emit('order-status-update', {
            "orderId": str(oid),
            "status": "in_transit",
            "restaurantId": claimed.get('restaurant_id'),
            "customerId": claimed.get('customer_id'),
            "agentId": agent.id,
            "agentName": agent.name,
        })
        return serialize(claimed)

    # ---------------------- reads ----------------------
    def get_order(self, order_id: str, actor: Principal) -> Dict[str, Any]:
        order = self._load_order(order_id)
        if not self.can_view(order, actor):
            raise Forbidden("Not authorized to view this order")
        return serialize(order)

    def _list(self, filt: Dict[str, Any], newest_first: bool = True) -> List[Dict[str, Any]]:
        cursor = self.db['order'].find(filt).sort("created_at", -1 if newest_first else 1)
        orders = [serialize(o) for o in cursor]
        return self._attach_restaurant_names(orders)

    def _attach_restaurant_names(self, orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ids = {parse_object_id(o.get('restaurant_id')) for o in orders} - {None}
        if not ids:
            return orders
        names = {str(r['_id']): r.get('name') for r in self.db['restaurant'].find({"_id": {"$in": list(ids)}})}
        for o in orders:
            o['restaurant_name'] = names.get(o.get('restaurant_id'))
        return orders

    def list_for_customer(self, customer_id: str) -> List[Dict[str, Any]]:
        return self._list({"customer_id": customer_id})

    def list_for_owner(self, owner_id: str) -> List[Dict[str, Any]]:
        rest = self.db['restaurant'].find_one({"owner_user_id": owner_id})
        if not rest:
            raise NotFoundError("No restaurant found for this owner")
        return self._list({"restaurant_id": str(rest['_id'])})

    def list_for_agent(self, agent_id: str) -> List[Dict[str, Any]]:
        return self._list({"agent_id": agent_id})

    def list_available_deliveries(self) -> List[Dict[str, Any]]:
        return self._list({"status": "ready", "agent_id": None}, newest_first=False)

    # ---------------------- delivery tracking ----------------------
    def record_location(self, order_id: str, agent: Principal, latitude: float, longitude: float) -> Dict[str, Any]:
        order = self._load_order(order_id)
        if order.get('agent_id') != agent.id:
            raise Forbidden("Only the assigned agent can report its location")
        if order.get('status') != 'in_transit':
            raise ValidationError("Order is not in transit")
        ping = DeliveryLocation(order_id=str(order['_id']), agent_id=agent.id,
                                latitude=latitude, longitude=longitude, timestamp=utcnow())
        doc = ping.model_dump()
        self.db['deliverylocation'].insert_one(doc)
        self._emit('delivery-location', {
            "orderId": str(order['_id']),
            "customerId": order.get('customer_id'),
            "restaurantId": order.get('restaurant_id'),
            "agentId": agent.id,
            "latitude": latitude,
            "longitude": longitude,
        })
        return serialize(doc)

    def location_trail(self, order_id: str, actor: Principal) -> List[Dict[str, Any]]:
        order = self._load_order(order_id)
        if not self.can_view(order, actor):
            raise Forbidden("Not authorized to view this order")
        cursor = self.db['deliverylocation'].find({"order_id": str(order['_id'])}).sort("timestamp", 1)
        return [serialize(p) for p in cursor]
