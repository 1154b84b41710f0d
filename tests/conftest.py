import os

os.environ.pop("DATABASE_URL", None)
os.environ["DATABASE_TRANSACTIONS"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ.pop("CAMPAY_WEBHOOK_KEY", None)

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import create_document
from orders import OrderEngine
from payments import PaymentAdapter
from schemas import Principal


class RecordingEvents:
    def __init__(self):
        self.emitted = []

    def emit(self, event_name, payload):
        self.emitted.append((event_name, payload))

    def names(self):
        return [name for name, _ in self.emitted]


class BrokenEvents:
    def emit(self, event_name, payload):
        raise RuntimeError("listener exploded")


class FakeGateway:
    def __init__(self):
        self.collect_response = {"reference": "camp-ref-1", "status": "PENDING", "operator": "MTN"}
        self.collect_error = None
        self.statuses = {}
        self.collect_calls = []
        self.status_calls = []

    def collect(self, **kwargs):
        self.collect_calls.append(kwargs)
        if self.collect_error:
            raise self.collect_error
        response = dict(self.collect_response)
        response.setdefault("external_reference", kwargs["external_reference"])
        return response

    def transaction_status(self, reference):
        self.status_calls.append(reference)
        return self.statuses.get(reference, {"reference": reference, "status": "PENDING"})


@pytest.fixture
def db():
    return mongomock.MongoClient()["smartbite_test"]


@pytest.fixture
def events():
    return RecordingEvents()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(db, events):
    return OrderEngine(db, events, use_transactions=False)


@pytest.fixture
def adapter(db, gateway, events):
    return PaymentAdapter(db, gateway, events, use_transactions=False)


def make_user(db, role, name=None):
    name = name or f"{role}-user"
    uid = create_document("user", {
        "name": name,
        "email": f"{name}@example.com",
        "password_hash": "x",
        "role": role,
    }, database=db)
    return Principal(id=uid, role=role, name=name)


def make_restaurant(db, owner, name="Chez Mama"):
    return create_document("restaurant", {
        "owner_user_id": owner.id,
        "name": name,
        "address": "Rue 1",
        "town": "Douala",
        "phone": "677000000",
        "categories": ["Traditional"],
        "delivery_fee": 500,
        "min_order": 2000,
        "is_active": True,
    }, database=db)


def make_menu_item(db, restaurant_id, price, name="Ndole", is_available=True):
    return create_document("menuitem", {
        "restaurant_id": restaurant_id,
        "name": name,
        "price": price,
        "category": "Main Course",
        "is_available": is_available,
    }, database=db)


@pytest.fixture
def world(db):
    """A customer, an owner with a restaurant and two menu items, two agents and an admin."""
    owner = make_user(db, "owner")
    restaurant_id = make_restaurant(db, owner)
    return {
        "customer": make_user(db, "customer"),
        "owner": owner,
        "restaurant_id": restaurant_id,
        "ndole": make_menu_item(db, restaurant_id, 1500, name="Ndole"),
        "eru": make_menu_item(db, restaurant_id, 2500, name="Eru"),
        "agent_a": make_user(db, "agent", name="agent-a"),
        "agent_b": make_user(db, "agent", name="agent-b"),
        "admin": make_user(db, "admin"),
    }


def place(engine, world, lines=None):
    lines = lines or [
        {"menu_item_id": world["ndole"], "quantity": 2},
        {"menu_item_id": world["eru"], "quantity": 1},
    ]
    return engine.create_order(world["customer"].id, world["restaurant_id"], lines,
                               "Bonamoussadi, Douala", "677123456", "mobile_money")


def auth_header(principal):
    token = main.create_jwt({"sub": principal.id, "role": principal.role, "name": principal.name})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(db, events, gateway):
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_events] = lambda: events
    main.app.dependency_overrides[main.get_gateway] = lambda: gateway
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
