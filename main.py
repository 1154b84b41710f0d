import os
import re
import json
import logging
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, List

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field, EmailStr
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.errors import DuplicateKeyError

import database
from database import create_document, get_documents, parse_object_id, serialize, transaction, ensure_indexes
from schemas import User, Restaurant, MenuItem, Principal, Role, OrderStatus
from errors import MarketplaceError, InternalError, ValidationError, Forbidden, NotFoundError, ConflictError
from events import EventBroadcaster
from orders import OrderEngine
from payments import PaymentAdapter
from campay import CamPayClient, verify_webhook_signature

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("smartbite")

JWT_SECRET = os.getenv("JWT_SECRET", "dev_secret_change_me")
JWT_ALG = "HS256"
TOKEN_EXPIRE_MIN = 60 * 24 * 14  # 14 days
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is None:
        logger.warning("DATABASE_URL not set; running without a database")
    else:
        ensure_indexes(database.db)
    yield


app = FastAPI(title="SmartBite API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

events = EventBroadcaster()
gateway = CamPayClient()


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.code})


# ---------------------- Dependencies ----------------------
def get_db():
    if database.db is None:
        raise InternalError("Database not configured")
    return database.db


def get_events() -> EventBroadcaster:
    return events


def get_gateway() -> CamPayClient:
    return gateway


def get_order_engine(db=Depends(get_db), broadcaster=Depends(get_events)) -> OrderEngine:
    return OrderEngine(db, broadcaster)


def get_payment_adapter(db=Depends(get_db), client=Depends(get_gateway), broadcaster=Depends(get_events)) -> PaymentAdapter:
    return PaymentAdapter(db, client, broadcaster)


def to_object_id(id_str: str):
    oid = parse_object_id(id_str)
    if oid is None:
        raise HTTPException(status_code=400, detail="Invalid id format")
    return oid


# ---------------------- Auth & JWT ----------------------
def create_jwt(payload: Dict[str, Any]) -> str:
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=TOKEN_EXPIRE_MIN)
    to_encode = {"exp": exp, "iat": now, **payload}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def decode_jwt(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {str(e)}")


def authenticate(token: str) -> Principal:
    data = decode_jwt(token)
    if not data.get("sub") or data.get("role") not in ("customer", "owner", "agent", "admin"):
        raise HTTPException(status_code=401, detail="Invalid token claims")
    return Principal(id=data["sub"], role=data["role"], name=data.get("name"), email=data.get("email"))


def token_for(user: Dict[str, Any]) -> str:
    return create_jwt({
        "sub": str(user.get("_id")),
        "email": user.get("email"),
        "name": user.get("name"),
        "role": user.get("role"),
    })


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user.get("_id")),
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role"),
        "phone": user.get("phone"),
        "town": user.get("town"),
    }


bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Principal:
    if not creds:
        raise HTTPException(status_code=401, detail="Authorization required")
    return authenticate(creds.credentials)


def require_role(*roles: str):
    def checker(user: Principal = Depends(get_current_user)) -> Principal:
        if user.role not in roles:
            raise Forbidden(f"Requires role: {', '.join(roles)}")
        return user
    return checker


class RegisterBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Role = 'customer'
    phone: Optional[str] = None
    town: Optional[str] = None


class LoginBody(BaseModel):
    email: EmailStr
    password: str


@app.get("/auth/check-admin")
def check_admin(db=Depends(get_db)):
    return {"adminExists": db["user"].count_documents({"role": "admin"}) > 0}


@app.post("/auth/register", status_code=201)
def register(body: RegisterBody, db=Depends(get_db)):
    email = body.email.lower()
    try:
        with transaction(db) as session:
            if body.role == 'admin' and db["user"].find_one({"role": "admin"}, session=session):
                raise ConflictError("Admin account already exists. Only one admin account is allowed per system.")
            if db["user"].find_one({"email": email}, session=session):
                raise ConflictError("User already exists with this email")
            model = User(
                name=body.name.strip(),
                email=email,
                password_hash=pwd_context.hash(body.password),
                role=body.role,
                phone=body.phone,
                town=body.town,
            )
            create_document("user", model, database=db, session=session)
    except DuplicateKeyError:
        raise ConflictError("User already exists or admin already registered")
    user = db["user"].find_one({"email": email})
    logger.info("Registered %s user %s", body.role, user["_id"])
    return {"message": "User registered successfully", "token": token_for(user), "user": public_user(user)}


@app.post("/auth/login")
def login(body: LoginBody, db=Depends(get_db)):
    user = db["user"].find_one({"email": body.email.lower()})
    if not user or not pwd_context.verify(body.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account disabled")
    return {"message": "Login successful", "token": token_for(user), "user": public_user(user)}


@app.get("/auth/me")
def me(user: Principal = Depends(get_current_user), db=Depends(get_db)):
    doc = db["user"].find_one({"_id": to_object_id(user.id)})
    if not doc:
        raise HTTPException(status_code=401, detail="User not found")
    return {"user": public_user(doc)}


@app.delete("/users/{user_id}")
def delete_user(user_id: str, _: Principal = Depends(require_role('admin')), db=Depends(get_db)):
    oid = to_object_id(user_id)
    with transaction(db) as session:
        res = db["user"].delete_one({"_id": oid}, session=session)
        if res.deleted_count == 0:
            raise NotFoundError("User not found")
        rest = db["restaurant"].find_one({"owner_user_id": user_id}, session=session)
        if rest:
            db["menuitem"].delete_many({"restaurant_id": str(rest["_id"])}, session=session)
            db["restaurant"].delete_one({"_id": rest["_id"]}, session=session)
    return {"deleted": True}


# ---------------------- Restaurants & Menu ----------------------
class CreateRestaurant(BaseModel):
    name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    town: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    description: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    delivery_fee: float = Field(0, ge=0)
    min_order: float = Field(0, ge=0)


class RestaurantPatch(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    town: Optional[str] = None
    phone: Optional[str] = None
    description: Optional[str] = None
    categories: Optional[List[str]] = None
    delivery_fee: Optional[float] = Field(None, ge=0)
    min_order: Optional[float] = Field(None, ge=0)
    is_active: Optional[bool] = None


class CreateMenuItem(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., gt=0)
    category: str = 'Main Course'
    is_available: bool = True


class MenuItemPatch(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    category: Optional[str] = None
    is_available: Optional[bool] = None


def patch_fields(patch: BaseModel) -> Dict[str, Any]:
    """Only the fields the client actually sent with a value."""
    return patch.model_dump(exclude_unset=True, exclude_none=True)


def load_restaurant(db, restaurant_id: str) -> Dict[str, Any]:
    rest = db["restaurant"].find_one({"_id": to_object_id(restaurant_id)})
    if not rest:
        raise NotFoundError("Restaurant not found")
    return rest


def owned_restaurant(db, restaurant_id: str, user: Principal) -> Dict[str, Any]:
    rest = load_restaurant(db, restaurant_id)
    if user.role != 'admin' and rest.get("owner_user_id") != user.id:
        raise Forbidden("Not authorized to manage this restaurant")
    return rest


@app.get("/restaurants")
def list_restaurants(town: Optional[str] = None, search: Optional[str] = None, category: Optional[str] = None,
                     db=Depends(get_db)):
    filt: Dict[str, Any] = {"is_active": True}
    if town:
        filt["town"] = town
    if search:
        filt["name"] = {"$regex": re.escape(search), "$options": "i"}
    if category:
        filt["categories"] = category
    items = get_documents("restaurant", filt, database=db, sort=[("name", 1)])
    return [serialize(it) for it in items]


@app.get("/restaurants/owner/my-restaurant")
def my_restaurant(user: Principal = Depends(require_role('owner')), db=Depends(get_db)):
    rest = db["restaurant"].find_one({"owner_user_id": user.id})
    if not rest:
        raise NotFoundError("No restaurant found for this owner")
    return serialize(rest)


@app.get("/restaurants/{restaurant_id}")
def get_restaurant(restaurant_id: str, db=Depends(get_db)):
    return serialize(load_restaurant(db, restaurant_id))


@app.post("/restaurants", status_code=201)
def create_restaurant(body: CreateRestaurant, user: Principal = Depends(require_role('owner')), db=Depends(get_db)):
    if db["restaurant"].find_one({"owner_user_id": user.id}):
        raise ConflictError("This owner already has a restaurant")
    model = Restaurant(owner_user_id=user.id, **{k: (v.strip() if isinstance(v, str) else v)
                                                 for k, v in body.model_dump().items()})
    try:
        rid = create_document("restaurant", model, database=db)
    except DuplicateKeyError:
        raise ConflictError("This owner already has a restaurant")
    logger.info("Restaurant %s created by owner %s", rid, user.id)
    return {"message": "Restaurant created successfully", "restaurant_id": rid}


@app.put("/restaurants/{restaurant_id}")
def update_restaurant(restaurant_id: str, body: RestaurantPatch,
                      user: Principal = Depends(require_role('owner', 'admin')), db=Depends(get_db)):
    rest = owned_restaurant(db, restaurant_id, user)
    updates = patch_fields(body)
    if "is_active" in updates and user.role != 'admin':
        raise Forbidden("Only an admin can activate or deactivate a restaurant")
    if updates:
        updates["updated_at"] = database.utcnow()
        db["restaurant"].update_one({"_id": rest["_id"]}, {"$set": updates})
    return serialize(db["restaurant"].find_one({"_id": rest["_id"]}))


@app.delete("/restaurants/{restaurant_id}")
def delete_restaurant(restaurant_id: str, _: Principal = Depends(require_role('admin')), db=Depends(get_db)):
    rest = load_restaurant(db, restaurant_id)
    with transaction(db) as session:
        db["menuitem"].delete_many({"restaurant_id": str(rest["_id"])}, session=session)
        db["restaurant"].delete_one({"_id": rest["_id"]}, session=session)
    return {"deleted": True}


@app.get("/restaurants/{restaurant_id}/menu")
def get_menu(restaurant_id: str, available_only: bool = False, db=Depends(get_db)):
    filt: Dict[str, Any] = {"restaurant_id": restaurant_id}
    if available_only:
        filt["is_available"] = True
    items = get_documents("menuitem", filt, database=db, sort=[("category", 1), ("name", 1)])
    return [serialize(it) for it in items]


@app.post("/restaurants/{restaurant_id}/menu", status_code=201)
def add_menu_item(restaurant_id: str, body: CreateMenuItem, user: Principal = Depends(require_role('owner')),
                  db=Depends(get_db)):
    rest = owned_restaurant(db, restaurant_id, user)
    model = MenuItem(restaurant_id=str(rest["_id"]), **body.model_dump())
    mid = create_document("menuitem", model, database=db)
    return {"message": "Menu item created successfully", "id": mid}


def owned_menu_item(db, item_id: str, user: Principal) -> Dict[str, Any]:
    item = db["menuitem"].find_one({"_id": to_object_id(item_id)})
    if not item:
        raise NotFoundError("Menu item not found")
    owned_restaurant(db, item["restaurant_id"], user)
    return item


@app.put("/menu/{item_id}")
def update_menu_item(item_id: str, body: MenuItemPatch, user: Principal = Depends(require_role('owner')),
                     db=Depends(get_db)):
    item = owned_menu_item(db, item_id, user)
    updates = patch_fields(body)
    if not updates:
        raise ValidationError("No fields to update")
    updates["updated_at"] = database.utcnow()
    db["menuitem"].update_one({"_id": item["_id"]}, {"$set": updates})
    return serialize(db["menuitem"].find_one({"_id": item["_id"]}))


@app.delete("/menu/{item_id}")
def delete_menu_item(item_id: str, user: Principal = Depends(require_role('owner')), db=Depends(get_db)):
    item = owned_menu_item(db, item_id, user)
    db["menuitem"].delete_one({"_id": item["_id"]})
    return {"deleted": True}


# ---------------------- Orders ----------------------
class CartLine(BaseModel):
    menu_item_id: str
    quantity: int = Field(..., ge=1)


class PlaceOrderBody(BaseModel):
    restaurant_id: str
    items: List[CartLine]
    delivery_address: Optional[str] = None
    customer_phone: Optional[str] = None
    payment_method: str = 'cash'


class UpdateOrderStatusBody(BaseModel):
    status: OrderStatus
    agent_id: Optional[str] = None


class LocationBody(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


@app.post("/orders", status_code=201)
def place_order(body: PlaceOrderBody, user: Principal = Depends(require_role('customer')),
                engine: OrderEngine = Depends(get_order_engine)):
    result = engine.create_order(
        customer_id=user.id,
        restaurant_id=body.restaurant_id,
        lines=[line.model_dump() for line in body.items],
        delivery_address=body.delivery_address,
        customer_phone=body.customer_phone,
        payment_method=body.payment_method,
    )
    return {"message": "Order created successfully", "orderId": result["order_id"], "total": result["total"]}


@app.get("/orders/customer")
def customer_orders(user: Principal = Depends(require_role('customer')), engine: OrderEngine = Depends(get_order_engine)):
    return engine.list_for_customer(user.id)


@app.get("/orders/restaurant")
def restaurant_orders(user: Principal = Depends(require_role('owner')), engine: OrderEngine = Depends(get_order_engine)):
    return engine.list_for_owner(user.id)


@app.get("/orders/available-deliveries")
def available_deliveries(_: Principal = Depends(require_role('agent')), engine: OrderEngine = Depends(get_order_engine)):
    return engine.list_available_deliveries()


@app.get("/orders/agent")
def agent_orders(user: Principal = Depends(require_role('agent')), engine: OrderEngine = Depends(get_order_engine)):
    return engine.list_for_agent(user.id)


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: Principal = Depends(get_current_user), engine: OrderEngine = Depends(get_order_engine)):
    return engine.get_order(order_id, user)


@app.put("/orders/{order_id}/status")
def update_order_status(order_id: str, body: UpdateOrderStatusBody, user: Principal = Depends(get_current_user),
                        engine: OrderEngine = Depends(get_order_engine)):
    engine.update_status(order_id, user, body.status, body.agent_id)
    return {"message": "Order status updated successfully"}


@app.put("/orders/{order_id}/accept-delivery")
def accept_delivery(order_id: str, user: Principal = Depends(require_role('agent')),
                    engine: OrderEngine = Depends(get_order_engine)):
    engine.accept_delivery(order_id, user)
    return {"message": "Delivery accepted successfully"}


@app.post("/orders/{order_id}/location", status_code=201)
def report_location(order_id: str, body: LocationBody, user: Principal = Depends(require_role('agent')),
                    engine: OrderEngine = Depends(get_order_engine)):
    return engine.record_location(order_id, user, body.latitude, body.longitude)


@app.get("/orders/{order_id}/location")
def location_trail(order_id: str, user: Principal = Depends(get_current_user),
                   engine: OrderEngine = Depends(get_order_engine)):
    return engine.location_trail(order_id, user)


# ---------------------- Payments ----------------------
class InitiatePaymentBody(BaseModel):
    order_id: str
    phone_number: str


@app.post("/payments/initiate")
def initiate_payment(body: InitiatePaymentBody, user: Principal = Depends(require_role('customer')),
                     adapter: PaymentAdapter = Depends(get_payment_adapter)):
    return adapter.initiate_payment(body.order_id, user.id, body.phone_number)


@app.get("/payments/status/{order_id}")
def payment_status(order_id: str, user: Principal = Depends(require_role('customer')),
                   adapter: PaymentAdapter = Depends(get_payment_adapter)):
    return adapter.payment_status(order_id, user.id)


@app.get("/payments/history")
def payment_history(user: Principal = Depends(require_role('customer')),
                    adapter: PaymentAdapter = Depends(get_payment_adapter)):
    return adapter.history(user.id)


async def parse_webhook(request: Request) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    data: Dict[str, Any] = dict(request.query_params)
    try:
        if "application/json" in content_type:
            body = await request.json()
            if isinstance(body, dict):
                data.update(body)
        elif "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
            form = await request.form()
            data.update({k: v for k, v in form.items() if isinstance(v, str)})
    except ValueError:
        logger.warning("Unreadable webhook body")
    return data


@app.post("/payments/webhook")
async def payment_webhook(request: Request, adapter: PaymentAdapter = Depends(get_payment_adapter)):
    data = await parse_webhook(request)
    logger.info("Payment webhook received: reference=%s status=%s", data.get("reference"), data.get("status"))
    if not verify_webhook_signature(data.get("signature")):
        logger.warning("Payment webhook with invalid signature ignored")
        return {"success": True}
    await asyncio.to_thread(adapter.handle_webhook, data.get("reference"), data.get("status"),
                            data.get("external_reference"))
    return {"success": True}


# ---------------------- Real-time stream ----------------------
def channels_for_user(user: Principal, db) -> List[str]:
    if user.role == 'admin':
        return ["all"]
    channels = [f"user:{user.id}"]
    if user.role == 'agent':
        channels.append("agents")
    if user.role == 'owner':
        rest = db["restaurant"].find_one({"owner_user_id": user.id}, {"_id": 1})
        if rest:
            channels.append(f"restaurant:{rest['_id']}")
    return channels


@app.get("/events/stream")
async def stream_events(token: Optional[str] = None, creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
                        db=Depends(get_db), broadcaster: EventBroadcaster = Depends(get_events)):
    """Server-Sent Events stream of order, payment and delivery events.
    Token can be provided via query for auth (SSE doesn't send headers easily).
    """
    token = token or (creds.credentials if creds else None)
    if not token:
        raise HTTPException(status_code=401, detail="Authorization required")
    user = authenticate(token)
    channels = await asyncio.to_thread(channels_for_user, user, db)
    queue = broadcaster.subscribe(channels)

    async def event_gen():
        try:
            # On connect, send a ping
            yield f"data: {json.dumps({'type': 'ping', 'ts': datetime.now(timezone.utc).isoformat()})}\n\n"
            while True:
                event = await queue.get()
                yield f"event: {event['type']}\ndata: {json.dumps(event, default=str)}\n\n"
        except asyncio.CancelledError:
            pass
        finally:
            broadcaster.unsubscribe(queue)

    return StreamingResponse(event_gen(), media_type="text/event-stream")


# ---------------------- Misc ----------------------
@app.get("/")
def read_root():
    return {"message": "SmartBite API"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "event_listeners": events.listener_count,
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = database.DATABASE_NAME
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
                response["connection_status"] = "Connected"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
