"""
Database Schemas for SmartBite

Each Pydantic model maps to a MongoDB collection (lowercased class name)
- User -> user
- Restaurant -> restaurant
- MenuItem -> menuitem
- Order -> order (order lines are embedded under `items`)
- Payment -> payment
- DeliveryLocation -> deliverylocation (append-only trail)
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal
from datetime import datetime

Role = Literal['customer', 'owner', 'agent', 'admin']
OrderStatus = Literal['pending', 'preparing', 'ready', 'in_transit', 'delivered', 'cancelled']
OrderPaymentStatus = Literal['pending', 'paid', 'failed']
PaymentStatus = Literal['pending', 'successful', 'failed']

ORDER_STATUSES = ('pending', 'preparing', 'ready', 'in_transit', 'delivered', 'cancelled')


class User(BaseModel):
    """Account for any role.
    Role is fixed at registration; at most one admin exists.
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt hash of the password")
    role: Role = Field('customer')
    phone: Optional[str] = None
    town: Optional[str] = None
    is_active: bool = True


class Restaurant(BaseModel):
    owner_user_id: str = Field(..., description="Links to user._id (owner role), unique")
    name: str
    description: Optional[str] = None
    address: str
    town: str
    phone: str
    categories: List[str] = Field(default_factory=list)
    delivery_fee: float = Field(0, ge=0)
    min_order: float = Field(0, ge=0)
    is_active: bool = True


class MenuItem(BaseModel):
    restaurant_id: str
    name: str
    description: Optional[str] = None
    price: float = Field(..., gt=0)
    category: str = 'Main Course'
    is_available: bool = True


class OrderItem(BaseModel):
    menu_item_id: str
    name: str = Field(..., description="Snapshot of item name at order time")
    quantity: int = Field(..., ge=1)
    price: float = Field(..., gt=0, description="Unit price at order time")


class Order(BaseModel):
    customer_id: str
    restaurant_id: str
    items: List[OrderItem]
    total: float = Field(..., ge=0)
    status: OrderStatus = 'pending'
    delivery_address: str
    customer_phone: str
    payment_method: str = 'cash'
    payment_status: OrderPaymentStatus = 'pending'
    agent_id: Optional[str] = None


class Payment(BaseModel):
    order_id: str
    user_id: str
    amount: float
    phone_number: str
    method: str = 'mobile_money'
    status: PaymentStatus = 'pending'
    gateway_reference: Optional[str] = Field(None, description="Reference assigned by the gateway")
    external_reference: str = Field(..., description="Our reference, unique per attempt")
    operator: Optional[str] = None
    operator_reference: Optional[str] = None
    reason: Optional[str] = None


class DeliveryLocation(BaseModel):
    order_id: str
    agent_id: str
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None


class Principal(BaseModel):
    """Authenticated caller as decoded from the bearer token"""
    id: str
    role: Role
    name: Optional[str] = None
    email: Optional[str] = None
