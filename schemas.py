"""
Database Schemas for the Farm Marketplace

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.

- User -> "user"
- Product -> "product"
- Order -> "order"

Request bodies accepted by the API live at the bottom of this module.
"""
from datetime import datetime
from typing import Annotated, List, Optional, Literal, Union

from bson.objectid import ObjectId
from pydantic import AfterValidator, BaseModel, EmailStr, Field, field_validator

Category = Literal["vegetables", "fruits", "grains", "dairy", "meat", "poultry", "herbs", "flowers", "other"]
Unit = Literal["kg", "lb", "piece", "dozen", "bunch", "bag", "liter", "gallon"]
OrderStatus = Literal["pending", "confirmed", "preparing", "ready", "out_for_delivery", "delivered", "cancelled"]
TargetStatus = Literal["confirmed", "preparing", "ready", "out_for_delivery", "delivered", "cancelled"]


def _check_object_id(value: str) -> str:
    if not ObjectId.is_valid(value):
        raise ValueError("Invalid id")
    return value


ObjectIdStr = Annotated[str, AfterValidator(_check_object_id)]


# ----------------------- Users -----------------------
class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class FarmerProfile(BaseModel):
    role: Literal["farmer"] = "farmer"
    farm_name: str = Field(..., min_length=1, description="Farm name shown to customers")
    farm_description: Optional[str] = None
    farm_image: Optional[str] = None


class CustomerProfile(BaseModel):
    role: Literal["customer"] = "customer"
    preferences: List[str] = []
    avatar: Optional[str] = None


Profile = Annotated[Union[FarmerProfile, CustomerProfile], Field(discriminator="role")]


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr
    password_hash: str = Field(..., description="Salted PBKDF2 hash")
    phone: str
    address: Address = Field(default_factory=Address)
    profile: Profile
    is_verified: bool = False
    last_login: Optional[datetime] = None


# ----------------------- Products -----------------------
class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(..., min_length=2, max_length=2, description="[longitude, latitude]")


class ProductBase(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    category: Category
    price: float = Field(..., ge=0)
    unit: Unit
    quantity: int = Field(..., ge=0)
    images: List[str] = Field(..., min_length=1)
    is_organic: bool = False
    is_available: bool = True
    harvest_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    location: GeoPoint
    tags: List[str] = []

    @field_validator("name", "description")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value


class Product(ProductBase):
    farmer_id: str
    rating: float = Field(0, ge=0, le=5)
    review_count: int = Field(0, ge=0)


# ----------------------- Orders -----------------------
class DeliveryAddress(Address):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)


class OrderItem(BaseModel):
    """Snapshot of a product taken when the order was placed."""
    product_id: str
    product_name: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)
    unit: Unit


class Order(BaseModel):
    customer_id: str
    farmer_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    total_amount: float = Field(..., ge=0)
    delivery_address: DeliveryAddress
    delivery_instructions: Optional[str] = None
    customer_notes: Optional[str] = None
    status: OrderStatus = "pending"
    farmer_notes: Optional[str] = None
    actual_delivery: Optional[datetime] = None
    rating: Optional[int] = Field(None, ge=1, le=5)
    review: Optional[str] = Field(None, max_length=500)


# ----------------------- Request bodies -----------------------
class RegisterBody(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: str = Field(..., min_length=1)
    address: Address = Field(default_factory=Address)
    profile: Profile

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 2:
            raise ValueError("Name must be at least 2 characters")
        return value


class LoginBody(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfileUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=2)
    phone: Optional[str] = Field(None, min_length=1)
    address: Optional[Address] = None
    farm_name: Optional[str] = Field(None, min_length=1)
    farm_description: Optional[str] = None
    preferences: Optional[List[str]] = None


class ProductCreateBody(ProductBase):
    pass


class ProductUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category: Optional[Category] = None
    price: Optional[float] = Field(None, ge=0)
    unit: Optional[Unit] = None
    quantity: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = Field(None, min_length=1)
    is_organic: Optional[bool] = None
    is_available: Optional[bool] = None
    harvest_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    location: Optional[GeoPoint] = None
    tags: Optional[List[str]] = None

    @field_validator("name", "description")
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value


class OrderLine(BaseModel):
    product_id: ObjectIdStr
    quantity: int = Field(..., ge=1)


class OrderCreateBody(BaseModel):
    farmer_id: ObjectIdStr
    items: List[OrderLine] = Field(..., min_length=1)
    delivery_address: DeliveryAddress
    delivery_instructions: Optional[str] = None
    customer_notes: Optional[str] = None


class StatusUpdateBody(BaseModel):
    status: TargetStatus
    farmer_notes: Optional[str] = None


class ReviewBody(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=500)

    @field_validator("review", mode="before")
    @classmethod
    def _trim(cls, value):
        if isinstance(value, str):
            return value.strip()
        return value
