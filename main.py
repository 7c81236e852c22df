import logging
import math
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Literal, Optional

from bson.objectid import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import orders
from auth import (
    create_token,
    get_current_user,
    hash_password,
    public_profile,
    require_role,
    role_of,
    verify_password,
)
from database import Store, get_store
from errors import AlreadyExists, Forbidden, MarketplaceError, NotFound, ValidationFailed
from schemas import (
    LoginBody,
    OrderCreateBody,
    OrderStatus,
    Product as ProductSchema,
    ProductCreateBody,
    ProductUpdateBody,
    ProfileUpdateBody,
    RegisterBody,
    ReviewBody,
    StatusUpdateBody,
    User as UserSchema,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = Store.connect()
    try:
        store.ensure_indexes()
    except PyMongoError as e:
        logger.warning("Could not create indexes: %s", e)
    app.state.store = store
    yield
    store.close()


app = FastAPI(title="Farm Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------- Utils -----------------------
def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    # convert datetimes
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
    return doc


def check_id(id_str: str) -> str:
    if not ObjectId.is_valid(id_str):
        raise ValidationFailed("Invalid id")
    return id_str


def paginate(store: Store, collection: str, filt: dict, page: int, limit: int, sort: list):
    skip = (page - 1) * limit
    docs, total = store.find_page(collection, filt, sort, skip, limit)
    pagination = {
        "current_page": page,
        "total_pages": math.ceil(total / limit),
        "has_next": skip + len(docs) < total,
        "has_prev": page > 1,
    }
    return docs, total, pagination


def farmer_summary(store: Store, farmer_id: str, with_phone: bool = False) -> Optional[dict]:
    farmer = store.find_by_id("user", farmer_id)
    if not farmer:
        return None
    profile = farmer.get("profile", {})
    summary = {
        "id": farmer_id,
        "name": farmer.get("name"),
        "farm_name": profile.get("farm_name"),
        "farm_description": profile.get("farm_description"),
    }
    if with_phone:
        summary["phone"] = farmer.get("phone")
    return summary


def customer_summary(store: Store, customer_id: str) -> Optional[dict]:
    customer = store.find_by_id("user", customer_id)
    if not customer:
        return None
    return {"id": customer_id, "name": customer.get("name"), "phone": customer.get("phone")}


def with_farmers(store: Store, docs: list) -> list:
    """Serialize listed documents, attaching each one's farmer summary."""
    farmers = {}
    result = []
    for doc in docs:
        farmer_id = doc.get("farmer_id")
        if farmer_id not in farmers:
            farmers[farmer_id] = farmer_summary(store, farmer_id)
        item = serialize_doc(doc)
        item["farmer"] = farmers[farmer_id]
        result.append(item)
    return result


def with_products(store: Store, order: dict) -> dict:
    items = []
    for line in order.get("items", []):
        line = dict(line)
        product = store.find_by_id("product", line["product_id"])
        if product:
            line["product"] = {"id": line["product_id"], "name": product["name"], "images": product.get("images", [])}
        else:
            line["product"] = None
        items.append(line)
    order["items"] = items
    return order


# ----------------------- Errors -----------------------
@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    content = {"success": False, "message": exc.message}
    if exc.errors:
        content["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ())]
        field = ".".join(loc[1:]) if len(loc) > 1 else ".".join(loc)
        errors.append({"field": field, "message": err.get("msg")})
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation failed", "errors": errors},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "Farm Marketplace API running"}


@app.get("/test")
def test_database(store: Store = Depends(get_store)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["collections"] = store.collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@app.post("/auth/register", status_code=201)
def register(body: RegisterBody, store: Store = Depends(get_store)):
    email = str(body.email).lower()
    if store.find_one("user", {"email": email}):
        raise AlreadyExists("User already exists with this email")
    user = UserSchema(
        name=body.name,
        email=email,
        password_hash=hash_password(body.password),
        phone=body.phone,
        address=body.address,
        profile=body.profile,
        last_login=datetime.now(timezone.utc),
    )
    try:
        user_id = store.create_document("user", user)
    except DuplicateKeyError:
        raise AlreadyExists("User already exists with this email")
    logger.info("Registered %s account %s", body.profile.role, user_id)
    token = create_token({"id": user_id, "role": body.profile.role})
    return {
        "success": True,
        "message": "User registered successfully",
        "token": token,
        "user": serialize_doc(public_profile(store.find_by_id("user", user_id))),
    }


@app.post("/auth/login")
def login(body: LoginBody, store: Store = Depends(get_store)):
    email = str(body.email).lower()
    user = store.find_one("user", {"email": email})
    if not user or not verify_password(body.password, user.get("password_hash", "")):
        logger.info("Failed login for %s", email)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    user_id = str(user["_id"])
    user = store.update_by_id("user", user_id, set_fields={"last_login": datetime.now(timezone.utc)})
    token = create_token({"id": user_id, "role": role_of(user)})
    return {
        "success": True,
        "message": "Login successful",
        "token": token,
        "user": serialize_doc(public_profile(user)),
    }


@app.get("/auth/me")
def get_me(user=Depends(get_current_user)):
    return {"success": True, "user": serialize_doc(public_profile(user))}


@app.put("/auth/me")
def update_me(body: ProfileUpdateBody, user=Depends(get_current_user), store: Store = Depends(get_store)):
    update = {}
    if body.name:
        update["name"] = body.name
    if body.phone:
        update["phone"] = body.phone
    if body.address:
        update["address"] = body.address.model_dump()

    role = role_of(user)
    if role == "farmer":
        if body.farm_name:
            update["profile.farm_name"] = body.farm_name
        if body.farm_description:
            update["profile.farm_description"] = body.farm_description
    if role == "customer" and body.preferences is not None:
        update["profile.preferences"] = body.preferences

    updated = store.update_by_id("user", str(user["_id"]), set_fields=update)
    return {
        "success": True,
        "message": "Profile updated successfully",
        "user": serialize_doc(public_profile(updated)),
    }


# ----------------------- Products -----------------------
@app.get("/products")
def list_products(
    category: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    organic: Optional[bool] = None,
    available: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    sort_by: Literal["created_at", "price", "name", "rating", "quantity"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    store: Store = Depends(get_store),
):
    """``organic`` and ``available`` only narrow when true; false means no filter."""
    filt = {}
    if category:
        filt["category"] = category
    if organic:
        filt["is_organic"] = True
    if available:
        filt["is_available"] = True
    if min_price is not None or max_price is not None:
        filt["price"] = {}
        if min_price is not None:
            filt["price"]["$gte"] = min_price
        if max_price is not None:
            filt["price"]["$lte"] = max_price
    if search:
        pattern = re.escape(search)
        filt["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]

    sort = [(sort_by, -1 if sort_order == "desc" else 1)]
    items, total, pagination = paginate(store, "product", filt, page, limit, sort)
    return {
        "success": True,
        "count": len(items),
        "total": total,
        "pagination": pagination,
        "products": with_farmers(store, items),
    }


@app.get("/products/farmer/{farmer_id}")
def list_farmer_products(farmer_id: str, store: Store = Depends(get_store)):
    items = store.get_documents("product", {"farmer_id": check_id(farmer_id), "is_available": True})
    return {"success": True, "count": len(items), "products": with_farmers(store, items)}


@app.get("/products/{product_id}")
def get_product(product_id: str, store: Store = Depends(get_store)):
    item = store.find_by_id("product", check_id(product_id))
    if not item:
        raise NotFound("Product not found")
    product = serialize_doc(item)
    product["farmer"] = farmer_summary(store, item["farmer_id"])
    return {"success": True, "product": product}


@app.post("/products", status_code=201)
def create_product(body: ProductCreateBody, user=Depends(require_role("farmer")), store: Store = Depends(get_store)):
    product = ProductSchema(**body.model_dump(), farmer_id=str(user["_id"]))
    pid = store.create_document("product", product)
    logger.info("Farmer %s listed product %s", user["_id"], pid)
    return {
        "success": True,
        "message": "Product created successfully",
        "product": serialize_doc(store.find_by_id("product", pid)),
    }


def owned_product(store: Store, product_id: str, user: dict, action: str) -> dict:
    product = store.find_by_id("product", check_id(product_id))
    if not product:
        raise NotFound("Product not found")
    if product["farmer_id"] != str(user["_id"]):
        raise Forbidden(f"Not authorized to {action} this product")
    return product


@app.put("/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, user=Depends(require_role("farmer")),
                   store: Store = Depends(get_store)):
    owned_product(store, product_id, user, "update")
    update = body.model_dump(exclude_none=True)
    updated = store.update_by_id("product", product_id, set_fields=update)
    if updated is None:
        raise NotFound("Product not found")
    return {"success": True, "message": "Product updated successfully", "product": serialize_doc(updated)}


@app.delete("/products/{product_id}")
def delete_product(product_id: str, user=Depends(require_role("farmer")), store: Store = Depends(get_store)):
    owned_product(store, product_id, user, "delete")
    if not store.delete_by_id("product", product_id):
        raise NotFound("Product not found")
    logger.info("Farmer %s deleted product %s", user["_id"], product_id)
    return {"success": True, "message": "Product deleted successfully"}


# ----------------------- Orders -----------------------
@app.post("/orders", status_code=201)
def create_order(body: OrderCreateBody, user=Depends(require_role("customer")), store: Store = Depends(get_store)):
    order = orders.place_order(store, str(user["_id"]), body)
    return {"success": True, "message": "Order created successfully", "order": serialize_doc(order)}


def list_orders_for(store: Store, filt: dict, status: Optional[str], page: int, limit: int):
    if status:
        filt["status"] = status
    items, total, pagination = paginate(store, "order", filt, page, limit, [("created_at", -1)])
    listed = with_farmers(store, [with_products(store, i) for i in items])
    for order in listed:
        order["customer"] = customer_summary(store, order["customer_id"])
    return {
        "success": True,
        "count": len(items),
        "total": total,
        "pagination": pagination,
        "orders": listed,
    }


@app.get("/orders/customer")
def customer_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(require_role("customer")),
    store: Store = Depends(get_store),
):
    return list_orders_for(store, {"customer_id": str(user["_id"])}, status, page, limit)


@app.get("/orders/farmer")
def farmer_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(require_role("farmer")),
    store: Store = Depends(get_store),
):
    return list_orders_for(store, {"farmer_id": str(user["_id"])}, status, page, limit)


@app.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), store: Store = Depends(get_store)):
    order = orders.get_order_for(store, check_id(order_id), str(user["_id"]))
    result = serialize_doc(with_products(store, order))
    result["customer"] = customer_summary(store, order["customer_id"])
    result["farmer"] = farmer_summary(store, order["farmer_id"], with_phone=True)
    return {"success": True, "order": result}


@app.put("/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusUpdateBody, user=Depends(require_role("farmer")),
                        store: Store = Depends(get_store)):
    order = orders.update_status(store, check_id(order_id), str(user["_id"]), body.status, body.farmer_notes)
    return {"success": True, "message": "Order status updated successfully", "order": serialize_doc(order)}


@app.post("/orders/{order_id}/review")
def review_order(order_id: str, body: ReviewBody, user=Depends(require_role("customer")),
                 store: Store = Depends(get_store)):
    order = orders.submit_review(store, check_id(order_id), str(user["_id"]), body.rating, body.review)
    return {"success": True, "message": "Review submitted successfully", "order": serialize_doc(order)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
