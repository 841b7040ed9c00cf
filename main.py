import os
import logging
from typing import List, Literal, Optional

from fastapi import FastAPI, HTTPException, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument

import config
from database import db, create_document, now, oid, serialize
from errors import register_exception_handlers
from orders import (
    cancel_order,
    can_view,
    get_order_or_404,
    place_order,
    update_order_status,
    visibility_filter,
)
from schemas import (
    Address,
    Category,
    OrderStatus,
    PaymentMethod,
    Product,
    Profile,
    User,
    slugify,
)
from security import (
    get_current_user,
    get_password_hash,
    issue_tokens,
    public_user,
    require_admin,
    require_buyer,
    require_seller,
    rotate_refresh_token,
    verify_password,
)

config.configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Marketplace API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


def ok(data=None, message: Optional[str] = None) -> dict:
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def paginate(collection: str, query: dict, page: int, limit: int):
    total_items = db[collection].count_documents(query)
    cursor = db[collection].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    items = [serialize(doc) for doc in cursor]
    pagination = {
        "current_page": page,
        "total_pages": (total_items + limit - 1) // limit,
        "total_items": total_items,
        "items_per_page": limit,
    }
    return items, pagination


# Request models
class RegisterIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    role: Literal["buyer", "vendor"] = "buyer"


class LoginIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RefreshIn(BaseModel):
    refresh_token: Optional[str] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: bool = True


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: Optional[bool] = None


class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=10)
    price: float = Field(..., ge=0)
    compare_at_price: Optional[float] = Field(None, ge=0)
    sku: str = Field(..., min_length=1)
    track_quantity: bool = True
    quantity: int = Field(0, ge=0)
    allow_backorder: bool = False
    images: List[str] = Field(default_factory=list, max_length=config.MAX_PRODUCT_IMAGES)
    category_id: str
    brand: Optional[str] = None
    tags: List[str] = []
    is_active: bool = True


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=10)
    price: Optional[float] = Field(None, ge=0)
    compare_at_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = Field(None, min_length=1)
    track_quantity: Optional[bool] = None
    quantity: Optional[int] = Field(None, ge=0)
    allow_backorder: Optional[bool] = None
    images: Optional[List[str]] = Field(None, max_length=config.MAX_PRODUCT_IMAGES)
    category_id: Optional[str] = None
    brand: Optional[str] = None
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None


class ApprovalIn(BaseModel):
    is_approved: bool = True


class CartAddIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CartUpdateIn(BaseModel):
    quantity: int


class OrderIn(BaseModel):
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_method: PaymentMethod
    notes: Optional[str] = None


class CancelIn(BaseModel):
    reason: Optional[str] = None


class StatusIn(BaseModel):
    status: OrderStatus


# Routes
@app.get("/")
def root():
    return {"message": "Marketplace API is running"}


@app.get("/api/health")
def health():
    return {"status": "OK", "message": "Server is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"

    return response


# Auth endpoints
@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterIn):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="User already exists")

    user = User(
        email=email,
        password_hash=get_password_hash(payload.password),
        role=payload.role,
        profile=Profile(first_name=payload.first_name, last_name=payload.last_name, phone=payload.phone),
        # Buyers can log in straight away, vendors wait for an admin.
        is_approved=payload.role == "buyer",
    )
    user_id = create_document("user", user)
    doc = db["user"].find_one({"_id": oid(user_id)})
    tokens = issue_tokens(doc)
    logger.info("Registered %s account %s", doc["role"], user_id)
    return ok({"user": public_user(doc), "tokens": tokens}, "User registered successfully")


@app.post("/api/auth/login")
def login(payload: LoginIn):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        logger.warning("Failed login attempt")
        raise HTTPException(status_code=401, detail="Invalid credentials")

    if user["role"] == "vendor" and not user.get("is_approved"):
        raise HTTPException(status_code=403, detail="Your vendor account is pending approval")

    tokens = issue_tokens(user)
    logger.info("User %s logged in", user["_id"])
    return ok({"user": public_user(user), "tokens": tokens}, "Login successful")


@app.post("/api/auth/refresh")
def refresh(payload: RefreshIn):
    tokens = rotate_refresh_token(payload.refresh_token)
    return ok({"access_token": tokens["access_token"], "refresh_token": tokens["refresh_token"]})


@app.post("/api/auth/logout")
def logout(user=Depends(get_current_user)):
    db["user"].update_one({"_id": oid(user["id"])}, {"$unset": {"refresh_token": ""}, "$set": {"updated_at": now()}})
    return ok(message="Logged out successfully")


@app.get("/api/auth/profile")
def profile(user=Depends(get_current_user)):
    return ok(user)


# Category endpoints
def get_category_or_404(category_id: str) -> dict:
    category = db["category"].find_one({"_id": oid(category_id, "Category not found")})
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


@app.get("/api/categories")
def list_categories(parent_id: Optional[str] = None):
    query = {"is_active": True}
    if parent_id is not None:
        query["parent_id"] = None if parent_id == "null" else parent_id
    items = [serialize(c) for c in db["category"].find(query).sort("name", 1)]
    return ok(items)


@app.get("/api/categories/{category_id}")
def get_category(category_id: str):
    return ok(serialize(get_category_or_404(category_id)))


@app.post("/api/categories", status_code=201, dependencies=[Depends(require_admin)])
def create_category(payload: CategoryIn):
    slug = slugify(payload.name)
    if db["category"].find_one({"slug": slug}):
        raise HTTPException(status_code=409, detail="Category exists")
    if payload.parent_id:
        get_category_or_404(payload.parent_id)
    category = Category(slug=slug, **payload.model_dump())
    cid = create_document("category", category)
    return ok(serialize(db["category"].find_one({"_id": oid(cid)})), "Category created successfully")


@app.put("/api/categories/{category_id}", dependencies=[Depends(require_admin)])
def update_category(category_id: str, payload: CategoryUpdate):
    category = get_category_or_404(category_id)
    update = payload.model_dump(exclude_unset=True)
    if "name" in update:
        slug = slugify(update["name"])
        if db["category"].find_one({"slug": slug, "_id": {"$ne": category["_id"]}}):
            raise HTTPException(status_code=409, detail="Category exists")
        update["slug"] = slug
    update["updated_at"] = now()
    db["category"].update_one({"_id": category["_id"]}, {"$set": update})
    return ok(serialize(db["category"].find_one({"_id": category["_id"]})), "Category updated successfully")


@app.delete("/api/categories/{category_id}", dependencies=[Depends(require_admin)])
def delete_category(category_id: str):
    category = get_category_or_404(category_id)
    cid = str(category["_id"])
    if db["product"].count_documents({"category_id": cid}) > 0:
        raise HTTPException(status_code=400, detail="Cannot delete category with existing products")
    if db["category"].count_documents({"parent_id": cid}) > 0:
        raise HTTPException(status_code=400, detail="Cannot delete category with subcategories")
    db["category"].delete_one({"_id": category["_id"]})
    return ok(message="Category deleted successfully")


# Product endpoints
def get_product_or_404(product_id: str) -> dict:
    product = db["product"].find_one({"_id": oid(product_id, "Product not found")})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


def check_product_owner(product: dict, user: dict):
    if product["vendor_id"] != user["id"] and user["role"] != "admin":
        raise HTTPException(status_code=403, detail="Not allowed to modify this product")


def ensure_unique_product(slug: Optional[str] = None, sku: Optional[str] = None, exclude=None):
    base = {"_id": {"$ne": exclude}} if exclude is not None else {}
    if slug is not None and db["product"].find_one({**base, "slug": slug}):
        raise HTTPException(status_code=409, detail="A product with this name already exists")
    if sku is not None and db["product"].find_one({**base, "sku": sku}):
        raise HTTPException(status_code=409, detail="A product with this SKU already exists")


def view_product(query: dict) -> dict:
    product = db["product"].find_one_and_update(query, {"$inc": {"views": 1}}, return_document=ReturnDocument.AFTER)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return ok(serialize(product))


@app.get("/api/products")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[str] = None,
    vendor: Optional[str] = None,
):
    query = {"is_active": True, "is_approved": True}
    if category:
        query["category_id"] = category
    if vendor:
        query["vendor_id"] = vendor
    products, pagination = paginate("product", query, page, limit)
    return ok({"products": products, "pagination": pagination})


@app.get("/api/products/vendor/mine")
def vendor_products(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(require_seller),
):
    products, pagination = paginate("product", {"vendor_id": user["id"]}, page, limit)
    return ok({"products": products, "pagination": pagination})


@app.get("/api/products/slug/{slug}")
def get_product_by_slug(slug: str):
    return view_product({"slug": slug})


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    return view_product({"_id": oid(product_id, "Product not found")})


@app.post("/api/products", status_code=201)
def create_product(payload: ProductIn, user=Depends(require_seller)):
    get_category_or_404(payload.category_id)
    slug = slugify(payload.name)
    ensure_unique_product(slug=slug, sku=payload.sku)

    data = payload.model_dump()
    product = Product(
        slug=slug,
        vendor_id=user["id"],
        featured_image=data["images"][0] if data["images"] else None,
        # New listings always wait for an admin.
        is_approved=False,
        **data,
    )
    pid = create_document("product", product)
    logger.info("Product %s created by %s", pid, user["id"])
    return ok(serialize(db["product"].find_one({"_id": oid(pid)})), "Product created successfully. Pending admin approval.")


@app.put("/api/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, user=Depends(require_seller)):
    product = get_product_or_404(product_id)
    check_product_owner(product, user)

    update = payload.model_dump(exclude_unset=True)
    if "category_id" in update:
        get_category_or_404(update["category_id"])
    if "name" in update:
        update["slug"] = slugify(update["name"])
    ensure_unique_product(slug=update.get("slug"), sku=update.get("sku"), exclude=product["_id"])
    if update.get("images") and not product.get("featured_image"):
        update["featured_image"] = update["images"][0]

    # Vendors editing what buyers see send the product back for review.
    if user["role"] == "vendor" and any(k in update for k in ("name", "price", "description")):
        update["is_approved"] = False

    update["updated_at"] = now()
    db["product"].update_one({"_id": product["_id"]}, {"$set": update})
    return ok(serialize(db["product"].find_one({"_id": product["_id"]})), "Product updated successfully")


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user=Depends(require_seller)):
    product = get_product_or_404(product_id)
    check_product_owner(product, user)
    db["product"].delete_one({"_id": product["_id"]})
    return ok(message="Product deleted successfully")


# Admin moderation
@app.get("/api/admin/users", dependencies=[Depends(require_admin)])
def admin_users(role: Optional[str] = None, is_approved: Optional[bool] = None):
    query = {}
    if role:
        query["role"] = role
    if is_approved is not None:
        query["is_approved"] = is_approved
    return ok([public_user(u) for u in db["user"].find(query).sort("created_at", -1)])


@app.put("/api/admin/users/{user_id}/approve", dependencies=[Depends(require_admin)])
def approve_user(user_id: str, payload: ApprovalIn):
    result = db["user"].update_one(
        {"_id": oid(user_id, "User not found")},
        {"$set": {"is_approved": payload.is_approved, "updated_at": now()}},
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("User %s approval set to %s", user_id, payload.is_approved)
    return ok(public_user(db["user"].find_one({"_id": oid(user_id)})))


@app.put("/api/admin/products/{product_id}/approve", dependencies=[Depends(require_admin)])
def approve_product(product_id: str, payload: ApprovalIn):
    product = get_product_or_404(product_id)
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"is_approved": payload.is_approved, "updated_at": now()}})
    logger.info("Product %s approval set to %s", product_id, payload.is_approved)
    return ok(serialize(db["product"].find_one({"_id": product["_id"]})))


# Cart endpoints (per-user)
def get_or_create_cart(user: dict) -> dict:
    cart = db["cart"].find_one({"user_id": user["id"]})
    if not cart:
        create_document("cart", {"user_id": user["id"], "items": []})
        cart = db["cart"].find_one({"user_id": user["id"]})
    return cart


def cart_key(product_id: str) -> str:
    # Cart lines are keyed by the canonical hex form of the product id.
    try:
        return str(oid(product_id))
    except HTTPException:
        return product_id


def find_cart(user: dict) -> dict:
    cart = db["cart"].find_one({"user_id": user["id"]})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    return cart


def has_stock(product: dict, quantity: int) -> bool:
    if not product.get("track_quantity", True) or product.get("allow_backorder"):
        return True
    return product.get("quantity", 0) >= quantity


def cart_view(cart: dict) -> dict:
    items = []
    for it in cart.get("items", []):
        try:
            product = db["product"].find_one({"_id": oid(it["product_id"])})
        except HTTPException:
            product = None
        line = dict(it)
        if product:
            line["product"] = {
                "id": str(product["_id"]),
                "name": product["name"],
                "slug": product["slug"],
                "price": product["price"],
                "featured_image": product.get("featured_image"),
            }
        items.append(line)
    return {"id": str(cart["_id"]), "user_id": cart["user_id"], "items": items}


def save_cart_items(cart: dict, items: List[dict]) -> dict:
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": items, "updated_at": now()}})
    cart["items"] = items
    return cart_view(cart)


@app.get("/api/cart")
def get_cart(user=Depends(require_buyer)):
    return ok(cart_view(get_or_create_cart(user)))


@app.post("/api/cart/add")
def add_to_cart(payload: CartAddIn, user=Depends(require_buyer)):
    try:
        product = db["product"].find_one({"_id": oid(payload.product_id)})
    except HTTPException:
        product = None
    if not product or not product.get("is_active") or not product.get("is_approved"):
        raise HTTPException(status_code=400, detail="Product not available")

    cart = get_or_create_cart(user)
    items = cart.get("items", [])
    product_id = str(product["_id"])
    existing = next((it for it in items if it["product_id"] == product_id), None)
    wanted = payload.quantity + (existing["quantity"] if existing else 0)
    if not has_stock(product, wanted):
        raise HTTPException(status_code=400, detail="Insufficient stock")

    if existing:
        existing["quantity"] = wanted
        existing["price"] = product["price"]
    else:
        items.append({"product_id": product_id, "quantity": payload.quantity, "price": product["price"]})
    return ok(save_cart_items(cart, items), "Product added to cart")


@app.put("/api/cart/items/{product_id}")
def update_cart_item(product_id: str, payload: CartUpdateIn, user=Depends(require_buyer)):
    if payload.quantity < 0:
        raise HTTPException(status_code=400, detail="Invalid quantity")

    product_id = cart_key(product_id)
    cart = find_cart(user)
    items = cart.get("items", [])
    if payload.quantity == 0:
        items = [it for it in items if it["product_id"] != product_id]
        return ok(save_cart_items(cart, items), "Cart updated")

    existing = next((it for it in items if it["product_id"] == product_id), None)
    if not existing:
        raise HTTPException(status_code=404, detail="Product not in cart")

    product = db["product"].find_one({"_id": oid(product_id, "Product not found")})
    if product and not has_stock(product, payload.quantity):
        raise HTTPException(status_code=400, detail="Insufficient stock")

    existing["quantity"] = payload.quantity
    return ok(save_cart_items(cart, items), "Cart updated")


@app.delete("/api/cart/items/{product_id}")
def remove_from_cart(product_id: str, user=Depends(require_buyer)):
    product_id = cart_key(product_id)
    cart = find_cart(user)
    items = [it for it in cart.get("items", []) if it["product_id"] != product_id]
    return ok(save_cart_items(cart, items), "Product removed from cart")


@app.delete("/api/cart/clear")
def clear_cart(user=Depends(require_buyer)):
    cart = db["cart"].find_one({"user_id": user["id"]})
    if cart:
        save_cart_items(cart, [])
    return ok(message="Cart cleared")


# Orders
@app.post("/api/orders", status_code=201)
def create_order(payload: OrderIn, user=Depends(require_buyer)):
    order = place_order(
        user,
        shipping_address=payload.shipping_address,
        billing_address=payload.billing_address,
        payment_method=payload.payment_method,
        notes=payload.notes,
    )
    return ok(serialize(order), "Order created successfully")


@app.get("/api/orders")
def list_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(get_current_user),
):
    query = visibility_filter(user)
    if status:
        query["status"] = status
    orders, pagination = paginate("order", query, page, limit)
    return ok({"orders": orders, "pagination": pagination})


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user)):
    order = get_order_or_404(order_id)
    if not can_view(order, user):
        raise HTTPException(status_code=403, detail="Not allowed to view this order")
    return ok(serialize(order))


@app.put("/api/orders/{order_id}/status", dependencies=[Depends(require_admin)])
def set_order_status(order_id: str, payload: StatusIn):
    return ok(serialize(update_order_status(order_id, payload.status)), "Order status updated")


@app.post("/api/orders/{order_id}/cancel")
def cancel(order_id: str, payload: Optional[CancelIn] = None, user=Depends(get_current_user)):
    reason = payload.reason if payload else None
    return ok(serialize(cancel_order(order_id, user, reason)), "Order cancelled successfully")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
