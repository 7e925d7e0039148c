import logging
import math
import os
import re
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

import jwt
from bson import ObjectId
from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

import lifecycle
from database import (
    as_naive_utc,
    create_document,
    db,
    get_document,
    get_documents,
    oid,
    serialize,
    serialize_many,
    update_document,
    utcnow,
)
from errors import (
    AuthenticationError,
    BusinessRuleError,
    InsufficientStockError,
    NotFoundError,
    OwnershipError,
    StoreOperationError,
    StorefrontError,
    ValidationError,
)
from schemas import (
    Address,
    Cart,
    CartItem,
    CartItemType,
    Order,
    OrderItem,
    OrderPayment,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
    PaymentStatus,
    UserProfile,
    Wishlist,
    WishlistItem,
)
from validation import clean_phone_number, normalize_address, validate_address, validate_profile

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# App setup
app = FastAPI(title="Storefront API", version="0.2.0")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Identity: tokens are issued by the external identity provider, we only verify them.
AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "dev-secret-change-me")
AUTH_JWT_ALGORITHM = os.getenv("AUTH_JWT_ALGORITHM", "HS256")
AUTH_JWT_AUDIENCE = os.getenv("AUTH_JWT_AUDIENCE")
AUTH_JWT_ISSUER = os.getenv("AUTH_JWT_ISSUER")
security = HTTPBearer(auto_error=False)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(
            token,
            AUTH_JWT_SECRET,
            algorithms=[AUTH_JWT_ALGORITHM],
            audience=AUTH_JWT_AUDIENCE,
            issuer=AUTH_JWT_ISSUER,
            options={"verify_aud": AUTH_JWT_AUDIENCE is not None},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> str:
    """Return the caller's user id (the token subject)."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("You must be logged in")
    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token")
    return str(user_id)


# Error handling
ERROR_STATUS_CODES: Dict[type, int] = {
    AuthenticationError: 401,
    OwnershipError: 403,
    NotFoundError: 404,
    ValidationError: 400,
    BusinessRuleError: 400,
    InsufficientStockError: 400,
    StoreOperationError: 500,
}


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        details.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
    return JSONResponse(
        status_code=400,
        content={"error": "Validation failed", "message": "Request is invalid", "details": details},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error in %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal Server Error", "message": "Something went wrong"},
    )


# Schemas (request)
class AddressIn(BaseModel):
    address_type: Optional[str] = None
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    landmark: Optional[str] = None
    is_default: Optional[bool] = None


class DefaultAddressIn(BaseModel):
    address_id: Optional[str] = None


class ProfileIn(BaseModel):
    username: Optional[str] = None
    phone_number: Optional[str] = None


class InitializeAssetsIn(BaseModel):
    user_id: Optional[str] = None


class CartItemIn(BaseModel):
    product_variant_id: Optional[str] = None
    quantity: int = 1
    item_type: CartItemType = "cart"


class CartQuantityIn(BaseModel):
    quantity: Optional[int] = None


class CartMoveIn(BaseModel):
    item_type: CartItemType


class WishlistItemIn(BaseModel):
    product_variant_id: Optional[str] = None


class CheckoutRequest(BaseModel):
    shipping_address_id: Optional[str] = None
    billing_address_id: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class ReturnItemIn(BaseModel):
    order_item_id: str
    quantity: int


class ReturnRequest(BaseModel):
    reason: Optional[str] = None
    items: List[ReturnItemIn] = []


class PaymentRequest(BaseModel):
    outcome: Literal["captured", "failed", "cod"]
    method: Optional[str] = None
    provider_payment_id: Optional[str] = None
    reason: Optional[str] = None


# Shared lookups
def _record_history(order_id: str, status: str, notes: str, changed_by: Optional[str]) -> None:
    """Append a status history row. Best effort: the order write already happened."""
    try:
        create_document("order_status_history", OrderStatusHistory(
            order_id=order_id, status=status, notes=notes, changed_by=changed_by,
        ))
    except Exception:
        logger.warning("Could not write status history for order %s (%s)", order_id, status, exc_info=True)


def _owned_order(order_id: str, user_id: str) -> dict:
    _id = oid(order_id)
    order = db["order"].find_one({"_id": _id, "user_id": user_id}) if _id else None
    if not order:
        raise NotFoundError("Order")
    return order


def _owned_address(address_id: Optional[str], user_id: str) -> Optional[dict]:
    _id = oid(address_id)
    if _id is None:
        return None
    return db["address"].find_one({"_id": _id, "user_id": user_id})


def _variant_with_product(variant_id: Any) -> Optional[dict]:
    """Variant document with its product embedded under "product"."""
    _id = oid(variant_id)
    variant = db["product_variant"].find_one({"_id": _id}) if _id else None
    if not variant:
        return None
    variant = serialize(variant)
    product = db["product"].find_one({"_id": oid(variant.get("product_id"))})
    variant["product"] = serialize(product)
    variant["final_price"] = lifecycle.unit_price(variant, product)
    return variant


def _available_variant(variant_id: str) -> dict:
    variant = _variant_with_product(variant_id)
    if not variant or not variant.get("is_available"):
        raise NotFoundError("Product variant", "Product variant not found or unavailable")
    return variant


def _get_or_create(collection: str, model, user_id: str) -> dict:
    doc = db[collection].find_one({"user_id": user_id})
    if doc:
        return doc
    new_id = create_document(collection, model(user_id=user_id))
    return db[collection].find_one({"_id": ObjectId(new_id)})


def _release_stock(lines) -> None:
    for variant_id, qty in lines:
        db["product_variant"].update_one({"_id": oid(variant_id)}, {"$inc": {"stock_quantity": qty}})


# Health and helpers
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Profile
@app.get("/api/account/profile")
def get_profile(user_id: str = Depends(get_current_user)):
    profile = db["user_profile"].find_one({"user_id": user_id})
    return {"profile": serialize(profile), "exists": profile is not None}


@app.patch("/api/account/profile")
def update_profile(payload: ProfileIn, user_id: str = Depends(get_current_user)):
    data = payload.model_dump(exclude_unset=True)
    errors = validate_profile(data.get("username"), data.get("phone_number"))
    if errors:
        raise ValidationError(errors)

    changes: Dict[str, Any] = {}
    if "username" in data:
        changes["username"] = (data["username"] or "").strip() or None
    if "phone_number" in data:
        changes["phone_number"] = clean_phone_number(data["phone_number"] or "") or None

    _get_or_create("user_profile", UserProfile, user_id)
    update_document("user_profile", {"user_id": user_id}, changes)
    profile = db["user_profile"].find_one({"user_id": user_id})
    return {"profile": serialize(profile), "message": "Profile updated successfully"}


@app.post("/api/account/profile/initialize")
def initialize_profile(user_id: str = Depends(get_current_user)):
    existing = db["user_profile"].find_one({"user_id": user_id})
    if existing:
        return {"profile": serialize(existing), "is_new": False, "message": "Profile already exists"}
    profile = _get_or_create("user_profile", UserProfile, user_id)
    return {"profile": serialize(profile), "is_new": True, "message": "Profile created successfully"}


@app.post("/api/user/initialize-assets")
def initialize_assets(payload: Optional[InitializeAssetsIn] = None, user_id: str = Depends(get_current_user)):
    if payload and payload.user_id and payload.user_id != user_id:
        raise OwnershipError("Unauthorized - user mismatch")
    cart = _get_or_create("cart", Cart, user_id)
    wishlist = _get_or_create("wishlist", Wishlist, user_id)
    logger.info("Initialized assets for user %s", user_id)
    return {
        "cart_id": str(cart["_id"]),
        "wishlist_id": str(wishlist["_id"]),
        "timestamp": utcnow(),
    }


# Addresses
def _unset_defaults(user_id: str, address_type: str, exclude_id: Optional[ObjectId] = None) -> None:
    filt: Dict[str, Any] = {
        "user_id": user_id,
        "is_default": True,
        "address_type": {"$in": lifecycle.default_scope(address_type)},
    }
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    db["address"].update_many(filt, {"$set": {"is_default": False, "updated_at": utcnow()}})


def _promote_successor(user_id: str, address_type: str) -> None:
    """Newest remaining address in scope becomes default, skipping any that would overlap another default."""
    candidates = get_documents(
        "address",
        {"user_id": user_id, "address_type": {"$in": lifecycle.default_scope(address_type)}},
        sort=[("created_at", -1)],
    )
    for candidate in candidates:
        clash = db["address"].count_documents({
            "user_id": user_id,
            "is_default": True,
            "address_type": {"$in": lifecycle.default_scope(candidate["address_type"])},
        })
        if not clash:
            update_document("address", {"_id": candidate["_id"]}, {"is_default": True})
            return


@app.get("/api/account/addresses")
def list_addresses(user_id: str = Depends(get_current_user)):
    docs = get_documents("address", {"user_id": user_id}, sort=[("is_default", -1), ("created_at", -1)])
    return {"addresses": serialize_many(docs), "count": len(docs)}


@app.post("/api/account/addresses", status_code=201)
def create_address(payload: AddressIn, user_id: str = Depends(get_current_user)):
    data = payload.model_dump()
    errors = validate_address(data)
    if errors:
        raise ValidationError(errors)

    is_first = db["address"].count_documents({"user_id": user_id}) == 0
    should_default = bool(data.get("is_default")) or is_first
    if should_default:
        _unset_defaults(user_id, data["address_type"])

    fields = normalize_address(data)
    fields["is_default"] = should_default
    new_id = create_document("address", Address(user_id=user_id, **fields))
    address = db["address"].find_one({"_id": ObjectId(new_id)})
    return {"address": serialize(address), "message": "Address created successfully"}


@app.patch("/api/account/addresses/default")
def set_default_address(payload: DefaultAddressIn, user_id: str = Depends(get_current_user)):
    if not payload.address_id:
        raise ValidationError(["Address ID is required"])
    address = _owned_address(payload.address_id, user_id)
    if not address:
        raise NotFoundError("Address")

    _unset_defaults(user_id, address["address_type"], exclude_id=address["_id"])
    update_document("address", {"_id": address["_id"]}, {"is_default": True})
    updated = db["address"].find_one({"_id": address["_id"]})
    return {"address": serialize(updated), "message": "Default address updated successfully"}


@app.get("/api/account/addresses/{address_id}")
def get_address(address_id: str, user_id: str = Depends(get_current_user)):
    address = _owned_address(address_id, user_id)
    if not address:
        raise NotFoundError("Address")
    return {"address": serialize(address)}


@app.patch("/api/account/addresses/{address_id}")
def update_address(address_id: str, payload: AddressIn, user_id: str = Depends(get_current_user)):
    existing = _owned_address(address_id, user_id)
    if not existing:
        raise NotFoundError("Address")

    data = payload.model_dump(exclude_unset=True)
    errors = validate_address(data, partial=True)
    if errors:
        raise ValidationError(errors)

    address_type = data.get("address_type") or existing["address_type"]
    # A default that changes type must still be the only default in its new scope.
    keeps_default = existing.get("is_default") and data.get("is_default") is not False and "address_type" in data
    if data.get("is_default") is True or keeps_default:
        _unset_defaults(user_id, address_type, exclude_id=existing["_id"])

    changes = normalize_address(data)
    if changes:
        update_document("address", {"_id": existing["_id"], "user_id": user_id}, changes)
    updated = db["address"].find_one({"_id": existing["_id"]})
    return {"address": serialize(updated), "message": "Address updated successfully"}


@app.delete("/api/account/addresses/{address_id}")
def delete_address(address_id: str, user_id: str = Depends(get_current_user)):
    address = _owned_address(address_id, user_id)
    if not address:
        raise NotFoundError("Address")

    in_use = db["order"].count_documents({
        "user_id": user_id,
        "order_status": {"$in": list(lifecycle.ACTIVE_ORDER_STATUSES)},
        "$or": [{"shipping_address_id": address_id}, {"billing_address_id": address_id}],
    })
    if in_use:
        raise BusinessRuleError("This address is associated with active orders", error="Cannot delete address")

    db["address"].delete_one({"_id": address["_id"], "user_id": user_id})

    if address.get("is_default"):
        _promote_successor(user_id, address["address_type"])
    return {"message": "Address deleted successfully"}


# Catalog
@app.get("/api/categories")
def list_categories():
    docs = get_documents("category", {"is_active": True}, sort=[("name", 1)])
    return {"categories": serialize_many(docs)}


@app.get("/api/products")
def list_products(category: Optional[str] = None, page: int = Query(1, ge=1), page_size: int = Query(12, ge=1, le=100)):
    filt: Dict[str, Any] = {"is_active": True}
    if category:
        cat = db["category"].find_one({"slug": category}) or db["category"].find_one({"_id": oid(category)})
        filt["category_id"] = str(cat["_id"]) if cat else category

    total = db["product"].count_documents(filt)
    cursor = db["product"].find(filt).sort("created_at", -1).skip((page - 1) * page_size).limit(page_size)
    return {"items": serialize_many(cursor), "page": page, "page_size": page_size, "total": total}


@app.get("/api/products/{slug}")
def get_product(slug: str):
    product = db["product"].find_one({"slug": slug, "is_active": True})
    if not product:
        raise NotFoundError("Product")
    product_id = str(product["_id"])
    variants = []
    for v in db["product_variant"].find({"product_id": product_id}):
        v = serialize(v)
        v["final_price"] = lifecycle.unit_price(v, product)
        variants.append(v)
    images = get_documents("product_image", {"product_id": product_id}, sort=[("display_order", 1)])
    category = db["category"].find_one({"_id": oid(product.get("category_id"))})

    out = serialize(product)
    out.update({"category": serialize(category), "variants": variants, "images": serialize_many(images)})
    return out


# Search
SIZE_ORDER = ["XS", "S", "M", "L", "XL", "XXL", "XXXL"]


def _split(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    parts = [p.strip() for p in value.split(",") if p.strip()]
    return parts or None


def _size_key(size: str):
    return SIZE_ORDER.index(size) if size in SIZE_ORDER else len(SIZE_ORDER)


def search_products(q: Optional[str] = None, category_ids: Optional[List[str]] = None,
                    sizes: Optional[List[str]] = None, colors: Optional[List[str]] = None,
                    min_price: Optional[float] = None, max_price: Optional[float] = None,
                    in_stock_only: bool = True):
    """Products with at least one variant passing every filter.

    Returns (results, aggregations) over the whole matching set.
    """
    product_filter: Dict[str, Any] = {"is_active": True}
    if q:
        pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
        product_filter["$or"] = [{"name": pattern}, {"description": pattern}]
    if category_ids:
        product_filter["category_id"] = {"$in": category_ids}
    products = {str(p["_id"]): p for p in db["product"].find(product_filter).sort("name", 1)}
    if not products:
        return [], []

    variant_filter: Dict[str, Any] = {"product_id": {"$in": list(products)}}
    if sizes:
        variant_filter["size"] = {"$in": sizes}
    if colors:
        variant_filter["color"] = {"$in": colors}
    if in_stock_only:
        variant_filter["is_available"] = True
        variant_filter["stock_quantity"] = {"$gt": 0}

    matched = defaultdict(list)
    for v in db["product_variant"].find(variant_filter):
        price = lifecycle.unit_price(v, products[v["product_id"]])
        if min_price is not None and price < min_price:
            continue
        if max_price is not None and price > max_price:
            continue
        matched[v["product_id"]].append((v, price))

    results = []
    facets = {"category": defaultdict(int), "size": defaultdict(int), "color": defaultdict(int)}
    for product_id, product in products.items():
        hits = matched.get(product_id)
        if not hits:
            continue
        prices = [price for _, price in hits]
        product_sizes = sorted({v["size"] for v, _ in hits}, key=_size_key)
        product_colors = sorted({v["color"] for v, _ in hits})
        item = serialize(product)
        item.update({
            "min_price": min(prices),
            "max_price": max(prices),
            "available_sizes": product_sizes,
            "available_colors": product_colors,
        })
        results.append(item)
        facets["category"][product.get("category_id")] += 1
        for s in product_sizes:
            facets["size"][s] += 1
        for c in product_colors:
            facets["color"][c] += 1

    aggregations = [
        {"type": kind, "value": value, "count": count}
        for kind, counts in facets.items()
        for value, count in sorted(counts.items(), key=lambda kv: (-kv[1], str(kv[0])))
    ]
    return results, aggregations


@app.get("/api/search")
def search(q: Optional[str] = None, categories: Optional[str] = None, sizes: Optional[str] = None,
           colors: Optional[str] = None, minPrice: Optional[float] = None, maxPrice: Optional[float] = None,
           page: int = Query(1, ge=1), limit: int = Query(24, ge=1, le=100), inStockOnly: Optional[str] = None,
           user_id: str = Depends(get_current_user)):
    results, aggregations = search_products(
        q=q or None,
        category_ids=_split(categories),
        sizes=_split(sizes),
        colors=_split(colors),
        min_price=minPrice,
        max_price=maxPrice,
        in_stock_only=inStockOnly != "false",
    )
    total = len(results)
    offset = (page - 1) * limit
    return {
        "products": results[offset:offset + limit],
        "pagination": {"total": total, "page": page, "limit": limit, "totalPages": math.ceil(total / limit)},
        "aggregations": aggregations,
    }


@app.get("/api/search/suggestions")
def search_suggestions(q: Optional[str] = None, user_id: str = Depends(get_current_user)):
    if not q or len(q.strip()) < 2:
        return {"suggestions": []}
    limit = 5
    pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
    try:
        suggestions = [
            {"text": p["name"], "type": "product", "slug": p.get("slug")}
            for p in db["product"].find({"is_active": True, "name": pattern}).sort("name", 1).limit(limit)
        ]
        if len(suggestions) < limit:
            for c in db["category"].find({"is_active": True, "name": pattern}).sort("name", 1).limit(limit - len(suggestions)):
                suggestions.append({"text": c["name"], "type": "category", "slug": c.get("slug")})
    except Exception:
        logger.exception("Suggestions lookup failed for %r", q)
        return {"suggestions": []}
    return {"suggestions": suggestions}


# Cart
def _cart_item_out(item: dict) -> dict:
    out = serialize(item)
    out["product_variant"] = _variant_with_product(item.get("product_variant_id"))
    return out


def _owned_cart_item(item_id: str, user_id: str) -> dict:
    _id = oid(item_id)
    item = db["cart_item"].find_one({"_id": _id}) if _id else None
    if not item:
        raise NotFoundError("Cart item")
    cart = db["cart"].find_one({"_id": oid(item.get("cart_id"))})
    if not cart or cart.get("user_id") != user_id:
        raise OwnershipError("Unauthorized - cart ownership mismatch")
    return item


def cart_summary(items: List[dict]) -> dict:
    """Totals over active lines; saved-for-later lines are only counted."""
    active = [i for i in items if i.get("item_type") == "cart" and i.get("product_variant")]
    summary = lifecycle.price_summary((i["product_variant"]["final_price"], i["quantity"]) for i in active)
    summary["saved_count"] = sum(1 for i in items if i.get("item_type") == "save_for_later")
    return summary


@app.get("/api/cart")
def get_cart(user_id: str = Depends(get_current_user)):
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        return {"cart": None, "cartItems": [], "summary": cart_summary([])}
    items = [_cart_item_out(i) for i in get_documents("cart_item", {"cart_id": str(cart["_id"])}, sort=[("created_at", 1)])]
    return {"cart": serialize(cart), "cartItems": items, "summary": cart_summary(items)}


@app.post("/api/cart", status_code=201)
def add_to_cart(payload: CartItemIn, user_id: str = Depends(get_current_user)):
    if not payload.product_variant_id:
        raise ValidationError(["Product variant ID is required"])
    if payload.quantity < 1:
        raise ValidationError(["Quantity must be at least 1"])

    variant = _available_variant(payload.product_variant_id)
    stock = int(variant.get("stock_quantity") or 0)
    if stock < payload.quantity:
        raise InsufficientStockError(stock)

    cart = _get_or_create("cart", Cart, user_id)
    key = {
        "cart_id": str(cart["_id"]),
        "product_variant_id": variant["id"],
        "item_type": payload.item_type,
    }
    existing = db["cart_item"].find_one(key)
    if existing:
        new_quantity = existing["quantity"] + payload.quantity
        if stock < new_quantity:
            raise InsufficientStockError(stock, "Insufficient stock for updated quantity")
        update_document("cart_item", {"_id": existing["_id"]}, {"quantity": new_quantity})
        item_id = existing["_id"]
    else:
        item_id = ObjectId(create_document("cart_item", CartItem(quantity=payload.quantity, **key)))

    item = db["cart_item"].find_one({"_id": item_id})
    return {"message": "Item added to cart successfully", "cartItem": _cart_item_out(item)}


@app.delete("/api/cart")
def clear_cart(user_id: str = Depends(get_current_user)):
    cart = db["cart"].find_one({"user_id": user_id})
    removed = 0
    if cart:
        removed = db["cart_item"].delete_many({"cart_id": str(cart["_id"]), "item_type": "cart"}).deleted_count
    return {"message": "Cart cleared", "removed": removed}


@app.put("/api/cart/{item_id}")
def update_cart_item(item_id: str, payload: CartQuantityIn, user_id: str = Depends(get_current_user)):
    if not payload.quantity or payload.quantity < 1:
        raise ValidationError(["Quantity must be at least 1"])
    item = _owned_cart_item(item_id, user_id)

    variant = _variant_with_product(item["product_variant_id"]) or {}
    stock = int(variant.get("stock_quantity") or 0)
    if stock < payload.quantity:
        raise InsufficientStockError(stock)

    update_document("cart_item", {"_id": item["_id"]}, {"quantity": payload.quantity})
    updated = db["cart_item"].find_one({"_id": item["_id"]})
    return {"message": "Cart item updated successfully", "cartItem": _cart_item_out(updated)}


@app.post("/api/cart/{item_id}/move")
def move_cart_item(item_id: str, payload: CartMoveIn, user_id: str = Depends(get_current_user)):
    item = _owned_cart_item(item_id, user_id)
    if item.get("item_type") == payload.item_type:
        return {"message": "Item already there", "cartItem": _cart_item_out(item)}

    target = db["cart_item"].find_one({
        "cart_id": item["cart_id"],
        "product_variant_id": item["product_variant_id"],
        "item_type": payload.item_type,
    })
    if target:
        variant = _variant_with_product(item["product_variant_id"]) or {}
        stock = int(variant.get("stock_quantity") or 0)
        merged = target["quantity"] + item["quantity"]
        if stock < merged:
            raise InsufficientStockError(stock, "Insufficient stock for updated quantity")
        update_document("cart_item", {"_id": target["_id"]}, {"quantity": merged})
        db["cart_item"].delete_one({"_id": item["_id"]})
        moved_id = target["_id"]
    else:
        update_document("cart_item", {"_id": item["_id"]}, {"item_type": payload.item_type})
        moved_id = item["_id"]

    moved = db["cart_item"].find_one({"_id": moved_id})
    return {"message": "Cart item moved successfully", "cartItem": _cart_item_out(moved)}


@app.delete("/api/cart/{item_id}")
def remove_cart_item(item_id: str, user_id: str = Depends(get_current_user)):
    item = _owned_cart_item(item_id, user_id)
    db["cart_item"].delete_one({"_id": item["_id"]})
    return {"message": "Cart item removed successfully"}


# Wishlist
def _wishlist_item_out(item: dict) -> dict:
    out = serialize(item)
    variant = _variant_with_product(item.get("product_variant_id"))
    if variant:
        variant["product_images"] = serialize_many(
            get_documents("product_image", {"variant_id": variant["id"]}, sort=[("display_order", 1)])
        )
    out["product_variant"] = variant
    return out


@app.get("/api/wishlist")
def get_wishlist(user_id: str = Depends(get_current_user)):
    wishlist = db["wishlist"].find_one({"user_id": user_id})
    if not wishlist:
        return {"wishlist": None, "wishlistItems": []}
    items = get_documents("wishlist_item", {"wishlist_id": str(wishlist["_id"])}, sort=[("created_at", -1)])
    return {"wishlist": serialize(wishlist), "wishlistItems": [_wishlist_item_out(i) for i in items]}


@app.post("/api/wishlist", status_code=201)
def add_to_wishlist(payload: WishlistItemIn, response: Response, user_id: str = Depends(get_current_user)):
    if not payload.product_variant_id:
        raise ValidationError(["Product variant ID is required"])
    variant = _available_variant(payload.product_variant_id)

    wishlist = _get_or_create("wishlist", Wishlist, user_id)
    key = {"wishlist_id": str(wishlist["_id"]), "product_variant_id": variant["id"]}
    existing = db["wishlist_item"].find_one(key)
    if existing:
        response.status_code = 200
        return {"message": "Item already in wishlist", "wishlistItem": _wishlist_item_out(existing)}

    new_id = create_document("wishlist_item", WishlistItem(**key))
    item = db["wishlist_item"].find_one({"_id": ObjectId(new_id)})
    return {"message": "Item added to wishlist successfully", "wishlistItem": _wishlist_item_out(item)}


@app.delete("/api/wishlist/{item_id}")
def remove_wishlist_item(item_id: str, user_id: str = Depends(get_current_user)):
    _id = oid(item_id)
    item = db["wishlist_item"].find_one({"_id": _id}) if _id else None
    if not item:
        raise NotFoundError("Wishlist item")
    wishlist = db["wishlist"].find_one({"_id": oid(item.get("wishlist_id"))})
    if not wishlist or wishlist.get("user_id") != user_id:
        raise OwnershipError("Unauthorized")
    db["wishlist_item"].delete_one({"_id": _id})
    return {"message": "Item removed from wishlist successfully"}


# Checkout & Orders
def _insert_order_items(docs: List[dict]) -> None:
    db["order_item"].insert_many(docs)


def _order_details(order: dict) -> dict:
    order_id = str(order["_id"])
    items = get_documents("order_item", {"order_id": order_id}, sort=[("created_at", 1)])
    history = get_documents("order_status_history", {"order_id": order_id}, sort=[("created_at", 1)])
    payments = get_documents("order_payment", {"order_id": order_id}, sort=[("created_at", -1)])
    out = serialize(order)
    out.update({
        "order_items": serialize_many(items),
        "shipping_address": serialize(get_document("address", {"_id": oid(order.get("shipping_address_id"))})),
        "billing_address": serialize(get_document("address", {"_id": oid(order.get("billing_address_id"))})),
        "status_history": serialize_many(history),
        "payments": serialize_many(payments),
        "can_cancel": lifecycle.can_cancel(order),
        "can_return": lifecycle.can_return(order, utcnow()),
        "return_window_days": lifecycle.RETURN_WINDOW_DAYS,
    })
    return out


def _priced_cart_lines(user_id: str):
    cart = db["cart"].find_one({"user_id": user_id})
    lines = get_documents("cart_item", {"cart_id": str(cart["_id"]), "item_type": "cart"},
                          sort=[("created_at", 1)]) if cart else []
    priced = []
    for line in lines:
        variant = _variant_with_product(line["product_variant_id"])
        if not variant or not variant.get("is_available"):
            raise NotFoundError("Product variant", "Product variant not found or unavailable")
        priced.append((line, variant))
    return cart, priced


@app.get("/api/checkout/summary")
def checkout_summary(user_id: str = Depends(get_current_user)):
    _, priced = _priced_cart_lines(user_id)
    return lifecycle.price_summary((v["final_price"], line["quantity"]) for line, v in priced)


@app.post("/api/checkout", status_code=201)
def checkout(payload: CheckoutRequest, user_id: str = Depends(get_current_user)):
    missing = []
    if not payload.shipping_address_id:
        missing.append("Shipping address is required")
    if not payload.billing_address_id:
        missing.append("Billing address is required")
    if not payload.payment_method:
        missing.append("Payment method is required")
    if missing:
        raise ValidationError(missing)

    cart, priced = _priced_cart_lines(user_id)
    if not priced:
        raise BusinessRuleError("Cart is empty")
    if not _owned_address(payload.shipping_address_id, user_id):
        raise BusinessRuleError("Invalid shipping address")
    if not _owned_address(payload.billing_address_id, user_id):
        raise BusinessRuleError("Invalid billing address")

    summary = lifecycle.price_summary((v["final_price"], line["quantity"]) for line, v in priced)

    # Conditional decrement: a concurrent checkout cannot take the same last unit.
    reserved = []
    for line, variant in priced:
        qty = line["quantity"]
        result = db["product_variant"].update_one(
            {"_id": oid(variant["id"]), "stock_quantity": {"$gte": qty}},
            {"$inc": {"stock_quantity": -qty}},
        )
        if result.modified_count == 0:
            _release_stock(reserved)
            current = db["product_variant"].find_one({"_id": oid(variant["id"])}) or {}
            raise InsufficientStockError(int(current.get("stock_quantity") or 0))
        reserved.append((variant["id"], qty))

    method = payload.payment_method
    order = Order(
        order_number=lifecycle.generate_order_number(),
        user_id=user_id,
        shipping_address_id=payload.shipping_address_id,
        billing_address_id=payload.billing_address_id,
        subtotal=summary["subtotal"],
        shipping_cost=summary["shipping_cost"],
        tax_amount=summary["tax_amount"],
        discount_amount=summary["discount_amount"],
        total_amount=summary["total_amount"],
        currency=lifecycle.CURRENCY,
        payment_method=method,
        payment_provider=lifecycle.payment_provider_for(method),
        payment_status=lifecycle.initial_payment_status(method),
        order_status="pending",
        notes=payload.notes,
    )
    try:
        order_id = create_document("order", order)
    except Exception:
        _release_stock(reserved)
        raise

    now = utcnow()
    item_docs = []
    for line, variant in priced:
        product = variant.get("product") or {}
        price = variant["final_price"]
        item = OrderItem(
            order_id=order_id,
            product_variant_id=variant["id"],
            product_name=product.get("name") or "Unknown Product",
            variant_sku=variant.get("sku"),
            size=variant.get("size"),
            color=variant.get("color"),
            price_at_purchase=price,
            quantity=line["quantity"],
            subtotal=round(price * line["quantity"], 2),
        ).model_dump()
        item.update({"created_at": now, "updated_at": now})
        item_docs.append(item)

    try:
        _insert_order_items(item_docs)
    except Exception as e:
        logger.error("Order items insert failed for %s, rolling back order", order_id, exc_info=True)
        db["order"].delete_one({"_id": ObjectId(order_id)})
        _release_stock(reserved)
        raise StoreOperationError("Failed to create order items") from e

    _record_history(order_id, "pending", "Order created successfully", "system")

    try:
        db["cart_item"].delete_many({"cart_id": str(cart["_id"]), "item_type": "cart"})
    except Exception:
        logger.warning("Could not clear cart %s after order %s", cart["_id"], order_id, exc_info=True)

    logger.info("Order %s created for user %s (total %s)", order.order_number, user_id, order.total_amount)
    created = db["order"].find_one({"_id": ObjectId(order_id)})
    return {
        "message": "Order created successfully",
        "order": _order_details(created),
        "requires_payment": method != "cod",
    }


def _thumbnail_for(order_id: str) -> Optional[str]:
    first = db["order_item"].find_one({"order_id": order_id}, sort=[("created_at", 1)])
    if not first:
        return None
    image = db["product_image"].find_one(
        {"variant_id": first["product_variant_id"]}, sort=[("is_primary", -1), ("display_order", 1)],
    )
    return image.get("object_path") if image else None


@app.get("/api/account/order")
def list_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                status: Optional[OrderStatus] = None, payment_status: Optional[PaymentStatus] = None,
                date_from: Optional[str] = None, date_to: Optional[str] = None,
                user_id: str = Depends(get_current_user)):
    filt: Dict[str, Any] = {"user_id": user_id}
    if status:
        filt["order_status"] = status
    if payment_status:
        filt["payment_status"] = payment_status
    created: Dict[str, Any] = {}
    if date_from:
        created["$gte"] = _parse_date(date_from, "date_from")
    if date_to:
        upper = _parse_date(date_to, "date_to")
        if _is_bare_date(date_to):
            # A plain date includes that whole day.
            created["$lt"] = upper + timedelta(days=1)
        else:
            created["$lte"] = upper
    if created:
        filt["created_at"] = created

    total = db["order"].count_documents(filt)
    cursor = db["order"].find(filt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    summaries = []
    for o in cursor:
        order_id = str(o["_id"])
        summaries.append({
            "id": order_id,
            "order_number": o.get("order_number"),
            "created_at": o.get("created_at"),
            "total_amount": o.get("total_amount"),
            "order_status": o.get("order_status"),
            "payment_status": o.get("payment_status"),
            "item_count": db["order_item"].count_documents({"order_id": order_id}),
            "thumbnail_url": _thumbnail_for(order_id),
        })
    return {
        "success": True,
        "data": {
            "data": summaries,
            "total": total,
            "page": page,
            "per_page": limit,
            "total_pages": math.ceil(total / limit),
        },
    }


def _parse_date(value: str, field: str) -> datetime:
    try:
        return as_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        raise ValidationError([f"{field} must be an ISO-8601 date"])


def _is_bare_date(value: str) -> bool:
    return len(value.strip()) == 10 and "T" not in value


@app.get("/api/account/order/{order_id}")
def get_order(order_id: str, user_id: str = Depends(get_current_user)):
    order = _owned_order(order_id, user_id)
    return {"success": True, "data": _order_details(order)}


@app.get("/api/account/order/{order_id}/track")
def track_order(order_id: str, user_id: str = Depends(get_current_user)):
    order = _owned_order(order_id, user_id)
    history = get_documents("order_status_history", {"order_id": order_id}, sort=[("created_at", 1)])
    estimate = lifecycle.estimate_delivery(order, history)
    return {
        "success": True,
        "data": {
            "order": _order_details(order),
            "status_history": serialize_many(history),
            "current_status": order.get("order_status"),
            "estimated_delivery": estimate.isoformat() if estimate else None,
        },
    }


@app.post("/api/account/order/{order_id}/cancel")
def cancel_order(order_id: str, payload: CancelRequest, user_id: str = Depends(get_current_user)):
    reason = (payload.reason or "").strip()
    if not reason:
        raise ValidationError(["Cancellation reason is required"])
    order = _owned_order(order_id, user_id)
    lifecycle.ensure_cancellable(order)

    # Matching on the status we checked keeps a concurrent transition from being overwritten.
    matched = update_document(
        "order",
        {"_id": order["_id"], "order_status": order["order_status"]},
        {"order_status": "cancelled"},
    )
    if not matched:
        raise BusinessRuleError("This order cannot be cancelled")

    _record_history(order_id, "cancelled", f"Cancelled by user: {reason}", user_id)
    _release_stock(
        (i["product_variant_id"], i["quantity"]) for i in get_documents("order_item", {"order_id": order_id})
    )

    payment_status = order.get("payment_status")
    if lifecycle.needs_refund(order):
        # Status flip only; no gateway refund is issued from here.
        db["order_payment"].update_many(
            {"order_id": order_id, "status": "captured"},
            {"$set": {"status": "refunded", "updated_at": utcnow()}},
        )
        update_document("order", {"_id": order["_id"]}, {"payment_status": "refunded"})
        payment_status = "refunded"
        logger.info("Order %s cancelled with refund flagged", order_id)
    else:
        logger.info("Order %s cancelled", order_id)

    return {
        "success": True,
        "data": {"message": "Order cancelled successfully", "payment_status": payment_status},
        "message": "Order has been cancelled and refund initiated if applicable",
    }


@app.post("/api/account/order/{order_id}/return")
def return_order(order_id: str, payload: ReturnRequest, user_id: str = Depends(get_current_user)):
    reason = (payload.reason or "").strip()
    if not reason:
        raise ValidationError(["Return reason is required"])
    if not payload.items:
        raise ValidationError(["At least one item must be selected for return"])

    order = _owned_order(order_id, user_id)
    lifecycle.ensure_returnable(order, utcnow())
    requested = [i.model_dump() for i in payload.items]
    order_items = serialize_many(get_documents("order_item", {"order_id": order_id}))
    lifecycle.validate_return_items(requested, order_items)

    matched = update_document(
        "order",
        {"_id": order["_id"], "order_status": "delivered"},
        {"order_status": "returned", "notes": lifecycle.return_notes(reason, requested)},
    )
    if not matched:
        raise BusinessRuleError("Only delivered orders can be returned")

    _record_history(order_id, "returned", f"Return requested by user: {reason}", user_id)
    logger.info("Return requested for order %s", order_id)
    return {
        "success": True,
        "data": {
            "message": "Return request submitted successfully",
            "return_id": f"ret_{int(time.time() * 1000)}",
        },
        "message": "Return request has been submitted. Our team will contact you soon.",
    }


@app.post("/api/account/order/{order_id}/payment", status_code=201)
def record_payment(order_id: str, payload: PaymentRequest, user_id: str = Depends(get_current_user)):
    order = _owned_order(order_id, user_id)
    changes, record_status, history_status, note = lifecycle.payment_outcome(order, payload.outcome, payload.reason)

    if payload.outcome == "captured" and payload.provider_payment_id:
        changes["transaction_id"] = payload.provider_payment_id

    matched = update_document(
        "order",
        {"_id": order["_id"], "order_status": order["order_status"], "payment_status": order.get("payment_status")},
        changes,
    )
    if not matched:
        raise BusinessRuleError("Order changed while recording payment, please retry")

    is_cod = payload.outcome == "cod"
    create_document("order_payment", OrderPayment(
        order_id=order_id,
        provider="cod" if is_cod else (order.get("payment_provider") or "razorpay"),
        provider_payment_id=payload.provider_payment_id,
        method="cod" if is_cod else (payload.method or order.get("payment_method") or "card"),
        amount=order.get("total_amount") or 0,
        currency=order.get("currency") or lifecycle.CURRENCY,
        status=record_status,
    ))

    _record_history(order_id, history_status, note, user_id)
    logger.info("Payment %s recorded for order %s", payload.outcome, order_id)
    updated = db["order"].find_one({"_id": order["_id"]})
    return {"success": True, "data": _order_details(updated)}


@app.get("/api/account/order/{order_id}/payments")
def list_payments(order_id: str, user_id: str = Depends(get_current_user)):
    _owned_order(order_id, user_id)
    payments = get_documents("order_payment", {"order_id": order_id}, sort=[("created_at", -1)])
    return {"success": True, "data": serialize_many(payments)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
