import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError, PyMongoError

import database
from auth import ADMIN_EMAILS, is_admin, new_api_token, hash_password, require_admin, verify_password
from database import create_document, doc_to_dict, ensure_indexes, find_by_id, get_db, get_documents, utcnow
from errors import InsufficientStock, NotFound, ValidationFailed
from notifications import Notifier
from orders import OrderService
from pricing import active_campaign
from schemas import (AuthPayload, BatchPlacementRequest, Campaign, Category, Gender, OrderStatus,
                     OrderUpdate, PlacementRequest, Product, ProductIn, ProductUpdate, StockUpdate, User)
from stock import StockLedger, stock_status

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_notifier = Notifier()


def get_notifier() -> Notifier:
    return _notifier


def get_clock():
    return utcnow


def order_service(background_tasks: BackgroundTasks, db=Depends(get_db),
                  notifier: Notifier = Depends(get_notifier), clock=Depends(get_clock)) -> OrderService:
    return OrderService(db, notifier=notifier, schedule=background_tasks.add_task, clock=clock)


# ------------------------- Error handlers -------------------------

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors: Dict[str, List[str]] = {}
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        errors.setdefault(".".join(loc) or "body", []).append(err.get("msg", "Invalid value"))
    return JSONResponse(status_code=422, content={"message": "Validation failed", "errors": errors})


@app.exception_handler(ValidationFailed)
async def validation_failed_handler(request: Request, exc: ValidationFailed):
    return JSONResponse(status_code=422, content={"message": exc.message, "errors": exc.errors})


@app.exception_handler(InsufficientStock)
async def insufficient_stock_handler(request: Request, exc: InsufficientStock):
    return JSONResponse(status_code=422, content={
        "message": exc.message, "size": exc.size, "available": exc.available,
    })


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"message": exc.message})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    checkout = request.method == "POST" and request.url.path.startswith("/api/orders")
    return JSONResponse(status_code=500, content={
        "message": "Failed to create order" if checkout else "Request failed",
        "error": "Internal server error",
    })


@app.get("/")
def read_root():
    return {"service": "storefront", "status": "running"}


# ------------------------- Products -------------------------

def _product_out(db, product: dict, storefront: bool = False) -> Dict[str, Any]:
    product_id = str(product["_id"])
    data = doc_to_dict(product)
    data.pop("holds", None)
    levels = StockLedger(db).levels(product_id)
    if storefront:
        # Sold-out sizes are hidden from the shop window.
        sizes = {size: {"quantity": level["quantity"]}
                 for size, level in levels.items() if level["available"]}
    else:
        sizes = levels
    data["sizeStocks"] = sizes or None
    if levels:
        data["total_stock"] = sum(level["quantity"] for level in levels.values())
    else:
        data["total_stock"] = int(product.get("stock_quantity") or 0)
    data["stock_status"] = stock_status(data["total_stock"])

    campaign = active_campaign(db, product_id, utcnow())
    if campaign is not None:
        data["campaign_price"] = campaign["price"]
        data["campaign_id"] = str(campaign["_id"])
        data["campaign_name"] = campaign["name"]
        data["campaign_end_date"] = campaign["end_date"].isoformat()
    return data


def _require_category(db, category_id: str) -> None:
    if find_by_id(db, "category", category_id) is None:
        raise ValidationFailed({"category_id": ["The selected category id is invalid."]})


def _check_price_above_campaigns(db, product_id: str, price: float) -> None:
    """A campaign that has not ended must stay cheaper than the product."""
    undercut = db["campaign"].find_one(
        {"product_id": product_id, "is_active": True, "end_date": {"$gte": utcnow()},
         "price": {"$gte": price}},
        sort=[("price", -1)],
    )
    if undercut is not None:
        raise ValidationFailed(
            {"price": [f"Price must be higher than the campaign price of €{undercut['price']:.2f}"]},
            message="Product price must stay above its campaign prices.",
        )


@app.get("/api/products")
def list_products(category: Optional[str] = None, gender: Optional[Gender] = None,
                  price_min: Optional[float] = None, price_max: Optional[float] = None,
                  limit: int = 20, db=Depends(get_db)) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if category:
        query["category_id"] = category
    if gender:
        query["gender"] = gender
    price: Dict[str, float] = {}
    if price_min is not None:
        price["$gte"] = price_min
    if price_max is not None:
        price["$lte"] = price_max
    if price:
        query["price"] = price
    cursor = db["product"].find(query).sort("created_at", -1).limit(min(max(limit, 1), 100))
    return [_product_out(db, p, storefront=True) for p in cursor]


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)) -> Dict[str, Any]:
    product = find_by_id(db, "product", product_id)
    if product is None:
        raise NotFound("Product")
    return {"success": True, "data": _product_out(db, product)}


@app.post("/api/products", status_code=201)
def create_product(payload: ProductIn, db=Depends(get_db), admin=Depends(require_admin)):
    _require_category(db, payload.category_id)
    product = Product(**payload.model_dump(exclude={"size_stocks"}))
    new_id = create_document(db, "product", product)
    StockLedger(db).set_levels(new_id, payload.size_stocks)
    logger.info("Product %s created by %s", new_id, admin["email"])
    return {"success": True, "data": _product_out(db, find_by_id(db, "product", new_id))}


@app.put("/api/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, db=Depends(get_db),
                   admin=Depends(require_admin)):
    product = find_by_id(db, "product", product_id)
    if product is None:
        raise NotFound("Product")
    changes = payload.model_dump(exclude_unset=True, exclude={"size_stocks"})
    if changes.get("category_id"):
        _require_category(db, changes["category_id"])
    if changes.get("price") is not None:
        _check_price_above_campaigns(db, product_id, changes["price"])
    if changes:
        changes["updated_at"] = utcnow()
        db["product"].update_one({"_id": product["_id"]}, {"$set": changes})
    if payload.size_stocks is not None:
        StockLedger(db).set_levels(product_id, payload.size_stocks)
    return {"success": True, "data": _product_out(db, find_by_id(db, "product", product_id))}


@app.put("/api/products/{product_id}/stock")
def update_product_stock(product_id: str, payload: StockUpdate, db=Depends(get_db),
                         admin=Depends(require_admin)):
    if find_by_id(db, "product", product_id) is None:
        raise NotFound("Product")
    levels = StockLedger(db).set_levels(product_id, payload.size_stocks)
    return {"success": True, "data": {"product_id": product_id, "sizeStocks": levels}}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, db=Depends(get_db), admin=Depends(require_admin)):
    product = find_by_id(db, "product", product_id)
    if product is None:
        raise NotFound("Product")
    db["product"].delete_one({"_id": product["_id"]})
    StockLedger(db).drop(product_id)
    db["campaign"].delete_many({"product_id": product_id})
    return {"success": True, "message": "Product deleted successfully"}


# ------------------------- Categories -------------------------

@app.get("/api/categories")
def list_categories(db=Depends(get_db)):
    return [doc_to_dict(c) for c in get_documents(db, "category", {"is_active": True})]


@app.post("/api/categories", status_code=201)
def create_category(payload: Category, db=Depends(get_db), admin=Depends(require_admin)):
    if get_documents(db, "category", {"slug": payload.slug}, limit=1):
        raise ValidationFailed({"slug": ["The slug has already been taken."]})
    new_id = create_document(db, "category", payload)
    return doc_to_dict(find_by_id(db, "category", new_id))


@app.put("/api/categories/{category_id}")
def update_category(category_id: str, payload: Category, db=Depends(get_db),
                    admin=Depends(require_admin)):
    category = find_by_id(db, "category", category_id)
    if category is None:
        raise NotFound("Category")
    db["category"].update_one({"_id": category["_id"]},
                              {"$set": {**payload.model_dump(), "updated_at": utcnow()}})
    return doc_to_dict(find_by_id(db, "category", category_id))


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, db=Depends(get_db), admin=Depends(require_admin)):
    category = find_by_id(db, "category", category_id)
    if category is None:
        raise NotFound("Category")
    db["category"].delete_one({"_id": category["_id"]})
    return {"message": "Category deleted successfully"}


# ------------------------- Campaigns -------------------------

def _check_campaign(db, payload: Campaign) -> None:
    product = find_by_id(db, "product", payload.product_id)
    if product is None:
        raise ValidationFailed({"product_id": ["Selected product does not exist."]})
    if payload.price >= product["price"]:
        raise ValidationFailed(
            {"price": [f"Campaign price must be lower than €{product['price']:.2f}"]},
            message="Campaign price must be lower than the original product price.",
        )


@app.get("/api/campaigns/active")
def active_campaigns(db=Depends(get_db)):
    now = utcnow()
    cursor = db["campaign"].find({
        "is_active": True, "start_date": {"$lte": now}, "end_date": {"$gte": now},
    }).sort("start_date", -1)
    out = []
    for campaign in cursor:
        data = doc_to_dict(campaign)
        product = find_by_id(db, "product", campaign["product_id"])
        data["product"] = _product_out(db, product, storefront=True) if product else None
        out.append(data)
    return {"data": out}


@app.get("/api/campaigns")
def list_campaigns(product_id: Optional[str] = None, db=Depends(get_db), admin=Depends(require_admin)):
    query = {"product_id": product_id} if product_id else {}
    cursor = db["campaign"].find(query).sort("created_at", -1)
    return {"campaigns": [doc_to_dict(c) for c in cursor]}


@app.post("/api/campaigns", status_code=201)
def create_campaign(payload: Campaign, db=Depends(get_db), admin=Depends(require_admin)):
    _check_campaign(db, payload)
    new_id = create_document(db, "campaign", payload)
    logger.info("Campaign %s created for product %s at %.2f", new_id, payload.product_id, payload.price)
    return {"message": "Campaign created successfully!",
            "campaign": doc_to_dict(find_by_id(db, "campaign", new_id))}


@app.get("/api/campaigns/{campaign_id}")
def get_campaign(campaign_id: str, db=Depends(get_db), admin=Depends(require_admin)):
    campaign = find_by_id(db, "campaign", campaign_id)
    if campaign is None:
        raise NotFound("Campaign")
    return {"campaign": doc_to_dict(campaign)}


@app.put("/api/campaigns/{campaign_id}")
def update_campaign(campaign_id: str, payload: Campaign, db=Depends(get_db),
                    admin=Depends(require_admin)):
    campaign = find_by_id(db, "campaign", campaign_id)
    if campaign is None:
        raise NotFound("Campaign")
    _check_campaign(db, payload)
    db["campaign"].update_one({"_id": campaign["_id"]},
                              {"$set": {**payload.model_dump(), "updated_at": utcnow()}})
    return {"message": "Campaign updated successfully!",
            "campaign": doc_to_dict(find_by_id(db, "campaign", campaign_id))}


@app.delete("/api/campaigns/{campaign_id}")
def delete_campaign(campaign_id: str, db=Depends(get_db), admin=Depends(require_admin)):
    campaign = find_by_id(db, "campaign", campaign_id)
    if campaign is None:
        raise NotFound("Campaign")
    db["campaign"].delete_one({"_id": campaign["_id"]})
    return {"message": "Campaign deleted successfully!"}


# ------------------------- Orders -------------------------

@app.post("/api/orders", status_code=201)
def create_order(payload: PlacementRequest, service: OrderService = Depends(order_service)):
    order = service.place_order(payload)
    return {"message": "Order created successfully", "order": doc_to_dict(order)}


@app.post("/api/orders/batch", status_code=201)
def create_batch_order(payload: BatchPlacementRequest, service: OrderService = Depends(order_service)):
    orders, total = service.place_batch(payload)
    return {
        "message": "Order created successfully",
        "batch_id": orders[0]["batch_id"],
        "total_amount": total,
        "orders": [doc_to_dict(o) for o in orders],
    }


@app.get("/api/orders")
def list_orders(status: Optional[OrderStatus] = None, country: Optional[str] = None,
                search: Optional[str] = None, page: int = 1,
                service: OrderService = Depends(order_service), admin=Depends(require_admin)):
    result = service.list_orders(status=status, country=country, search=search, page=page)
    result["orders"] = [doc_to_dict(o) for o in result["orders"]]
    return result


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, service: OrderService = Depends(order_service),
              admin=Depends(require_admin)):
    return doc_to_dict(service.get_order(order_id))


@app.put("/api/orders/{order_id}")
def update_order(order_id: str, payload: OrderUpdate, service: OrderService = Depends(order_service),
                 admin=Depends(require_admin)):
    order = service.update_order(order_id, payload)
    return {"message": "Order updated successfully", "order": doc_to_dict(order)}


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, service: OrderService = Depends(order_service),
                 admin=Depends(require_admin)):
    service.delete_order(order_id)
    return {"message": "Order deleted successfully"}


# ------------------------- Auth (Simple) -------------------------

@app.post("/api/users/register", status_code=201)
def register_user(data: AuthPayload, db=Depends(get_db)):
    email = data.email.lower()
    if get_documents(db, "user", {"email": email}, limit=1):
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User(name=data.name or email.split("@")[0], email=email,
                password_hash=hash_password(data.password), is_admin=email in ADMIN_EMAILS)
    try:
        uid = create_document(db, "user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    return {"user_id": uid, "email": email, "is_admin": user.is_admin}


@app.post("/api/users/login")
def login_user(data: AuthPayload, db=Depends(get_db)):
    user = db["user"].find_one({"email": data.email.lower()})
    if user is None or not verify_password(data.password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = new_api_token()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"api_token": token}})
    return {"email": user["email"], "token": token, "is_admin": is_admin(user)}


# ------------------------- Diagnostics -------------------------

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is not None:
        response["connection_status"] = "Connected"
        try:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except PyMongoError as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
