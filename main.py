import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as ModelValidationError
from starlette.exceptions import HTTPException

from config import LOG_LEVEL
from database import db, ensure_indexes
from exceptions import InsufficientStockError, ShopError
from routes import (
    admin,
    audit,
    auth,
    cart,
    categories,
    cms,
    inventory,
    media,
    order_management,
    orders,
    payments,
    products,
    support,
    users,
)

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
    yield


app = FastAPI(title="E-commerce API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (auth, users, categories, products, inventory, cart, orders, order_management, payments,
               support, cms, media, admin, audit):
    app.include_router(module.router)


# --------------------- Errors ---------------------

@app.exception_handler(ShopError)
def shop_error_handler(request: Request, exc: ShopError):
    body = {"success": False, "message": exc.detail}
    if isinstance(exc, InsufficientStockError) and exc.available is not None:
        body["available"] = exc.available
        body["requested"] = exc.requested
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(HTTPException)
def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.detail},
                        headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [{"field": ".".join(str(p) for p in e["loc"][1:]), "message": e["msg"]} for e in exc.errors()]
    return JSONResponse(status_code=422, content={"success": False, "message": "Validation failed",
                                                  "errors": errors})


@app.exception_handler(ModelValidationError)
def model_error_handler(request: Request, exc: ModelValidationError):
    errors = [{"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in exc.errors()]
    return JSONResponse(status_code=400, content={"success": False, "message": "Validation failed",
                                                  "errors": errors})


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


# --------------------- Routes ---------------------

@app.get("/")
def root():
    return {"message": "E-commerce API is running"}


@app.get("/schema")
def get_schema():
    from schemas import AuditLog, Category, Content, Media, Order, Product, Settings, Support, User
    return {
        model.__name__.lower(): model.model_json_schema()
        for model in (User, Product, Order, Category, Support, Content, Media, Settings, AuditLog)
    }


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if db is None:
        return response
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
