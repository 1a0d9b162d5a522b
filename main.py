import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import admin
import auth
import cart
import checkout
import clerk
import cms
import coupons
import database
import products
from config import get_config

config = get_config()
logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not database.is_initialized():
        database.init_db(database.connect(get_config()))
    db = database.get_db()
    app.state.store_settings = cms.load_store_settings(db)
    app.state.homepage = cms.load_homepage(db)
    logger.info("Store settings loaded for %s", app.state.store_settings.store_name)
    yield


# App setup
app = FastAPI(title="Storefront API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


for module_router in (
    auth.router,
    products.router,
    cart.router,
    coupons.router,
    checkout.router,
    admin.router,
    cms.settings_router,
    cms.homepage_router,
    clerk.router,
):
    app.include_router(module_router)


# Health
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    cfg = get_config()
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if cfg.database_url else "❌ Not Set",
        "database_name": cfg.database_name,
        "stripe": "✅ Set" if cfg.stripe_secret_key else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.is_initialized():
        db = database.get_db()
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
        response["collections"] = sorted(db.list_collection_names())[:10]
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.port)
