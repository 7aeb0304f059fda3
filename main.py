import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import account
import admin_artisans
import artisan_portal
import auth
import notifications
import orders
import payouts
import products
import settings
import users_admin
from database import db, ensure_indexes
from errors import register_exception_handlers

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes()
    logger.info("Tantika API starting (%s)", settings.ENVIRONMENT)
    yield


app = FastAPI(title="Tantika Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(auth.router)
app.include_router(account.router)
app.include_router(users_admin.router)
app.include_router(admin_artisans.router)
app.include_router(artisan_portal.router)
app.include_router(payouts.admin_router)
app.include_router(orders.router)
app.include_router(products.router)
app.include_router(notifications.router)


@app.get("/")
def root():
    return {"success": True, "message": "Tantika Marketplace API Running"}


# Simple health and db test
@app.get("/test")
def test_database():
    try:
        collections = db.list_collection_names()
        return {"backend": "ok", "db": "ok", "collections": collections}
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        return {"backend": "ok", "db": f"error: {str(e)}"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
