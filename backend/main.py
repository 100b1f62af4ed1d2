import logging

from fastapi import FastAPI, Request
import uvicorn
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from db.database import create_db_and_tables
from routers.inventory import router as inventory_router
from routers.products import router as products_router
from routers.recipes import router as recipes_router
from routers.sales import router as sales_router
from routers.tabs import router as tabs_router
from core.auth import fastapi_users, auth_backend
from core.config import settings
from core.errors import InventoryError
from contextlib import asynccontextmanager
from schemas.users import UserRead, UserCreate, UserUpdate

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_db_and_tables()
    yield


app = FastAPI(
    title="Bar POS Inventory API",
    description="Stock ledger, recipes, tabs and sales for a bar point of sale",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def inventory_error_handler(request: Request, exc: InventoryError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.add_exception_handler(InventoryError, inventory_error_handler)


# Authentication routes (fastapi-users)
app.include_router(fastapi_users.get_auth_router(auth_backend), prefix="/auth/jwt", tags=["auth"],)
app.include_router(fastapi_users.get_register_router(UserRead, UserCreate), prefix="/auth", tags=["auth"])
app.include_router(fastapi_users.get_reset_password_router(), prefix="/auth", tags=["auth"])
app.include_router(fastapi_users.get_verify_router(UserRead), prefix="/auth", tags=["auth"])
app.include_router(fastapi_users.get_users_router(UserRead, UserUpdate), prefix="/users", tags=["users"])

# Point of sale routes
app.include_router(products_router, prefix="/products", tags=["products"])
app.include_router(recipes_router, prefix="/recipes", tags=["recipes"])
app.include_router(inventory_router, prefix="/inventory", tags=["inventory"])
app.include_router(tabs_router, prefix="/tabs", tags=["tabs"])
app.include_router(sales_router, prefix="/sales", tags=["sales"])

if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
