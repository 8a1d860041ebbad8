import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ----------------------------------------------------
# LOAD .ENV
# ----------------------------------------------------
load_dotenv(override=True)

from app.db import engine
from app.errors import DomainError
from models import Base

# Routers
from routers import checkout, stripe_webhook
from routers import orders, admin_orders
from routers import affiliates, admin_affiliates

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ----------------------------------------------------
# FASTAPI APP
# ----------------------------------------------------
app = FastAPI(
    title="SongStudio Orders Backend",
    version="1.0.0",
)

# ----------------------------------------------------
# CORS CONFIG
# ----------------------------------------------------
cors_env = os.getenv(
    "CORS_ORIGINS",
    ",".join([
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ])
)

origins = [o.strip() for o in cors_env.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------------------------------------
# ERRORI DI DOMINIO -> JSON
# ----------------------------------------------------
@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s (%s)", request.method, request.url.path, exc.reason, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.reason, "detail": exc.message},
    )


# ----------------------------------------------------
# GLOBAL OPTIONS HANDLER
# ----------------------------------------------------
@app.options("/{path:path}")
async def options_handler(path: str, request: Request):
    return Response(status_code=204)

# ----------------------------------------------------
# DB INIT (SOLO DEV)
# ----------------------------------------------------
if os.getenv("ENV", "dev") == "dev" and os.getenv("DB_AUTO_CREATE") == "1":
    Base.metadata.create_all(bind=engine)

# ----------------------------------------------------
# ROUTERS
# ----------------------------------------------------
app.include_router(checkout.router)
app.include_router(stripe_webhook.router)

app.include_router(orders.router)
app.include_router(admin_orders.router)

app.include_router(affiliates.router)
app.include_router(admin_affiliates.router)

# ----------------------------------------------------
# BASE
# ----------------------------------------------------
@app.get("/")
def root():
    return {"message": "SongStudio orders backend running"}

@app.get("/health")
def health():
    return {"ok": True}
