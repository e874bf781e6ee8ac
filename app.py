import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rounds.api import install_error_handlers, router as rounds_router
from rounds.sql import ensure_schema
from util.config import ALLOWED_ORIGINS, LOG_LEVEL

# ===== 基本設定 =====
APP_NAME = "Round Controller"

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_schema()
    logger.info("%s ready", APP_NAME)
    yield


# ===== FastAPI =====
app = FastAPI(title=APP_NAME, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_error_handlers(app)
app.include_router(rounds_router)


@app.get("/health")
def health():
    return {"status": "ok"}
