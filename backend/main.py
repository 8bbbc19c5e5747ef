import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from db.database import init_db
from api.conversations import router as conversations_router
from services.rate_limit_service import InMemoryRateLimiter

logging.basicConfig(
    level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

settings.validate_security_configuration()
init_db()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Turns still streaming at shutdown are cancelled; their persisted messages stand.
    pending = [task for task in app.state.turn_tasks if not task.done()]
    if pending:
        logger.info("Cancelling %s in-flight turn(s) on shutdown", len(pending))
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


app = FastAPI(title=settings.APP_NAME, version="1.0.0", lifespan=lifespan)
app.state.rate_limiter = InMemoryRateLimiter()
app.state.turn_tasks = set()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    if response.headers.get("content-type", "").startswith("text/event-stream"):
        response.headers["Cache-Control"] = "no-cache"
    return response


app.include_router(conversations_router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {
        "status": "ok",
        "app": settings.APP_NAME,
        "active_turns": sum(1 for task in app.state.turn_tasks if not task.done()),
    }
