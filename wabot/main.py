import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from wabot.config import settings
from wabot.database import get_db
from wabot.logging_config import setup_logging
from wabot.models import Message, MessageThread
from wabot.routers import events, whatsapp

setup_logging(settings.log_level)

app = FastAPI(
    title="wabot API",
    description="WhatsApp AI reply pipeline",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(events.router)
app.include_router(whatsapp.router)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    threads_count = db.query(MessageThread).count()
    messages_count = db.query(Message).count()
    pending_count = (
        db.query(Message).filter(Message.direction == "inbound", Message.ai_processed == False).count()
    )
    return {
        "status": "ok",
        "threads": threads_count,
        "messages": messages_count,
        "pending_inbound": pending_count,
    }
