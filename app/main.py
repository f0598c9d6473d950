import sys

from fastapi import FastAPI
from loguru import logger
from tortoise.contrib.fastapi import register_tortoise

from app import settings
from app.routers import booking, message, notification, payment, voucher

logger.remove()
logger.add(sys.stderr, level=settings.LOG_LEVEL)

app = FastAPI(title="StreamBook Bookings", version="0.1.0")

app.include_router(booking.router)
app.include_router(payment.router)
app.include_router(payment.webhook_router)
app.include_router(voucher.router)
app.include_router(notification.router)
app.include_router(message.router)


@app.get("/health", tags=["system"])
async def health() -> dict[str, str]:
    return {"status": "ok"}


register_tortoise(
    app,
    config=settings.TORTOISE_ORM,
    generate_schemas=settings.db_url.startswith("sqlite"),
)
