import logging

from fastapi import FastAPI

from .config import settings
from .db import init_db
from .routes import api_router
from .seed import seed_data

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(title="Dental Assistant API")


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    seed_data()


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


app.include_router(api_router, prefix="/api")
