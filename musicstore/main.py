from fastapi import FastAPI

from musicstore.database import Base, engine
from musicstore.logging_config import configure_logging
from musicstore.routes import router

configure_logging()

app = FastAPI(title="GoMusic Checkout Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)
