# Run from project root: uvicorn chatflow.main:app --reload

import logging

from fastapi import FastAPI

from chatflow.api.routes import router

logging.basicConfig(level=logging.INFO)


app = FastAPI(title="Sub-question Chat Backend")
app.include_router(router)
