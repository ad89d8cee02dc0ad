from fastapi import APIRouter

from exportflow.api.routes import pipelines

api_router = APIRouter()
api_router.include_router(pipelines.router)
