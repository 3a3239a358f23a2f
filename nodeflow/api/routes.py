from fastapi import APIRouter
from .v1 import runs, workflows

api_router = APIRouter(prefix="/api", tags=["workflow-engine"])

api_router.include_router(runs.router, prefix="/v1")
api_router.include_router(workflows.router, prefix="/v1")


@api_router.get("/")
def read_root():
    return {"message": "nodeflow workflow engine"}
