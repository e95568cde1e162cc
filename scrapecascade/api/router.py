from fastapi import APIRouter

from scrapecascade.api import fetch

api_router = APIRouter(prefix="/v1")

api_router.include_router(fetch.router, tags=["Fetch"])
