from fastapi import APIRouter
from app.api.endpoints import assistant, auth

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(auth.router)
api_router.include_router(assistant.router)
