from fastapi import APIRouter

from app.api.routes import contacts, costs, health, search

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(search.router, prefix="/search", tags=["search"])
api_router.include_router(costs.router, prefix="/costs", tags=["costs"])
api_router.include_router(contacts.router, prefix="/contacts", tags=["contacts"])
