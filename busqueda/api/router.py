from fastapi import APIRouter

from busqueda.api.routes import admin, health, indexing, search

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(indexing.router, prefix="/indexing", tags=["indexing"])
api_router.include_router(search.router, prefix="/search", tags=["public"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
