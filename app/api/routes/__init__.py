"""API routes."""

from fastapi import APIRouter

from app.api.routes import connections, contacts

api_router = APIRouter()

api_router.include_router(connections.router, prefix="/tenants", tags=["connections"])
api_router.include_router(contacts.router, prefix="/tenants", tags=["contacts"])
