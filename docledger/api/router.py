"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from docledger.api.health import router as health_router
from docledger.api.processing_documents import router as processing_documents_router
from docledger.api.reference import router as reference_router
from docledger.api.revisions import router as revisions_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(processing_documents_router)
api_router.include_router(revisions_router)
api_router.include_router(reference_router)
