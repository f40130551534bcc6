"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from customs_intel.api.calculator import router as calculator_router
from customs_intel.api.extraction import router as extraction_router
from customs_intel.api.health import router as health_router
from customs_intel.api.ingestion import router as ingestion_router
from customs_intel.api.jobs import router as jobs_router
from customs_intel.api.pdfs import router as pdfs_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(pdfs_router)
api_router.include_router(extraction_router)
api_router.include_router(ingestion_router)
api_router.include_router(calculator_router)
api_router.include_router(jobs_router)
