"""
Health check route.

Reports whether the database and record sources are configured.
Does not touch the sources themselves.
"""

import os

from fastapi import APIRouter

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    database_configured = bool(os.getenv("DATABASE_URL"))
    sources = [
        name
        for name, var in (
            ("crm", "CRM_BASE_URL"),
            ("licensing", "LICENSING_BASE_URL"),
            ("static", "STATIC_RECORDS_PATH"),
        )
        if os.getenv(var)
    ]

    if not database_configured:
        return {
            "status": "unhealthy",
            "database_configured": False,
            "message": "DATABASE_URL not configured",
        }

    return {
        "status": "healthy",
        "database_configured": True,
        "sources_configured": sources,
    }
