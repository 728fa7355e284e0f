"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
"""

from fastapi import APIRouter

from api.routes import health, workflows, executions, subjects

api_v1_router = APIRouter()

# Health
api_v1_router.include_router(
    health.router,
    tags=["Health"],
)

# Workflow definitions
api_v1_router.include_router(
    workflows.router,
    prefix="/workflows",
    tags=["Workflows"],
)

# Executions
api_v1_router.include_router(
    executions.router,
    prefix="/executions",
    tags=["Executions"],
)

# Subjects
api_v1_router.include_router(
    subjects.router,
    prefix="/subjects",
    tags=["Subjects"],
)
