from fastapi import APIRouter
from perfreview.routers import assignments

# Centralized API router hub
# Routers are aggregated here, and main.py only imports this single hub.
api_router = APIRouter()

api_router.include_router(assignments.router, tags=["Questionnaire Assignments"])
