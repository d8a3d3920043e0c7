from fastapi import APIRouter

from standings.api.routes import admin, audit, health, jobs, match_results, monitoring, snapshots, standings, teams

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["worker"])
api_router.include_router(match_results.router, prefix="/match-results", tags=["ingest"])
api_router.include_router(teams.router, prefix="/teams", tags=["ingest"])
api_router.include_router(standings.router, prefix="/standings", tags=["public"])
api_router.include_router(snapshots.router, prefix="/snapshots", tags=["public"])
api_router.include_router(audit.router, prefix="/audit-logs", tags=["audit"])
api_router.include_router(monitoring.router, prefix="/monitoring", tags=["monitoring"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
