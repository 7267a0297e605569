from fastapi import APIRouter

from lokalhunt.api.routes import activity, ads, companies, employers, health, mous, summary

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(employers.router, prefix="/employers", tags=["employers"])
api_router.include_router(companies.router, prefix="/companies", tags=["employers"])
api_router.include_router(ads.router, prefix="/ads", tags=["ads"])
api_router.include_router(mous.router, prefix="/mous", tags=["mous"])
api_router.include_router(activity.router, prefix="/activity-logs", tags=["activity"])
api_router.include_router(summary.router, prefix="/branch-admin", tags=["moderation"])
