"""
DELETE /api/cache/{project_path}
Removes the persisted job cache of one project.
"""
import asyncio

from fastapi import APIRouter

from cilens.core import config
from cilens.services.cache_service import JobCache

router = APIRouter(prefix="/api", tags=["Cache"])


@router.delete("/cache/{project_path:path}")
async def clear_cache(project_path: str):
    project_path = project_path.strip("/")
    cleared = await asyncio.to_thread(JobCache.clear_project_cache, project_path, config.CACHE_DIR)
    return {"project": project_path, "cleared": cleared}
