"""
POST /api/insights
==================
Collects CI insights for one project and returns the CIInsights structure.

Token handling:
    - The server's GITLAB_TOKEN is only sent to the configured GITLAB_BASE_URL
    - Any other base_url needs a token in the request body, otherwise 400
    - The body cannot request a JSON export (no output_path)

Error mapping:
    ConfigurationError  → 400 (missing token, invalid settings, unknown project)
    AuthenticationError → 401 (token rejected by GitLab)
    FetchError          → 502 (pipeline list could not be retrieved)
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException

from cilens.agents.orchestrator import InsightsOrchestrator
from cilens.core import config
from cilens.core.exceptions import AuthenticationError, ConfigurationError, FetchError
from cilens.models.insights import CIInsights
from cilens.models.settings import InsightsApiRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Insights"])


def _normalize_url(url: str) -> str:
    return url.strip().rstrip("/").lower()


def resolve_request_token(request: InsightsApiRequest) -> Optional[str]:
    """
    Token to use for this request; None means "fall back to GITLAB_TOKEN".

    Raises
    ------
    HTTPException (400)
        If the request targets another GitLab instance without its own token.
    """
    token = request.token.get_secret_value().strip() if request.token else ""
    if token:
        return token
    if request.base_url and _normalize_url(request.base_url) != _normalize_url(config.GITLAB_BASE_URL):
        logger.warning(
            f"[API] Rejected {request.project_path}: base_url {request.base_url} "
            f"differs from the configured instance and no token was supplied"
        )
        raise HTTPException(
            status_code=400,
            detail="A token is required when base_url differs from the configured GitLab instance",
        )
    return None


@router.post("/insights", response_model=CIInsights)
async def collect_insights(request: InsightsApiRequest):
    """Run a full collection (list, fetch, classify, aggregate) for ``request.project_path``."""
    logger.info(f"[API] Insights requested for {request.project_path}")
    token = resolve_request_token(request)
    orchestrator = InsightsOrchestrator()

    try:
        return await orchestrator.run(request.to_settings(), token=token)
    except ConfigurationError as exc:
        logger.error(f"[API] Configuration error for {request.project_path}: {exc}")
        raise HTTPException(status_code=400, detail=str(exc))
    except AuthenticationError as exc:
        logger.error(f"[API] Authentication rejected for {request.project_path}")
        raise HTTPException(status_code=401, detail=str(exc))
    except FetchError as exc:
        logger.error(f"[API] Failed to list pipelines for {request.project_path}: {exc}")
        raise HTTPException(status_code=502, detail=f"GitLab request failed: {exc}")
