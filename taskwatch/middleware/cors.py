"""CORS configuration for the routines API."""
import logging
from typing import Any, Dict, List

from fastapi.middleware.cors import CORSMiddleware

from taskwatch.config import Settings

logger = logging.getLogger(__name__)

LOCAL_ORIGINS = ("http://localhost:3000", "http://127.0.0.1:3000")
PREVIEW_ORIGIN_REGEX = r"https://.*\.vercel\.app"


def allowed_origins(settings: Settings) -> List[str]:
    """Local dev origins plus the configured frontend, without duplicates."""
    origins = list(LOCAL_ORIGINS)
    if settings.frontend_url and settings.frontend_url not in origins:
        origins.append(settings.frontend_url)
    return origins


def add_cors_middleware(app, settings: Settings) -> None:
    options: Dict[str, Any] = {
        "allow_credentials": True,
        "allow_methods": ["*"],
        "allow_headers": ["*"],
    }
    if settings.environment == "production":
        # preview deployments get per-branch hostnames
        options["allow_origin_regex"] = PREVIEW_ORIGIN_REGEX
        logger.info(f"CORS: production origins matching {PREVIEW_ORIGIN_REGEX}")
    else:
        options["allow_origins"] = allowed_origins(settings)
        logger.info(f"CORS: development origins {options['allow_origins']}")
    app.add_middleware(CORSMiddleware, **options)
