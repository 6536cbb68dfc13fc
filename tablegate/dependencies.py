# ABOUTME: FastAPI dependency injection utilities
# ABOUTME: Provides the process-wide request pipeline built from settings

from functools import lru_cache

from tablegate.config import get_settings
from tablegate.database import engine
from tablegate.services.pipeline import Pipeline, build_pipeline


@lru_cache
def get_pipeline() -> Pipeline:
    """
    Returns the shared pipeline.

    Components hold per-process state (cache counters, schema cache), so one
    instance serves every request. Tests override this dependency.
    """
    return build_pipeline(get_settings(), engine)
