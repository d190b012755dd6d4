"""
Domain error -> HTTP mapping shared by the routers.
"""
from contextlib import contextmanager

from fastapi import HTTPException

from core.exceptions import QuestlineError
from core.logger import get_logger

logger = get_logger("api")


@contextmanager
def http_errors():
    """Re-raise QuestlineError as HTTPException with the error's status code."""
    try:
        yield
    except QuestlineError as e:
        if e.status_code >= 500:
            logger.error(f"Request failed: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.get_user_message()) from e
