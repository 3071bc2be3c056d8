"""Run the InfraDesk API server: python -m infradesk"""

import uvicorn

from .config import get_settings


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run("infradesk.main:app", host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())
