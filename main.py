"""
Release Promoter - Approval API entry point
"""

import uvicorn

from release_promoter.core.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "release_promoter.serving.api:app",
        host=settings.api_host,
        port=settings.api_port,
    )
