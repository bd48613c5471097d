"""
Run the lifecycle guard API with uvicorn.

    python main.py
"""
import uvicorn

from lifecycle_guard.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "lifecycle_guard.api:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        workers=1 if settings.debug else 4,
        log_level=settings.log_level.lower(),
        access_log=True
    )
