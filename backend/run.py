import uvicorn

from adsync.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "adsync.main:app",
        host=settings.host,
        port=settings.port,
        reload=not settings.is_production,
        workers=settings.web_concurrency if settings.is_production else 1,
        log_level="info",
    )
