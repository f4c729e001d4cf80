import uvicorn
from taskflow_engine.config.settings import settings
from taskflow_engine.config.logging import configure_logging


def main():
    configure_logging()
    uvicorn.run(
        "taskflow_engine.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info"
    )


if __name__ == "__main__":
    main()
