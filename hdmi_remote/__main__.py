import uvicorn

from .config import configure_logging, load_settings


def main():
    settings = load_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        "hdmi_remote.server:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        # AccessLogMiddleware writes the per-request line
        access_log=False,
    )


if __name__ == "__main__":
    main()
