"""TimeTo entrypoint."""

import uvicorn

from timeto.config.settings import get_settings


def cli() -> None:
    """Serve the API; auto-reload only in debug."""
    settings = get_settings()
    uvicorn.run(
        "timeto.web.app:create_app",
        factory=True,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    cli()
