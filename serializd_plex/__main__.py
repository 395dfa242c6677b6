"""Module executed when running ``python -m serializd_plex``."""

from __future__ import annotations

import uvicorn

from app.config import settings


def main() -> None:
    """Serve the badge service on the configured host and port."""

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
        log_level="debug" if settings.debug_navigation else "info",
    )


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    main()
