"""Run the HTTP server: python -m megabridge"""

import uvicorn

from megabridge.config import settings
from megabridge.main import create_app


def main():
    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        timeout_graceful_shutdown=max(1, settings.shutdown_timeout_ms // 1000),
    )


if __name__ == "__main__":
    main()
