from __future__ import annotations

import uvicorn

from studio.config import get_settings
from studio.utils.logging import configure_logging
from studio.web.app import create_app


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    app = create_app()
    uvicorn.run(
        app,
        host=settings.web_host,
        port=settings.web_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == '__main__':
    main()
