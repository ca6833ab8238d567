"""Serve Bulwark with uvicorn: ``python -m bulwark``."""

import uvicorn

from .api import create_app
from .config import settings
from .logging_config import configure_logging


def main() -> None:
    configure_logging(settings.log_level)
    app = create_app(settings=settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
