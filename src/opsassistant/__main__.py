"""
Run the ops assistant API.

Usage:
    python -m opsassistant
    opsassistant

Host, port, debug (auto-reload) and log level come from the settings
(HOST, PORT, DEBUG, LOG_LEVEL).
"""

import uvicorn

from opsassistant.settings import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "opsassistant.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
