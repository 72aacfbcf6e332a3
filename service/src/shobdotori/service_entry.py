from __future__ import annotations

import logging
import os

import uvicorn

from shobdotori.runtime_paths import RUNTIME_BACKEND_LOG_PATH


def _configure_logging() -> None:
    RUNTIME_BACKEND_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=os.getenv("SHOBDOTORI_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(RUNTIME_BACKEND_LOG_PATH, encoding="utf-8"),
        ],
    )


def main() -> None:
    _configure_logging()
    from shobdotori.main import app

    host = os.getenv("SHOBDOTORI_HOST", "127.0.0.1")
    port = int(os.getenv("SHOBDOTORI_PORT", os.getenv("PORT", "3000")))
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
