from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("TETHER_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("TETHER_HOST", "127.0.0.1")
    port = int(os.getenv("TETHER_PORT", "8080"))
    uvicorn.run("tether.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
