from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("ATLASCAL_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("ATLASCAL_HOST", "0.0.0.0")
    port = int(os.getenv("ATLASCAL_PORT", "3000"))
    uvicorn.run("atlascal.web_app:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
