import logging
import os

import uvicorn

HOST = os.environ.get("LINKCAPTURE_HOST", "127.0.0.1")
PORT = int(os.environ.get("LINKCAPTURE_PORT", "8765"))
LOG_LEVEL = os.environ.get("LINKCAPTURE_LOG_LEVEL", "INFO").upper()


def run_uvicorn():
    """
    Run the FastAPI app via uvicorn in this process.
    """
    config = uvicorn.Config(
        "linkcapture.main:app",
        host=HOST,
        port=PORT,
        log_level=LOG_LEVEL.lower(),
        reload=False,
    )
    server = uvicorn.Server(config)
    server.run()


def main():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger(__name__).info("serving on http://%s:%d/", HOST, PORT)
    try:
        run_uvicorn()
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("shutting down")


if __name__ == "__main__":
    main()
