"""Entry point for running the dataexport app."""
import logging

import uvicorn

from dataexport import config

if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
    from dataexport.app import app
    uvicorn.run(app, host="0.0.0.0", port=8001)
