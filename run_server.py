#!/usr/bin/env python3
"""
Image board server
Serves the JSON API and, for local storage, the uploaded images
"""
import logging
import os
import sys

import uvicorn

from config import API_HOST, API_PORT, STORAGE_TYPE, UPLOAD_URL_PREFIX

logger = logging.getLogger("imageboard.server")


def main():
    script_dir = os.path.dirname(os.path.abspath(__file__))
    os.chdir(script_dir)

    try:
        # Importing app configures logging
        from app import app

        logger.info("Starting image board server on %s:%d", API_HOST, API_PORT)
        if STORAGE_TYPE == "local":
            logger.info("Serving uploaded images under %s", UPLOAD_URL_PREFIX)

        uvicorn.run(
            app,
            host=API_HOST,
            port=API_PORT,
            reload=False,
            access_log=False,
            log_config=None,
        )
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception:
        logger.exception("Error starting server")
        sys.exit(1)


if __name__ == "__main__":
    main()
