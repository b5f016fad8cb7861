"""
Content-addressable artifact registry.

Serves the Docker Registry HTTP API v2: chunked blob uploads, schema 1 and
schema 2 manifests, tag listing and the repository catalog. Blobs are
reference counted by the tags that use them and deleted when the last tag
goes away.

Architecture:
    1. Client opens an upload (POST /v2/<ns>/<repo>/blobs/uploads/)
    2. Client sends chunks (PATCH) and commits under a digest (PUT ?digest=)
    3. Client pushes a manifest (PUT /v2/<ns>/<repo>/manifests/<tag>)
    4. Registry checks every referenced blob exists, counts one reference per
       blob and pushes the blobs to the configured storage driver
    5. Deleting a manifest releases the references; blobs at zero are removed

Endpoints:
    - GET /v2/ - Version check
    - GET /v2/_catalog - Repository list
    - POST/GET/PATCH/PUT/DELETE /v2/<ns>/<repo>/blobs/uploads/... - Uploads
    - GET/HEAD/DELETE /v2/<ns>/<repo>/blobs/<digest> - Blobs
    - PUT/GET/HEAD/DELETE /v2/<ns>/<repo>/manifests/<reference> - Manifests
    - GET /v2/<ns>/<repo>/tags/list - Tags

Environment Variables:
    LOG_LEVEL, FLASK_HOST, FLASK_PORT, REGISTRY_DOMAIN, LISTEN_MODE,
    STORAGE_ROOT, STORAGE_DRIVER, BACKEND_ROOT, CHUNK_SIZE, CACHABLE,
    DATABASE_URL, MAX_NAME_LENGTH, MAX_TAG_LENGTH

Example:
    $ STORAGE_DRIVER=chunked LOG_LEVEL=DEBUG python app.py
    $ docker push localhost:5000/library/busybox:latest
"""

import logging

from hangar.config import config
from hangar.routes import create_app

# Configure logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    """Main entry point for the registry application."""
    app = create_app(config)
    debug_mode = logger.getEffectiveLevel() == logging.DEBUG
    logger.info(f"Starting artifact registry on {config.FLASK_HOST}:{config.FLASK_PORT}")
    logger.info(f"Log level: {logging.getLevelName(logger.getEffectiveLevel())}")
    if debug_mode:
        logger.info("Flask debug mode enabled")
    app.run(host=config.FLASK_HOST, port=config.FLASK_PORT, debug=debug_mode, threaded=True)


if __name__ == "__main__":
    main()
