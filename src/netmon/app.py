import logging
import threading

# FastAPI creates the app object and defines the routes
from fastapi import FastAPI
from fastapi.responses import Response
import uvicorn

logger = logging.getLogger(__name__)

# This is only here so the deployment platform can health check us.
# It knows nothing about probe rounds.
app = FastAPI(title="netmon liveness", docs_url=None, redoc_url=None, openapi_url=None)


@app.api_route("/{path:path}", methods=["GET", "HEAD", "POST"], include_in_schema=False)
def alive(path: str) -> Response:
    return Response(status_code=200)


def serve_in_background(host: str = "0.0.0.0", port: int = 8080) -> threading.Thread:
    """Run the liveness app under uvicorn on a daemon thread."""
    config = uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False)
    server = uvicorn.Server(config)

    t = threading.Thread(target=server.run, name="liveness", daemon=True)
    t.start()
    logger.info("liveness listener started", extra={"fields": {"host": host, "port": port}})
    return t
