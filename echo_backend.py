"""
Echo backend: upstream stand-in for the proxy benchmarks.
- Answers every request, whatever the method or path, with the same payload.
- No routing, no state besides a served-responses counter.
- Meant to be served by uvicorn inside BenchRuntime; connection errors are
  handled per connection by the server and never stop the backend.
"""

from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import Counter

PHRASE = b"Hello, World!"
CONTENT_TYPE = "text/plain"
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

M_ECHO_RESPONSES = Counter("echo_backend_responses_total", "Responses served by the echo backend")


def hello_response() -> Response:
    # Explicit content-type header keeps Starlette from appending a charset.
    return Response(content=PHRASE, headers={"content-type": CONTENT_TYPE})


def create_app() -> FastAPI:
    app = FastAPI(title="proxybench echo backend", docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{path:path}", methods=ALL_METHODS)
    async def hello(path: str):
        M_ECHO_RESPONSES.inc()
        return hello_response()

    return app
