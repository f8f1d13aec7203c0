# This file bootstraps the FastAPI app, wires up the logging and metrics
# middlewares, and includes the flag router.

import os

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from flagvault.api.feature_flags import router as flags_router
from flagvault.core.db import Base, engine
from flagvault.core.logging import APILoggingMiddleware
from flagvault.core.metrics import MetricsMiddleware
from flagvault.flags.errors import FlagError
import flagvault.models  # noqa: F401  registers the ORM tables on Base

# Create DB tables right away so the app doesn't hit missing
# schema issues later.
if os.getenv("SKIP_MIGRATIONS") != "1":
    Base.metadata.create_all(bind=engine)

app = FastAPI(title="FlagVault")


@app.exception_handler(FlagError)
def handle_flag_error(_request, exc: FlagError):
    response = JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    response.headers["X-Error-Code"] = exc.code
    return response


app.add_middleware(APILoggingMiddleware)
app.add_middleware(MetricsMiddleware)

app.include_router(flags_router)


# /metrics endpoint (Prometheus scraping)
@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/ping")
def ping():
    return {"message": "pong"}
