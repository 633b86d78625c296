import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import psycopg2
import uvicorn
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from speedtest_api import db, results
from speedtest_api.results import (
    DatabaseUnavailableError,
    InvalidParameterError,
    ResultNotFoundError,
    ResultsError,
)
from speedtest_api.schemas import APIMessage, Averages, DownloadPoint, ErrorMessage, ResultData, ResultPage

# Load environment variables
db.load_env_file()

log = logging.getLogger(__name__)

openapi_tags = [
    {"name": "Health", "description": "Service health checks."},
    {"name": "Today", "description": "Measurements taken during the current UTC day."},
    {"name": "Results", "description": "Stored speed test results."},
]

_INTERNAL_ERROR = {"error": "Internal Server Error"}

_error_responses = {
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorMessage, "description": "Unexpected failure"},
}


def _allowed_origins() -> List[str]:
    # CORS: allow all by default. Restrict via CORS_ALLOW_ORIGINS env (comma separated).
    env_val = os.getenv("CORS_ALLOW_ORIGINS")
    if not env_val:
        return ["*"]
    return [o.strip() for o in env_val.split(",") if o.strip()]


async def get_pool(request: Request) -> Any:
    """Dependency returning the application's connection pool."""
    return request.app.state.pool


@contextmanager
def pooled_connection(pool) -> Iterator[Any]:
    """
    Hold one pooled connection and always hand it back.

    Handlers enter this on the same worker thread that runs their query, so a
    thread waiting for a free connection never keeps a connection holder from
    running.
    """
    try:
        conn = pool.getconn()
    except psycopg2.Error as exc:
        log.exception("Could not acquire a database connection")
        raise DatabaseUnavailableError("connection pool unavailable") from exc
    try:
        yield conn
    finally:
        pool.putconn(conn)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InvalidParameterError)
    async def _invalid_parameter(_request: Request, exc: InvalidParameterError) -> JSONResponse:
        log.info("Rejected request: %s", exc)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid id"})

    @app.exception_handler(ResultNotFoundError)
    async def _not_found(_request: Request, exc: ResultNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": "Data not found"})

    @app.exception_handler(ResultsError)
    async def _results_error(_request: Request, exc: ResultsError) -> JSONResponse:
        # Cause already logged where it was raised.
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_INTERNAL_ERROR)

    @app.exception_handler(Exception)
    async def _unhandled(_request: Request, exc: Exception) -> JSONResponse:
        log.error("Unhandled error", exc_info=exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_INTERNAL_ERROR)


def _register_routes(app: FastAPI) -> None:
    @app.get("/health", response_model=APIMessage, tags=["Health"], summary="Health check")
    def health_check() -> Dict[str, str]:
        """Report that the service is up; does not touch the database."""
        return {"message": "Healthy"}

    @app.get(
        "/downloads",
        response_model=List[DownloadPoint],
        tags=["Today"],
        summary="Today's downloads",
        responses=_error_responses,
    )
    def downloads(pool: Any = Depends(get_pool)) -> List[Dict[str, Any]]:
        """Download measurements of the current UTC day with their timestamps."""
        with pooled_connection(pool) as conn:
            return results.today_downloads(conn)

    @app.get(
        "/uploads",
        response_model=List[Optional[float]],
        tags=["Today"],
        summary="Today's uploads",
        responses=_error_responses,
    )
    def uploads(pool: Any = Depends(get_pool)) -> List[Optional[float]]:
        """Upload measurements of the current UTC day."""
        with pooled_connection(pool) as conn:
            return results.today_uploads(conn)

    @app.get(
        "/pings",
        response_model=List[Optional[float]],
        tags=["Today"],
        summary="Today's pings",
        responses=_error_responses,
    )
    def pings(pool: Any = Depends(get_pool)) -> List[Optional[float]]:
        """Ping measurements of the current UTC day."""
        with pooled_connection(pool) as conn:
            return results.today_pings(conn)

    @app.get(
        "/averages",
        response_model=Averages,
        tags=["Today"],
        summary="Today's averages",
        responses=_error_responses,
    )
    def averages(pool: Any = Depends(get_pool)) -> Dict[str, Optional[float]]:
        """Mean download, upload and ping of the current UTC day; null when there is no data."""
        with pooled_connection(pool) as conn:
            return results.today_averages(conn)

    @app.get(
        "/allresults",
        response_model=List[Dict[str, Any]],
        tags=["Results"],
        summary="All results",
        responses=_error_responses,
    )
    def all_results(pool: Any = Depends(get_pool)) -> List[Dict[str, Any]]:
        """Every stored result with every column."""
        with pooled_connection(pool) as conn:
            return results.all_results(conn)

    @app.get(
        "/fulldata",
        response_model=List[Any],
        tags=["Results"],
        summary="All data payloads",
        responses=_error_responses,
    )
    def full_data(pool: Any = Depends(get_pool)) -> List[Any]:
        """The raw data payload of every stored result."""
        with pooled_connection(pool) as conn:
            return results.full_data(conn)

    @app.get(
        "/list",
        response_model=ResultPage,
        tags=["Results"],
        summary="Paginated results",
        responses=_error_responses,
    )
    def list_results(
        page: Optional[str] = Query(None, description="Page number (default 1)"),
        page_size: Optional[str] = Query(None, alias="pageSize", description="Results per page (default 10)"),
        pool: Any = Depends(get_pool),
    ) -> Dict[str, Any]:
        """List results newest first; missing or non-numeric parameters fall back to their defaults."""
        with pooled_connection(pool) as conn:
            return results.list_page(
                conn,
                page=results.coerce_int(page, results.DEFAULT_PAGE),
                page_size=results.coerce_int(page_size, results.DEFAULT_PAGE_SIZE),
            )

    @app.get(
        "/specified/{result_id}",
        response_model=ResultData,
        tags=["Results"],
        summary="Get result data by id",
        responses={
            status.HTTP_400_BAD_REQUEST: {"model": ErrorMessage, "description": "Id is not an integer"},
            status.HTTP_404_NOT_FOUND: {"model": ErrorMessage, "description": "Result not found"},
            **_error_responses,
        },
    )
    def specified(result_id: str, pool: Any = Depends(get_pool)) -> Dict[str, Any]:
        """Return the data payload of the result with the given id."""
        with pooled_connection(pool) as conn:
            return {"data": results.data_by_id(conn, result_id)}


# PUBLIC_INTERFACE
def create_app(pool=None) -> FastAPI:
    """
    Build the API application.

    ``pool`` is any object with ``getconn``/``putconn``. When omitted, a
    PostgreSQL pool is created from the environment at startup and closed at
    shutdown.
    """
    app = FastAPI(
        title="Speed Test Results API",
        description="Read-only access to stored network speed test results (download, upload, ping).",
        version="1.0.0",
        openapi_tags=openapi_tags,
        docs_url="/",
    )
    app.state.pool = pool

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def _startup() -> None:
        if app.state.pool is None:
            app.state.pool = db.create_pool()
            app.state.owns_pool = True

    @app.on_event("shutdown")
    def _shutdown() -> None:
        if getattr(app.state, "owns_pool", False):
            app.state.pool.closeall()
            app.state.pool = None
            log.info("Database pool closed")

    _register_error_handlers(app)
    _register_routes(app)
    return app


app = create_app()


# PUBLIC_INTERFACE
def run() -> None:
    """Serve the API with uvicorn on HOST:PORT_HOST."""
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT_HOST", "3000")))


if __name__ == "__main__":
    run()
