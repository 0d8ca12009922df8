import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi

from gradebook.api import settings as settings_api, grades
from gradebook.config import settings
from gradebook.database import engine, Base
from gradebook.exceptions import NotFound, InvalidState
from gradebook.middleware.logging import setup_logging, add_logging_middleware
from gradebook.services.cache import GradeCache
import gradebook.models  # noqa: F401  registers the tables on Base.metadata

# Initialize FastAPI app
app = FastAPI(
    title="Gradebook API",
    description="Grade aggregation and settings inheritance for programs, class groups and classes",
    version="1.0.0",
    docs_url=None,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Setup logging
setup_logging()
add_logging_middleware(app)
logger = logging.getLogger(__name__)

# Shared read cache for gradebook views
app.state.grade_cache = GradeCache(
    ttl_seconds=settings.GRADE_CACHE_TTL_SECONDS,
    max_size=settings.GRADE_CACHE_MAX_SIZE,
)

# Exception handlers
@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(InvalidState)
async def invalid_state_handler(request: Request, exc: InvalidState):
    logger.warning(f"Rejected {request.method} {request.url.path}: {str(exc)}")
    return JSONResponse(status_code=409, content={"detail": str(exc)})

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Please try again later."},
    )

# Create database tables
@app.on_event("startup")
async def startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created or verified")

# Include routers
app.include_router(settings_api.router, prefix="/api", tags=["Settings"])
app.include_router(grades.router, prefix="/api", tags=["Grades"])

# Custom OpenAPI schema for documentation
@app.get("/api/docs", include_in_schema=False)
async def custom_swagger_ui_html():
    return get_swagger_ui_html(
        openapi_url="/api/openapi.json",
        title="Gradebook API Documentation",
        swagger_ui_parameters={"defaultModelsExpandDepth": -1},
    )

@app.get("/api/openapi.json", include_in_schema=False)
async def get_openapi_endpoint():
    return get_openapi(
        title="Gradebook API",
        version="1.0.0",
        description="Grade aggregation and settings inheritance API",
        routes=app.routes,
    )

@app.get("/", tags=["Root"])
async def root():
    return {"message": "Welcome to the Gradebook API. Visit /api/docs for documentation."}

# Run the server
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("gradebook.main:app", host="0.0.0.0", port=5000, reload=True)
