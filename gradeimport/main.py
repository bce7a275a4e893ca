import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from gradeimport.core.config import LOG_LEVEL
from gradeimport.core.deps import get_blob_store
from gradeimport.core.errors import GradeImportError
from gradeimport.core.logging_middleware import LoggingMiddleware
from gradeimport.db.init_db import init_db
from gradeimport.db.session import SessionLocal
from gradeimport.routers.grades import router as grades_router
from gradeimport.routers.imports import router as imports_router
from gradeimport.services.drafts import expire_stale_drafts

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Grade Import")

# Middleware
app.add_middleware(LoggingMiddleware)


@app.exception_handler(GradeImportError)
async def grade_import_error_handler(request: Request, exc: GradeImportError):
    if exc.status_code >= 500:
        request_id = getattr(request.state, "request_id", "-")
        logger.warning("[%s] %s %s failed: %s %s", request_id, request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


# Health check
@app.get("/health")
def health():
    return {"status": "ok"}


# Startup event
@app.on_event("startup")
def on_startup():
    init_db()
    db = SessionLocal()
    try:
        expire_stale_drafts(db, get_blob_store())
    finally:
        db.close()


# Include routers
app.include_router(imports_router, prefix="/grades/imports", tags=["imports"])
app.include_router(grades_router, prefix="/grades", tags=["grades"])
