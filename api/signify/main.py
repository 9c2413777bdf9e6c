import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from .config import CORS_ORIGINS, LOG_LEVEL
from .db import init_db
from .errors import SignifyError
from .routers import accounts, documents, overview, signing, tools, users

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("signify")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="Signify API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SignifyError)
async def signify_error_handler(request: Request, exc: SignifyError):
    logger.warning("%s %s rejected: %s %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    detail = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(status_code=422, content={"error": "ValidationError", "detail": detail})


@app.exception_handler(OperationalError)
async def storage_error_handler(request: Request, exc: OperationalError):
    logger.error("storage unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"error": "UpstreamFailure", "detail": "storage unavailable"})


# published/* must be matched before /{document_id}
app.include_router(signing.router, prefix="/api/documents", tags=["signing"])
app.include_router(documents.router, prefix="/api/documents", tags=["documents"])
app.include_router(tools.router, prefix="/api/documents", tags=["tools"])
app.include_router(accounts.router, tags=["accounts"])
app.include_router(users.router, prefix="/api/users", tags=["users"])
app.include_router(overview.router, tags=["overview"])


@app.get("/")
def root():
    return {"ok": True, "service": "signify-api"}
