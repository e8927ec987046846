import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import CORS_ORIGINS, PROJECT_NAME
from database import Base, engine
from errors import TalkingFiguresError
from routers import cache, stream, video

# --------------------------------------------------------------------------
# --- Configuration & Setup ---
# --------------------------------------------------------------------------

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title=PROJECT_NAME,
    description="Backend for talking historical figures: avatar videos, streaming and media caches.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials="*" not in CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --------------------------------------------------------------------------
# --- Error Handling ---
# --------------------------------------------------------------------------

@app.exception_handler(TalkingFiguresError)
async def talking_figures_error_handler(request: Request, e: TalkingFiguresError):
    if e.status_code >= 500:
        logging.error(f"❌ {request.url.path} failed: {e.message}")
    return JSONResponse(status_code=e.status_code, content={"success": False, "error": e.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, e: RequestValidationError):
    errors = e.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"success": False, "error": message, "details": jsonable_encoder(errors)})


# --------------------------------------------------------------------------
# --- Routers ---
# --------------------------------------------------------------------------

app.include_router(video.router)
app.include_router(cache.router)
app.include_router(stream.router, prefix="/ws")


@app.get("/")
def read_root():
    return {"message": f"{PROJECT_NAME} backend is running."}
