import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from config import CORS_ORIGINS, LOG_LEVEL, MEDIA_DIR, MEDIA_URL_PREFIX
from init_db import init_database
from routers import renders

# --------------------------------------------------------------------------
# --- Configuration & Setup ---
# --------------------------------------------------------------------------

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")

# StaticFiles checks its directory when the app is built
os.makedirs(MEDIA_DIR, exist_ok=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and fail any render whose worker died mid-job."""
    init_database()
    build_manager = app.dependency_overrides.get(renders.get_job_manager, renders.get_job_manager)
    recovered = build_manager().recover_orphans()
    if recovered:
        logging.warning(f"🧹 Recovered {len(recovered)} orphaned render job(s) at startup")
    yield


app = FastAPI(
    title="Storyboard Render Backend",
    description="Assembles scene images and a narration track into a narrated video.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(renders.router)
app.mount(MEDIA_URL_PREFIX, StaticFiles(directory=MEDIA_DIR), name="media")


# --------------------------------------------------------------------------
# --- API Endpoints ---
# --------------------------------------------------------------------------

@app.get("/")
def read_root():
    return {"status": "🚀 Storyboard Render Backend is running!"}
