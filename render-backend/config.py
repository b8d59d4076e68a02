"""
Configuration file for the Storyboard Render Backend.
Contains all global constants; every value can be overridden from the environment.
"""

import os

# --- Service ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PROJECT_ROOT = os.getenv("PROJECT_ROOT", os.getcwd())
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{os.path.join(PROJECT_ROOT, 'render_jobs.db')}")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
RENDER_EVENTS_CHANNEL = os.getenv("RENDER_EVENTS_CHANNEL", "render-jobs")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")

# --- Storage ---
MEDIA_DIR = os.getenv("MEDIA_DIR", os.path.join(PROJECT_ROOT, "media"))
OUTPUT_DIR = os.getenv("OUTPUT_DIR", os.path.join(MEDIA_DIR, "renders"))
WORKSPACE_ROOT = os.getenv("WORKSPACE_ROOT", os.path.join(PROJECT_ROOT, "render_workspaces"))
ASSET_ROOT = os.getenv("ASSET_ROOT", PROJECT_ROOT)
MEDIA_URL_PREFIX = os.getenv("MEDIA_URL_PREFIX", "/media")

# --- Encoder ---
FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")
FFPROBE_BINARY = os.getenv("FFPROBE_BINARY", "ffprobe")

# --- Concurrency ---
MAX_CONCURRENT_JOBS = int(os.getenv("MAX_CONCURRENT_JOBS", "2"))
MAX_CONCURRENT_ENCODES = int(os.getenv("MAX_CONCURRENT_ENCODES", "2"))

# --- Timeouts (seconds) ---
PROBE_TIMEOUT = float(os.getenv("PROBE_TIMEOUT", "30"))
CLIP_TIMEOUT_BASE = float(os.getenv("CLIP_TIMEOUT_BASE", "60"))
CLIP_TIMEOUT_PER_SECOND = float(os.getenv("CLIP_TIMEOUT_PER_SECOND", "6"))
ASSEMBLY_TIMEOUT_BASE = float(os.getenv("ASSEMBLY_TIMEOUT_BASE", "120"))
ASSEMBLY_TIMEOUT_PER_SECOND = float(os.getenv("ASSEMBLY_TIMEOUT_PER_SECOND", "2"))
IMAGE_FETCH_TIMEOUT = float(os.getenv("IMAGE_FETCH_TIMEOUT", "30"))

# --- Job supervision ---
HEARTBEAT_INTERVAL_SECONDS = float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "2"))
# A job whose heartbeat is older than this has lost its worker
ORPHAN_TIMEOUT_SECONDS = float(os.getenv("ORPHAN_TIMEOUT_SECONDS", "20"))
ORPHAN_SWEEP_INTERVAL_SECONDS = float(os.getenv("ORPHAN_SWEEP_INTERVAL_SECONDS", "30"))
SCENE_ENCODE_RETRIES = int(os.getenv("SCENE_ENCODE_RETRIES", "1"))

# --- Scene timing ---
MIN_SCENE_SECONDS = float(os.getenv("MIN_SCENE_SECONDS", "3"))
MAX_SCENE_SECONDS = float(os.getenv("MAX_SCENE_SECONDS", "20"))
# Fewer scenes than one per this many seconds of narration gets a warning
SECONDS_PER_SCENE_HINT = float(os.getenv("SECONDS_PER_SCENE_HINT", "10"))

# --- Output verification ---
DURATION_TOLERANCE_SECONDS = float(os.getenv("DURATION_TOLERANCE_SECONDS", "1.0"))
MIN_OUTPUT_BYTES = int(os.getenv("MIN_OUTPUT_BYTES", "1024"))

# --- Progress checkpoints (percent) ---
PROGRESS_PROBE = (0, 10)
PROGRESS_CLIPS = (10, 75)
PROGRESS_ASSEMBLY = (75, 95)
PROGRESS_VERIFY = (95, 100)

# --- Render presets ---
# Landscape frame sizes; portrait swaps width and height.
RESOLUTIONS = {
    "720p": (1280, 720),
    "1080p": (1920, 1080),
    "1440p": (2560, 1440),
}

# quality tier -> (x264 preset, crf)
QUALITY_PRESETS = {
    "low": ("veryfast", 28),
    "medium": ("faster", 24),
    "high": ("medium", 20),
}

AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"

# --- Motion (pan/zoom) ---
# motion intensity -> zoom range above 1.0. Pans travel the slack this zoom leaves.
ZOOM_RANGE = {
    "subtle": 0.1,
    "moderate": 0.2,
    "dramatic": 0.3,
}

# The still is scaled to this multiple of the frame before zoompan to avoid
# integer-pixel jitter in slow moves.
UPSCALE_FACTOR = 1.5

# --- Development server ---
SERVER_HOST = os.getenv("SERVER_HOST", "127.0.0.1")
SERVER_PORT = int(os.getenv("SERVER_PORT", "8000"))
SERVER_RELOAD = os.getenv("SERVER_RELOAD", "true").lower() in ("1", "true", "yes")
