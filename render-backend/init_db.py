#!/usr/bin/env python3
"""
Bootstrap for the render backend: creates the tables and the storage
directories renders are written to. Run once per deployment, and again
by the API on startup.
"""

import os
import sys
import logging

from sqlalchemy.exc import SQLAlchemyError

from config import LOG_LEVEL, MEDIA_DIR, OUTPUT_DIR, WORKSPACE_ROOT
from database import engine, Base
from models import Project, Scene, RenderJob  # noqa: F401  (registers the tables)


def init_database(bind=engine, directories=(MEDIA_DIR, OUTPUT_DIR, WORKSPACE_ROOT)):
    """Create missing tables and directories; existing ones are left alone."""
    for directory in directories:
        os.makedirs(directory, exist_ok=True)
    Base.metadata.create_all(bind=bind)
    logging.info(f"Render tables ready: {', '.join(sorted(Base.metadata.tables))}")


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")
    try:
        init_database()
        print("✅ Render database and storage directories are ready!")
    except (SQLAlchemyError, OSError) as e:
        print(f"❌ Error initializing the render backend: {e}")
        sys.exit(1)
