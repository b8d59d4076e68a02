import os

import uvicorn

from config import OUTPUT_DIR, PROJECT_ROOT, SERVER_HOST, SERVER_PORT, SERVER_RELOAD, WORKSPACE_ROOT


def reload_excludes():
    """Renders write into these trees constantly; watching them would restart the server mid-job."""
    patterns = ["media/*"]
    for directory in (WORKSPACE_ROOT, OUTPUT_DIR):
        relative = os.path.relpath(directory, PROJECT_ROOT)
        if not relative.startswith(".."):
            patterns.append(f"{relative.replace(os.sep, '/')}/*")
    return patterns


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=SERVER_RELOAD,
        reload_excludes=reload_excludes() if SERVER_RELOAD else None,
    )
