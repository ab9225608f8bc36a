# run_uvicorn.py
# Launcher used for debugging in VS Code (no uvicorn reload subprocess).
import os

# Safe defaults so import-time DB code doesn't explode if env vars are missing.
os.environ.setdefault("DATABASE_URL", "sqlite:///./dev_local.db")
os.environ.setdefault("PUBLIC_BASE_URL", "http://127.0.0.1:8000")

from rallio.main import app  # noqa: E402

if __name__ == "__main__":
    import uvicorn
    # IMPORTANT: reload=False so uvicorn does NOT spawn a reloader subprocess.
    uvicorn.run(app, host="127.0.0.1", port=int(os.getenv("PORT", "8000")), reload=False)
