"""
Run the serials service with uvicorn.

Example:
  python -m apps.serials --reload
"""
import uvicorn
import os


def main() -> None:
    reload = os.getenv("SERIALS_RELOAD", "false").lower() == "true"
    host = os.getenv("SERIALS_HOST", "0.0.0.0")
    port = int(os.getenv("SERIALS_PORT", "8000"))
    uvicorn.run(
        "apps.serials.app.main:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["apps"] if reload else None,
    )


if __name__ == "__main__":
    main()
