#!/usr/bin/env python3
"""
Entry point for the mail service.
Runs the FastAPI app under uvicorn.
"""


def main():
    import sys
    from pathlib import Path

    import uvicorn

    app_root = Path(__file__).resolve().parent / "app"

    # Packages inside app/ are imported top-level (core, routers, services)
    if str(app_root) not in sys.path:
        sys.path.insert(0, str(app_root))

    from core.config import settings

    uvicorn.run(
        "app:app",
        app_dir=str(app_root),
        host=settings.main_host,
        port=settings.main_port,
        reload=settings.is_dev,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
