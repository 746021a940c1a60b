"""Run the Cardbook API with uvicorn (auto-reload in debug mode)."""
import argparse

import uvicorn

from cardbook.config import settings


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    database = settings.db.url.split("@")[-1] if "@" in settings.db.url else settings.db.url
    print(f"Starting {settings.app_name} v{settings.version} ({settings.environment})")
    print(f"Database: {database}")
    print(f"Uploads: {settings.upload.dir}")
    print(f"Auto-reload: {'Enabled' if settings.debug else 'Disabled'}")
    print("-" * 50)

    uvicorn.run(
        "cardbook.api:app",
        host=args.host,
        port=args.port,
        reload=settings.debug,
        reload_dirs=["cardbook", "ai"] if settings.debug else None,
        log_level=settings.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
