import argparse
import asyncio
import logging

import uvicorn

from api.rest import create_app
from core.config import load_settings


async def main():
    parser = argparse.ArgumentParser(description="Operato Deployer")
    parser.add_argument("--host", default="0.0.0.0", help="REST API host")
    parser.add_argument("--port", type=int, default=8000, help="REST API port")
    parser.add_argument("--db-url", default=None, help="Database URL (default: DATABASE_URL env)")
    parser.add_argument("--log-level", default="info", help="Logging level")
    parser.add_argument("--no-resume", action="store_true", help="Do not resume monitoring of active deployments")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    settings = load_settings(database_url=args.db_url)
    rest_app = create_app(settings, resume_monitoring=not args.no_resume)

    config = uvicorn.Config(rest_app, host=args.host, port=args.port, log_level=args.log_level.lower())
    server = uvicorn.Server(config)
    logging.info(f"REST API starting on {args.host}:{args.port} (substrate={settings.substrate})")
    await server.serve()


if __name__ == "__main__":
    asyncio.run(main())
