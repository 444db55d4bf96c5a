import json
import logging

from aiohttp import web

from .api import CONFIG_KEY, STORE_KEY, routes
from .config import load_config
from .constants import APP_NAME, SCHEMA_VERSION, VERSION
from .db import FormStore
from .errors import EFormsError

logger = logging.getLogger("EForms")


def _error_response(message, status):
    return web.Response(
        status=status,
        text=json.dumps({"success": False, "error": message}, ensure_ascii=False),
        content_type="application/json",
    )


@web.middleware
async def error_middleware(request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except EFormsError as exc:
        if exc.status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, exc.message)
        else:
            logger.debug("%s %s -> %d: %s", request.method, request.path, exc.status, exc.message)
        return _error_response(exc.message, exc.status)
    except Exception:
        logger.exception("%s %s failed", request.method, request.path)
        return _error_response("An unexpected error occurred.", 500)


def create_app(store=None, config=None):
    config = config or load_config()
    if store is None:
        store = FormStore(db_path=config["db_path"], busy_timeout_ms=config["busy_timeout_ms"])

    _banner = f" {APP_NAME} Initialization "
    logger.info("=" * 40 + _banner + "=" * 40)
    logger.info(f"Version: {VERSION}")
    logger.info(f"Schema version: {SCHEMA_VERSION}")
    logger.info(f"Database: {store.db_path}")

    app = web.Application(middlewares=[error_middleware])
    app[STORE_KEY] = store
    app[CONFIG_KEY] = config
    app.add_routes(routes)
    logger.info("API routes registered: %d", len(routes))
    logger.info("=" * (80 + len(_banner)))
    return app


def main():
    config = load_config()
    logging.basicConfig(
        level=config["log_level"],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    web.run_app(create_app(config=config), host=config["host"], port=config["port"])


if __name__ == "__main__":
    main()
