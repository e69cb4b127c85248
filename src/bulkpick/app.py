from __future__ import annotations

import argparse
import logging

from nicegui import app, ui

from bulkpick.data.backend import HttpPickingBackend
from bulkpick.data.db import Db
from bulkpick.data.repository import Repository
from bulkpick.logging_conf import configure_logging
from bulkpick.settings import EngineConfig, Settings, default_db_path
from bulkpick.ui.pages import register_pages

logger = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bulk picking terminal")
    parser.add_argument("--host", type=str, default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--api-url", type=str, default=None, help="Picking service base URL (.../api)")
    parser.add_argument("--user", type=str, default=None, help="Operator id sent with every pick")
    parser.add_argument("--log-level", type=str, default=None, help="Overrides the stored log_level (default INFO)")
    return parser


def build_settings(args: argparse.Namespace, repo: Repository | None = None) -> Settings:
    api_url = args.api_url or (repo.get_config(key="api_base_url") if repo else None) or Settings.api_base_url
    timeout_raw = repo.get_config(key="api_timeout_seconds") if repo else None
    try:
        timeout = float(timeout_raw) if timeout_raw else Settings.api_timeout_seconds
    except ValueError:
        logger.warning("Ignoring invalid api_timeout_seconds=%r", timeout_raw)
        timeout = Settings.api_timeout_seconds
    return Settings(
        db_path=default_db_path(),
        api_base_url=api_url,
        api_timeout_seconds=timeout,
        user_id=args.user,
        host=args.host,
        port=args.port,
        log_level=args.log_level or (repo.get_config(key="log_level") if repo else None) or Settings.log_level,
    )


def main() -> None:
    args = build_arg_parser().parse_args()

    db = Db(default_db_path())
    db.ensure_schema()
    repo = Repository(db)

    settings = build_settings(args, repo)
    configure_logging(settings)
    config = EngineConfig.from_repo(repo)
    logger.info("Picking service %s, engine config %s", settings.api_base_url, config)

    backend = HttpPickingBackend(settings.api_base_url, timeout=settings.api_timeout_seconds)
    register_pages(repo=repo, settings=settings, backend=backend)

    @app.on_shutdown
    async def _close_backend() -> None:
        await backend.aclose()

    ui.run(host=settings.host, port=settings.port, title="Bulk Picking", reload=False)


if __name__ in {"__main__", "__mp_main__"}:
    main()
