"""Headless command-line runner for search and live mode.

Runs one search, logs each change summary and, with ``--live``, keeps
polling for new messages until interrupted.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from slacksearch.cache.directory import WorkspaceDirectory
from slacksearch.core.config import Settings, get_settings
from slacksearch.core.exceptions import FetchErrorKind
from slacksearch.integrations.slack.client import SlackWebClient
from slacksearch.integrations.slack.message_source import SlackMessageSource
from slacksearch.live.models import FetchParams, Message
from slacksearch.live.reconciler import ChangeSet
from slacksearch.services.search_service import SearchService

logger = logging.getLogger("slacksearch.main")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_service(settings: Settings) -> SearchService:
    """Wire the Slack client, directory cache and search service together."""
    settings.ensure_data_dirs()
    client = SlackWebClient(settings)
    directory = WorkspaceDirectory(
        client,
        ttl_seconds=settings.CACHE_TTL_SECONDS,
        max_entries=settings.CACHE_MAX_ENTRIES,
        snapshot_path=settings.WORKSPACE_CACHE_FILE_PATH,
    )
    directory.load_snapshot()
    source = SlackMessageSource(client, directory, settings)
    return SearchService(source, settings=settings)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="slacksearch",
        description="Search Slack messages and optionally follow new ones live.",
    )
    parser.add_argument("--query", "-q", help="Search text")
    parser.add_argument(
        "--channel",
        "-c",
        action="append",
        default=[],
        help="Channel ID to search (repeatable)",
    )
    parser.add_argument("--user", "-u", action="append", default=[], help="User ID")
    parser.add_argument("--limit", "-n", type=int, default=None, help="Max messages")
    parser.add_argument("--live", action="store_true", help="Keep polling for new messages")
    parser.add_argument(
        "--interval", type=float, default=None, help="Live poll interval in seconds"
    )
    return parser.parse_args(argv)


def log_changes(messages: List[Message], changes: ChangeSet) -> None:
    summary = changes.summary()
    logger.info(
        "%d messages displayed (+%d / -%d / ~%d)",
        len(messages),
        summary["added"],
        summary["removed"],
        summary["updated"],
    )
    for message in messages:
        if message.key in changes.added:
            logger.info(
                "[%s] %s: %s",
                message.channel_name or message.channel_id,
                message.user_name or message.user_id,
                message.text,
            )


def log_error(kind: FetchErrorKind, error: BaseException) -> None:
    logger.error("%s error: %s", kind.value, error)


async def run(args: argparse.Namespace, settings: Settings) -> int:
    service = build_service(settings)
    service.add_listener(log_changes)
    service.on_error = log_error
    params = FetchParams(
        query=args.query,
        channel_ids=args.channel or settings.SLACK_DEFAULT_CHANNELS,
        user_ids=args.user,
        limit=args.limit or settings.SEARCH_DEFAULT_LIMIT,
    )
    try:
        state = await service.search(params)
        if state.error_kind is FetchErrorKind.AUTHENTICATION:
            return 2
        if args.live:
            if args.interval is not None:
                service.set_update_interval(args.interval)
            service.enable_live()
            logger.info("Live mode running; press Ctrl+C to stop")
            await asyncio.Event().wait()
        return 0 if state.error is None else 1
    finally:
        service.source.directory.save_snapshot()
        await service.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
