"""Command line client for the WhatsApp chat synchronization.

Loads the YAML config, resolves the tenant connection through the CRM,
starts a synchronization store against WAHA and prints the session, the chat
list and optionally one chat's history.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from crm_chat_sync._version import __version__

if TYPE_CHECKING:
    from crm_chat_sync.core.store import SyncStore
    from crm_chat_sync.models import ChatOverview, Message, SessionStatus

log = structlog.get_logger()


def setup_logging(debug: bool = False, log_format: str = "console") -> None:
    """Logging used until the config file's own settings are applied."""
    from crm_chat_sync.utils.logging import LogLevel, configure_logging

    configure_logging(level=LogLevel.DEBUG if debug else LogLevel.INFO, log_format=log_format)


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        prog="crm-chat-sync",
        description="CRM chat sync - WhatsApp chat synchronization through WAHA",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config/config.yaml"),
        help="YAML config file (default: %(default)s)",
    )

    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Log at DEBUG level until the config file is read",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse config and validate without contacting the provider",
    )

    parser.add_argument(
        "--format",
        choices=["json", "console"],
        default="console",
        help="Log renderer used before the config file is read (default: %(default)s)",
    )

    parser.add_argument(
        "--session",
        metavar="NAME",
        help="Use this provider session instead of the configured one",
    )

    parser.add_argument(
        "--chat",
        metavar="CHAT_ID",
        help="Select a chat and print its message history",
    )

    parser.add_argument(
        "--send",
        metavar="TEXT",
        help="Send a text message to the chat given with --chat",
    )

    parser.add_argument(
        "--watch",
        metavar="SECONDS",
        type=float,
        default=0.0,
        help="Keep polling the session status for this many seconds",
    )

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse and cross-check command line arguments."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.send is not None and not args.chat:
        parser.error("--send requires --chat")
    if args.watch < 0:
        parser.error("--watch must not be negative")
    return args


def format_timestamp(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def format_session_line(status: SessionStatus | None) -> str:
    if status is None:
        return "Sessão: desconhecida"
    return f"Sessão: {status.name} ({status.status})"


def format_chat_line(chat: ChatOverview) -> str:
    """One line per chat: unread badge, name, id and preview."""
    badge = f"({chat.unread_count})" if chat.unread_count else "   "
    preview = chat.last_message.body if chat.last_message else ""
    kind = "grupo" if chat.is_group else "contato"
    return f"{badge} {chat.name or chat.id} <{chat.id}> [{kind}] {preview}".rstrip()


def format_message_line(message: Message) -> str:
    """One line per message: time, direction, ack and text."""
    direction = ">>" if message.from_me else "<<"
    ack = f" [{message.ack.name.lower()}]" if message.ack is not None else ""
    text = message.preview_text or f"<{message.type.value}>"
    return f"{format_timestamp(message.timestamp)} {direction}{ack} {text}"


async def run_sync(
    config_path: Path,
    dry_run: bool = False,
    chat_id: str | None = None,
    send_text: str | None = None,
    watch: float = 0.0,
    session: str | None = None,
) -> int:
    """Run one synchronization pass.

    Args:
        config_path: Path to configuration file
        dry_run: If True, only validate config without contacting the provider
        chat_id: Chat to select and print
        send_text: Text to send to ``chat_id``
        watch: Seconds to keep polling the session status before exiting
        session: Runtime session override

    Returns:
        0 on success, 1 on any configuration or provider failure
    """
    from crm_chat_sync.utils.async_helpers import ConfigurationError, SyncError

    log.info(
        "starting_crm_chat_sync",
        version=__version__,
        config_path=str(config_path),
    )

    try:
        from crm_chat_sync.config.loader import load_config

        log.debug("config_file_reading", path=str(config_path))
        config = load_config(config_path)
        log.info("config_file_loaded", integration_id=config.integration.integration_id)

        # File settings replace the command line logging from here on
        from crm_chat_sync.utils.logging import (
            bind_context,
            clear_context,
            configure_from_settings,
            get_redactor,
        )

        configure_from_settings(config.logging)
        if config.integration.auth_token:
            get_redactor().register_secret(config.integration.auth_token)

        if dry_run:
            from crm_chat_sync.utils.security import mask_config_value

            log.info(
                "dry_run_mode_config_valid",
                config_url=config.integration.config_url,
                integration_id=config.integration.integration_id,
                auth_token=mask_config_value("auth_token", config.integration.auth_token or ""),
            )
            return 0

        from crm_chat_sync.adapters import ConsoleNotifier, IntegrationConfigSource, WahaClient
        from crm_chat_sync.core import ConfigResolver, SyncStore

        source = IntegrationConfigSource(
            config.integration,
            timeout=config.provider.request_timeout,
        )
        resolver = ConfigResolver(
            source,
            default_session=config.integration.default_session,
            reserved_environments=config.integration.reserved_environments,
        )
        if session:
            resolver.set_session_override(session)

        try:
            async with WahaClient(
                resolver,
                config.integration.integration_id,
                config.provider,
                config.retry,
            ) as client:
                connection = await client.connection()
                bind_context(
                    integration_id=config.integration.integration_id,
                    session=connection.session_name,
                )
                store = SyncStore(
                    client,
                    ConsoleNotifier(),
                    config.provider,
                    config.polling,
                    session_name=connection.session_name,
                )
                async with store:
                    await _report(store, chat_id, send_text, watch)
        finally:
            clear_context()
            await source.aclose()

        return 0

    except FileNotFoundError:
        log.error("config_file_missing", path=str(config_path))
        return 1
    except ConfigurationError as e:
        log.error("configuration_resolve_failed", error=str(e))
        return 1
    except ValueError as e:
        log.error("config_file_invalid", error=str(e))
        return 1
    except SyncError as e:
        log.error("sync_failed", error=str(e))
        return 1
    except KeyboardInterrupt:
        log.info("sync_interrupted")
        return 0
    except Exception as e:
        log.exception("sync_crashed", error_type=type(e).__name__)
        return 1


async def _report(
    store: SyncStore,
    chat_id: str | None,
    send_text: str | None,
    watch: float,
) -> None:
    from crm_chat_sync.utils.async_helpers import SyncError

    with contextlib.suppress(SyncError):
        await store.check_session_status()
    print(format_session_line(store.session_status))

    for chat in store.chats:
        print(format_chat_line(chat))

    if chat_id:
        await store.select_chat(chat_id)
        if send_text is not None:
            await store.send_message(chat_id, send_text)
        print(f"\n--- {chat_id} ---")
        for message in store.active_chat_messages:
            print(format_message_line(message))

    if watch > 0:
        log.info("watching_session_status", seconds=watch)
        await asyncio.sleep(watch)
        print(format_session_line(store.session_status))


def main(argv: list[str] | None = None) -> int:
    """Console script entry point; returns the process exit code."""
    args = parse_args(argv)

    setup_logging(debug=args.debug, log_format=args.format)

    try:
        return asyncio.run(
            run_sync(
                args.config,
                dry_run=args.dry_run,
                chat_id=args.chat,
                send_text=args.send,
                watch=args.watch,
                session=args.session,
            )
        )
    except KeyboardInterrupt:
        log.info("sync_cancelled_by_user")
        return 0


if __name__ == "__main__":
    sys.exit(main())
