import asyncio
import os
import signal
from dotenv import load_dotenv
import discord
from .attachment_fetcher import AttachmentFetcher
from .auth_service import TokenStore, ensure_authenticated
from .channel_dispatcher import ChannelDispatcher
from .config_service import ConfigService
from .context_assembler import ContextAssembler
from .discord_client_adapter import DiscordClientAdapter
from .errors import AuthenticationError, CompletionServiceError, ConfigError, GatewayPermissionError, UnknownModelError
from .llm.copilot_client import CopilotClient
from .logger_factory import configure_logging, get_logger

SHUTDOWN_GRACE_SECONDS = 10.0


def _seed_file(target: str, example: str) -> None:
    if os.path.exists(target) or not os.path.exists(example):
        return
    with open(example, "r", encoding="utf-8") as s, open(target, "w", encoding="utf-8") as d:
        d.write(s.read())


async def _guarded(logger, name: str, coro) -> None:
    """Await a teardown step; an already-closed resource must not abort the rest of shutdown."""
    try:
        await coro
    except Exception as e:
        logger.debug(f"[shutdown-step-error] step={name} err={e}")


def _install_signal_handlers(stop: asyncio.Event, logger) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler; Ctrl+C still raises KeyboardInterrupt
            logger.debug(f"signal-handler-unavailable sig={sig.name}")


async def main() -> int:
    _seed_file(".env", ".env.example")
    load_dotenv()
    _seed_file("config.yaml", "config.example.yaml")

    config = ConfigService("config.yaml")
    configure_logging(
        level=config.log_level(),
        lib_log_level=config.lib_log_level(),
        console_to_file=config.log_console(),
        error_file=config.log_errors(),
    )
    logger = get_logger("bot_app")

    try:
        config.validate()
    except ConfigError as e:
        for key in e.missing:
            logger.error(f"Missing required variable: {key}")
        return 1
    settings = config.core_settings()
    logger.info(
        f"Configuration loaded window={settings.context_window} images={settings.image_support} "
        f"max_image_mb={settings.max_image_size_mb} reply_to_bot={settings.reply_to_bot}"
    )

    # 1. GitHub credential (device flow as last resort)
    logger.info("Checking GitHub authentication...")
    try:
        token = await ensure_authenticated(config.github_token())
    except AuthenticationError as e:
        logger.error(f"Authentication failed: {e}")
        return 1

    # 2. Completion service
    copilot_cfg = config.copilot()
    try:
        llm = CopilotClient(
            token,
            model=copilot_cfg.get("model"),
            timeout=float(copilot_cfg.get("timeout", 120.0)),
            api_url=copilot_cfg.get("api_url"),
        )
    except UnknownModelError as e:
        logger.error(f"Invalid copilot.model in config: {e}")
        return 1
    try:
        await llm.start()
    except CompletionServiceError as e:
        logger.error(f"Copilot startup failed: {e}")
        logger.error("Make sure your GitHub account has an active Copilot subscription.")
        store = TokenStore()
        if e.status in (401, 403) and store.load() == token:
            store.clear()
            logger.error("Cached GitHub token was rejected and has been cleared; restart to sign in again.")
        await _guarded(logger, "copilot", llm.stop())
        return 1

    # 3. Pipeline + Discord gateway
    client = DiscordClientAdapter(settings, llm, get_logger("Discord"))
    fetcher = AttachmentFetcher(enabled=settings.image_support, max_size_mb=settings.max_image_size_mb)
    dispatcher = ChannelDispatcher(
        gateway=client,
        llm=llm,
        fetcher=fetcher,
        assembler=ContextAssembler(settings.line_template),
        settings=settings,
    )
    client.attach(dispatcher)

    stop = asyncio.Event()
    _install_signal_handlers(stop, logger)

    server = None
    server_task = None
    if config.http_enabled():
        from .http_app import create_app
        import uvicorn
        uv_config = uvicorn.Config(
            create_app(dispatcher, llm), host=config.http_host(), port=config.http_port(), log_level="warning"
        )
        server = uvicorn.Server(uv_config)
        server_task = asyncio.create_task(server.serve(), name="status-http")
        logger.info(f"Status server: http://{config.http_host()}:{config.http_port()}")

    gateway_task = asyncio.create_task(client.start_gateway(config.discord_token()), name="discord-gateway")
    stop_task = asyncio.create_task(stop.wait(), name="stop-signal")
    logger.info("Discord bot starting...")

    exit_code = 0
    await asyncio.wait({gateway_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    if gateway_task.done() and not gateway_task.cancelled():
        err = gateway_task.exception()
        if isinstance(err, GatewayPermissionError):
            logger.error(str(err))
            exit_code = 1
        elif isinstance(err, discord.LoginFailure):
            logger.error(f"Discord login failed: {err} (check DISCORD_TOKEN)")
            exit_code = 1
        elif err is not None:
            logger.error(f"Discord gateway stopped: {err}", exc_info=err)
            exit_code = 1
    else:
        logger.info("Shutdown signal received")

    # Graceful shutdown
    stop_task.cancel()
    await _guarded(logger, "dispatcher", dispatcher.close(timeout=SHUTDOWN_GRACE_SECONDS))
    await _guarded(logger, "discord", client.close())
    if not gateway_task.done():
        gateway_task.cancel()
    await asyncio.wait({gateway_task, stop_task})
    await _guarded(logger, "copilot", llm.stop())
    await _guarded(logger, "attachments", fetcher.aclose())
    if server is not None and server_task is not None:
        server.should_exit = True
        await _guarded(logger, "status-http", server_task)
    logger.info("Shutdown complete")
    return exit_code


def run() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
