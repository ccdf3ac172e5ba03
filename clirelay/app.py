"""clirelay — main application entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def _configure_logging(level_name: str, log_name: str, *, to_stderr: bool = True) -> Path:
    """Rotating file under ~/.clirelay/logs plus (optionally) stderr."""
    log_dir = Path.home() / ".clirelay" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / log_name

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if to_stderr:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    return log_file


def _load_config(config_path: str | None):
    from clirelay.engine.config import RelayConfig
    from clirelay.engine.yaml_config import load_yaml_config

    if config_path:
        return load_yaml_config(config_path)
    auto_yaml = Path.cwd() / ".clirelay.yaml"
    if auto_yaml.exists():
        logging.getLogger(__name__).info("Auto-discovered config: %s", auto_yaml)
        return load_yaml_config(auto_yaml)
    return RelayConfig.from_env()


def _read_prompt(args) -> str:
    if args.prompt_file:
        return Path(args.prompt_file).read_text(encoding="utf-8")
    if args.prompt == "-" or (args.prompt is None and not sys.stdin.isatty()):
        return sys.stdin.read()
    return args.prompt or ""


def _cmd_run(args) -> int:
    from clirelay.adapters.console_sink import ConsoleSink
    from clirelay.engine.artifacts import encode_data_url
    from clirelay.engine.errors import OrchestratorError
    from clirelay.engine.models import Attachment, ToolSettings, TurnSettings
    from clirelay.engine.orchestrator import Orchestrator
    from clirelay.engine.providers.registry import build_provider_registry
    from clirelay.shared.services.session_store import JsonSessionStore

    logger = logging.getLogger(__name__)
    config = _load_config(args.config)
    _configure_logging(
        "DEBUG" if args.verbose else config.log_level,
        "clirelay-run.log",
        to_stderr=args.verbose,
    )

    prompt = _read_prompt(args)
    if not prompt.strip():
        print("Error: a prompt is required (argument, --prompt-file, or stdin).", file=sys.stderr)
        return 2

    attachments = []
    for image_path in args.image or []:
        try:
            attachments.append(Attachment(data=encode_data_url(image_path), name=image_path))
        except OSError as exc:
            print(f"Warning: skipping image {image_path}: {exc}", file=sys.stderr)

    orchestrator = Orchestrator(
        build_provider_registry(config),
        JsonSessionStore(config.sessions_dir),
        config=config,
    )
    sink = ConsoleSink(markdown=args.markdown)
    settings = TurnSettings(
        cwd=args.cwd or os.getcwd(),
        model=args.model,
        tools=ToolSettings(
            allowed_tools=list(args.allow_tool or []),
            skip_permissions=args.skip_permissions,
        ),
        debug=args.debug,
    )

    async def _run() -> int:
        try:
            result = await orchestrator.run_turn(
                prompt,
                args.provider or config.default_provider,
                sink=sink,
                session_id=args.session,
                settings=settings,
                attachments=attachments,
            )
        except OrchestratorError as exc:
            logger.info("Turn failed: %s", exc)
            if sink.exit_code is None:
                # Rejected before a process existed (unknown provider, busy session).
                print(f"Error: {exc}", file=sys.stderr)
                return 2
            return sink.exit_code if sink.exit_code > 0 else 1
        return result.exit_code or 0

    try:
        return asyncio.run(_run())
    except KeyboardInterrupt:
        return 130


def _cmd_serve(args) -> int:
    from clirelay.server.http import RelayServer
    from clirelay.shared.services.process_cleanup import cleanup_stale_runtime_processes

    config = _load_config(args.config)
    log_file = _configure_logging(config.log_level, "clirelay-server.log")
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting relay server mode cwd=%s port=%s config=%s log=%s",
        Path.cwd(), args.port, args.config or "<none>", log_file,
    )
    include_claude = os.getenv("RELAY_CLEANUP_STALE_CLAUDE", "0").lower() in {"1", "true", "yes"}
    try:
        reaped = cleanup_stale_runtime_processes(
            include_claude=include_claude,
            log=logger.info,
        )
        if reaped:
            logger.warning("Reaped %d stale agent process(es) at startup", reaped)
    except (OSError, ValueError):
        logger.exception("Startup stale-process cleanup failed")

    server = RelayServer(host=args.host, port=args.port, cwd=str(Path.cwd()), config=config)
    asyncio.run(server.start())
    return 0


def _cmd_providers(args) -> int:
    from rich.console import Console

    from clirelay.adapters.console_sink import render_provider_table
    from clirelay.engine.providers.registry import build_provider_registry

    config = _load_config(args.config)
    registry = build_provider_registry(config)
    Console().print(render_provider_table(registry.describe()))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clirelay",
        description="Drive agent CLIs (Codex, Gemini, Claude, Ollama, BMAD) as multi-turn conversations",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ./.clirelay.yaml if present)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one turn and stream the reply to the terminal")
    run.add_argument("prompt", nargs="?", default=None, help="Prompt text ('-' reads stdin)")
    run.add_argument("--prompt-file", "-f", default=None, help="Read the prompt from a file")
    run.add_argument("--provider", "-p", default=None, help="Provider tag (default: from config)")
    run.add_argument("--session", "-s", default=None, help="Continue an existing session id")
    run.add_argument("--model", default=None, help="Model override for this turn")
    run.add_argument("--cwd", default=None, help="Working directory for the agent (default: current dir)")
    run.add_argument("--image", action="append", metavar="PATH", help="Attach an image (repeatable)")
    run.add_argument("--allow-tool", action="append", metavar="TOOL", help="Add a tool to the allow-list (repeatable)")
    run.add_argument("--skip-permissions", action="store_true", help="Broaden tool access (yolo/full-auto)")
    run.add_argument("--markdown", action="store_true", help="Render the reply as markdown when complete")
    run.add_argument("--debug", action="store_true", help="Pass --debug to providers that support it")
    run.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging on stderr")
    run.set_defaults(func=_cmd_run)

    serve = sub.add_parser("serve", help="Start the HTTP+SSE server")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=0, help="Server port (0=random available port)")
    serve.set_defaults(func=_cmd_serve)

    providers = sub.add_parser("providers", help="List supported agent CLIs and their models")
    providers.set_defaults(func=_cmd_providers)
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
