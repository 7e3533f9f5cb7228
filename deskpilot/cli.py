from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from . import __version__

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_DENIED = 2
EXIT_CONFIG_ERROR = 5

DEFAULT_TASK_ID = "default"


def _configure_text_io() -> None:
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.reconfigure(errors="replace")  # type: ignore[attr-defined]
        except (AttributeError, ValueError):
            pass


def _project_dir(args: argparse.Namespace) -> Path:
    return Path(args.project).expanduser().resolve()


def _load(args: argparse.Namespace):
    from .runtime.config import configure_logging, load_settings

    settings = load_settings(_project_dir(args))
    configure_logging(args.log_level or settings.log_level)
    return settings


def _open_task(args: argparse.Namespace):
    from .runtime.task import Task

    def _print_log(entry) -> None:
        print(f"[{entry.level}] {entry.message}", file=sys.stderr)

    return Task(project_dir=_project_dir(args), task_id=args.task, on_log=_print_log)


def _build_registry(project_dir: Path, settings):
    from .runtime.config import catalog_cache_path
    from .runtime.llm.model_info import ModelInfoCatalog
    from .runtime.llm.registry import ModelRegistry

    catalog = ModelInfoCatalog(url=settings.model_catalog_url, cache_path=catalog_cache_path(project_dir))
    catalog.load(fetch=settings.model_catalog_enabled)
    return ModelRegistry(providers=settings.providers, overrides=settings.model_overrides, catalog=catalog)


# ----------------------------------------------------------------------
# context
# ----------------------------------------------------------------------


def _cmd_context_show(args: argparse.Namespace) -> int:
    from .runtime.errors import ConfigurationError, ContextStoreError

    try:
        _load(args)
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG_ERROR

    async def _show() -> int:
        task = _open_task(args)
        try:
            await task.load()
        except ContextStoreError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_ERROR
        if args.json:
            print(json.dumps(task.context.to_record(), ensure_ascii=False, indent=2))
            return EXIT_OK
        for f in task.context.files:
            print(f"file\t{f.path}\treadOnly={f.read_only}")
        for message in task.context.messages:
            summary = message.to_dict()
            content = summary.get("content")
            preview = content if isinstance(content, str) else json.dumps(content, ensure_ascii=False)
            if len(preview) > 120:
                preview = preview[:117] + "..."
            print(f"{message.id}\t{message.role}\t{preview}")
        print(f"total_cost={task.agent_total_cost:.6f}")
        return EXIT_OK

    return asyncio.run(_show())


def _cmd_context_markdown(args: argparse.Namespace) -> int:
    from .runtime.errors import ConfigurationError, ContextStoreError

    try:
        _load(args)
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG_ERROR

    async def _export() -> int:
        task = _open_task(args)
        try:
            await task.load()
        except ContextStoreError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_ERROR
        text = task.context.render_markdown()
        if args.output:
            out = Path(args.output).expanduser()
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text(text, encoding="utf-8")
            print(f"Wrote {out}")
        else:
            print(text)
        return EXIT_OK

    return asyncio.run(_export())


def _cmd_context_clear(args: argparse.Namespace) -> int:
    from .runtime.errors import ConfigurationError, ContextStoreError

    try:
        _load(args)
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG_ERROR

    async def _clear() -> int:
        task = _open_task(args)
        try:
            await task.load()
        except ContextStoreError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_ERROR
        task.context.clear_messages()
        if args.files:
            task.context.clear_files()
        await task.context.flush()
        print(f"Cleared context of task {task.id}")
        return EXIT_OK

    return asyncio.run(_clear())


# ----------------------------------------------------------------------
# models
# ----------------------------------------------------------------------


def _cmd_models_list(args: argparse.Namespace) -> int:
    from .runtime.errors import ConfigurationError

    try:
        settings = _load(args)
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG_ERROR
    if not settings.providers:
        print("No providers configured.", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    registry = _build_registry(_project_dir(args), settings)
    asyncio.run(registry.load_provider_models())
    for model in registry.models(args.provider):
        limits = f"in={model.max_input_tokens or '-'}\tout={model.max_output_tokens or '-'}"
        custom = "\tcustom" if model.is_custom else ""
        print(f"{model.key}\t{limits}{custom}")
    errors = registry.provider_errors()
    for provider_id, error in sorted(errors.items()):
        print(f"error\t{provider_id}\t{error}", file=sys.stderr)
    return EXIT_ERROR if errors and not registry.models(args.provider) else EXIT_OK


# ----------------------------------------------------------------------
# run
# ----------------------------------------------------------------------


def _print_event(event) -> None:
    from .runtime.llm.types import StreamEventKind

    if event.kind in (StreamEventKind.TEXT_DELTA, StreamEventKind.REASONING_DELTA) and event.delta:
        sys.stdout.write(event.delta)
        sys.stdout.flush()
    elif event.kind is StreamEventKind.TEXT_END:
        sys.stdout.write("\n")
    elif event.kind is StreamEventKind.TOOL_CALL:
        print(f"\n-> {event.tool_name} {json.dumps(event.input or {}, ensure_ascii=False)}")
    elif event.kind is StreamEventKind.TOOL_RESULT:
        output = event.output if isinstance(event.output, str) else json.dumps(event.output, ensure_ascii=False, default=str)
        print(f"<- {event.tool_name}: {output[:400]}")


def _cmd_run(args: argparse.Namespace) -> int:
    from .runtime.approval import AutoApprover, ConsoleApprover
    from .runtime.errors import CancellationToken, ConfigurationError
    from .runtime.orchestrator import Orchestrator, RunStopReason

    try:
        settings = _load(args)
        profile = settings.profile(args.profile)
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG_ERROR

    update: dict[str, object] = {}
    if args.provider:
        update["provider_id"] = args.provider
    if args.model:
        update["model_id"] = args.model
    if args.max_iterations:
        update["max_iterations"] = args.max_iterations
    profile = profile.model_copy(update=update) if update else profile
    if not profile.provider_id or not profile.model_id:
        print("Error: no model selected (use --provider and --model).", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    project_dir = _project_dir(args)
    registry = _build_registry(project_dir, settings)
    cancel = CancellationToken()

    async def _run():
        await registry.load_provider_models()
        task = _open_task(args)
        await task.load()
        orchestrator = Orchestrator(
            task=task,
            registry=registry,
            approver=AutoApprover() if args.yes else ConsoleApprover(),
            on_event=_print_event,
        )
        try:
            return await orchestrator.run(args.prompt, profile=profile, cancel=cancel, system_prompt=args.system_prompt)
        finally:
            await task.context.flush()

    try:
        result = asyncio.run(_run())
    except KeyboardInterrupt:
        cancel.cancel()
        print("Interrupted.", file=sys.stderr)
        return 130

    if result.stop_reason is RunStopReason.ERROR:
        return EXIT_ERROR
    if result.stop_reason is RunStopReason.BLOCKED:
        return EXIT_DENIED
    return EXIT_OK


# ----------------------------------------------------------------------
# parser
# ----------------------------------------------------------------------


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--project", default=".", help="Project directory (default: current directory).")
    parser.add_argument("--log-level", default=None, help="Logging level (default: from config / DESKPILOT_LOG_LEVEL).")


def _add_task(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--task", default=DEFAULT_TASK_ID, help=f"Task id (default: {DEFAULT_TASK_ID}).")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deskpilot",
        description="Agent runtime CLI.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    context_parser = subparsers.add_parser("context", help="Inspect or reset a task's context.")
    context_subparsers = context_parser.add_subparsers(dest="context_command", required=True)

    show_parser = context_subparsers.add_parser("show", help="List context messages and files.")
    _add_common(show_parser)
    _add_task(show_parser)
    show_parser.add_argument("--json", action="store_true", help="Print the persisted record as JSON.")
    show_parser.set_defaults(func=_cmd_context_show)

    markdown_parser = context_subparsers.add_parser("markdown", help="Export the context as markdown.")
    _add_common(markdown_parser)
    _add_task(markdown_parser)
    markdown_parser.add_argument("--output", "-o", default=None, help="Write to a file instead of stdout.")
    markdown_parser.set_defaults(func=_cmd_context_markdown)

    clear_parser = context_subparsers.add_parser("clear", help="Remove all messages from the context.")
    _add_common(clear_parser)
    _add_task(clear_parser)
    clear_parser.add_argument("--files", action="store_true", help="Also drop context files.")
    clear_parser.set_defaults(func=_cmd_context_clear)

    models_parser = subparsers.add_parser("models", help="Model registry utilities.")
    models_subparsers = models_parser.add_subparsers(dest="models_command", required=True)
    models_list_parser = models_subparsers.add_parser("list", help="List models of the configured providers.")
    _add_common(models_list_parser)
    models_list_parser.add_argument("--provider", default=None, help="Only this provider id.")
    models_list_parser.set_defaults(func=_cmd_models_list)

    run_parser = subparsers.add_parser("run", help="Run the agent on one prompt.")
    _add_common(run_parser)
    _add_task(run_parser)
    run_parser.add_argument("prompt", help="User prompt.")
    run_parser.add_argument("--profile", default=None, help="Agent profile id (default: the default profile).")
    run_parser.add_argument("--provider", default=None, help="Provider id (overrides the profile).")
    run_parser.add_argument("--model", default=None, help="Model id (overrides the profile).")
    run_parser.add_argument("--system-prompt", default=None, help="System prompt (overrides the profile).")
    run_parser.add_argument("--max-iterations", type=int, default=None, help="Iteration limit (overrides the profile).")
    run_parser.add_argument("--yes", "-y", action="store_true", help="Approve every tool call without asking.")
    run_parser.set_defaults(func=_cmd_run)

    return parser


def main(argv: list[str] | None = None) -> int:
    _configure_text_io()
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        func = getattr(args, "func")
        return int(func(args))
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
